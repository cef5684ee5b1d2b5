"""Unit tests for the sliding-window rate limiter."""

import sys
import threading
import unittest
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

import config
from core.errors import RateLimitExceeded
from tracking.clock import ManualClock
from tracking.rate_limiter import RateLimiter


class TestRateLimiter(unittest.TestCase):
    """Window counting, expiry and per-key isolation."""

    def setUp(self):
        self.clock = ManualClock()
        self.limiter = RateLimiter(self.clock)

    def test_add_site_allows_five_per_hour(self):
        for _ in range(5):
            self.limiter.check_and_record("u1", config.ACTION_ADD_SITE)
        with self.assertRaises(RateLimitExceeded) as ctx:
            self.limiter.check_and_record("u1", config.ACTION_ADD_SITE)
        self.assertAlmostEqual(ctx.exception.retry_after_seconds, 3600, delta=1)
        self.assertEqual(ctx.exception.action_type, config.ACTION_ADD_SITE)
        self.assertEqual(ctx.exception.user_id, "u1")

    def test_window_slides(self):
        for _ in range(5):
            self.limiter.check_and_record("u1", config.ACTION_ADD_SITE)
            self.clock.advance(seconds=60)
        # Oldest entry is 300s old; it frees up 3300s from now
        with self.assertRaises(RateLimitExceeded) as ctx:
            self.limiter.check_and_record("u1", config.ACTION_ADD_SITE)
        self.assertAlmostEqual(ctx.exception.retry_after_seconds, 3300, delta=1)

        self.clock.advance(seconds=3301)
        self.limiter.check_and_record("u1", config.ACTION_ADD_SITE)

    def test_keys_are_independent(self):
        for _ in range(3):
            self.limiter.check_and_record("u1", config.ACTION_PANIC_MODE)
        # Different user, different action: unaffected
        self.limiter.check_and_record("u2", config.ACTION_PANIC_MODE)
        self.limiter.check_and_record("u1", config.ACTION_ADD_SITE)
        with self.assertRaises(RateLimitExceeded):
            self.limiter.check_and_record("u1", config.ACTION_PANIC_MODE)

    def test_unlimited_action(self):
        for _ in range(100):
            self.limiter.check_and_record("u1", config.ACTION_DAILY_BONUS)
        self.assertIsNone(self.limiter.remaining("u1", config.ACTION_DAILY_BONUS))

    def test_remaining_and_reset(self):
        self.limiter.check_and_record("u1", config.ACTION_START_SESSION)
        self.assertEqual(self.limiter.remaining("u1", config.ACTION_START_SESSION), 2)
        self.limiter.reset("u1")
        self.assertEqual(self.limiter.remaining("u1", config.ACTION_START_SESSION), 3)

    def test_release_gives_slot_back(self):
        for _ in range(4):
            self.limiter.check_and_record("u1", config.ACTION_ADD_SITE)
        recorded_at = self.limiter.check_and_record("u1", config.ACTION_ADD_SITE)
        self.assertEqual(self.limiter.remaining("u1", config.ACTION_ADD_SITE), 0)

        self.limiter.release("u1", config.ACTION_ADD_SITE, recorded_at)
        self.assertEqual(self.limiter.remaining("u1", config.ACTION_ADD_SITE), 1)
        self.limiter.check_and_record("u1", config.ACTION_ADD_SITE)

    def test_release_of_unlimited_action_is_noop(self):
        recorded_at = self.limiter.check_and_record("u1", config.ACTION_DAILY_BONUS)
        self.assertIsNone(recorded_at)
        self.limiter.release("u1", config.ACTION_DAILY_BONUS, recorded_at)

    def test_concurrent_checks_respect_limit(self):
        """Twenty threads racing for add_site: exactly five get through."""
        allowed = []
        refused = []
        barrier = threading.Barrier(20)

        def attempt():
            barrier.wait()
            try:
                self.limiter.check_and_record("u1", config.ACTION_ADD_SITE)
                allowed.append(1)
            except RateLimitExceeded:
                refused.append(1)

        threads = [threading.Thread(target=attempt) for _ in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(len(allowed), 5)
        self.assertEqual(len(refused), 15)


if __name__ == '__main__':
    unittest.main()
