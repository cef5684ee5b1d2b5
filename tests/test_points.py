"""Unit tests for the point policy."""

import sys
import unittest
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

import config
from tracking.points import base_points, calculate_points, diminishing_multiplier


class TestBasePoints(unittest.TestCase):
    """Base point table."""

    def test_flat_actions(self):
        self.assertEqual(base_points(config.ACTION_ADD_SITE), 10)
        self.assertEqual(base_points(config.ACTION_PANIC_MODE), 25)
        self.assertEqual(base_points(config.ACTION_EMERGENCY_RESIST), 25)

    def test_start_session_scales_with_duration(self):
        self.assertEqual(base_points(config.ACTION_START_SESSION, {"duration_days": 7}), 350)
        self.assertEqual(base_points(config.ACTION_START_SESSION, {"duration_days": 1}), 50)

    def test_complete_session_scales_with_days_completed(self):
        self.assertEqual(base_points(config.ACTION_COMPLETE_SESSION, {"days_completed": 3}), 300)
        self.assertEqual(base_points(config.ACTION_COMPLETE_SESSION, {"days_completed": 0}), 0)

    def test_daily_bonus_per_day(self):
        self.assertEqual(base_points(config.ACTION_DAILY_BONUS), 10)
        self.assertEqual(base_points(config.ACTION_DAILY_BONUS, {"days": 2}), 20)

    def test_unknown_action_awards_nothing(self):
        self.assertEqual(base_points("made_up_action"), 0)
        self.assertEqual(base_points(config.ACTION_EMERGENCY_DISABLE), 0)


class TestDiminishingReturns(unittest.TestCase):
    """Multiplier tiers by prior occurrence count."""

    def test_tier_boundaries(self):
        self.assertEqual(diminishing_multiplier(0), 1.0)
        self.assertEqual(diminishing_multiplier(9), 1.0)
        self.assertEqual(diminishing_multiplier(10), 0.8)
        self.assertEqual(diminishing_multiplier(49), 0.8)
        self.assertEqual(diminishing_multiplier(50), 0.6)
        self.assertEqual(diminishing_multiplier(99), 0.6)
        self.assertEqual(diminishing_multiplier(100), 0.4)
        self.assertEqual(diminishing_multiplier(10_000), 0.4)

    def test_add_site_by_occurrence(self):
        """9th add_site earns 10, 11th 8, 51st 6, 101st 4."""
        self.assertEqual(calculate_points(config.ACTION_ADD_SITE, None, 8), 10)
        self.assertEqual(calculate_points(config.ACTION_ADD_SITE, None, 10), 8)
        self.assertEqual(calculate_points(config.ACTION_ADD_SITE, None, 50), 6)
        self.assertEqual(calculate_points(config.ACTION_ADD_SITE, None, 100), 4)

    def test_result_is_floored_integer(self):
        points = calculate_points(config.ACTION_START_SESSION, {"duration_days": 3}, 10)
        self.assertEqual(points, 120)
        self.assertIsInstance(points, int)

    def test_deterministic(self):
        first = calculate_points(config.ACTION_DAILY_BONUS, {"days": 3}, 60)
        second = calculate_points(config.ACTION_DAILY_BONUS, {"days": 3}, 60)
        self.assertEqual(first, second)
        self.assertEqual(first, 18)


if __name__ == '__main__':
    unittest.main()
