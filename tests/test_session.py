"""
Tests for tracking/session.py: the blocking session lifecycle,
daily bonuses, natural completion and the emergency disable flow.
"""

import sys
import unittest
from pathlib import Path

# Ensure project root and this directory are on the path
sys.path.insert(0, str(Path(__file__).parent.parent))
sys.path.insert(0, str(Path(__file__).parent))

import config
from core.errors import (
    AccountInactive, EmergencyLocked, EmptySiteList, InvalidDuration,
    MissingReason, NoActiveSession, SessionAlreadyActive,
)
from core.events import EventBus
from fakes import LedgerFixture
from screen.blocklist import BlockListManager
from screen.site_blocker import RuleSetBlocker
from tracking.session import (
    OUTCOME_CONFIRM_REQUIRED, OUTCOME_INTERVENTION, SessionStateMachine,
)


class SessionTestCase(unittest.TestCase):

    def setUp(self):
        self.fixture = LedgerFixture()
        self.ledger = self.fixture.ledger
        self.clock = self.fixture.clock
        self.blocker = RuleSetBlocker()
        self.events = EventBus()
        self.received = []
        self.events.subscribe(self.received.append)
        self.machine = SessionStateMachine(self.ledger, self.blocker, self.events)

    def tearDown(self):
        self.fixture.cleanup()

    @property
    def profile(self):
        return self.ledger.profile

    def event_names(self):
        return [event.name for event in self.received]


class TestStartSession(SessionTestCase):

    def test_start_awards_points_and_installs_rules(self):
        result = self.machine.start_session(["https://www.Reddit.com/r/all", "x.com"], 7)
        self.assertEqual(result.transaction.points_awarded, 350)
        self.assertEqual(result.total_score, 350)
        self.assertEqual(result.session.blocked_site_snapshot, ("reddit.com", "x.com"))
        self.assertEqual(result.session.status, config.SESSION_ACTIVE)
        self.assertEqual(
            (result.session.end_time - result.session.start_time).total_seconds(),
            7 * 86400,
        )
        self.assertEqual(self.blocker.installed_domains(), ("reddit.com", "x.com"))
        self.assertIn(config.EVENT_SESSION_STARTED, self.event_names())

    def test_invalid_durations(self):
        for bad in (0, 366, -1, 1.5, True, "7"):
            with self.subTest(duration=bad):
                with self.assertRaises(InvalidDuration):
                    self.machine.start_session(["reddit.com"], bad)
        self.assertIsNone(self.machine.repository.active())
        self.assertEqual(self.profile.total_score, 0)

    def test_boundary_durations_accepted(self):
        self.machine.start_session(["reddit.com"], 365)
        self.assertEqual(self.machine.repository.active().duration_days, 365)

    def test_empty_site_list(self):
        with self.assertRaises(EmptySiteList):
            self.machine.start_session([], 3)

    def test_second_active_session_rejected(self):
        self.machine.start_session(["reddit.com"], 3)
        with self.assertRaises(SessionAlreadyActive):
            self.machine.start_session(["x.com"], 3)
        self.assertEqual(len(self.machine.repository.all()), 1)

    def test_suspended_account_cannot_start(self):
        self.profile.status = config.PROFILE_SUSPENDED
        with self.assertRaises(AccountInactive):
            self.machine.start_session(["reddit.com"], 3)
        self.assertIsNone(self.machine.repository.active())

    def test_snapshot_survives_block_list_removal(self):
        blocklist = BlockListManager(self.ledger)
        blocklist.add_site("reddit.com")
        blocklist.add_site("x.com")
        session = self.machine.start_session(blocklist.active_domains(), 3).session

        blocklist.remove_site("x.com")
        self.assertEqual(blocklist.active_domains(), ["reddit.com"])
        self.assertEqual(session.blocked_site_snapshot, ("reddit.com", "x.com"))
        self.assertEqual(self.blocker.installed_domains(), ("reddit.com", "x.com"))


class TestTickAndCompletion(SessionTestCase):

    def test_immediate_completion_awards_no_bonus(self):
        self.machine.start_session(["reddit.com"], 7)
        completion = self.machine.complete_naturally()
        self.assertEqual(completion.days_completed, 0)
        self.assertEqual(completion.bonus_points, 0)
        self.assertEqual(self.profile.total_score, 350)
        self.assertEqual(completion.session.status, config.SESSION_COMPLETED)
        self.assertEqual(self.blocker.installed_domains(), ())

    def test_tick_is_idempotent(self):
        """Two days in, five ticks pay 20 points in total."""
        self.machine.start_session(["reddit.com"], 5)
        self.clock.advance(days=2, seconds=3600)
        results = [self.machine.tick() for _ in range(5)]

        self.assertEqual(sum(r.bonus_points for r in results), 20)
        self.assertEqual(self.profile.total_score, 250 + 20)
        self.assertEqual(self.machine.repository.active().last_daily_bonus_day, 2)
        bonus_txs = [t for t in self.fixture.state.transactions
                     if t.action_type == config.ACTION_DAILY_BONUS]
        self.assertEqual(len(bonus_txs), 1)

    def test_tick_pays_each_day_once(self):
        self.machine.start_session(["reddit.com"], 5)
        self.assertEqual(self.machine.tick().bonus_points, 0)
        self.clock.advance(days=1)
        self.assertEqual(self.machine.tick().bonus_points, 10)
        self.clock.advance(seconds=3600)
        self.assertEqual(self.machine.tick().bonus_points, 0)
        self.clock.advance(days=1)
        self.assertEqual(self.machine.tick().bonus_points, 10)
        self.assertEqual(self.event_names().count(config.EVENT_DAILY_BONUS), 2)

    def test_tick_completes_expired_session(self):
        self.machine.start_session(["reddit.com"], 3)
        self.clock.advance(days=3)
        result = self.machine.tick()

        self.assertTrue(result.completed)
        self.assertEqual(result.completion.days_completed, 3)
        self.assertEqual(result.completion.bonus_points, 300)
        self.assertEqual(self.profile.current_streak, 3)
        self.assertEqual(self.profile.best_streak, 3)
        self.assertEqual(self.profile.total_clean_days, 3)
        self.assertEqual(self.profile.sessions_completed, 1)
        self.assertEqual(len(self.profile.progress_history), 1)
        self.assertIsNone(self.machine.repository.active())
        self.assertIn(config.EVENT_SESSION_COMPLETED, self.event_names())

    def test_completion_caps_days_at_duration(self):
        self.machine.start_session(["reddit.com"], 2)
        self.clock.advance(days=10)
        completion = self.machine.complete_naturally()
        self.assertEqual(completion.days_completed, 2)
        self.assertEqual(completion.bonus_points, 200)

    def test_new_session_after_completion(self):
        self.machine.start_session(["reddit.com"], 1)
        self.clock.advance(days=1)
        self.machine.tick()
        second = self.machine.start_session(["reddit.com"], 2).session
        self.assertTrue(second.is_active)
        self.assertEqual(len(self.machine.repository.all()), 2)

    def test_complete_without_session(self):
        with self.assertRaises(NoActiveSession):
            self.machine.complete_naturally()

    def test_tick_without_session_is_noop(self):
        result = self.machine.tick()
        self.assertIsNone(result.session)
        self.assertEqual(result.bonus_points, 0)

    def test_restore_completes_session_that_expired_while_down(self):
        self.machine.start_session(["reddit.com"], 1)
        self.blocker.clear()
        self.clock.advance(days=2)
        restored = self.machine.restore()
        self.assertEqual(restored.status, config.SESSION_COMPLETED)

    def test_restore_reinstalls_rules(self):
        self.machine.start_session(["reddit.com"], 4)
        fresh_blocker = RuleSetBlocker()
        machine = SessionStateMachine(self.ledger, fresh_blocker, self.events)
        machine.restore()
        self.assertEqual(fresh_blocker.installed_domains(), ("reddit.com",))


class TestEmergencyFlow(SessionTestCase):

    def setUp(self):
        super().setUp()
        self.session = self.machine.start_session(["reddit.com"], 7).session
        self.profile.total_score = 300
        self.profile.current_streak = 4

    def test_full_emergency_flow(self):
        first = self.machine.attempt_emergency_disable()
        second = self.machine.attempt_emergency_disable()
        self.assertEqual(first.outcome, OUTCOME_INTERVENTION)
        self.assertEqual(second.outcome, OUTCOME_INTERVENTION)
        self.assertEqual(second.attempts_remaining, 1)
        self.assertEqual(self.profile.total_score, 300)
        self.assertEqual(self.profile.current_streak, 4)

        third = self.machine.attempt_emergency_disable()
        self.assertEqual(third.outcome, OUTCOME_CONFIRM_REQUIRED)

        result = self.machine.confirm_emergency_disable("family emergency")
        self.assertEqual(self.profile.total_score, 0)
        self.assertEqual(self.profile.current_streak, 0)
        self.assertEqual(result.penalty_applied, 300)
        self.assertEqual(result.session.status, config.SESSION_EMERGENCY_DISABLED)
        self.assertEqual(result.session.emergency_reason, "family emergency")
        self.assertEqual(self.blocker.installed_domains(), ())

        penalty = self.fixture.state.transactions[-1]
        self.assertEqual(penalty.action_type, config.ACTION_EMERGENCY_DISABLE)
        self.assertEqual(penalty.points_awarded, -500)
        self.assertEqual(penalty.context["reason"], "family emergency")
        self.assertEqual(self.fixture.state.emergency_log[-1]["reason"], "family emergency")
        self.assertIn(config.EVENT_EMERGENCY_DISABLED, self.event_names())

    def test_attempts_cap_at_three(self):
        for _ in range(5):
            outcome = self.machine.attempt_emergency_disable()
        self.assertEqual(outcome.attempts, 3)
        self.assertEqual(outcome.outcome, OUTCOME_CONFIRM_REQUIRED)

    def test_confirm_requires_unlock(self):
        self.machine.attempt_emergency_disable()
        with self.assertRaises(EmergencyLocked):
            self.machine.confirm_emergency_disable("bored")
        self.assertTrue(self.session.is_active)

    def test_confirm_requires_reason(self):
        for _ in range(3):
            self.machine.attempt_emergency_disable()
        for reason in ("", "   ", None):
            with self.subTest(reason=reason):
                with self.assertRaises(MissingReason):
                    self.machine.confirm_emergency_disable(reason)
        self.assertTrue(self.session.is_active)

    def test_resist_awards_points(self):
        self.machine.attempt_emergency_disable()
        tx = self.machine.resist_emergency()
        self.assertEqual(tx.points_awarded, 25)
        self.assertEqual(self.profile.total_score, 325)
        self.assertTrue(self.session.is_active)

    def test_resist_locked_after_three_attempts(self):
        for _ in range(3):
            self.machine.attempt_emergency_disable()
        with self.assertRaises(EmergencyLocked):
            self.machine.resist_emergency()

    def test_new_session_allowed_after_disable(self):
        for _ in range(3):
            self.machine.attempt_emergency_disable()
        self.machine.confirm_emergency_disable("travel")
        self.assertTrue(self.machine.start_session(["reddit.com"], 1).session.is_active)


if __name__ == '__main__':
    unittest.main()
