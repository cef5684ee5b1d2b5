"""
Tests for sync/reconciliation.py: offline queueing, replay on reconnect,
exactly-once application of point deltas and version conflicts.
"""

import sys
import time
import unittest
from datetime import timedelta
from pathlib import Path
from unittest.mock import MagicMock

# Ensure project root and this directory are on the path
sys.path.insert(0, str(Path(__file__).parent.parent))
sys.path.insert(0, str(Path(__file__).parent))

import config
from core.events import EventBus
from fakes import FakeRemoteStore, LedgerFixture
from sync.reconciliation import (
    KIND_PROFILE, KIND_SECURITY_EVENT, KIND_TRANSACTION, ReconciliationEngine,
    backoff_seconds, replay_deltas,
)
from tracking.models import BlockSession


class TestPureHelpers(unittest.TestCase):

    def test_replay_floors_each_step(self):
        self.assertEqual(replay_deltas(100, [25, 10]), 135)
        self.assertEqual(replay_deltas(100, [-500, 25]), 25)
        self.assertEqual(replay_deltas(0, []), 0)

    def test_backoff_doubles_and_caps(self):
        self.assertEqual(backoff_seconds(0), 0)
        self.assertEqual(backoff_seconds(1), config.RETRY_BACKOFF_BASE_SECONDS)
        self.assertEqual(backoff_seconds(2), config.RETRY_BACKOFF_BASE_SECONDS * 2)
        self.assertEqual(backoff_seconds(50), config.RETRY_BACKOFF_MAX_SECONDS)


class ReconciliationTestCase(unittest.TestCase):

    def setUp(self):
        self.fixture = LedgerFixture()
        self.ledger = self.fixture.ledger
        self.state = self.fixture.state
        self.clock = self.fixture.clock
        self.remote = FakeRemoteStore(self.clock)
        self.events = EventBus()
        self.received = []
        self.events.subscribe(lambda e: self.received.append(e.name))
        self.sync = ReconciliationEngine(
            self.state,
            self.fixture.store,
            remote=self.remote,
            lock=self.ledger.lock,
            clock=self.clock,
            events=self.events,
        )

    def tearDown(self):
        self.sync.close()
        self.fixture.cleanup()

    def act(self, action_type):
        """Award points the way the engine does and hand the changes to sync."""
        tx = self.ledger.award(action_type)
        self.sync.record(
            transactions=self.ledger.drain_new_transactions(),
            profile=self.state.profile,
        )
        return tx


class TestInitialize(ReconciliationTestCase):

    def test_remote_total_wins_on_initialize(self):
        self.remote.seed_profile("user-1", total_score=100)
        self.assertTrue(self.sync.initialize())
        self.assertTrue(self.sync.is_online)
        self.assertEqual(self.state.profile.total_score, 100)
        self.assertIsNotNone(self.state.last_synced_at)

    def test_unreachable_remote_goes_offline(self):
        self.remote.online = False
        self.assertFalse(self.sync.initialize())
        self.assertFalse(self.sync.is_online)
        self.assertEqual(self.received.count(config.EVENT_OFFLINE_MODE_ENTERED), 1)

    def test_new_remote_user_gets_profile_and_history(self):
        self.act(config.ACTION_PANIC_MODE)
        self.act(config.ACTION_EMERGENCY_RESIST)
        self.sync.initialize()
        self.assertIn("user-1", self.remote.profiles)
        self.assertEqual(self.remote.total_for("user-1"), 50)
        self.assertEqual(self.state.profile.total_score, 50)
        self.assertEqual(self.sync.pending_count, 0)

    def test_newer_remote_session_overwrites_local(self):
        session = BlockSession(
            id="s1", owner_id="user-1", start_time=self.clock.now(),
            duration_days=3, blocked_site_snapshot=("reddit.com",), version=2,
        )
        self.state.sessions.append(session)
        remote_copy = session.to_dict()
        remote_copy.update(status=config.SESSION_COMPLETED, version=5)
        self.remote.sessions["s1"] = remote_copy

        self.sync.initialize()
        self.assertEqual(self.state.sessions[0].status, config.SESSION_COMPLETED)
        self.assertEqual(self.state.sessions[0].version, 5)

    def test_newer_local_session_is_pushed(self):
        session = BlockSession(
            id="s1", owner_id="user-1", start_time=self.clock.now(),
            duration_days=3, blocked_site_snapshot=("reddit.com",),
            emergency_attempts=2, version=4,
        )
        self.state.sessions.append(session)
        stale = session.to_dict()
        stale.update(emergency_attempts=0, version=1)
        self.remote.sessions["s1"] = stale

        self.sync.initialize()
        self.assertEqual(self.state.sessions[0].emergency_attempts, 2)
        self.assertEqual(self.remote.sessions["s1"]["version"], 4)
        self.assertEqual(self.remote.sessions["s1"]["emergency_attempts"], 2)


class TestOfflineReplay(ReconciliationTestCase):

    def setUp(self):
        super().setUp()
        self.remote.seed_profile("user-1", total_score=100)
        self.sync.initialize()

    def test_offline_actions_apply_exactly_once(self):
        self.remote.online = False
        deltas = [
            self.act(config.ACTION_PANIC_MODE).points_awarded,
            self.act(config.ACTION_EMERGENCY_RESIST).points_awarded,
            self.act(config.ACTION_ADD_SITE).points_awarded,
        ]
        self.assertFalse(self.sync.is_online)
        self.assertIn(config.EVENT_OFFLINE_MODE_ENTERED, self.received)
        self.assertEqual(self.remote.total_for("user-1"), 100)
        pending_tx = [p for p in self.sync.pending_writes() if p.kind == KIND_TRANSACTION]
        self.assertEqual(len(pending_tx), 3)

        self.remote.online = True
        self.assertTrue(self.sync.check_connectivity())

        expected = 100 + sum(deltas)
        self.assertEqual(self.remote.total_for("user-1"), expected)
        self.assertEqual(self.state.profile.total_score, expected)
        self.assertEqual(len(self.remote.transactions), 3)
        self.assertEqual(self.sync.pending_count, 0)
        self.assertIn(config.EVENT_ONLINE_MODE_RESTORED, self.received)

    def test_lost_acknowledgement_is_not_applied_twice(self):
        self.remote.online = False
        for action in (config.ACTION_PANIC_MODE, config.ACTION_EMERGENCY_RESIST,
                       config.ACTION_ADD_SITE):
            self.act(action)
        self.remote.online = True
        # The first apply reaches the server but the answer is lost
        self.remote.lose_acks = 1
        self.sync.flush(force=True)
        self.assertFalse(self.sync.is_online)

        self.sync.check_connectivity()
        self.sync.check_connectivity()

        self.assertEqual(self.remote.total_for("user-1"), 160)
        self.assertEqual(self.state.profile.total_score, 160)
        self.assertEqual(len(self.remote.transactions), 3)
        self.assertEqual(self.sync.pending_count, 0)

    def test_remote_changes_while_offline_are_kept(self):
        self.remote.online = False
        self.act(config.ACTION_PANIC_MODE)
        # Another device earned points meanwhile
        self.remote.profiles["user-1"]["total_score"] = 400
        self.remote.online = True
        self.sync.check_connectivity()
        self.assertEqual(self.remote.total_for("user-1"), 425)
        self.assertEqual(self.state.profile.total_score, 425)

    def test_penalty_replay_floors_at_zero(self):
        self.remote.online = False
        self.ledger.penalize(config.ACTION_EMERGENCY_DISABLE, 500)
        self.sync.record(transactions=self.ledger.drain_new_transactions(),
                         profile=self.state.profile)
        self.act(config.ACTION_PANIC_MODE)
        self.assertEqual(self.state.profile.total_score, 25)

        self.remote.online = True
        self.sync.check_connectivity()
        self.assertEqual(self.remote.total_for("user-1"), 25)
        self.assertEqual(self.state.profile.total_score, 25)

    def test_queue_survives_restart(self):
        self.remote.online = False
        self.act(config.ACTION_PANIC_MODE)
        reloaded = self.fixture.store.load("user-1")
        kinds = sorted(p.kind for p in reloaded.pending)
        self.assertEqual(kinds, [KIND_PROFILE, KIND_TRANSACTION])

    def test_failed_write_backs_off(self):
        self.remote.online = False
        # The inline push fails on its first write (the profile) and stops
        self.act(config.ACTION_PANIC_MODE)
        failed = [p for p in self.sync.pending_writes() if p.attempts]
        self.assertEqual(len(failed), 1)
        self.assertEqual(failed[0].kind, KIND_PROFILE)
        self.assertEqual(
            (failed[0].next_attempt_at - self.clock.now()).total_seconds(),
            config.RETRY_BACKOFF_BASE_SECONDS,
        )

        self.remote.online = True
        # Only the never-tried transaction is due yet
        self.assertEqual(self.sync.flush(), 1)
        self.assertEqual(self.remote.total_for("user-1"), 125)
        self.assertEqual(self.sync.pending_count, 1)

        self.clock.advance(seconds=config.RETRY_BACKOFF_BASE_SECONDS + 1)
        self.assertEqual(self.sync.flush(), 1)
        self.assertEqual(self.sync.pending_count, 0)

    def test_award_during_flush_survives_rebase(self):
        # A second award lands while the first is on its way to the server
        def award_meanwhile(transaction):
            self.ledger.award(config.ACTION_EMERGENCY_RESIST)

        self.remote.on_apply = award_meanwhile
        self.act(config.ACTION_PANIC_MODE)
        self.remote.online = False

        self.assertEqual(self.remote.total_for("user-1"), 125)
        self.assertEqual(self.state.profile.total_score, 150)

        self.sync.record(transactions=self.ledger.drain_new_transactions(),
                         profile=self.state.profile)
        self.assertEqual(self.state.profile.total_score, 150)
        self.remote.online = True
        self.assertTrue(self.sync.check_connectivity())
        self.assertEqual(self.remote.total_for("user-1"), 150)
        self.assertEqual(self.state.profile.total_score, 150)
        self.assertEqual(self.sync.pending_count, 0)

    def test_flagged_transaction_not_sent(self):
        self.remote.online = False
        tx = self.act(config.ACTION_PANIC_MODE)
        tx.flagged = True
        self.remote.online = True
        self.sync.check_connectivity()
        self.assertNotIn(tx.id, self.remote.transactions)
        self.assertEqual(self.state.profile.total_score, 100)


class TestQueueing(ReconciliationTestCase):

    def test_entity_writes_coalesce_to_newest_version(self):
        self.remote.online = False
        self.sync.initialize()
        profile = self.state.profile
        for version in (1, 2, 3):
            profile.version = version
            self.sync.record(profile=profile)
        profile_writes = [p for p in self.sync.pending_writes() if p.kind == KIND_PROFILE]
        self.assertEqual(len(profile_writes), 1)
        self.assertEqual(profile_writes[0].version, 3)

        # An older write arriving late is dropped
        profile.version = 2
        self.sync.record(profile=profile)
        self.assertEqual(
            [p.version for p in self.sync.pending_writes() if p.kind == KIND_PROFILE], [3]
        )

    def test_security_events_are_pushed(self):
        self.sync.initialize()
        self.sync.record(security_events=[{
            "event_type": "integrity_violation",
            "severity": config.SEVERITY_CRITICAL,
            "data": {"index": 2},
        }])
        self.assertEqual(len(self.remote.security_events), 1)
        self.assertEqual(self.remote.security_events[0]["event_type"], "integrity_violation")

    def test_offline_security_events_are_capped(self):
        self.remote.online = False
        self.sync.initialize()
        for n in range(config.MAX_PENDING_SECURITY_EVENTS + 10):
            self.sync.record(security_events=[{
                "event_type": "validation_failed",
                "severity": config.SEVERITY_LOW,
                "data": {"n": n},
            }])
        queued = [p for p in self.sync.pending_writes() if p.kind == KIND_SECURITY_EVENT]
        self.assertEqual(len(queued), config.MAX_PENDING_SECURITY_EVENTS)
        # Oldest dropped first
        self.assertEqual(queued[0].payload["data"]["n"], 10)

    def test_no_remote_runs_local_only(self):
        local_only = ReconciliationEngine(self.state, self.fixture.store, remote=None,
                                          lock=self.ledger.lock, clock=self.clock)
        self.assertFalse(local_only.initialize())
        self.assertFalse(local_only.check_connectivity())
        self.assertEqual(local_only.flush(), 0)

    def test_slow_remote_times_out(self):
        slow = MagicMock()
        slow.get_server_time.side_effect = lambda: time.sleep(0.5)
        sync = ReconciliationEngine(self.state, self.fixture.store, remote=slow,
                                    lock=self.ledger.lock, clock=self.clock,
                                    events=self.events, timeout=0.05)
        try:
            self.assertFalse(sync.check_connectivity())
            self.assertFalse(sync.is_online)
            self.assertIn(config.EVENT_OFFLINE_MODE_ENTERED, self.received)
        finally:
            sync.close()


class TestSessionMerge(ReconciliationTestCase):
    """Sessions started on two devices while apart."""

    def make_session(self, session_id, start_time):
        return BlockSession(
            id=session_id, owner_id="user-1", start_time=start_time,
            duration_days=3, blocked_site_snapshot=("reddit.com",), version=1,
        )

    def active_ids(self):
        return [s.id for s in self.state.sessions if s.status == config.SESSION_ACTIVE]

    def test_earlier_remote_session_wins(self):
        self.state.sessions.append(self.make_session("local", self.clock.now()))
        other = self.make_session("other", self.clock.now() - timedelta(hours=2))
        self.remote.sessions["other"] = other.to_dict()

        self.sync.initialize()

        self.assertEqual(self.active_ids(), ["other"])
        ended = next(s for s in self.state.sessions if s.id == "local")
        self.assertEqual(ended.status, config.SESSION_COMPLETED)
        self.assertEqual(ended.ended_at, self.clock.now())
        self.assertEqual(ended.version, 2)
        self.assertEqual(self.remote.sessions["local"]["status"], config.SESSION_COMPLETED)
        self.assertEqual(self.remote.sessions["local"]["version"], 2)
        self.assertEqual(self.sync.pending_count, 0)

    def test_earlier_local_session_wins(self):
        self.state.sessions.append(
            self.make_session("local", self.clock.now() - timedelta(hours=2))
        )
        self.remote.sessions["other"] = self.make_session("other", self.clock.now()).to_dict()

        self.sync.initialize()

        self.assertEqual(self.active_ids(), ["local"])
        self.assertEqual(self.remote.sessions["other"]["status"], config.SESSION_COMPLETED)
        self.assertEqual(self.remote.sessions["other"]["version"], 2)
        self.assertEqual(self.remote.sessions["local"]["status"], config.SESSION_ACTIVE)

    def test_same_start_time_breaks_tie_by_id(self):
        now = self.clock.now()
        self.state.sessions.append(self.make_session("b-session", now))
        self.remote.sessions["a-session"] = self.make_session("a-session", now).to_dict()

        self.sync.initialize()
        self.assertEqual(self.active_ids(), ["a-session"])


if __name__ == '__main__':
    unittest.main()
