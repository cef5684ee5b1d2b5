"""
Point-award pipeline for one user.

Ties the rate limiter, point policy and integrity log to the user's cached
state. Every award or penalty becomes a PointTransaction appended to the
integrity log; the append persists the whole state, so score, counters
and session changes made in the same atomic() block land together or not
at all.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional

import config
from core.errors import AccountInactive, PersistenceUnavailable
from tracking.clock import Clock, SystemClock
from tracking.integrity_log import IntegrityLog
from tracking.models import (
    BlockedSite, BlockSession, PointTransaction, UserProfile, UserState,
)
from tracking.points import calculate_points
from tracking.rate_limiter import KeyedLocks, RateLimiter

logger = logging.getLogger(__name__)


class _Snapshot:
    """In-place restorable copy of the mutable parts of a UserState."""

    def __init__(self, state: UserState) -> None:
        self.profile = state.profile.to_dict()
        self.sites = [site.to_dict() for site in state.sites.values()]
        self.sessions = [s.to_dict() for s in state.sessions]
        self.action_counts = dict(state.action_counts)
        self.transaction_count = len(state.transactions)
        self.emergency_log_count = len(state.emergency_log)

    def restore(self, state: UserState) -> None:
        state.profile = UserProfile.from_dict(self.profile)
        state.sites = {s["domain"]: BlockedSite.from_dict(s) for s in self.sites}
        state.sessions[:] = [BlockSession.from_dict(s) for s in self.sessions]
        state.action_counts = dict(self.action_counts)
        # Same list object: the integrity log holds a reference to it
        del state.transactions[self.transaction_count:]
        del state.emergency_log[self.emergency_log_count:]


class PointLedger:
    """
    Award and penalty pipeline for one user's state.

    Args:
        state: Cached user state (mutated in place).
        save: Persists `state`; may raise PersistenceUnavailable.
        clock: Time source.
        rate_limiter: Shared limiter (keyed by user id).
        difficulty: Integrity-log proof-of-work difficulty.
    """

    def __init__(
        self,
        state: UserState,
        save: Callable[[], None],
        clock: Optional[Clock] = None,
        rate_limiter: Optional[RateLimiter] = None,
        difficulty: int = config.POW_DIFFICULTY,
    ) -> None:
        self.state = state
        self.clock = clock or SystemClock()
        self.rate_limiter = rate_limiter or RateLimiter(self.clock)
        self.log = IntegrityLog(state.transactions, save=save, difficulty=difficulty)
        self._save = save
        self.lock = threading.RLock()
        self._action_locks = KeyedLocks()
        # Transactions appended since the last drain_new_transactions()
        self._new_transactions: List[PointTransaction] = []

    @property
    def user_id(self) -> str:
        return self.state.user_id

    @property
    def profile(self) -> UserProfile:
        return self.state.profile

    # ------------------------------------------------------------------
    # Ordering and atomicity
    # ------------------------------------------------------------------

    @contextmanager
    def ordered(self, action_type: str) -> Iterator[None]:
        """Serialise requests for the same (user, action) in submission order."""
        with self._action_locks.hold(self.user_id, action_type):
            yield

    @contextmanager
    def atomic(self) -> Iterator[UserState]:
        """
        Group state mutations; on any exception they are rolled back.

        Re-entrant: nested blocks roll back to their own entry point.
        """
        with self.lock:
            snapshot = _Snapshot(self.state)
            new_count = len(self._new_transactions)
            try:
                yield self.state
            except BaseException:
                snapshot.restore(self.state)
                del self._new_transactions[new_count:]
                self._save_after_rollback()
                raise

    def _save_after_rollback(self) -> None:
        """Bring the cache back in line with the restored state, if a save got through."""
        try:
            self._save()
        except (PersistenceUnavailable, OSError) as e:
            logger.error(f"Could not persist rolled-back state for {self.user_id}: {e}")

    def save(self) -> None:
        with self.lock:
            self._save()

    # ------------------------------------------------------------------
    # Awards
    # ------------------------------------------------------------------

    @contextmanager
    def rate_limited(self, action_type: str) -> Iterator[None]:
        """
        Take a rate-limit slot for the block; give it back if the block raises.

        A rolled-back award must not use up the user's window.
        """
        recorded_at = self.rate_limiter.check_and_record(self.user_id, action_type)
        try:
            yield
        except BaseException:
            self.rate_limiter.release(self.user_id, action_type, recorded_at)
            raise

    def ensure_can_earn(self, action_type: str) -> None:
        """Suspended and banned accounts cannot earn points."""
        if self.profile.status != config.PROFILE_ACTIVE:
            raise AccountInactive(
                f"Account is {self.profile.status}; points cannot be earned",
                action_type=action_type,
                user_id=self.user_id,
                occurred_at=self.clock.now(),
            )

    def occurrence_count(self, action_type: str) -> int:
        return self.state.action_counts.get(action_type, 0)

    def award(self, action_type: str, context: Optional[Dict[str, Any]] = None) -> PointTransaction:
        """
        Compute, record and apply points for an action.

        Rate limiting is the caller's job (it must happen under ordered()).

        Returns:
            The appended transaction.
        """
        with self.atomic():
            self.ensure_can_earn(action_type)
            count = self.occurrence_count(action_type)
            points = calculate_points(action_type, context, count)
            self.state.action_counts[action_type] = count + 1
            entry = self._record(action_type, points, context)
        logger.info(
            f"Awarded {entry.points_awarded} pts for {action_type} "
            f"(occurrence {count + 1}, total {self.profile.total_score})"
        )
        return entry

    def penalize(
        self,
        action_type: str,
        points: int,
        context: Optional[Dict[str, Any]] = None,
    ) -> PointTransaction:
        """Deduct points (no multiplier); the total is floored at zero."""
        with self.atomic():
            entry = self._record(action_type, -abs(points), context)
        logger.info(
            f"Deducted {abs(points)} pts for {action_type} (total {self.profile.total_score})"
        )
        return entry

    def _record(
        self,
        action_type: str,
        points: int,
        context: Optional[Dict[str, Any]],
    ) -> PointTransaction:
        """Apply points to the profile and append the transaction (persists state)."""
        now = self.clock.now()
        self.profile.apply_points(points)
        self.profile.touch(now)
        entry = self.log.build_entry(self.user_id, action_type, points, now, context)
        self.log.append(entry)
        self._new_transactions.append(entry)
        return entry

    def drain_new_transactions(self) -> List[PointTransaction]:
        """Transactions appended since the last call (for remote sync)."""
        with self.lock:
            drained = list(self._new_transactions)
            self._new_transactions.clear()
            return drained

    # ------------------------------------------------------------------
    # Integrity
    # ------------------------------------------------------------------

    def recount_from_trusted(self) -> None:
        """Rebuild occurrence counters from unflagged transactions only."""
        with self.lock:
            self.state.action_counts = self.log.trusted_counts()
