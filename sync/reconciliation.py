"""
Local/remote reconciliation for one user's state.

Every change is written to the local cache first, then queued as a
PendingWrite and pushed to the remote store. Failed pushes stay in the
queue (which is part of the cached state, so it survives restarts) and are
retried with exponential backoff.

Conflict policy:
- The remote total score wins. Local point transactions the server has not
  acknowledged are replayed on top of it, in order, floored at zero, and
  deduplicated by transaction id.
- Profile, session and site rows carry a version. The higher version wins;
  writes older than what is already queued or stored remotely are dropped.
"""

import logging
import threading
from concurrent.futures import Executor, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional

import config
from core.errors import PersistenceUnavailable, StreakGuardError
from core.events import EventBus
from sync.local_store import LocalStore
from sync.supabase_client import RemoteSnapshot, RemoteStore
from tracking.clock import Clock, SystemClock
from tracking.models import (
    BlockedSite, BlockSession, PendingWrite, PointTransaction, UserProfile,
    UserState, new_id,
)

logger = logging.getLogger(__name__)

KIND_PROFILE = "profile"
KIND_SITE = "site"
KIND_SESSION = "session"
KIND_TRANSACTION = "transaction"
KIND_SECURITY_EVENT = "security_event"

# Flush order; transactions keep their relative (chain) order
_KIND_PRIORITY = {
    KIND_PROFILE: 0,
    KIND_SITE: 1,
    KIND_SESSION: 2,
    KIND_TRANSACTION: 3,
    KIND_SECURITY_EVENT: 4,
}

# Kinds where only the newest queued version matters
_COALESCED_KINDS = (KIND_PROFILE, KIND_SITE, KIND_SESSION)


def replay_deltas(remote_total: int, deltas: Iterable[int]) -> int:
    """Apply signed deltas to a remote total in order, flooring at zero each step."""
    total = max(0, int(remote_total))
    for delta in deltas:
        total = max(0, total + delta)
    return total


def backoff_seconds(attempts: int) -> float:
    """Retry delay after `attempts` consecutive failures."""
    if attempts <= 0:
        return 0.0
    delay = config.RETRY_BACKOFF_BASE_SECONDS * (2 ** (attempts - 1))
    return float(min(delay, config.RETRY_BACKOFF_MAX_SECONDS))


class ReconciliationEngine:
    """
    Keeps one user's cached state and the remote store consistent.

    Args:
        state: The user's cached state (shared with the ledger).
        local_store: On-disk cache.
        remote: Remote store, or None to run local-only.
        lock: The ledger's state lock. Never held across a remote call.
        clock: Time source for backoff scheduling.
        events: Bus for offline/online notifications.
        executor: Where background flushes run. None flushes inline.
        timeout: Seconds before a remote call counts as failed.
    """

    def __init__(
        self,
        state: UserState,
        local_store: LocalStore,
        remote: Optional[RemoteStore] = None,
        lock: Optional[threading.RLock] = None,
        clock: Optional[Clock] = None,
        events: Optional[EventBus] = None,
        executor: Optional[Executor] = None,
        timeout: float = config.REMOTE_TIMEOUT_SECONDS,
    ) -> None:
        self.state = state
        self.local_store = local_store
        self.remote = remote
        self.lock = lock or threading.RLock()
        self.clock = clock or SystemClock()
        self.events = events or EventBus()
        self.executor = executor
        self.timeout = timeout

        # None until the first remote attempt
        self._online: Optional[bool] = None
        self._remote_total: Optional[int] = None
        # Transaction ids the remote store is known to have applied
        self._applied_ids: set = set()
        self._flush_lock = threading.Lock()
        self._remote_pool: Optional[ThreadPoolExecutor] = None
        if remote is not None:
            self._remote_pool = ThreadPoolExecutor(
                max_workers=2, thread_name_prefix="streakguard-remote"
            )

    @property
    def user_id(self) -> str:
        return self.state.user_id

    @property
    def is_online(self) -> bool:
        return bool(self._online)

    @property
    def pending_count(self) -> int:
        with self.lock:
            return len(self.state.pending)

    # ------------------------------------------------------------------
    # Online / offline transitions
    # ------------------------------------------------------------------

    def _set_offline(self, reason: str) -> None:
        if self._online is False:
            return
        self._online = False
        logger.warning(f"Remote store unreachable, working offline: {reason}")
        self.events.emit(
            config.EVENT_OFFLINE_MODE_ENTERED,
            self.user_id,
            occurred_at=self.clock.now(),
            reason=reason,
            pending=self.pending_count,
        )

    def _set_online(self) -> None:
        was_offline = self._online is False
        self._online = True
        if was_offline:
            logger.info("Remote store reachable again, back online")
            self.events.emit(
                config.EVENT_ONLINE_MODE_RESTORED,
                self.user_id,
                occurred_at=self.clock.now(),
                pending=self.pending_count,
            )

    # ------------------------------------------------------------------
    # Remote calls
    # ------------------------------------------------------------------

    def _call(self, fn: Callable[..., Any], *args: Any) -> Any:
        """
        Run a remote call bounded by the timeout.

        Raises:
            PersistenceUnavailable: On timeout, missing remote or any client error.
        """
        if self.remote is None or self._remote_pool is None:
            raise PersistenceUnavailable("No remote store configured", user_id=self.user_id)
        future = self._remote_pool.submit(fn, *args)
        try:
            return future.result(timeout=self.timeout)
        except FutureTimeout as e:
            future.cancel()
            raise PersistenceUnavailable(
                f"Remote call timed out after {self.timeout}s", user_id=self.user_id
            ) from e
        except StreakGuardError:
            raise
        except Exception as e:
            raise PersistenceUnavailable(f"Remote call failed: {e}", user_id=self.user_id) from e

    def server_time(self) -> datetime:
        """Server clock, for AuthoritativeClock. Raises PersistenceUnavailable."""
        if self.remote is None:
            raise PersistenceUnavailable("No remote store configured", user_id=self.user_id)
        return self._call(self.remote.get_server_time)

    # ------------------------------------------------------------------
    # Local persistence
    # ------------------------------------------------------------------

    def _save_local(self) -> None:
        """Persist the state (including the queue); a failure keeps it in memory."""
        try:
            self.local_store.save(self.state)
        except PersistenceUnavailable as e:
            logger.error(f"Pending writes kept in memory only: {e.message}")

    # ------------------------------------------------------------------
    # Queueing
    # ------------------------------------------------------------------

    def _enqueue(self, item: PendingWrite) -> None:
        """Add to the queue (caller holds the lock), coalescing by entity."""
        pending = self.state.pending
        if item.kind in _COALESCED_KINDS:
            for index, existing in enumerate(pending):
                if existing.key == item.key:
                    if existing.version >= item.version:
                        logger.debug(f"Dropped stale {item.kind} write for {item.entity_id}")
                        return
                    pending[index] = item
                    return
        elif item.kind == KIND_TRANSACTION:
            if any(p.key == item.key for p in pending):
                return
        pending.append(item)
        if item.kind == KIND_SECURITY_EVENT:
            self._cap_security_events()

    def _cap_security_events(self) -> None:
        """Drop the oldest queued security events beyond the cap (caller holds the lock)."""
        events = [p for p in self.state.pending if p.kind == KIND_SECURITY_EVENT]
        excess = len(events) - config.MAX_PENDING_SECURITY_EVENTS
        if excess <= 0:
            return
        dropped = {id(p) for p in events[:excess]}
        self.state.pending[:] = [p for p in self.state.pending if id(p) not in dropped]
        logger.warning(f"Security event queue full, dropped {excess} oldest events")

    def _pending_for(self, kind: str, entity_id: str, version: int, payload: Dict[str, Any]) -> PendingWrite:
        return PendingWrite(
            kind=kind,
            entity_id=entity_id,
            version=version,
            payload=payload,
            enqueued_at=self.clock.now(),
        )

    def record(
        self,
        transactions: Iterable[PointTransaction] = (),
        profile: Optional[UserProfile] = None,
        sessions: Iterable[BlockSession] = (),
        sites: Iterable[BlockedSite] = (),
        security_events: Iterable[Dict[str, Any]] = (),
    ) -> None:
        """
        Queue local changes for the remote store and persist the queue.

        Then pushes them: inline, or on the executor when one was given.
        Does nothing remote when working offline. Without a remote store
        nothing is queued; initialize() queues unsynced history later.
        """
        if self.remote is None:
            return
        with self.lock:
            if profile is not None:
                self._enqueue(self._pending_for(
                    KIND_PROFILE, profile.user_id, profile.version, profile.to_dict()
                ))
            for site in sites:
                self._enqueue(self._pending_for(KIND_SITE, site.domain, site.version, site.to_dict()))
            for session in sessions:
                self._enqueue(self._pending_for(
                    KIND_SESSION, session.id, session.version, session.to_dict()
                ))
            for tx in transactions:
                self._enqueue(self._pending_for(KIND_TRANSACTION, tx.id, 0, tx.to_dict()))
            for event in security_events:
                self._enqueue(self._pending_for(KIND_SECURITY_EVENT, new_id(), 0, dict(event)))
            self._save_local()

        if self.is_online:
            self.schedule_flush()

    def schedule_flush(self) -> None:
        """Flush now, or hand the flush to the executor."""
        if self.executor is None:
            self.flush()
            return
        try:
            self.executor.submit(self.flush)
        except RuntimeError as e:
            # Executor already shut down
            logger.debug(f"Background flush not scheduled: {e}")

    # ------------------------------------------------------------------
    # Score rebasing
    # ------------------------------------------------------------------

    def _flagged_ids(self) -> set:
        return {tx.id for tx in self.state.transactions if tx.flagged}

    def _rebase_score(self) -> None:
        """
        Local total = remote total + every local delta the remote has not applied
        (caller holds the lock).

        Deltas come from the transaction log, not the queue: an award made
        while a flush is in flight is not queued yet but is still unapplied.
        """
        if self._remote_total is None:
            return
        deltas = [
            tx.points_awarded
            for tx in self.state.transactions
            if not tx.flagged and tx.id not in self._applied_ids
        ]
        total = replay_deltas(self._remote_total, deltas)
        profile = self.state.profile
        if profile.total_score != total:
            logger.info(
                f"Score reconciled: local {profile.total_score} -> {total} "
                f"(remote {self._remote_total} + {len(deltas)} unapplied)"
            )
            profile.total_score = total

    # ------------------------------------------------------------------
    # Initial fetch and merge
    # ------------------------------------------------------------------

    def initialize(self) -> bool:
        """
        Fetch the authoritative snapshot and merge it into the local cache.

        Returns:
            True if online afterwards, False if working from the cache.
        """
        if self.remote is None:
            logger.info("No remote store configured, running from local cache only")
            self._online = False
            return False

        try:
            snapshot = self._call(self.remote.fetch_state, self.user_id)
        except PersistenceUnavailable as e:
            self._set_offline(e.message)
            return False

        with self.lock:
            self._merge(snapshot)
            self.state.last_synced_at = self.clock.now()
            self._save_local()

        self._set_online()
        logger.info(
            f"Synced with remote store: score={self.state.profile.total_score}, "
            f"{self.pending_count} pending writes"
        )
        self.flush(force=True)
        return self.is_online

    def _merge(self, snapshot: RemoteSnapshot) -> None:
        """Adopt remote entities unless the local copy is newer (caller holds the lock)."""
        state = self.state

        # Profile (everything but the score goes by version)
        if snapshot.profile is None:
            self._remote_total = 0
            self._enqueue(self._pending_for(
                KIND_PROFILE, state.user_id, state.profile.version, state.profile.to_dict()
            ))
        else:
            remote_profile = UserProfile.from_dict(snapshot.profile)
            self._remote_total = remote_profile.total_score
            if remote_profile.version >= state.profile.version:
                remote_profile.total_score = state.profile.total_score
                state.profile = remote_profile
            else:
                self._enqueue(self._pending_for(
                    KIND_PROFILE, state.user_id, state.profile.version, state.profile.to_dict()
                ))

        # Sites
        remote_domains = set()
        for data in snapshot.sites:
            remote_site = BlockedSite.from_dict(data)
            remote_domains.add(remote_site.domain)
            local_site = state.sites.get(remote_site.domain)
            if local_site is None or remote_site.version >= local_site.version:
                state.sites[remote_site.domain] = remote_site
            else:
                self._enqueue(self._pending_for(
                    KIND_SITE, local_site.domain, local_site.version, local_site.to_dict()
                ))
        for domain, local_site in state.sites.items():
            if domain not in remote_domains:
                self._enqueue(self._pending_for(
                    KIND_SITE, domain, local_site.version, local_site.to_dict()
                ))

        # Sessions
        by_id = {session.id: index for index, session in enumerate(state.sessions)}
        remote_ids = set()
        for data in snapshot.sessions:
            remote_session = BlockSession.from_dict(data)
            remote_ids.add(remote_session.id)
            index = by_id.get(remote_session.id)
            if index is None:
                state.sessions.append(remote_session)
            elif remote_session.version >= state.sessions[index].version:
                state.sessions[index] = remote_session
            else:
                local_session = state.sessions[index]
                self._enqueue(self._pending_for(
                    KIND_SESSION, local_session.id, local_session.version, local_session.to_dict()
                ))
        for session in state.sessions:
            if session.id not in remote_ids:
                self._enqueue(self._pending_for(
                    KIND_SESSION, session.id, session.version, session.to_dict()
                ))
        self._resolve_active_sessions()
        state.sessions.sort(key=lambda s: s.start_time)

        # Transactions: drop acknowledged ones, queue the rest
        applied = set(snapshot.transaction_ids)
        self._applied_ids = applied
        state.pending[:] = [
            p for p in state.pending
            if not (p.kind == KIND_TRANSACTION and p.entity_id in applied)
        ]
        for tx in state.transactions:
            if tx.id not in applied and not tx.flagged:
                self._enqueue(self._pending_for(KIND_TRANSACTION, tx.id, 0, tx.to_dict()))

        self._rebase_score()

    def _resolve_active_sessions(self) -> None:
        """
        Leave at most one active session after a merge (caller holds the lock).

        Two devices can each start a session while apart. The one started
        first keeps running; the others end now as completed, without
        completion points, and the ended copies are queued for the remote.
        """
        active = [s for s in self.state.sessions if s.status == config.SESSION_ACTIVE]
        if len(active) < 2:
            return
        active.sort(key=lambda s: (s.start_time, s.id))
        kept = active[0]
        now = self.clock.now()
        for session in active[1:]:
            session.status = config.SESSION_COMPLETED
            session.ended_at = now
            session.version += 1
            logger.warning(
                f"Session {session.id} ended on merge, session {kept.id} started earlier"
            )
            self._enqueue(self._pending_for(
                KIND_SESSION, session.id, session.version, session.to_dict()
            ))

    # ------------------------------------------------------------------
    # Flushing the queue
    # ------------------------------------------------------------------

    def flush(self, force: bool = False) -> int:
        """
        Push due pending writes in order. Stops at the first failure.

        Args:
            force: Ignore backoff schedules (used right after reconnecting).

        Returns:
            Number of writes acknowledged.
        """
        if self.remote is None:
            return 0
        if not self._flush_lock.acquire(blocking=False):
            return 0
        try:
            now = self.clock.now()
            with self.lock:
                due = sorted(
                    (
                        p for p in self.state.pending
                        if force or p.next_attempt_at is None or p.next_attempt_at <= now
                    ),
                    key=lambda p: _KIND_PRIORITY.get(p.kind, 99),
                )

            sent = 0
            for item in due:
                try:
                    self._send(item)
                except PersistenceUnavailable as e:
                    with self.lock:
                        item.attempts += 1
                        item.next_attempt_at = now + timedelta(seconds=backoff_seconds(item.attempts))
                        self._save_local()
                    logger.debug(
                        f"{item.kind} write {item.entity_id} failed (attempt {item.attempts}), "
                        f"retry after {item.next_attempt_at.isoformat()}"
                    )
                    self._set_offline(e.message)
                    break
                with self.lock:
                    self.state.pending[:] = [p for p in self.state.pending if p is not item]
                    self._rebase_score()
                sent += 1
            else:
                if due:
                    self._set_online()

            if sent:
                with self.lock:
                    self.state.last_synced_at = self.clock.now()
                    self._save_local()
                logger.info(f"Pushed {sent} pending writes, {self.pending_count} remaining")
            return sent
        finally:
            self._flush_lock.release()

    def _send(self, item: PendingWrite) -> None:
        """One remote write. Raises PersistenceUnavailable."""
        if item.kind == KIND_TRANSACTION:
            with self.lock:
                flagged = item.entity_id in self._flagged_ids()
            if flagged:
                logger.warning(f"Flagged transaction {item.entity_id} not sent to remote store")
                return
            new_total = self._call(self.remote.apply_transaction, item.payload)
            with self.lock:
                self._remote_total = int(new_total)
                self._applied_ids.add(item.entity_id)
            return

        if item.kind == KIND_PROFILE:
            accepted = self._call(self.remote.upsert_profile, item.payload)
        elif item.kind == KIND_SESSION:
            accepted = self._call(self.remote.upsert_session, item.payload)
        elif item.kind == KIND_SITE:
            accepted = self._call(self.remote.upsert_site, self.user_id, item.payload)
        elif item.kind == KIND_SECURITY_EVENT:
            self._call(self.remote.log_security_event, self.user_id, item.payload)
            accepted = True
        else:
            logger.warning(f"Unknown pending write kind dropped: {item.kind}")
            return

        if not accepted:
            logger.debug(f"Remote {item.kind} {item.entity_id} is newer, local write discarded")

    # ------------------------------------------------------------------
    # Connectivity
    # ------------------------------------------------------------------

    def check_connectivity(self) -> bool:
        """
        Probe the remote store. Coming back online re-fetches and flushes;
        staying online flushes whatever is due.

        Returns:
            True if the remote store answered.
        """
        if self.remote is None:
            return False
        try:
            self._call(self.remote.get_server_time)
        except PersistenceUnavailable as e:
            self._set_offline(e.message)
            return False

        if not self.is_online:
            return self.initialize()
        self.flush()
        return True

    def pending_writes(self) -> List[PendingWrite]:
        with self.lock:
            return list(self.state.pending)

    def close(self) -> None:
        if self._remote_pool is not None:
            self._remote_pool.shutdown(wait=False)
