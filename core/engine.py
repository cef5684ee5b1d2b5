"""
StreakGuardEngine: headless facade over the StreakGuard core for one user.

The UI (popup, options page, tray app, CLI) calls engine methods or sends
tagged requests through handle()/submit(), and listens on the EventBus.
Every method returns a result dict in the same shape:

    {"success": True, "error": None, "error_type": None, ...fields}
    {"success": False, "error": str, "error_type": str, ...context}

Core errors never escape the facade.
"""

import logging
import math
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

import config
from core.errors import (
    ClockDriftTooLarge, IntegrityViolation, PersistenceUnavailable,
    PanicCooldown, RateLimitExceeded, StreakGuardError, ValidationError,
)
from core.events import EventBus
from core import messages
from screen.blocklist import BlockListManager
from screen.site_blocker import RuleSetBlocker, SiteBlocker
from sync.local_store import LocalStore
from sync.reconciliation import ReconciliationEngine
from sync.supabase_client import RemoteStore
from tracking.clock import AuthoritativeClock, Clock, SystemClock
from tracking.ledger import PointLedger
from tracking.models import BlockedSite, BlockSession
from tracking.rate_limiter import RateLimiter
from tracking.session import SessionStateMachine

logger = logging.getLogger(__name__)


def _ok(**fields: Any) -> Dict[str, Any]:
    return {"success": True, "error": None, "error_type": None, **fields}


def _failed(error: StreakGuardError) -> Dict[str, Any]:
    return {"success": False, **error.to_dict()}


class StreakGuardEngine:
    """
    Core facade for one user installation.

    Handles:
    - Block list edits and blocking sessions (with their point awards)
    - Emergency disable flow and panic mode
    - Integrity check of the point log on startup
    - Local cache plus optional Supabase reconciliation
    - Clock drift checks on client-claimed timestamps

    Args:
        user_id: Stable id from the identity provider.
        local_store: On-disk cache (defaults to config.USER_DATA_DIR).
        remote: Remote store, or None to run local-only.
        clock: Device clock; corrected by server time when a remote exists.
        blocker: Site-blocking primitive (in-memory rules by default).
        events: Event bus shared with the UI.
        rate_limiter: Shared limiter; one per engine by default.
        background_sync: Push remote writes on the worker pool instead of inline.
        difficulty: Integrity-log proof-of-work difficulty.
    """

    def __init__(
        self,
        user_id: str,
        local_store: Optional[LocalStore] = None,
        remote: Optional[RemoteStore] = None,
        clock: Optional[Clock] = None,
        blocker: Optional[SiteBlocker] = None,
        events: Optional[EventBus] = None,
        rate_limiter: Optional[RateLimiter] = None,
        background_sync: bool = True,
        difficulty: int = config.POW_DIFFICULTY,
    ) -> None:
        if not user_id:
            raise ValueError("user_id is required")

        self.events = events or EventBus()
        self.local_store = local_store or LocalStore()
        self.clock = AuthoritativeClock(local=clock or SystemClock())
        self.state = self.local_store.load(user_id)
        self.rate_limiter = rate_limiter or RateLimiter(self.clock)
        self.ledger = PointLedger(
            self.state,
            save=self._save_state,
            clock=self.clock,
            rate_limiter=self.rate_limiter,
            difficulty=difficulty,
        )
        self.blocklist = BlockListManager(self.ledger)
        self.blocker = blocker or RuleSetBlocker()
        self.sessions = SessionStateMachine(self.ledger, self.blocker, self.events)

        self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="streakguard")
        self.sync = ReconciliationEngine(
            self.state,
            self.local_store,
            remote=remote,
            lock=self.ledger.lock,
            clock=self.clock,
            events=self.events,
            executor=self._executor if background_sync else None,
        )
        if remote is not None:
            self.clock.server_time_fn = self.sync.server_time

        self.is_started: bool = False

        # Dispatch table for tagged requests
        self._handlers: Dict[type, Callable[[Any], Dict[str, Any]]] = {
            messages.AddSite: lambda r: self.add_site(r.site, r.client_timestamp),
            messages.RemoveSite: lambda r: self.remove_site(r.site, r.client_timestamp),
            messages.StartSession: lambda r: self.start_session(
                r.sites, r.duration_days, r.client_timestamp
            ),
            messages.Tick: lambda r: self.tick(),
            messages.AttemptEmergencyDisable: lambda r: self.attempt_emergency_disable(
                r.client_timestamp
            ),
            messages.ConfirmEmergencyDisable: lambda r: self.confirm_emergency_disable(
                r.reason, r.client_timestamp
            ),
            messages.ResistEmergency: lambda r: self.resist_emergency(r.client_timestamp),
            messages.PanicMode: lambda r: self.panic_mode(r.client_timestamp),
            messages.GetStatus: lambda r: _ok(**self.get_status()),
            messages.Sync: lambda r: self.sync_now(),
        }

    @property
    def user_id(self) -> str:
        return self.state.user_id

    @property
    def is_online(self) -> bool:
        return self.sync.is_online

    def _save_state(self) -> None:
        self.local_store.save(self.state)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> Dict[str, Any]:
        """
        Verify the point log, sync with the remote store (if any) and
        bring blocking rules in line with the cached session.

        Returns:
            get_status() wrapped in a success result.
        """
        self.verify_integrity()

        if self.sync.remote is not None:
            self.clock.refresh()
            self.sync.initialize()

        try:
            session = self.sessions.restore()
        except StreakGuardError as e:
            logger.error(f"Could not restore session state: {e.message}")
            session = None
        self._push(sessions=[session] if session else ())

        self.is_started = True
        logger.info(
            f"StreakGuard engine started for {self.user_id} "
            f"({'online' if self.is_online else 'offline'})"
        )
        return _ok(**self.get_status())

    def shutdown(self) -> None:
        """Stop background work and persist the cache."""
        self._executor.shutdown(wait=True)
        self.sync.close()
        try:
            self.ledger.save()
        except PersistenceUnavailable as e:
            logger.error(f"Final save failed: {e.message}")
        self.is_started = False
        logger.info("StreakGuard engine stopped")

    # ------------------------------------------------------------------
    # Request boundary
    # ------------------------------------------------------------------

    def handle(self, request: Union[messages.Request, Dict[str, Any]]) -> Dict[str, Any]:
        """Run one UI request (a Request or its message dict)."""
        if isinstance(request, dict):
            try:
                request = messages.parse_request(request)
            except ValidationError as e:
                e.user_id = self.user_id
                logger.info(f"Rejected request: {e.message}")
                return _failed(e)
        handler = self._handlers.get(type(request))
        if handler is None:
            logger.warning(f"No handler for request {request!r}")
            return {"success": False, "error": "Unsupported request", "error_type": "invalid_request"}
        return handler(request)

    def submit(self, request: Union[messages.Request, Dict[str, Any]]) -> Future:
        """Run handle() on the worker pool. The Future can be cancelled until it starts."""
        return self._executor.submit(self.handle, request)

    def _run(
        self,
        action_type: str,
        operation: Callable[[], Dict[str, Any]],
        client_timestamp: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Drift check, run, and turn core errors into result dicts."""
        try:
            if client_timestamp is not None:
                self.clock.check_drift(client_timestamp, action_type, self.user_id)
            return _ok(**operation())
        except RateLimitExceeded as e:
            self.events.emit(
                config.EVENT_RATE_LIMITED,
                self.user_id,
                occurred_at=self.clock.now(),
                action_type=action_type,
                retry_after_seconds=e.retry_after_seconds,
            )
            return _failed(e)
        except ClockDriftTooLarge as e:
            logger.warning(f"{action_type} rejected: clock drift {e.drift_seconds:.0f}s")
            self._record_security_event("clock_drift", config.SEVERITY_MEDIUM, e.to_dict())
            return _failed(e)
        except ValidationError as e:
            logger.info(f"{action_type} rejected: {e.message}")
            self._record_security_event("validation_failed", config.SEVERITY_LOW, e.to_dict())
            return _failed(e)
        except PersistenceUnavailable as e:
            logger.error(f"{action_type} failed, local state not saved: {e.message}")
            return _failed(e)
        except StreakGuardError as e:
            logger.info(f"{action_type} refused: {e.message}")
            return _failed(e)

    # ------------------------------------------------------------------
    # Remote sync
    # ------------------------------------------------------------------

    def _push(
        self,
        sessions: Iterable[Optional[BlockSession]] = (),
        sites: Iterable[BlockedSite] = (),
    ) -> None:
        """Queue everything a verb changed for the remote store."""
        transactions = self.ledger.drain_new_transactions()
        for tx in transactions:
            self.events.emit(
                config.EVENT_POINTS_AWARDED,
                self.user_id,
                occurred_at=tx.occurred_at,
                action_type=tx.action_type,
                points=tx.points_awarded,
                transaction_id=tx.id,
                total_score=self.state.profile.total_score,
            )
        self.sync.record(
            transactions=transactions,
            profile=self.state.profile,
            sessions=[s for s in sessions if s is not None],
            sites=sites,
        )

    def _record_security_event(self, event_type: str, severity: str, data: Dict[str, Any]) -> None:
        self.sync.record(security_events=[{
            "event_type": event_type,
            "severity": severity,
            "data": data,
            "occurred_at": self.clock.now().isoformat(),
        }])

    def sync_now(self) -> Dict[str, Any]:
        """Refresh server time, probe connectivity and push what is due."""
        before = self.sessions.repository.active()
        if self.sync.remote is not None:
            self.clock.refresh()
        online = self.sync.check_connectivity()
        self._follow_merged_session(before)
        return _ok(is_online=online, pending_writes=self.sync.pending_count)

    def _follow_merged_session(self, before: Optional[BlockSession]) -> None:
        """Point the blocking rules at whichever session a merge left active."""
        after = self.sessions.repository.active()
        before_id = before.id if before else None
        after_id = after.id if after else None
        if before_id == after_id:
            return
        logger.info(f"Active session changed on sync: {before_id} -> {after_id}")
        try:
            self.sessions.reapply_rules()
        except StreakGuardError as e:
            logger.error(f"Could not apply merged session state: {e.message}")

    # ------------------------------------------------------------------
    # Integrity
    # ------------------------------------------------------------------

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Check the point log. A break flags the affected transactions,
        excludes them from multiplier counts and records a security event.
        """
        with self.ledger.lock:
            result = self.ledger.log.verify(skip_flagged=True)
            if result.valid:
                logger.debug(f"Integrity log verified ({result.checked} entries)")
                return _ok(valid=True, first_invalid_index=None, flagged=0)
            newly_flagged = self.ledger.log.flag_from(result.first_invalid_index)
            self.ledger.recount_from_trusted()
            try:
                self.ledger.save()
            except PersistenceUnavailable as e:
                logger.error(f"Could not persist integrity flags: {e.message}")

        violation = IntegrityViolation(
            f"Point log {result.reason} at entry {result.first_invalid_index}",
            index=result.first_invalid_index,
            user_id=self.user_id,
            occurred_at=self.clock.now(),
        )
        logger.critical(
            f"Integrity violation for {self.user_id}: {violation.message}, "
            f"{newly_flagged} transactions flagged"
        )
        self._record_security_event(
            "integrity_violation",
            config.SEVERITY_CRITICAL,
            {**violation.to_dict(), "reason": result.reason, "flagged": newly_flagged},
        )
        self.events.emit(
            config.EVENT_INTEGRITY_VIOLATION,
            self.user_id,
            occurred_at=violation.occurred_at,
            index=result.first_invalid_index,
            reason=result.reason,
            flagged=newly_flagged,
        )
        return {
            "success": False,
            **violation.to_dict(),
            "valid": False,
            "first_invalid_index": result.first_invalid_index,
            "flagged": newly_flagged,
        }

    # ------------------------------------------------------------------
    # Block list
    # ------------------------------------------------------------------

    def add_site(self, site: str, client_timestamp: Optional[datetime] = None) -> Dict[str, Any]:
        def operation() -> Dict[str, Any]:
            entry, tx = self.blocklist.add_site(site)
            # Reactivating a removed site earns nothing
            points = tx.points_awarded if tx else 0
            self._push(sites=[entry])
            self.events.emit(
                config.EVENT_SITE_ADDED,
                self.user_id,
                occurred_at=entry.added_at,
                site=entry.domain,
                points=points,
            )
            return {
                "site": entry.domain,
                "points": points,
                "total_score": self.state.profile.total_score,
            }

        return self._run(config.ACTION_ADD_SITE, operation, client_timestamp)

    def remove_site(self, site: str, client_timestamp: Optional[datetime] = None) -> Dict[str, Any]:
        def operation() -> Dict[str, Any]:
            entry = self.blocklist.remove_site(site)
            self._push(sites=[entry])
            self.events.emit(
                config.EVENT_SITE_REMOVED,
                self.user_id,
                occurred_at=self.clock.now(),
                site=entry.domain,
            )
            return {"site": entry.domain}

        return self._run(config.ACTION_REMOVE_SITE, operation, client_timestamp)

    def get_blocked_sites(self) -> List[str]:
        return self.blocklist.active_domains()

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def start_session(
        self,
        sites: Optional[Iterable[str]],
        duration_days: int,
        client_timestamp: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Start a blocking session.

        Args:
            sites: Domains to block; None uses the live block list.
            duration_days: Whole days, 1-365.
        """
        def operation() -> Dict[str, Any]:
            site_list = self.blocklist.active_domains() if sites is None else list(sites)
            result = self.sessions.start_session(site_list, duration_days)
            self._push(sessions=[result.session])
            return {
                "session": result.session.to_dict(),
                "points": result.transaction.points_awarded,
                "total_score": result.total_score,
            }

        return self._run(config.ACTION_START_SESSION, operation, client_timestamp)

    def tick(self) -> Dict[str, Any]:
        """Daily bonus / expiry check. Called by the scheduler."""
        def operation() -> Dict[str, Any]:
            result = self.sessions.tick()
            self._push(sessions=[result.session])
            return {
                "session": result.session.to_dict() if result.session else None,
                "bonus_points": result.bonus_points,
                "days_elapsed": result.days_elapsed,
                "completed": result.completed,
                "completion_points": result.completion.bonus_points if result.completion else 0,
                "total_score": self.state.profile.total_score,
            }

        return self._run(config.ACTION_DAILY_BONUS, operation)

    def attempt_emergency_disable(self, client_timestamp: Optional[datetime] = None) -> Dict[str, Any]:
        def operation() -> Dict[str, Any]:
            outcome = self.sessions.attempt_emergency_disable()
            self._push(sessions=[self.sessions.repository.active()])
            return {
                "outcome": outcome.outcome,
                "attempts": outcome.attempts,
                "attempts_remaining": outcome.attempts_remaining,
            }

        return self._run(config.ACTION_EMERGENCY_DISABLE, operation, client_timestamp)

    def confirm_emergency_disable(
        self,
        reason: str,
        client_timestamp: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        def operation() -> Dict[str, Any]:
            result = self.sessions.confirm_emergency_disable(reason)
            self._push(sessions=[result.session])
            return {
                "session": result.session.to_dict(),
                "penalty_applied": result.penalty_applied,
                "total_score": result.total_score,
                "current_streak": self.state.profile.current_streak,
            }

        return self._run(config.ACTION_EMERGENCY_DISABLE, operation, client_timestamp)

    def resist_emergency(self, client_timestamp: Optional[datetime] = None) -> Dict[str, Any]:
        def operation() -> Dict[str, Any]:
            tx = self.sessions.resist_emergency()
            self._push(sessions=[self.sessions.repository.active()])
            return {"points": tx.points_awarded, "total_score": self.state.profile.total_score}

        return self._run(config.ACTION_EMERGENCY_RESIST, operation, client_timestamp)

    def panic_mode(self, client_timestamp: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Reward reaching for the panic button instead of a blocked site.

        Refused with PanicCooldown until PANIC_COOLDOWN_SECONDS have passed
        since the last press; each press is counted on the profile.
        """
        def operation() -> Dict[str, Any]:
            with self.ledger.ordered(config.ACTION_PANIC_MODE):
                self.ledger.ensure_can_earn(config.ACTION_PANIC_MODE)
                self._check_panic_cooldown()
                with self.ledger.rate_limited(config.ACTION_PANIC_MODE), self.ledger.atomic():
                    tx = self.ledger.award(config.ACTION_PANIC_MODE, {"source": "panic_button"})
                    profile = self.state.profile
                    profile.panic_count += 1
                    profile.panic_last_used_at = tx.occurred_at
                    profile.version += 1
                    self.ledger.save()
            self._push()
            return {
                "points": tx.points_awarded,
                "total_score": self.state.profile.total_score,
                "panic_count": self.state.profile.panic_count,
            }

        return self._run(config.ACTION_PANIC_MODE, operation, client_timestamp)

    def _check_panic_cooldown(self) -> None:
        last_used = self.state.profile.panic_last_used_at
        if last_used is None:
            return
        now = self.clock.now()
        elapsed = (now - last_used).total_seconds()
        if elapsed < config.PANIC_COOLDOWN_SECONDS:
            remaining = config.PANIC_COOLDOWN_SECONDS - elapsed
            raise PanicCooldown(
                f"Panic mode is cooling down; try again in {math.ceil(remaining / 60)} minutes",
                retry_after_seconds=remaining,
                action_type=config.ACTION_PANIC_MODE,
                user_id=self.user_id,
                occurred_at=now,
            )

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_status(self) -> Dict[str, Any]:
        """
        Current state summary (polled by the popup / tray app).

        Returns:
            Dict with score, streak, profile status, active session details,
            live block list, online flag and pending write count.
        """
        now = self.clock.now()
        with self.ledger.lock:
            profile = self.state.profile
            session = self.sessions.repository.active()
            status = {
                "user_id": self.user_id,
                "total_score": profile.total_score,
                "current_streak": profile.current_streak,
                "best_streak": profile.best_streak,
                "total_clean_days": profile.total_clean_days,
                "sessions_completed": profile.sessions_completed,
                "panic_count": profile.panic_count,
                "account_status": profile.status,
                "blocked_sites": self.state.active_domains(),
                "active_session": session.to_dict() if session else None,
                "days_elapsed": session.days_elapsed(now) if session else 0,
                "days_remaining": (
                    max(0, session.duration_days - session.days_elapsed(now)) if session else 0
                ),
                "seconds_remaining": session.seconds_remaining(now) if session else 0.0,
                "emergency_attempts": session.emergency_attempts if session else 0,
                "flagged_transactions": sum(1 for tx in self.state.transactions if tx.flagged),
            }
        status["is_online"] = self.is_online
        status["pending_writes"] = self.sync.pending_count
        status["last_synced_at"] = (
            self.state.last_synced_at.isoformat() if self.state.last_synced_at else None
        )
        return status
