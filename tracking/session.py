"""
Blocking session lifecycle.

States: NONE -> ACTIVE -> {COMPLETED, EMERGENCY_DISABLED}. NONE and both
terminal states allow a fresh ACTIVE session. Sessions are never deleted;
ending one only changes its status so the history stays auditable.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional

import config
from core.errors import (
    EmergencyLocked, EmptySiteList, InvalidDuration, MissingReason,
    NoActiveSession, SessionAlreadyActive,
)
from core.events import EventBus
from screen.blocklist import clean_domain
from screen.site_blocker import SiteBlocker
from tracking.ledger import PointLedger
from tracking.models import BlockSession, PointTransaction, UserState, new_id

logger = logging.getLogger(__name__)

OUTCOME_INTERVENTION = "intervention"
OUTCOME_CONFIRM_REQUIRED = "confirm_required"


class SessionRepository:
    """A user's sessions, looked up by id. At most one is active."""

    def __init__(self, state: UserState) -> None:
        self.state = state

    def all(self) -> List[BlockSession]:
        return list(self.state.sessions)

    def get(self, session_id: str) -> Optional[BlockSession]:
        for session in self.state.sessions:
            if session.id == session_id:
                return session
        return None

    def active(self) -> Optional[BlockSession]:
        for session in reversed(self.state.sessions):
            if session.is_active:
                return session
        return None

    def add(self, session: BlockSession) -> None:
        if session.is_active and self.active() is not None:
            raise SessionAlreadyActive(
                "Cannot start new session while another is active",
                action_type=config.ACTION_START_SESSION,
                user_id=session.owner_id,
            )
        self.state.sessions.append(session)


@dataclass
class StartResult:
    session: BlockSession
    transaction: PointTransaction
    total_score: int


@dataclass
class TickResult:
    session: Optional[BlockSession]
    bonus_points: int = 0
    days_elapsed: int = 0
    completed: bool = False
    completion: Optional['CompletionResult'] = None


@dataclass
class CompletionResult:
    session: BlockSession
    days_completed: int
    bonus_points: int
    current_streak: int
    total_score: int


@dataclass
class EmergencyOutcome:
    outcome: str
    attempts: int
    attempts_remaining: int


@dataclass
class DisableResult:
    session: BlockSession
    penalty_applied: int
    total_score: int


class SessionStateMachine:
    """
    Owns the user's blocking commitment.

    Args:
        ledger: The user's point ledger (state, clock, rate limiter).
        blocker: Site-blocking primitive driven on start and end.
        events: Event bus for UI notifications.
        redirect_target: Where blocked navigations are sent.
    """

    def __init__(
        self,
        ledger: PointLedger,
        blocker: Optional[SiteBlocker] = None,
        events: Optional[EventBus] = None,
        redirect_target: str = config.BLOCKED_PAGE_URL,
    ) -> None:
        self.ledger = ledger
        self.repository = SessionRepository(ledger.state)
        self.blocker = blocker
        self.events = events or EventBus()
        self.redirect_target = redirect_target

    @property
    def user_id(self) -> str:
        return self.ledger.user_id

    def _now(self):
        return self.ledger.clock.now()

    def _require_active(self, action_type: str) -> BlockSession:
        session = self.repository.active()
        if session is None:
            raise NoActiveSession(
                "No active session",
                action_type=action_type,
                user_id=self.user_id,
                occurred_at=self._now(),
            )
        return session

    def _emit(self, name: str, **payload) -> None:
        self.events.emit(name, self.user_id, occurred_at=self._now(), **payload)

    # ------------------------------------------------------------------
    # Blocking rules
    # ------------------------------------------------------------------

    def _install_rules(self, session: BlockSession) -> None:
        if not self.blocker:
            return
        try:
            self.blocker.install(list(session.blocked_site_snapshot), self.redirect_target)
        except Exception as e:
            logger.error(f"Failed to install blocking rules for session {session.id}: {e}")

    def _clear_rules(self) -> None:
        if not self.blocker:
            return
        try:
            self.blocker.clear()
        except Exception as e:
            logger.error(f"Failed to clear blocking rules: {e}")

    def restore(self) -> Optional[BlockSession]:
        """
        Bring enforcement in line with cached state after a restart.

        Completes a session that expired while the process was down,
        otherwise reinstalls the rules for the one still running.
        """
        session = self.repository.active()
        if session is None:
            return None
        if self._now() >= session.end_time:
            logger.info(f"Session {session.id} expired while offline, completing")
            self.complete_naturally()
            return session
        self._install_rules(session)
        return session

    def reapply_rules(self) -> Optional[BlockSession]:
        """Like restore(), but also clears the rules when no session is active."""
        session = self.restore()
        if session is None:
            self._clear_rules()
        return session

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    @staticmethod
    def _validate_duration(duration_days, user_id: str) -> int:
        if isinstance(duration_days, bool) or not isinstance(duration_days, int):
            raise InvalidDuration(
                f"Session duration must be a whole number of days, got {duration_days!r}",
                action_type=config.ACTION_START_SESSION,
                user_id=user_id,
            )
        if not config.SESSION_MIN_DAYS <= duration_days <= config.SESSION_MAX_DAYS:
            raise InvalidDuration(
                f"Invalid session duration ({config.SESSION_MIN_DAYS}-{config.SESSION_MAX_DAYS} days)",
                action_type=config.ACTION_START_SESSION,
                user_id=user_id,
            )
        return duration_days

    def _snapshot_sites(self, site_list: Iterable[str]) -> tuple:
        domains: List[str] = []
        for site in site_list or ():
            domain = clean_domain(site)
            if domain not in domains:
                domains.append(domain)
        if not domains:
            raise EmptySiteList(
                "Add at least one site before starting a session",
                action_type=config.ACTION_START_SESSION,
                user_id=self.user_id,
            )
        return tuple(domains)

    def start_session(self, site_list: Iterable[str], duration_days: int) -> StartResult:
        """
        Start blocking `site_list` for `duration_days` days.

        Raises:
            InvalidDuration, EmptySiteList, InvalidDomain, SessionAlreadyActive,
            RateLimitExceeded, AccountInactive
        """
        duration_days = self._validate_duration(duration_days, self.user_id)
        snapshot = self._snapshot_sites(site_list)

        with self.ledger.ordered(config.ACTION_START_SESSION):
            if self.repository.active() is not None:
                raise SessionAlreadyActive(
                    "Cannot start new session while another is active",
                    action_type=config.ACTION_START_SESSION,
                    user_id=self.user_id,
                    occurred_at=self._now(),
                )
            self.ledger.ensure_can_earn(config.ACTION_START_SESSION)
            with self.ledger.rate_limited(config.ACTION_START_SESSION), self.ledger.atomic():
                session = BlockSession(
                    id=new_id(),
                    owner_id=self.user_id,
                    start_time=self._now(),
                    duration_days=duration_days,
                    blocked_site_snapshot=snapshot,
                )
                self.repository.add(session)
                tx = self.ledger.award(
                    config.ACTION_START_SESSION,
                    {"duration_days": duration_days, "session_id": session.id},
                )
                session.points_awarded += tx.points_awarded
                self.ledger.save()

        self._install_rules(session)
        logger.info(
            f"Block session {session.id} started: {len(snapshot)} sites for {duration_days} days"
        )
        self._emit(
            config.EVENT_SESSION_STARTED,
            session_id=session.id,
            duration_days=duration_days,
            sites=list(snapshot),
            points=tx.points_awarded,
            total_score=self.ledger.profile.total_score,
        )
        return StartResult(session, tx, self.ledger.profile.total_score)

    # ------------------------------------------------------------------
    # Periodic tick
    # ------------------------------------------------------------------

    def tick(self) -> TickResult:
        """
        Grant any daily bonus that is due, or complete an expired session.

        Safe to call any number of times: a day is only ever paid once.
        """
        with self.ledger.lock:
            session = self.repository.active()
            if session is None:
                return TickResult(session=None)

            now = self._now()
            if now >= session.end_time:
                completion = self.complete_naturally()
                return TickResult(
                    session=completion.session,
                    days_elapsed=completion.days_completed,
                    completed=True,
                    completion=completion,
                )

            days = session.days_elapsed(now)
            if days <= session.last_daily_bonus_day:
                return TickResult(session=session, days_elapsed=days)

            missed_days = days - session.last_daily_bonus_day
            bonus = 0
            with self.ledger.atomic():
                session.last_daily_bonus_day = days
                session.version += 1
                if self.ledger.profile.status == config.PROFILE_ACTIVE:
                    tx = self.ledger.award(
                        config.ACTION_DAILY_BONUS,
                        {"days": missed_days, "day_index": days, "session_id": session.id},
                    )
                    bonus = tx.points_awarded
                    session.points_awarded += bonus
                self.ledger.save()

        logger.info(f"Daily bonus for session {session.id}: day {days}, +{bonus} pts")
        self._emit(
            config.EVENT_DAILY_BONUS,
            session_id=session.id,
            day_index=days,
            points=bonus,
            total_score=self.ledger.profile.total_score,
        )
        return TickResult(session=session, bonus_points=bonus, days_elapsed=days)

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    def complete_naturally(self) -> CompletionResult:
        """
        End the active session and pay the completion bonus.

        Days completed are whole days since start, capped at the duration.
        """
        with self.ledger.lock:
            session = self._require_active(config.ACTION_COMPLETE_SESSION)
            now = self._now()
            days_completed = min(session.days_elapsed(now), session.duration_days)

            with self.ledger.atomic():
                bonus = 0
                profile = self.ledger.profile
                if profile.status == config.PROFILE_ACTIVE:
                    tx = self.ledger.award(
                        config.ACTION_COMPLETE_SESSION,
                        {"days_completed": days_completed, "session_id": session.id},
                    )
                    bonus = tx.points_awarded
                    session.points_awarded += bonus

                profile.current_streak += days_completed
                profile.best_streak = max(profile.best_streak, profile.current_streak)
                profile.total_clean_days += days_completed
                profile.sessions_completed += 1
                profile.progress_history.append({
                    "date": now.isoformat(),
                    "streak": profile.current_streak,
                    "days_completed": days_completed,
                    "session_id": session.id,
                })
                profile.touch(now)

                session.status = config.SESSION_COMPLETED
                session.ended_at = now
                session.version += 1
                self.ledger.save()

        self._clear_rules()
        logger.info(
            f"Session {session.id} completed: {days_completed} days, +{bonus} pts, "
            f"streak {profile.current_streak}"
        )
        self._emit(
            config.EVENT_SESSION_COMPLETED,
            session_id=session.id,
            days_completed=days_completed,
            points=bonus,
            current_streak=profile.current_streak,
            total_score=profile.total_score,
        )
        return CompletionResult(
            session=session,
            days_completed=days_completed,
            bonus_points=bonus,
            current_streak=profile.current_streak,
            total_score=profile.total_score,
        )

    # ------------------------------------------------------------------
    # Emergency disable
    # ------------------------------------------------------------------

    def attempt_emergency_disable(self) -> EmergencyOutcome:
        """
        Count an attempt to end the session early.

        The first attempts only return an intervention (the UI shows a
        retention prompt); the last one unlocks confirm_emergency_disable().
        """
        with self.ledger.atomic():
            session = self._require_active(config.ACTION_EMERGENCY_DISABLE)
            if session.emergency_attempts < config.MAX_EMERGENCY_ATTEMPTS:
                session.emergency_attempts += 1
                session.version += 1
                self.ledger.save()
            attempts = session.emergency_attempts

        remaining = config.MAX_EMERGENCY_ATTEMPTS - attempts
        if attempts < config.MAX_EMERGENCY_ATTEMPTS:
            logger.info(f"Emergency disable attempt {attempts}/{config.MAX_EMERGENCY_ATTEMPTS}")
            self._emit(
                config.EVENT_EMERGENCY_INTERVENTION,
                session_id=session.id,
                attempts=attempts,
                attempts_remaining=remaining,
            )
            return EmergencyOutcome(OUTCOME_INTERVENTION, attempts, remaining)

        logger.info("Emergency disable unlocked, confirmation required")
        return EmergencyOutcome(OUTCOME_CONFIRM_REQUIRED, attempts, 0)

    def confirm_emergency_disable(self, reason: str) -> DisableResult:
        """
        End the session early. Irreversible.

        Resets the streak and deducts the penalty (score floored at zero).

        Raises:
            MissingReason, NoActiveSession, EmergencyLocked
        """
        if not reason or not reason.strip():
            raise MissingReason(
                "A reason is required to disable a session",
                action_type=config.ACTION_EMERGENCY_DISABLE,
                user_id=self.user_id,
                occurred_at=self._now(),
            )
        reason = reason.strip()

        with self.ledger.lock:
            session = self._require_active(config.ACTION_EMERGENCY_DISABLE)
            if session.emergency_attempts < config.MAX_EMERGENCY_ATTEMPTS:
                raise EmergencyLocked(
                    f"Emergency disable needs {config.MAX_EMERGENCY_ATTEMPTS} attempts first "
                    f"({session.emergency_attempts} so far)",
                    action_type=config.ACTION_EMERGENCY_DISABLE,
                    user_id=self.user_id,
                    occurred_at=self._now(),
                )

            with self.ledger.atomic():
                now = self._now()
                profile = self.ledger.profile
                before = profile.total_score
                profile.current_streak = 0
                self.ledger.penalize(
                    config.ACTION_EMERGENCY_DISABLE,
                    config.EMERGENCY_DISABLE_PENALTY,
                    {"reason": reason, "session_id": session.id},
                )
                applied = before - profile.total_score

                session.status = config.SESSION_EMERGENCY_DISABLED
                session.emergency_reason = reason
                session.ended_at = now
                session.version += 1
                self.ledger.state.emergency_log.append({
                    "session_id": session.id,
                    "reason": reason,
                    "penalty": config.EMERGENCY_DISABLE_PENALTY,
                    "applied": applied,
                    "timestamp": now.isoformat(),
                })
                self.ledger.save()

        self._clear_rules()
        logger.warning(f"Session {session.id} emergency-disabled: -{applied} pts")
        self._emit(
            config.EVENT_EMERGENCY_DISABLED,
            session_id=session.id,
            reason=reason,
            penalty=applied,
            total_score=profile.total_score,
        )
        return DisableResult(session=session, penalty_applied=applied, total_score=profile.total_score)

    def resist_emergency(self) -> PointTransaction:
        """
        Reward backing out of an emergency disable. Session keeps running.

        Raises:
            NoActiveSession, EmergencyLocked, RateLimitExceeded, AccountInactive
        """
        with self.ledger.ordered(config.ACTION_EMERGENCY_RESIST):
            session = self._require_active(config.ACTION_EMERGENCY_RESIST)
            if session.emergency_attempts >= config.MAX_EMERGENCY_ATTEMPTS:
                raise EmergencyLocked(
                    "Maximum emergency attempts reached for this session",
                    action_type=config.ACTION_EMERGENCY_RESIST,
                    user_id=self.user_id,
                    occurred_at=self._now(),
                )
            self.ledger.ensure_can_earn(config.ACTION_EMERGENCY_RESIST)
            with self.ledger.rate_limited(config.ACTION_EMERGENCY_RESIST), self.ledger.atomic():
                tx = self.ledger.award(
                    config.ACTION_EMERGENCY_RESIST,
                    {"session_id": session.id, "attempts": session.emergency_attempts},
                )
                session.points_awarded += tx.points_awarded
                session.version += 1
                self.ledger.save()
        return tx
