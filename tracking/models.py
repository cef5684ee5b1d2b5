"""
Data model for profiles, blocked sites, sessions and point transactions.

Everything serialises to plain JSON-compatible dicts (ISO-8601 timestamps)
so the same shapes go into the local cache and the Supabase rows.
"""

import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

import config


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO timestamp, assuming UTC when no offset is present."""
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def new_id() -> str:
    return uuid.uuid4().hex


@dataclass
class UserProfile:
    """Identity-scoped aggregate: score, streak and lifetime stats."""

    user_id: str
    total_score: int = 0
    current_streak: int = 0
    status: str = config.PROFILE_ACTIVE
    last_activity_at: Optional[datetime] = None
    best_streak: int = 0
    total_clean_days: int = 0
    sessions_completed: int = 0
    progress_history: List[Dict[str, Any]] = field(default_factory=list)
    panic_count: int = 0
    panic_last_used_at: Optional[datetime] = None
    version: int = 0

    def apply_points(self, delta: int) -> int:
        """
        Add a signed delta, clamping the total at zero.

        Returns:
            The delta actually applied.
        """
        before = self.total_score
        self.total_score = max(0, self.total_score + delta)
        return self.total_score - before

    def touch(self, when: datetime) -> None:
        """Record activity and bump the entity version."""
        self.last_activity_at = when
        self.version += 1

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["last_activity_at"] = _iso(self.last_activity_at)
        data["panic_last_used_at"] = _iso(self.panic_last_used_at)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'UserProfile':
        return cls(
            user_id=data["user_id"],
            total_score=int(data.get("total_score", 0)),
            current_streak=int(data.get("current_streak", 0)),
            status=data.get("status", config.PROFILE_ACTIVE),
            last_activity_at=_parse(data.get("last_activity_at")),
            best_streak=int(data.get("best_streak", 0)),
            total_clean_days=int(data.get("total_clean_days", 0)),
            sessions_completed=int(data.get("sessions_completed", 0)),
            progress_history=list(data.get("progress_history") or []),
            panic_count=int(data.get("panic_count", 0)),
            panic_last_used_at=_parse(data.get("panic_last_used_at")),
            version=int(data.get("version", 0)),
        )


@dataclass
class BlockedSite:
    """A domain on the user's live block list. Removal is a soft delete."""

    domain: str
    added_at: datetime
    is_active: bool = True
    version: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "domain": self.domain,
            "added_at": _iso(self.added_at),
            "is_active": self.is_active,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BlockedSite':
        return cls(
            domain=data["domain"],
            added_at=_parse(data.get("added_at")),
            is_active=bool(data.get("is_active", True)),
            version=int(data.get("version", 1)),
        )


@dataclass
class BlockSession:
    """
    A time-bounded commitment to block a fixed set of sites.

    The site snapshot is taken at creation; later edits to the live block
    list never change it.
    """

    id: str
    owner_id: str
    start_time: datetime
    duration_days: int
    blocked_site_snapshot: Tuple[str, ...]
    status: str = config.SESSION_ACTIVE
    emergency_attempts: int = 0
    last_daily_bonus_day: int = 0
    points_awarded: int = 0
    emergency_reason: Optional[str] = None
    ended_at: Optional[datetime] = None
    version: int = 1

    @property
    def end_time(self) -> datetime:
        return self.start_time + timedelta(seconds=self.duration_days * config.SECONDS_PER_DAY)

    @property
    def is_active(self) -> bool:
        return self.status == config.SESSION_ACTIVE

    def days_elapsed(self, now: datetime) -> int:
        """Whole days since start (never negative)."""
        elapsed = (now - self.start_time).total_seconds()
        return max(0, int(elapsed // config.SECONDS_PER_DAY))

    def seconds_remaining(self, now: datetime) -> float:
        return max(0.0, (self.end_time - now).total_seconds())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "start_time": _iso(self.start_time),
            "end_time": _iso(self.end_time),
            "duration_days": self.duration_days,
            "blocked_site_snapshot": list(self.blocked_site_snapshot),
            "status": self.status,
            "emergency_attempts": self.emergency_attempts,
            "last_daily_bonus_day": self.last_daily_bonus_day,
            "points_awarded": self.points_awarded,
            "emergency_reason": self.emergency_reason,
            "ended_at": _iso(self.ended_at),
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BlockSession':
        return cls(
            id=data["id"],
            owner_id=data["owner_id"],
            start_time=_parse(data["start_time"]),
            duration_days=int(data["duration_days"]),
            blocked_site_snapshot=tuple(data.get("blocked_site_snapshot") or ()),
            status=data.get("status", config.SESSION_ACTIVE),
            emergency_attempts=int(data.get("emergency_attempts", 0)),
            last_daily_bonus_day=int(data.get("last_daily_bonus_day", 0)),
            points_awarded=int(data.get("points_awarded", 0)),
            emergency_reason=data.get("emergency_reason"),
            ended_at=_parse(data.get("ended_at")),
            version=int(data.get("version", 1)),
        )


@dataclass
class PointTransaction:
    """
    Immutable record of one point award or penalty.

    `id` is what the backend deduplicates on; `integrity_hash` and
    `previous_hash` link the record into the user's integrity log.
    """

    id: str
    user_id: str
    action_type: str
    points_awarded: int
    occurred_at: datetime
    context_digest: str
    previous_hash: str
    nonce: int = 0
    integrity_hash: str = ""
    context: Dict[str, Any] = field(default_factory=dict)
    flagged: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["occurred_at"] = _iso(self.occurred_at)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PointTransaction':
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            action_type=data["action_type"],
            points_awarded=int(data["points_awarded"]),
            occurred_at=_parse(data["occurred_at"]),
            context_digest=data.get("context_digest", ""),
            previous_hash=data.get("previous_hash", config.GENESIS_HASH),
            nonce=int(data.get("nonce", 0)),
            integrity_hash=data.get("integrity_hash", ""),
            context=dict(data.get("context") or {}),
            flagged=bool(data.get("flagged", False)),
        )


@dataclass
class PendingWrite:
    """A remote write that has not been acknowledged yet."""

    kind: str
    entity_id: str
    version: int
    payload: Dict[str, Any]
    attempts: int = 0
    next_attempt_at: Optional[datetime] = None
    enqueued_at: Optional[datetime] = None

    @property
    def key(self) -> Tuple[str, str]:
        return (self.kind, self.entity_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "entity_id": self.entity_id,
            "version": self.version,
            "payload": self.payload,
            "attempts": self.attempts,
            "next_attempt_at": _iso(self.next_attempt_at),
            "enqueued_at": _iso(self.enqueued_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PendingWrite':
        return cls(
            kind=data["kind"],
            entity_id=data["entity_id"],
            version=int(data.get("version", 0)),
            payload=dict(data.get("payload") or {}),
            attempts=int(data.get("attempts", 0)),
            next_attempt_at=_parse(data.get("next_attempt_at")),
            enqueued_at=_parse(data.get("enqueued_at")),
        )


@dataclass
class UserState:
    """Everything the core keeps for one user, as cached locally."""

    profile: UserProfile
    sites: Dict[str, BlockedSite] = field(default_factory=dict)
    sessions: List[BlockSession] = field(default_factory=list)
    transactions: List[PointTransaction] = field(default_factory=list)
    action_counts: Dict[str, int] = field(default_factory=dict)
    pending: List[PendingWrite] = field(default_factory=list)
    emergency_log: List[Dict[str, Any]] = field(default_factory=list)
    last_synced_at: Optional[datetime] = None

    @property
    def user_id(self) -> str:
        return self.profile.user_id

    def active_domains(self) -> List[str]:
        return sorted(d for d, site in self.sites.items() if site.is_active)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "profile": self.profile.to_dict(),
            "sites": [site.to_dict() for site in self.sites.values()],
            "sessions": [s.to_dict() for s in self.sessions],
            "transactions": [t.to_dict() for t in self.transactions],
            "action_counts": dict(self.action_counts),
            "pending": [p.to_dict() for p in self.pending],
            "emergency_log": list(self.emergency_log),
            "last_synced_at": _iso(self.last_synced_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'UserState':
        sites = [BlockedSite.from_dict(s) for s in data.get("sites", [])]
        return cls(
            profile=UserProfile.from_dict(data["profile"]),
            sites={site.domain: site for site in sites},
            sessions=[BlockSession.from_dict(s) for s in data.get("sessions", [])],
            transactions=[PointTransaction.from_dict(t) for t in data.get("transactions", [])],
            action_counts={k: int(v) for k, v in (data.get("action_counts") or {}).items()},
            pending=[PendingWrite.from_dict(p) for p in data.get("pending", [])],
            emergency_log=list(data.get("emergency_log") or []),
            last_synced_at=_parse(data.get("last_synced_at")),
        )

    @classmethod
    def new(cls, user_id: str) -> 'UserState':
        return cls(profile=UserProfile(user_id=user_id))
