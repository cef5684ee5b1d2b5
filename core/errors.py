"""
Error taxonomy for the StreakGuard core.

Every error carries the action type, user id and timestamp it was raised
for, so it can be logged (or turned into a result dict by the engine)
without re-deriving that context.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional


class StreakGuardError(Exception):
    """Base class for all core errors."""

    error_type = "error"

    def __init__(
        self,
        message: str,
        action_type: Optional[str] = None,
        user_id: Optional[str] = None,
        occurred_at: Optional[datetime] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.action_type = action_type
        self.user_id = user_id
        self.occurred_at = occurred_at or datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        """Structured context for logging and result dicts."""
        return {
            "error": self.message,
            "error_type": self.error_type,
            "action_type": self.action_type,
            "user_id": self.user_id,
            "occurred_at": self.occurred_at.isoformat(),
        }


# ----------------------------------------------------------------------
# Validation (bad input, never retried)
# ----------------------------------------------------------------------

class ValidationError(StreakGuardError):
    error_type = "validation_error"


class InvalidDuration(ValidationError):
    error_type = "invalid_duration"


class EmptySiteList(ValidationError):
    error_type = "empty_site_list"


class MissingReason(ValidationError):
    error_type = "missing_reason"


class InvalidDomain(ValidationError):
    error_type = "invalid_domain"


class InvalidRequest(ValidationError):
    """A UI message that does not match any known request shape."""

    error_type = "invalid_request"


# ----------------------------------------------------------------------
# Rate limiting
# ----------------------------------------------------------------------

class RateLimitExceeded(StreakGuardError):
    error_type = "rate_limited"

    def __init__(self, message: str, retry_after_seconds: float, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.retry_after_seconds = retry_after_seconds

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["retry_after_seconds"] = self.retry_after_seconds
        return data


class PanicCooldown(RateLimitExceeded):
    """Panic mode was used less than the cooldown ago."""

    error_type = "panic_cooldown"


# ----------------------------------------------------------------------
# Conflicts (state does not allow the action, not retried)
# ----------------------------------------------------------------------

class ConflictError(StreakGuardError):
    error_type = "conflict"


class SessionAlreadyActive(ConflictError):
    error_type = "session_already_active"


class NoActiveSession(ConflictError):
    error_type = "no_active_session"


class DuplicateSite(ConflictError):
    error_type = "duplicate_site"


class SiteNotFound(ConflictError):
    error_type = "site_not_found"


class EmergencyLocked(ConflictError):
    """Emergency confirm before the attempts are used up, or resist after."""

    error_type = "emergency_locked"


class AccountInactive(ConflictError):
    error_type = "account_inactive"


# ----------------------------------------------------------------------
# Transient / environmental
# ----------------------------------------------------------------------

class PersistenceUnavailable(StreakGuardError):
    """Backing store could not be reached; the write must be queued."""

    error_type = "persistence_unavailable"


class ClockDriftTooLarge(StreakGuardError):
    """The device clock disagrees with the authoritative clock."""

    error_type = "clock_drift"

    def __init__(self, message: str, drift_seconds: float, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.drift_seconds = drift_seconds

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["drift_seconds"] = self.drift_seconds
        return data


class IntegrityViolation(StreakGuardError):
    """Hash-chain verification found a mismatch at `index`."""

    error_type = "integrity_violation"

    def __init__(self, message: str, index: int, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.index = index

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["index"] = self.index
        return data
