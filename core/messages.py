"""
Requests the UI can send to the engine.

A closed set of tagged dataclasses. parse_request() turns an incoming
message dict such as {"type": "add_site", "site": "example.com"} into one
of them, or raises InvalidRequest; nothing unvalidated reaches the engine.
"""

from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple, Type

from core.errors import InvalidRequest


@dataclass(frozen=True)
class Request:
    """Base for all requests. client_timestamp is checked for clock drift."""

    client_timestamp: Optional[datetime] = field(default=None, kw_only=True)

    type = ""


@dataclass(frozen=True)
class AddSite(Request):
    site: str
    type = "add_site"


@dataclass(frozen=True)
class RemoveSite(Request):
    site: str
    type = "remove_site"


@dataclass(frozen=True)
class StartSession(Request):
    sites: Tuple[str, ...]
    duration_days: int
    type = "start_session"


@dataclass(frozen=True)
class Tick(Request):
    type = "tick"


@dataclass(frozen=True)
class AttemptEmergencyDisable(Request):
    type = "attempt_emergency_disable"


@dataclass(frozen=True)
class ConfirmEmergencyDisable(Request):
    reason: str
    type = "confirm_emergency_disable"


@dataclass(frozen=True)
class ResistEmergency(Request):
    type = "resist_emergency"


@dataclass(frozen=True)
class PanicMode(Request):
    type = "panic_mode"


@dataclass(frozen=True)
class GetStatus(Request):
    type = "get_status"


@dataclass(frozen=True)
class Sync(Request):
    """Probe connectivity and push pending writes."""

    type = "sync"


REQUEST_TYPES: Dict[str, Type[Request]] = {
    cls.type: cls
    for cls in (
        AddSite, RemoveSite, StartSession, Tick, AttemptEmergencyDisable,
        ConfirmEmergencyDisable, ResistEmergency, PanicMode, GetStatus, Sync,
    )
}


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        # Browser-style epoch milliseconds
        parsed = datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError as e:
            raise InvalidRequest(f"Invalid client_timestamp: {value!r}") from e
    else:
        raise InvalidRequest(f"Invalid client_timestamp: {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_request(message: Dict[str, Any]) -> Request:
    """
    Validate a UI message and build its request object.

    Field values are type-checked only; range checks (duration bounds,
    domain format) belong to the operation itself.

    Raises:
        InvalidRequest: Unknown type, missing field or wrong field type.
    """
    if not isinstance(message, dict):
        raise InvalidRequest("Request must be an object")

    request_type = message.get("type")
    cls = REQUEST_TYPES.get(request_type)
    if cls is None:
        raise InvalidRequest(f"Unknown request type: {request_type!r}")

    kwargs: Dict[str, Any] = {
        "client_timestamp": _parse_timestamp(message.get("client_timestamp")),
    }
    for f in fields(cls):
        if f.name == "client_timestamp":
            continue
        if f.name not in message:
            raise InvalidRequest(f"{request_type} requires '{f.name}'", action_type=request_type)
        value = message[f.name]
        if f.name == "sites":
            if isinstance(value, str) or not isinstance(value, (list, tuple)):
                raise InvalidRequest("'sites' must be a list of domains", action_type=request_type)
            if not all(isinstance(site, str) for site in value):
                raise InvalidRequest("'sites' must contain only strings", action_type=request_type)
            value = tuple(value)
        elif f.name in ("site", "reason") and not isinstance(value, str):
            raise InvalidRequest(f"'{f.name}' must be a string", action_type=request_type)
        kwargs[f.name] = value

    return cls(**kwargs)
