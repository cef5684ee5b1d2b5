"""
Time sources for session and point math.

All duration math goes through a Clock so tests can move time forward
deterministically. AuthoritativeClock corrects the local clock by the
offset last measured against the backend's server time and rejects
client-claimed timestamps that drift too far from it.
"""

import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import config
from core.errors import ClockDriftTooLarge

logger = logging.getLogger(__name__)


class Clock:
    """Supplies the current time as a timezone-aware UTC datetime."""

    def now(self) -> datetime:
        raise NotImplementedError

    def timestamp(self) -> float:
        """Current time as POSIX seconds."""
        return self.now().timestamp()


class SystemClock(Clock):
    """Wall clock of this device."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class ManualClock(Clock):
    """
    Clock that only moves when told to.

    Used for replaying multi-day sessions in tests.
    """

    def __init__(self, start: Optional[datetime] = None) -> None:
        self._now = start or datetime(2024, 1, 1, tzinfo=timezone.utc)
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def set(self, when: datetime) -> None:
        with self._lock:
            self._now = when

    def advance(self, seconds: float = 0, days: float = 0) -> datetime:
        """Move the clock forward and return the new time."""
        with self._lock:
            self._now = self._now + timedelta(seconds=seconds, days=days)
            return self._now


class AuthoritativeClock(Clock):
    """
    Local clock corrected by the last measured server offset.

    Args:
        local: Device clock.
        server_time_fn: Callable returning the server's current time.
            May raise; a failed refresh keeps the previous offset.
    """

    def __init__(
        self,
        local: Optional[Clock] = None,
        server_time_fn: Optional[Callable[[], datetime]] = None,
        max_drift_seconds: float = config.MAX_CLOCK_DRIFT_SECONDS,
    ) -> None:
        self.local = local or SystemClock()
        self.server_time_fn = server_time_fn
        self.max_drift_seconds = max_drift_seconds
        self._offset = timedelta(0)
        self._synced = False

    @property
    def is_synced(self) -> bool:
        return self._synced

    @property
    def offset_seconds(self) -> float:
        return self._offset.total_seconds()

    def refresh(self) -> bool:
        """
        Measure the offset between the local and server clocks.

        Returns:
            True if the server was reached, False if the previous offset is kept.
        """
        if self.server_time_fn is None:
            return False
        try:
            before = self.local.now()
            server_now = self.server_time_fn()
            after = self.local.now()
        except Exception as e:
            logger.debug(f"Server time unavailable, keeping offset {self.offset_seconds:.1f}s: {e}")
            return False

        # Assume the server sampled its clock half way through the round trip
        midpoint = before + (after - before) / 2
        self._offset = server_now - midpoint
        self._synced = True
        if abs(self.offset_seconds) > self.max_drift_seconds:
            logger.warning(f"Device clock is {self.offset_seconds:.0f}s off server time")
        return True

    def now(self) -> datetime:
        return self.local.now() + self._offset

    def check_drift(
        self,
        claimed: datetime,
        action_type: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> float:
        """
        Reject a client-claimed timestamp that is too far from authoritative now.

        Args:
            claimed: Timestamp the request says it was made at.

        Returns:
            Drift in seconds (claimed minus authoritative).

        Raises:
            ClockDriftTooLarge: If |drift| exceeds the tolerance.
        """
        if claimed.tzinfo is None:
            claimed = claimed.replace(tzinfo=timezone.utc)
        authoritative = self.now()
        drift = (claimed - authoritative).total_seconds()
        if abs(drift) > self.max_drift_seconds:
            raise ClockDriftTooLarge(
                f"Device clock is {abs(drift):.0f}s off; check your system time",
                drift_seconds=drift,
                action_type=action_type,
                user_id=user_id,
                occurred_at=authoritative,
            )
        return drift
