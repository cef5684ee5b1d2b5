"""
Sliding-window rate limiter for point-awarding actions.

Windows are process-local and not persisted: a restart forgets them.
Check-and-record is atomic per (user, action) key.
"""

import logging
import threading
from collections import defaultdict
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional, Tuple

import config
from core.errors import RateLimitExceeded
from tracking.clock import Clock, SystemClock

logger = logging.getLogger(__name__)


class KeyedLocks:
    """One lock per key, created on first use."""

    def __init__(self) -> None:
        self._locks: Dict[Tuple[str, ...], threading.Lock] = {}
        self._guard = threading.Lock()

    def get(self, *key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, *key: str) -> Iterator[None]:
        lock = self.get(*key)
        with lock:
            yield


class RateLimiter:
    """
    Per-(user, action) sliding-window counter.

    Args:
        clock: Time source (timestamps are compared as POSIX seconds).
        limits: action -> (max count, window seconds). Actions without an
                entry are never limited.
    """

    def __init__(
        self,
        clock: Optional[Clock] = None,
        limits: Optional[Dict[str, Tuple[int, int]]] = None,
    ) -> None:
        self.clock = clock or SystemClock()
        self.limits = dict(config.RATE_LIMITS if limits is None else limits)
        self._windows: Dict[Tuple[str, str], List[float]] = defaultdict(list)
        self._locks = KeyedLocks()

    def _prune(self, key: Tuple[str, str], now: float, window: int) -> List[float]:
        """Drop timestamps that fell out of the trailing window."""
        recent = [t for t in self._windows[key] if now - t < window]
        self._windows[key] = recent
        return recent

    def check_and_record(self, user_id: str, action_type: str) -> Optional[float]:
        """
        Record an attempt, or refuse it if the window is full.

        Returns:
            The recorded timestamp (for release()), or None if unlimited.

        Raises:
            RateLimitExceeded: With the seconds until the oldest entry expires.
        """
        limit = self.limits.get(action_type)
        if not limit:
            return None
        max_count, window = limit
        key = (user_id, action_type)

        with self._locks.hold(*key):
            now = self.clock.timestamp()
            recent = self._prune(key, now, window)
            if len(recent) >= max_count:
                retry_after = max(0.0, window - (now - recent[0]))
                logger.info(
                    f"Rate limit hit for {action_type} (user {user_id}): "
                    f"{len(recent)}/{max_count} in {window}s, retry in {retry_after:.0f}s"
                )
                raise RateLimitExceeded(
                    f"Rate limit exceeded for {action_type}. Try again in {int(retry_after) + 1}s.",
                    retry_after_seconds=retry_after,
                    action_type=action_type,
                    user_id=user_id,
                    occurred_at=self.clock.now(),
                )
            recent.append(now)
            return now

    def release(self, user_id: str, action_type: str, recorded_at: Optional[float]) -> None:
        """Give back a slot taken by check_and_record() for an action that did not happen."""
        if recorded_at is None:
            return
        key = (user_id, action_type)
        with self._locks.hold(*key):
            window = self._windows.get(key)
            if window and recorded_at in window:
                window.remove(recorded_at)

    def remaining(self, user_id: str, action_type: str) -> Optional[int]:
        """Attempts left in the current window, or None if unlimited."""
        limit = self.limits.get(action_type)
        if not limit:
            return None
        max_count, window = limit
        key = (user_id, action_type)
        with self._locks.hold(*key):
            recent = self._prune(key, self.clock.timestamp(), window)
            return max(0, max_count - len(recent))

    def reset(self, user_id: Optional[str] = None) -> None:
        """Forget windows for one user, or for everyone."""
        for key in list(self._windows):
            if user_id is None or key[0] == user_id:
                with self._locks.hold(*key):
                    self._windows.pop(key, None)
