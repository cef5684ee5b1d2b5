"""
Instance Lock - one running StreakGuard engine per user installation.

Two engines writing the same user's state file would each append to
their own copy of the point log, so the long-running modes take an
OS-level file lock first:
- Unix (macOS/Linux): fcntl.flock()
- Windows: msvcrt.locking()

The lock is released by the OS when the process terminates, even on crashes.
"""

import os
import re
import sys
import logging
from pathlib import Path
from typing import Optional

import config

logger = logging.getLogger(__name__)

_LOCK_BYTES = 32


def lock_file_for(user_id: str, data_dir: Optional[Path] = None) -> Path:
    """Lock file path for a user, beside their state file."""
    safe_id = re.sub(r"[^A-Za-z0-9_-]", "_", user_id) or "anonymous"
    return (data_dir or config.USER_DATA_DIR) / f".streakguard_{safe_id}.lock"


class InstanceLock:
    """
    Non-blocking exclusive lock on a per-user lock file.

    Usage:
        with InstanceLock(lock_file_for(user_id)) as lock:
            if not lock.is_acquired():
                sys.exit(1)
            ...
    """

    def __init__(self, lock_file: Path) -> None:
        self.lock_file = lock_file
        self._lock_handle = None
        self._acquired = False

    def acquire(self) -> bool:
        """
        Try to take the lock.

        Returns:
            True if acquired, False if another engine holds it.
        """
        try:
            self.lock_file.parent.mkdir(parents=True, exist_ok=True)
            self._lock_handle = open(self.lock_file, 'a+b')
        except OSError as e:
            logger.error(f"Could not open lock file {self.lock_file}: {e}")
            return False

        try:
            if sys.platform == 'win32':
                import msvcrt
                self._lock_handle.seek(0)
                msvcrt.locking(self._lock_handle.fileno(), msvcrt.LK_NBLCK, _LOCK_BYTES)
            else:
                import fcntl
                fcntl.flock(self._lock_handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError:
            self._lock_handle.close()
            self._lock_handle = None
            logger.debug(f"Lock {self.lock_file} is held by another process")
            return False

        # Record our PID for diagnostics
        self._lock_handle.seek(0)
        self._lock_handle.truncate()
        self._lock_handle.write(str(os.getpid()).encode('utf-8').ljust(_LOCK_BYTES, b'\0'))
        self._lock_handle.flush()
        self._acquired = True
        logger.debug(f"Instance lock acquired (PID: {os.getpid()})")
        return True

    def release(self) -> None:
        if self._lock_handle is None:
            return
        try:
            if sys.platform == 'win32':
                import msvcrt
                self._lock_handle.seek(0)
                msvcrt.locking(self._lock_handle.fileno(), msvcrt.LK_UNLCK, _LOCK_BYTES)
            # On Unix, closing the file releases flock
            self._lock_handle.close()
        except OSError as e:
            logger.warning(f"Error releasing instance lock: {e}")
        self._lock_handle = None
        self._acquired = False
        logger.debug("Instance lock released")

    def is_acquired(self) -> bool:
        return self._acquired

    def existing_pid(self) -> Optional[int]:
        """PID recorded by the current holder, if readable."""
        try:
            content = self.lock_file.read_bytes().rstrip(b'\0').strip()
            return int(content) if content.isdigit() else None
        except OSError:
            return None

    def __enter__(self) -> 'InstanceLock':
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.release()
        return False
