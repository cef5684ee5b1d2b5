"""
Local state cache for StreakGuard.

One JSON document per user holds the profile, block list, sessions,
integrity log and the queue of pending remote writes. It is always
available (possibly stale) and is what the app runs from while offline.
"""

import json
import logging
import os
import re
import tempfile
import threading
from pathlib import Path
from typing import Optional

import config
from core.errors import PersistenceUnavailable
from tracking.models import UserState

logger = logging.getLogger(__name__)


class LocalStore:
    """
    File-backed cache of UserState documents.

    Args:
        data_dir: Directory holding the state files (defaults to config.USER_DATA_DIR).
    """

    def __init__(self, data_dir: Optional[Path] = None) -> None:
        self.data_dir: Path = Path(data_dir) if data_dir else config.USER_DATA_DIR
        self._lock = threading.Lock()

    def path_for(self, user_id: str) -> Path:
        """State file path for a user id (sanitised for use as a filename)."""
        safe_id = re.sub(r"[^A-Za-z0-9_-]", "_", user_id) or "anonymous"
        return self.data_dir / f"{config.STATE_FILE_PREFIX}{safe_id}.json"

    def exists(self, user_id: str) -> bool:
        return self.path_for(user_id).exists()

    def load(self, user_id: str) -> UserState:
        """
        Load a user's cached state.

        Returns:
            The cached state, or a fresh one if none exists or it is unreadable.
        """
        path = self.path_for(user_id)
        if not path.exists():
            logger.info(f"No cached state for {user_id}, starting fresh")
            return UserState.new(user_id)

        try:
            with open(path, 'r') as f:
                data = json.load(f)
            state = UserState.from_dict(data)
            logger.debug(
                f"Loaded cached state for {user_id}: score={state.profile.total_score}, "
                f"{len(state.transactions)} transactions, {len(state.pending)} pending"
            )
            return state
        except (json.JSONDecodeError, KeyError, TypeError, ValueError, OSError) as e:
            logger.warning(f"Cached state for {user_id} is unreadable ({e}), starting fresh")
            self._quarantine(path)
            return UserState.new(user_id)

    def _quarantine(self, path: Path) -> None:
        """Move an unreadable file aside so it is not overwritten."""
        try:
            os.replace(path, path.with_suffix(".corrupt"))
        except OSError as e:
            logger.debug(f"Could not quarantine {path}: {e}")

    def save(self, state: UserState) -> None:
        """
        Save a user's state atomically (write temp file, then rename).

        Raises:
            PersistenceUnavailable: If the file could not be written.
        """
        path = self.path_for(state.user_id)
        with self._lock:
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                temp_fd, temp_path = tempfile.mkstemp(
                    suffix='.tmp',
                    prefix='state_',
                    dir=path.parent
                )
                try:
                    with os.fdopen(temp_fd, 'w') as f:
                        json.dump(state.to_dict(), f, indent=2)
                    os.replace(temp_path, path)
                except Exception:
                    # Clean up temp file on error
                    try:
                        os.unlink(temp_path)
                    except OSError:
                        pass
                    raise
            except (IOError, OSError) as e:
                logger.error(f"Failed to save state for {state.user_id}: {e}")
                raise PersistenceUnavailable(
                    f"Local state could not be saved: {e}",
                    user_id=state.user_id,
                ) from e
        logger.debug(f"Saved state for {state.user_id}")
