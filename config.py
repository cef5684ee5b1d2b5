"""Configuration settings for StreakGuard."""

import os
import sys
from pathlib import Path
from dotenv import load_dotenv


def is_bundled() -> bool:
    """
    Check if the application is running from a PyInstaller bundle.

    Returns:
        True if running from a bundled executable, False otherwise.
    """
    return getattr(sys, 'frozen', False) and hasattr(sys, '_MEIPASS')


def get_user_data_dir() -> Path:
    """
    Get the directory for user-writable data (state cache, pending writes).

    For development: BASE_DIR/data, unless STREAKGUARD_DATA_DIR is set.
    For bundled apps: Uses a dedicated folder in the user's home directory
                      to persist data across updates.

    Returns:
        Path to the user data directory.
    """
    override = os.getenv("STREAKGUARD_DATA_DIR", "")
    if override:
        return Path(override)

    if is_bundled():
        if sys.platform == 'darwin':
            # macOS: ~/Library/Application Support/StreakGuard
            data_dir = Path.home() / "Library" / "Application Support" / "StreakGuard"
        elif sys.platform == 'win32':
            appdata = os.environ.get('APPDATA')
            if appdata:
                data_dir = Path(appdata) / "StreakGuard"
            else:
                data_dir = Path.home() / "AppData" / "Roaming" / "StreakGuard"
        else:
            # Linux: ~/.local/share/StreakGuard
            data_dir = Path.home() / ".local" / "share" / "StreakGuard"

        try:
            data_dir.mkdir(parents=True, exist_ok=True)
        except Exception:
            # Fallback to home directory if creation fails
            data_dir = Path.home() / ".streakguard"
            data_dir.mkdir(parents=True, exist_ok=True)

        return data_dir
    else:
        # Development mode
        return Path(__file__).parent / "data"


def _get_int(env_var: str, default: int) -> int:
    """
    Read an integer setting from the environment.

    Args:
        env_var: Environment variable name.
        default: Value used when the variable is unset or malformed.

    Returns:
        Parsed integer value.
    """
    raw = os.getenv(env_var, "")
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        import logging
        logging.getLogger(__name__).warning(
            f"{env_var}={raw!r} is not an integer, using default {default}"
        )
        return default


# Load environment variables from .env file (only in development)
if not is_bundled():
    # Explicitly load from the project root (where config.py lives)
    _env_path = Path(__file__).parent / ".env"
    load_dotenv(_env_path)

# User data directory (for writable data like the state cache)
USER_DATA_DIR = get_user_data_dir()

# Local state cache: one JSON document per user id
STATE_FILE_PREFIX = "state_"

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")  # Can override in .env: DEBUG, INFO, WARNING, ERROR
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Supabase Configuration (profile, sessions, point transactions)
SUPABASE_URL = os.getenv("SUPABASE_URL", "")
SUPABASE_ANON_KEY = os.getenv("SUPABASE_ANON_KEY", "")

# Remote calls slower than this are treated as offline
REMOTE_TIMEOUT_SECONDS = _get_int("REMOTE_TIMEOUT_SECONDS", 8)

# Pending-write retry backoff (seconds): base * 2 ** attempts, capped
RETRY_BACKOFF_BASE_SECONDS = 5
RETRY_BACKOFF_MAX_SECONDS = 900

# Security events waiting for the remote store; older ones are dropped first
MAX_PENDING_SECURITY_EVENTS = 50

# Background scheduler
TICK_INTERVAL_SECONDS = _get_int("TICK_INTERVAL_SECONDS", 3600)  # At least hourly
CONNECTIVITY_CHECK_INTERVAL_SECONDS = 300

# Authoritative clock: claimed client timestamps further off than this are rejected
MAX_CLOCK_DRIFT_SECONDS = 300

# Action types
ACTION_ADD_SITE = "add_site"
ACTION_REMOVE_SITE = "remove_site"
ACTION_START_SESSION = "start_session"
ACTION_COMPLETE_SESSION = "complete_session"
ACTION_DAILY_BONUS = "daily_bonus"
ACTION_PANIC_MODE = "panic_mode"
ACTION_EMERGENCY_RESIST = "emergency_resist"
ACTION_EMERGENCY_DISABLE = "emergency_disable"

# Base point table. start_session, complete_session and daily_bonus are
# multiplied by a day count supplied in the award context.
POINTS_ADD_SITE = 10
POINTS_PER_SESSION_DAY = 50
POINTS_PER_COMPLETED_DAY = 100
POINTS_DAILY_BONUS = 10
POINTS_PANIC_MODE = 25
POINTS_EMERGENCY_RESIST = 25

# Diminishing returns: (occurrence count upper bound, multiplier)
DIMINISHING_RETURNS_TIERS = [
    (10, 1.0),
    (50, 0.8),
    (100, 0.6),
]
DIMINISHING_RETURNS_FLOOR = 0.4

# Sliding-window rate limits per (user, action): (max count, window seconds)
RATE_LIMITS = {
    ACTION_ADD_SITE: (5, 3600),
    ACTION_PANIC_MODE: (3, 1800),
    ACTION_EMERGENCY_RESIST: (10, 3600),
    ACTION_START_SESSION: (3, 86400),
}

# Minimum gap between two panic-button presses
PANIC_COOLDOWN_SECONDS = 1800

# Session rules
SESSION_MIN_DAYS = 1
SESSION_MAX_DAYS = 365
SECONDS_PER_DAY = 86400
MAX_EMERGENCY_ATTEMPTS = 3
EMERGENCY_DISABLE_PENALTY = 500

# Session statuses
SESSION_ACTIVE = "active"
SESSION_COMPLETED = "completed"
SESSION_EMERGENCY_DISABLED = "emergency_disabled"

# Profile statuses
PROFILE_ACTIVE = "active"
PROFILE_SUSPENDED = "suspended"
PROFILE_BANNED = "banned"

# Integrity log: leading zero characters required on each entry hash.
# This is an anti-spam throttle, not a security boundary.
GENESIS_HASH = "0"
POW_DIFFICULTY = _get_int("POW_DIFFICULTY", 2)

# Site blocking: blocked navigations are redirected here
BLOCKED_PAGE_URL = os.getenv("BLOCKED_PAGE_URL", "blocked.html")

# Core events emitted to the UI layer
EVENT_SESSION_STARTED = "session_started"
EVENT_DAILY_BONUS = "daily_bonus"
EVENT_SESSION_COMPLETED = "session_completed"
EVENT_EMERGENCY_DISABLED = "emergency_disabled"
EVENT_EMERGENCY_INTERVENTION = "emergency_intervention"
EVENT_RATE_LIMITED = "rate_limited"
EVENT_OFFLINE_MODE_ENTERED = "offline_mode_entered"
EVENT_ONLINE_MODE_RESTORED = "online_mode_restored"
EVENT_POINTS_AWARDED = "points_awarded"
EVENT_SITE_ADDED = "site_added"
EVENT_SITE_REMOVED = "site_removed"
EVENT_INTEGRITY_VIOLATION = "integrity_violation"

# Security log severities (mirrors the backend's security_logs check constraint)
SEVERITY_LOW = "low"
SEVERITY_MEDIUM = "medium"
SEVERITY_HIGH = "high"
SEVERITY_CRITICAL = "critical"
