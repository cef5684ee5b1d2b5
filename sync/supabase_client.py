"""
Remote store for StreakGuard, backed by Supabase.

Handles:
- Stored auth token reuse (the user id is the Supabase auth user id)
- Fetching the authoritative profile, sessions, block list and the ids of
  point transactions the server has already applied
- Applying point transactions through an idempotent RPC
- Version-guarded upserts of profile, session and site rows
- Security log inserts and server time for clock drift checks

Every method raises on failure; the reconciliation engine decides what a
failure means (offline, retry later).

Server contract (RPCs defined in the project's Supabase schema):
    apply_point_transaction(p_id, p_user_id, p_action_type, p_points,
        p_occurred_at, p_integrity_hash, p_previous_hash)
        -> {"applied": bool, "new_score": int}
        Inserts into user_point_transactions (unique id) and adds the
        points to user_profiles.total_score floored at 0, both only if the
        id is new.
    get_server_time() -> timestamptz
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from supabase import ClientOptions, create_client

import config

logger = logging.getLogger(__name__)


@dataclass
class RemoteSnapshot:
    """Authoritative state for one user as returned by the backend."""

    profile: Optional[Dict[str, Any]]
    sessions: List[Dict[str, Any]] = field(default_factory=list)
    sites: List[Dict[str, Any]] = field(default_factory=list)
    transaction_ids: Set[str] = field(default_factory=set)


class RemoteStore:
    """Interface the reconciliation engine needs from the backend."""

    def fetch_state(self, user_id: str) -> RemoteSnapshot:
        raise NotImplementedError

    def apply_transaction(self, transaction: Dict[str, Any]) -> int:
        """Apply a point transaction once; returns the new remote total."""
        raise NotImplementedError

    def upsert_profile(self, profile: Dict[str, Any]) -> bool:
        """Write profile fields other than total_score. False if the remote copy is newer."""
        raise NotImplementedError

    def upsert_session(self, session: Dict[str, Any]) -> bool:
        raise NotImplementedError

    def upsert_site(self, user_id: str, site: Dict[str, Any]) -> bool:
        raise NotImplementedError

    def log_security_event(self, user_id: str, event: Dict[str, Any]) -> None:
        raise NotImplementedError

    def get_server_time(self) -> datetime:
        raise NotImplementedError


def _parse_time(value: Any) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).strip('"').replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ----------------------------------------------------------------------
# Row mapping (local dict shapes <-> table columns)
# ----------------------------------------------------------------------

def _profile_to_row(profile: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "user_id": profile["user_id"],
        "current_streak": profile.get("current_streak", 0),
        "status": profile.get("status", config.PROFILE_ACTIVE),
        "last_activity": profile.get("last_activity_at"),
        "best_streak": profile.get("best_streak", 0),
        "total_clean_days": profile.get("total_clean_days", 0),
        "sessions_completed": profile.get("sessions_completed", 0),
        "progress_history": profile.get("progress_history", []),
        "panic_count": profile.get("panic_count", 0),
        "panic_last_used": profile.get("panic_last_used_at"),
        "version": profile.get("version", 0),
    }


def _row_to_profile(row: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "user_id": row["user_id"],
        "total_score": row.get("total_score", 0),
        "current_streak": row.get("current_streak", 0),
        "status": row.get("status", config.PROFILE_ACTIVE),
        "last_activity_at": row.get("last_activity"),
        "best_streak": row.get("best_streak", 0),
        "total_clean_days": row.get("total_clean_days", 0),
        "sessions_completed": row.get("sessions_completed", 0),
        "progress_history": row.get("progress_history") or [],
        "panic_count": row.get("panic_count", 0),
        "panic_last_used_at": row.get("panic_last_used"),
        "version": row.get("version", 0),
    }


def _session_to_row(session: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": session["id"],
        "user_id": session["owner_id"],
        "start_time": session["start_time"],
        "end_time": session["end_time"],
        "duration_days": session["duration_days"],
        "blocked_sites": session.get("blocked_site_snapshot", []),
        "status": session.get("status", config.SESSION_ACTIVE),
        "emergency_attempts": session.get("emergency_attempts", 0),
        "last_daily_bonus_day": session.get("last_daily_bonus_day", 0),
        "points_awarded": session.get("points_awarded", 0),
        "emergency_reason": session.get("emergency_reason"),
        "ended_at": session.get("ended_at"),
        "version": session.get("version", 1),
    }


def _row_to_session(row: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "owner_id": row["user_id"],
        "start_time": row["start_time"],
        "duration_days": row["duration_days"],
        "blocked_site_snapshot": row.get("blocked_sites") or [],
        "status": row.get("status", config.SESSION_ACTIVE),
        "emergency_attempts": row.get("emergency_attempts", 0),
        "last_daily_bonus_day": row.get("last_daily_bonus_day", 0),
        "points_awarded": row.get("points_awarded", 0),
        "emergency_reason": row.get("emergency_reason"),
        "ended_at": row.get("ended_at"),
        "version": row.get("version", 1),
    }


class SupabaseRemoteStore(RemoteStore):
    """
    Supabase client wrapper for the StreakGuard tables.

    Row-level security on the backend restricts every table to the owning
    user (plus an admin role), so the anon key plus the user's session is
    all the client needs.
    """

    def __init__(self, supabase_url: str = "", supabase_key: str = "") -> None:
        """
        Initialise the remote store.

        Args:
            supabase_url: Supabase project URL (falls back to config).
            supabase_key: Supabase anon/public key (falls back to config).
        """
        self._url = supabase_url or config.SUPABASE_URL
        self._key = supabase_key or config.SUPABASE_ANON_KEY
        self.auth_file: Path = config.USER_DATA_DIR / "auth.json"

        # Supabase client (only created when credentials exist)
        self._client = None
        self._init_client()

    # ------------------------------------------------------------------
    # Client initialisation
    # ------------------------------------------------------------------

    def _init_client(self) -> None:
        """Create the Supabase client if credentials are available."""
        if not self._url or not self._key:
            logger.info("Supabase credentials not configured, remote sync disabled")
            return
        try:
            self._client = create_client(
                self._url,
                self._key,
                options=ClientOptions(postgrest_client_timeout=config.REMOTE_TIMEOUT_SECONDS),
            )
            self._load_stored_session()
            logger.info("Supabase client initialised")
        except Exception as e:
            logger.warning(f"Failed to initialise Supabase client: {e}")

    def _load_stored_session(self) -> None:
        """Reuse auth tokens stored by the sign-in surface, if any."""
        if not self._client or not self.auth_file.exists():
            return
        try:
            data = json.loads(self.auth_file.read_text())
            access_token = data.get("access_token", "")
            refresh_token = data.get("refresh_token", "")
            if access_token and refresh_token:
                self._client.auth.set_session(access_token, refresh_token)
                logger.info(f"Loaded stored session for {data.get('email', 'unknown')}")
        except Exception as e:
            logger.warning(f"Failed to load stored session: {e}")

    def is_available(self) -> bool:
        """Check if the client is configured and ready."""
        return self._client is not None

    def get_user_id(self) -> str:
        """
        Authenticated user's id.

        Returns:
            User id, or the one in the stored auth file, or empty string.
        """
        if self._client:
            try:
                user = self._client.auth.get_user()
                if user and user.user:
                    return user.user.id
            except Exception as e:
                logger.debug(f"Could not fetch authenticated user: {e}")
        try:
            if self.auth_file.exists():
                return json.loads(self.auth_file.read_text()).get("user_id", "")
        except (json.JSONDecodeError, OSError) as e:
            logger.debug(f"Could not read stored auth file: {e}")
        return ""

    def _require_client(self):
        if not self._client:
            raise ConnectionError("Supabase not configured")
        return self._client

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def fetch_state(self, user_id: str) -> RemoteSnapshot:
        client = self._require_client()

        profile_result = (
            client.table("user_profiles")
            .select("*")
            .eq("user_id", user_id)
            .limit(1)
            .execute()
        )
        sessions_result = (
            client.table("user_sessions")
            .select("*")
            .eq("user_id", user_id)
            .execute()
        )
        sites_result = (
            client.table("user_blocked_sites")
            .select("site, added_at, is_active, version")
            .eq("user_id", user_id)
            .execute()
        )
        tx_result = (
            client.table("user_point_transactions")
            .select("id")
            .eq("user_id", user_id)
            .execute()
        )

        profile_rows = profile_result.data or []
        return RemoteSnapshot(
            profile=_row_to_profile(profile_rows[0]) if profile_rows else None,
            sessions=[_row_to_session(row) for row in sessions_result.data or []],
            sites=[
                {
                    "domain": row["site"],
                    "added_at": row.get("added_at"),
                    "is_active": row.get("is_active", True),
                    "version": row.get("version", 1),
                }
                for row in sites_result.data or []
            ],
            transaction_ids={row["id"] for row in tx_result.data or []},
        )

    def get_server_time(self) -> datetime:
        result = self._require_client().rpc("get_server_time").execute()
        return _parse_time(result.data)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def apply_transaction(self, transaction: Dict[str, Any]) -> int:
        result = self._require_client().rpc("apply_point_transaction", {
            "p_id": transaction["id"],
            "p_user_id": transaction["user_id"],
            "p_action_type": transaction["action_type"],
            "p_points": transaction["points_awarded"],
            "p_occurred_at": transaction["occurred_at"],
            "p_integrity_hash": transaction["integrity_hash"],
            "p_previous_hash": transaction["previous_hash"],
        }).execute()
        data = result.data or {}
        if not data.get("applied", False):
            logger.debug(f"Transaction {transaction['id']} was already applied remotely")
        return int(data.get("new_score", 0))

    def _versioned_upsert(self, table: str, key_column: str, key_value: Any,
                          row: Dict[str, Any], extra_filters: Optional[Dict[str, Any]] = None) -> bool:
        """
        Insert a row, or update it only if our version is newer.

        Returns:
            False if the remote row already has the same or a newer version.
        """
        client = self._require_client()
        query = client.table(table).select("version").eq(key_column, key_value)
        for column, value in (extra_filters or {}).items():
            query = query.eq(column, value)
        existing = query.limit(1).execute().data or []

        if not existing:
            client.table(table).insert(row).execute()
            return True

        if int(existing[0].get("version") or 0) >= row["version"]:
            return False

        update = client.table(table).update(row).eq(key_column, key_value).lt("version", row["version"])
        for column, value in (extra_filters or {}).items():
            update = update.eq(column, value)
        update.execute()
        return True

    def upsert_profile(self, profile: Dict[str, Any]) -> bool:
        row = _profile_to_row(profile)
        return self._versioned_upsert("user_profiles", "user_id", row["user_id"], row)

    def upsert_session(self, session: Dict[str, Any]) -> bool:
        row = _session_to_row(session)
        return self._versioned_upsert("user_sessions", "id", row["id"], row)

    def upsert_site(self, user_id: str, site: Dict[str, Any]) -> bool:
        row = {
            "user_id": user_id,
            "site": site["domain"],
            "added_at": site.get("added_at"),
            "is_active": site.get("is_active", True),
            "version": site.get("version", 1),
        }
        return self._versioned_upsert(
            "user_blocked_sites", "site", row["site"], row, extra_filters={"user_id": user_id}
        )

    def log_security_event(self, user_id: str, event: Dict[str, Any]) -> None:
        self._require_client().table("security_logs").insert({
            "user_id": user_id,
            "event_type": event.get("event_type"),
            "event_data": event.get("data", {}),
            "severity": event.get("severity", config.SEVERITY_MEDIUM),
            "created_at": event.get("occurred_at"),
        }).execute()
