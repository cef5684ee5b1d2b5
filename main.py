#!/usr/bin/env python3
"""
StreakGuard - Main Entry Point

Site-blocking commitment core: block a list of sites for a number of days,
earn points and a streak for keeping the commitment, and sync with the
Supabase backend when it is reachable.

Usage:
    python main.py status
    python main.py add-site reddit.com
    python main.py start --days 7
    python main.py run                  # Background mode (tick + sync loop)
"""

import sys
import json
import logging
import argparse
from pathlib import Path
from typing import Any, Dict, Optional

import config
from core.engine import StreakGuardEngine
from core.scheduler import Scheduler
from instance_lock import InstanceLock, lock_file_for
from sync.local_store import LocalStore
from sync.supabase_client import SupabaseRemoteStore

# Configure logging
logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO),
    format=config.LOG_FORMAT
)
logger = logging.getLogger(__name__)

# Suppress noisy third-party library logs (HTTP requests, etc.)
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)
logging.getLogger("urllib3").setLevel(logging.WARNING)

LOCAL_USER_ID = "local"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="StreakGuard - site-blocking commitment tracker",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py add-site https://www.reddit.com/r/all
  python main.py start --days 7
  python main.py emergency                 Ask to end the session early
  python main.py confirm-disable --reason "exam research"
  python main.py run                       Keep running: hourly tick, retries
        """
    )
    parser.add_argument("--user", help="User id (default: signed-in Supabase user, else 'local')")
    parser.add_argument("--offline", action="store_true", help="Do not contact the Supabase backend")
    parser.add_argument("--data-dir", type=Path, help="Directory for the local state cache")

    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("status", help="Show score, streak and the active session")
    commands.add_parser("sites", help="List the live block list")

    add = commands.add_parser("add-site", help="Add a site to the block list")
    add.add_argument("site")
    remove = commands.add_parser("remove-site", help="Remove a site from the block list")
    remove.add_argument("site")

    start = commands.add_parser("start", help="Start a blocking session")
    start.add_argument("--days", type=int, required=True, help="Duration in whole days (1-365)")
    start.add_argument("--sites", nargs="+", help="Sites to block (default: the live block list)")

    commands.add_parser("tick", help="Pay due daily bonuses / complete an expired session")
    commands.add_parser("emergency", help="Attempt to disable the active session early")
    confirm = commands.add_parser("confirm-disable", help="Confirm the emergency disable")
    confirm.add_argument("--reason", required=True)
    commands.add_parser("resist", help="Back out of an emergency disable")
    commands.add_parser("panic", help="Panic button: reward resisting an urge")
    commands.add_parser("sync", help="Check connectivity and push pending writes")
    commands.add_parser("verify", help="Verify the point integrity log")
    commands.add_parser("run", help="Run in the background until interrupted")
    return parser


def resolve_remote(offline: bool) -> Optional[SupabaseRemoteStore]:
    if offline:
        return None
    remote = SupabaseRemoteStore()
    return remote if remote.is_available() else None


def resolve_user_id(requested: Optional[str], remote: Optional[SupabaseRemoteStore]) -> str:
    if requested:
        return requested
    if remote is not None:
        user_id = remote.get_user_id()
        if user_id:
            return user_id
    return LOCAL_USER_ID


def run_command(engine: StreakGuardEngine, args: argparse.Namespace) -> Dict[str, Any]:
    """Dispatch one CLI command to the engine."""
    command = args.command
    if command == "status":
        return {"success": True, **engine.get_status()}
    if command == "sites":
        return {"success": True, "sites": engine.get_blocked_sites()}
    if command == "add-site":
        return engine.add_site(args.site)
    if command == "remove-site":
        return engine.remove_site(args.site)
    if command == "start":
        return engine.start_session(args.sites, args.days)
    if command == "tick":
        return engine.tick()
    if command == "emergency":
        return engine.attempt_emergency_disable()
    if command == "confirm-disable":
        return engine.confirm_emergency_disable(args.reason)
    if command == "resist":
        return engine.resist_emergency()
    if command == "panic":
        return engine.panic_mode()
    if command == "sync":
        return engine.sync_now()
    if command == "verify":
        return engine.verify_integrity()
    raise ValueError(f"Unknown command: {command}")


def run_background(engine: StreakGuardEngine) -> None:
    """Tick and sync until Ctrl+C."""
    scheduler = Scheduler(engine)
    engine.events.subscribe(
        lambda event: print(f"[{event.occurred_at:%Y-%m-%d %H:%M}] {event.name}: {event.payload}")
    )
    scheduler.start()
    print("StreakGuard running. Press Ctrl+C to stop.")
    try:
        scheduler.should_stop.wait()
    except KeyboardInterrupt:
        print("\nStopping...")
    finally:
        scheduler.stop()


def main() -> int:
    """Main entry point - parses arguments and runs one command."""
    args = build_parser().parse_args()

    remote = resolve_remote(args.offline)
    user_id = resolve_user_id(args.user, remote)
    data_dir = args.data_dir or config.USER_DATA_DIR

    lock = InstanceLock(lock_file_for(user_id, data_dir))
    if not lock.acquire():
        pid = lock.existing_pid()
        pid_info = f" (PID: {pid})" if pid else ""
        print(f"\nStreakGuard is already running for {user_id}{pid_info}.")
        return 1

    engine = StreakGuardEngine(
        user_id,
        local_store=LocalStore(data_dir),
        remote=remote,
        background_sync=args.command == "run",
    )
    try:
        engine.start()
        if args.command == "run":
            run_background(engine)
            return 0
        result = run_command(engine, args)
        print(json.dumps(result, indent=2, default=str))
        return 0 if result.get("success") else 2
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        print(f"\nFatal error: {e}")
        return 1
    finally:
        engine.shutdown()
        lock.release()


if __name__ == "__main__":
    sys.exit(main())
