"""
Sync package: local state cache, Supabase remote store and reconciliation.

Provides LocalStore for the on-disk cache, SupabaseRemoteStore for the
backend and ReconciliationEngine to keep the two consistent.
"""

from sync.local_store import LocalStore
from sync.reconciliation import ReconciliationEngine
from sync.supabase_client import RemoteSnapshot, RemoteStore, SupabaseRemoteStore

__all__ = [
    "LocalStore",
    "ReconciliationEngine",
    "RemoteSnapshot",
    "RemoteStore",
    "SupabaseRemoteStore",
]
