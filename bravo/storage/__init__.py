"""Record stores for Bravo.

The marketplace persists JSON payloads in five logical tables. Stores:

- InMemoryRecordStore: tests and local development
- SupabaseRecordStore: remote Postgres tables via Supabase
- SQLiteRecordStore: local-first cache with a sync queue to the remote
"""

from bravo.storage.base import (
    QueuedChange,
    RecordStore,
    StoredRecord,
    StoreError,
    StorePermissionError,
    StoreTimeoutError,
    StoreUnavailableError,
    SyncConflict,
    SyncResult,
    Table,
    VersionConflictError,
)
from bravo.storage.memory import InMemoryRecordStore
from bravo.storage.sqlite import SQLiteRecordStore

__all__ = [
    "RecordStore",
    "Table",
    "StoredRecord",
    "QueuedChange",
    "SyncConflict",
    "SyncResult",
    # Errors
    "StoreError",
    "StoreUnavailableError",
    "StoreTimeoutError",
    "StorePermissionError",
    "VersionConflictError",
    # Implementations
    "InMemoryRecordStore",
    "SQLiteRecordStore",
]
