"""Record store protocol for Bravo backends.

The marketplace persists five logical tables of JSON payloads, each addressed
by an application-chosen string key. Implementations:

- InMemoryRecordStore: tests and local development
- SupabaseRecordStore: remote Postgres tables via the Supabase client
- SQLiteRecordStore: local-first cache in front of an optional remote store
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable


class Table(str, Enum):
    """Logical tables. Values are the local table names."""

    USERS = "users"
    JOBS = "jobs"
    REVIEWS = "reviews"
    CHATS = "chats"
    REQUESTS = "requests"

    @property
    def key_field(self) -> str:
        """Payload field used as the record key."""
        return "email" if self is Table.USERS else "id"

    @property
    def remote_name(self) -> str:
        return f"bravo_{self.value}"


# === Errors ===


class StoreError(Exception):
    """Base error for record store failures."""


class StoreUnavailableError(StoreError):
    """The store could not complete the operation. Retryable."""

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code


class StoreTimeoutError(StoreUnavailableError):
    """The store did not answer within its time bound. Retryable."""


class StorePermissionError(StoreError):
    """The store rejected the operation (row level security, missing grant)."""


class VersionConflictError(StoreError):
    """A compare-and-set lost against a concurrent writer."""

    def __init__(self, table: str, key: str, expected: int, actual: Optional[int]):
        super().__init__(
            f"Version conflict on {table}:{key}: expected {expected}, found {actual}"
        )
        self.table = table
        self.key = key
        self.expected = expected
        self.actual = actual


# === Records ===


@dataclass
class StoredRecord:
    """A payload plus the store metadata kept beside it."""

    table: Table
    key: str
    payload: Dict[str, Any]
    version: int = 1
    updated_at: Optional[str] = None


@dataclass
class QueuedChange:
    """A local change waiting to be pushed to the remote store."""

    id: int
    table_name: str
    record_id: str
    operation: str  # 'upsert'
    retry_count: int = 0
    last_error: Optional[str] = None
    last_attempt_at: Optional[datetime] = None
    queued_at: Optional[datetime] = None


@dataclass
class SyncConflict:
    """Both sides changed a record; the newer timestamp won."""

    id: str
    table: str
    record_id: str
    resolution: str  # 'cloud_wins' or 'local_wins'
    local_updated_at: Optional[str]
    cloud_updated_at: Optional[str]
    local_payload: Optional[Dict[str, Any]] = None
    cloud_payload: Optional[Dict[str, Any]] = None
    resolved_at: Optional[str] = None


@dataclass
class SyncResult:
    """Result of a sync run."""

    pushed: int = 0
    pulled: int = 0
    conflicts: List[SyncConflict] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return len(self.errors) == 0

    @property
    def conflict_count(self) -> int:
        return len(self.conflicts)


@runtime_checkable
class RecordStore(Protocol):
    """Key-addressed persistence for marketplace payloads.

    ``upsert`` is idempotent by key. ``compare_and_set`` is the conditional
    write used for every read-modify-write in the engine; ``expected_version=0``
    means the key must not exist yet.
    """

    def get(self, table: Table, key: str) -> Optional[StoredRecord]:
        """Get one record, or None when the key does not exist."""
        ...

    def get_all(self, table: Table) -> List[StoredRecord]:
        """Get every record of a table. May be a stale cached copy."""
        ...

    def upsert(
        self, table: Table, key: str, payload: Dict[str, Any], durable: bool = False
    ) -> StoredRecord:
        """Insert or replace a record unconditionally."""
        ...

    def compare_and_set(
        self,
        table: Table,
        key: str,
        payload: Dict[str, Any],
        expected_version: int,
        durable: bool = False,
        updated_at: Optional[str] = None,
    ) -> StoredRecord:
        """Write only if the stored version still equals ``expected_version``.

        ``updated_at`` overrides the write timestamp; sync pushes use it to
        keep the time of the original local commit.

        Raises:
            VersionConflictError: the record changed (or exists, for version 0)
        """
        ...
