"""In-memory record store for testing and local development."""

import copy
import threading
from typing import Any, Dict, List, Optional

from bravo.utils import utc_now

from .base import StoredRecord, Table, VersionConflictError


class InMemoryRecordStore:
    """Dict-backed store. Single-record writes are atomic under one lock."""

    def __init__(self):
        self._tables: Dict[Table, Dict[str, StoredRecord]] = {t: {} for t in Table}
        self._lock = threading.Lock()

    def _copy(self, record: StoredRecord) -> StoredRecord:
        return StoredRecord(
            table=record.table,
            key=record.key,
            payload=copy.deepcopy(record.payload),
            version=record.version,
            updated_at=record.updated_at,
        )

    def get(self, table: Table, key: str) -> Optional[StoredRecord]:
        with self._lock:
            record = self._tables[Table(table)].get(key)
            return self._copy(record) if record else None

    def get_all(self, table: Table) -> List[StoredRecord]:
        with self._lock:
            return [self._copy(r) for r in self._tables[Table(table)].values()]

    def upsert(
        self, table: Table, key: str, payload: Dict[str, Any], durable: bool = False
    ) -> StoredRecord:
        table = Table(table)
        with self._lock:
            current = self._tables[table].get(key)
            record = StoredRecord(
                table=table,
                key=key,
                payload=copy.deepcopy(payload),
                version=(current.version + 1) if current else 1,
                updated_at=utc_now(),
            )
            self._tables[table][key] = record
            return self._copy(record)

    def compare_and_set(
        self,
        table: Table,
        key: str,
        payload: Dict[str, Any],
        expected_version: int,
        durable: bool = False,
        updated_at: Optional[str] = None,
    ) -> StoredRecord:
        table = Table(table)
        with self._lock:
            current = self._tables[table].get(key)
            actual = current.version if current else 0
            if actual != expected_version:
                raise VersionConflictError(table.value, key, expected_version, actual or None)
            record = StoredRecord(
                table=table,
                key=key,
                payload=copy.deepcopy(payload),
                version=actual + 1,
                updated_at=updated_at or utc_now(),
            )
            self._tables[table][key] = record
            return self._copy(record)

    def put_record(self, record: StoredRecord) -> None:
        """Store a record with its metadata as given (used to seed sync tests)."""
        with self._lock:
            self._tables[Table(record.table)][record.key] = self._copy(record)
