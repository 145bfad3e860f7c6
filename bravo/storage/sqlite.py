"""Local-first SQLite record store.

Writes commit to a local SQLite database first and are queued for the remote
store; reads pull from the remote when it answers and fall back to the
cached copy when it does not. Checked writes are pushed against the remote
version they were based on and lose to a remote that moved; blind writes
are reconciled last-write-wins by commit time (see ``SyncEngine``).
"""

import contextlib
import json
import logging
import sqlite3
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional

from bravo.config import Settings, get_settings
from bravo.utils import utc_now

from .base import (
    RecordStore,
    StoredRecord,
    StoreError,
    SyncConflict,
    SyncResult,
    Table,
    VersionConflictError,
)
from .schema import OP_UPDATE, OP_UPSERT, init_schema
from .sync_engine import SyncEngine

logger = logging.getLogger(__name__)


class SQLiteRecordStore:
    """Local cache-aside store with an optional remote behind it.

    Args:
        db_path: Database file. Defaults to ``<data dir>/bravo.db``.
        cloud_storage: Remote record store to sync with, if any.
        settings: Settings; defaults to ``get_settings()``.
    """

    def __init__(
        self,
        db_path: Optional[Path] = None,
        cloud_storage: Optional[RecordStore] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.db_path = self._resolve_db_path(db_path)
        self.cloud_storage = cloud_storage
        self.auto_push = self.settings.auto_push

        with self._connect() as conn:
            init_schema(conn)

        self._sync_engine = SyncEngine(self)

    def _resolve_db_path(self, db_path: Optional[Path]) -> Path:
        """Resolve the database path, falling back to temp dir if home is not writable."""
        path = Path(db_path) if db_path is not None else self.settings.resolve_db_path()
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            return path
        except OSError as e:
            if db_path is not None:
                raise
            fallback = Path(tempfile.gettempdir()) / ".bravo" / "bravo.db"
            logger.warning(f"Cannot write to {path.parent} ({e}), falling back to {fallback}")
            fallback.parent.mkdir(parents=True, exist_ok=True)
            return fallback

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=10)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=5000")
        return conn

    @contextlib.contextmanager
    def _connect(self):
        """Transaction scope: commit on success, rollback on error, always close."""
        conn = self._get_conn()
        try:
            yield conn
            conn.commit()
        except Exception as e:
            logger.debug(f"Transaction failed, rolling back: {e}")
            conn.rollback()
            raise
        finally:
            conn.close()

    # === Local rows ===

    def _row_to_record(self, row: sqlite3.Row) -> StoredRecord:
        return StoredRecord(
            table=Table(row["table_name"]),
            key=row["key"],
            payload=json.loads(row["payload"]),
            version=row["version"],
            updated_at=row["updated_at"],
        )

    def get_local(self, table: Table, key: str) -> Optional[StoredRecord]:
        """Read the cached copy only."""
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT * FROM records WHERE table_name = ? AND key = ?",
                    (Table(table).value, key),
                ).fetchone()
        except sqlite3.Error as e:
            raise StoreError(f"Local read failed for {table}:{key}: {e}") from e
        return self._row_to_record(row) if row else None

    def get_all_local(self, table: Table) -> List[StoredRecord]:
        try:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT * FROM records WHERE table_name = ? ORDER BY key",
                    (Table(table).value,),
                ).fetchall()
        except sqlite3.Error as e:
            raise StoreError(f"Local read failed for {table}: {e}") from e
        return [self._row_to_record(row) for row in rows]

    def _write_local(
        self,
        table: Table,
        key: str,
        payload: Dict[str, Any],
        expected_version: Optional[int],
    ) -> StoredRecord:
        """Commit one record locally and queue it for push, in one transaction.

        Blind writes (no ``expected_version``) are queued as upserts; checked
        writes are queued as updates of the remote version the row is based on.
        """
        table = Table(table)
        now = utc_now()
        data = json.dumps(payload, sort_keys=True, default=str)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT version FROM records WHERE table_name = ? AND key = ?",
                    (table.value, key),
                ).fetchone()
                actual = row["version"] if row else 0
                if expected_version is not None and actual != expected_version:
                    raise VersionConflictError(table.value, key, expected_version, actual or None)

                if row:
                    cursor = conn.execute(
                        """UPDATE records SET payload = ?, version = ?, updated_at = ?
                           WHERE table_name = ? AND key = ? AND version = ?""",
                        (data, actual + 1, now, table.value, key, actual),
                    )
                    if cursor.rowcount == 0:
                        raise VersionConflictError(table.value, key, actual, None)
                else:
                    try:
                        conn.execute(
                            """INSERT INTO records (table_name, key, payload, version, updated_at)
                               VALUES (?, ?, ?, 1, ?)""",
                            (table.value, key, data, now),
                        )
                    except sqlite3.IntegrityError as e:
                        raise VersionConflictError(table.value, key, 0, None) from e

                operation = OP_UPSERT if expected_version is None else OP_UPDATE
                self._sync_engine.queue_sync_operation(conn, table.value, key, now, operation)
        except sqlite3.Error as e:
            raise StoreError(f"Local write failed for {table.value}:{key}: {e}") from e

        return StoredRecord(
            table=table, key=key, payload=payload, version=actual + 1, updated_at=now
        )

    def _after_write(self, record: StoredRecord, durable: bool, checked: bool) -> None:
        """Push right away when possible; durable writes must reach the remote.

        A checked write whose remote copy moved since this row was read is
        replaced by the remote copy and raises VersionConflictError, so the
        caller retries on fresh state. With auto_push off that check waits
        for the next sync.
        """
        if not self.cloud_storage:
            return
        if durable:
            self._sync_engine.push_change(record.table, record.key, raise_on_failure=True)
        elif self.auto_push:
            self._sync_engine.push_change(
                record.table, record.key, raise_on_failure=False, raise_on_conflict=checked
            )

    # === RecordStore ===

    def get(self, table: Table, key: str) -> Optional[StoredRecord]:
        if self.cloud_storage:
            try:
                self._sync_engine.refresh_record(Table(table), key)
            except StoreError as e:
                logger.warning(f"Remote read of {table}:{key} failed, serving cached copy: {e}")
        return self.get_local(table, key)

    def get_all(self, table: Table) -> List[StoredRecord]:
        if self.cloud_storage:
            try:
                self._sync_engine.refresh_table(Table(table))
            except StoreError as e:
                logger.warning(f"Remote read of {table} failed, serving cached copy: {e}")
        return self.get_all_local(table)

    def upsert(
        self, table: Table, key: str, payload: Dict[str, Any], durable: bool = False
    ) -> StoredRecord:
        record = self._write_local(table, key, payload, expected_version=None)
        self._after_write(record, durable, checked=False)
        return record

    def compare_and_set(
        self,
        table: Table,
        key: str,
        payload: Dict[str, Any],
        expected_version: int,
        durable: bool = False,
        updated_at: Optional[str] = None,
    ) -> StoredRecord:
        record = self._write_local(table, key, payload, expected_version=expected_version)
        self._after_write(record, durable, checked=True)
        return record

    # === Sync ===

    def sync(self) -> SyncResult:
        """Push queued changes, then pull remote changes."""
        return self._sync_engine.sync()

    def is_online(self) -> bool:
        return self._sync_engine.is_online()

    def get_sync_status(self) -> Dict[str, Any]:
        return self._sync_engine.get_sync_status()

    def get_pending_sync_count(self) -> int:
        return self._sync_engine.get_pending_sync_count()

    def requeue_dead_letters(self, record_ids: Optional[List[int]] = None) -> int:
        return self._sync_engine.requeue_dead_letters(record_ids)

    def get_sync_conflicts(self, limit: int = 100) -> List[SyncConflict]:
        return self._sync_engine.get_sync_conflicts(limit)
