"""Sync engine for the local-first SQLite store.

SyncEngine handles the sync queue, push/pull against the remote store and
last-write-wins reconciliation. It receives the host SQLiteRecordStore to
reach the local database and the remote.

Every local row remembers the remote version it was based on
(``records.cloud_version``). A queued change is pushed by comparing the local
row with the remote copy:

- same payload: already applied, nothing to send
- remote still at the base version (or missing): compare-and-set it against
  that version
- remote moved since the base, checked write (``update``): cloud wins, the
  remote copy replaces the local row and the local change is dropped, so a
  concurrent change made elsewhere is never overwritten
- remote moved since the base, blind write (``upsert``): last-write-wins by
  commit time

Losing local changes and overwritten remote copies are recorded as
SyncConflicts.
"""

import json
import logging
import sqlite3
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from bravo.logging_config import log_sync
from bravo.utils import parse_datetime, utc_now

from .base import (
    QueuedChange,
    StoredRecord,
    StoreError,
    SyncConflict,
    SyncResult,
    Table,
    VersionConflictError,
)
from .retry import backoff_delay
from .schema import OP_UPDATE, OP_UPSERT, SYNC_COMPLETED, SYNC_DEAD_LETTER, SYNC_PENDING

logger = logging.getLogger(__name__)

# Remote compare-and-set attempts for one push before giving up
MAX_PUSH_ATTEMPTS = 3


class SyncEngine:
    """Queue management, push/pull and conflict resolution.

    Args:
        host: The SQLiteRecordStore providing DB access and the remote store.
    """

    def __init__(self, host):
        self._host = host

    @property
    def _settings(self):
        return self._host.settings

    # === Queue Operations ===

    def queue_sync_operation(
        self,
        conn: sqlite3.Connection,
        table: str,
        record_id: str,
        local_updated_at: str,
        operation: str = OP_UPSERT,
    ) -> int:
        """Queue a change inside the caller's transaction. One pending entry per record."""
        cursor = conn.execute(
            """INSERT INTO sync_queue
               (table_name, record_id, operation, local_updated_at, synced, queued_at)
               VALUES (?, ?, ?, ?, 0, ?)
               ON CONFLICT(table_name, record_id) WHERE synced = 0
               DO UPDATE SET
                   operation = excluded.operation,
                   local_updated_at = excluded.local_updated_at,
                   queued_at = excluded.queued_at""",
            (table, record_id, operation, local_updated_at, utc_now()),
        )
        return cursor.lastrowid or 0

    def _row_to_change(self, row: sqlite3.Row) -> QueuedChange:
        return QueuedChange(
            id=row["id"],
            table_name=row["table_name"],
            record_id=row["record_id"],
            operation=row["operation"],
            retry_count=row["retry_count"] or 0,
            last_error=row["last_error"],
            last_attempt_at=parse_datetime(row["last_attempt_at"]),
            queued_at=parse_datetime(row["queued_at"]),
        )

    def get_queued_changes(self, limit: int = 100) -> List[QueuedChange]:
        """Get pending changes, oldest first."""
        with self._host._connect() as conn:
            rows = conn.execute(
                """SELECT id, table_name, record_id, operation, queued_at,
                          COALESCE(retry_count, 0) as retry_count,
                          last_error, last_attempt_at
                   FROM sync_queue
                   WHERE synced = ?
                   ORDER BY id
                   LIMIT ?""",
                (SYNC_PENDING, limit),
            ).fetchall()
        return [self._row_to_change(row) for row in rows]

    def get_dead_letters(self, limit: int = 100) -> List[QueuedChange]:
        """Get changes that exhausted their retries."""
        with self._host._connect() as conn:
            rows = conn.execute(
                """SELECT id, table_name, record_id, operation, queued_at,
                          COALESCE(retry_count, 0) as retry_count,
                          last_error, last_attempt_at
                   FROM sync_queue
                   WHERE synced = ?
                   ORDER BY last_attempt_at DESC
                   LIMIT ?""",
                (SYNC_DEAD_LETTER, limit),
            ).fetchall()
        return [self._row_to_change(row) for row in rows]

    def get_pending_sync_count(self) -> int:
        with self._host._connect() as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM sync_queue WHERE synced = ?", (SYNC_PENDING,)
            ).fetchone()[0]

    def get_dead_letter_count(self) -> int:
        with self._host._connect() as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM sync_queue WHERE synced = ?", (SYNC_DEAD_LETTER,)
            ).fetchone()[0]

    def get_sync_status(self) -> Dict[str, Any]:
        """Counts of queue entries by state and by table."""
        with self._host._connect() as conn:
            counts = {
                row["synced"]: row["n"]
                for row in conn.execute(
                    "SELECT synced, COUNT(*) as n FROM sync_queue GROUP BY synced"
                ).fetchall()
            }
            by_table = {
                row["table_name"]: row["n"]
                for row in conn.execute(
                    """SELECT table_name, COUNT(*) as n FROM sync_queue
                       WHERE synced = ? GROUP BY table_name""",
                    (SYNC_PENDING,),
                ).fetchall()
            }

        pending = counts.get(SYNC_PENDING, 0)
        synced = counts.get(SYNC_COMPLETED, 0)
        dead_letter = counts.get(SYNC_DEAD_LETTER, 0)
        last_sync = self.get_last_sync_time()
        return {
            "cloud_configured": self._host.cloud_storage is not None,
            "pending": pending,
            "synced": synced,
            "dead_letter": dead_letter,
            "total": pending + synced + dead_letter,
            "by_table": by_table,
            "last_sync_time": last_sync.isoformat() if last_sync else None,
        }

    def _record_sync_failure(self, table: str, record_id: str, error: str) -> int:
        """Bump the retry count of the pending entry; dead-letter it at the limit."""
        max_retries = self._settings.sync_max_retries
        with self._host._connect() as conn:
            conn.execute(
                """UPDATE sync_queue
                   SET retry_count = COALESCE(retry_count, 0) + 1,
                       last_error = ?,
                       last_attempt_at = ?
                   WHERE table_name = ? AND record_id = ? AND synced = ?""",
                (error[:500], utc_now(), table, record_id, SYNC_PENDING),
            )
            row = conn.execute(
                """SELECT retry_count FROM sync_queue
                   WHERE table_name = ? AND record_id = ? AND synced = ?""",
                (table, record_id, SYNC_PENDING),
            ).fetchone()
            retry_count = row["retry_count"] if row else 0
            if retry_count >= max_retries:
                conn.execute(
                    """UPDATE sync_queue SET synced = ?
                       WHERE table_name = ? AND record_id = ? AND synced = ?""",
                    (SYNC_DEAD_LETTER, table, record_id, SYNC_PENDING),
                )
                logger.warning(
                    f"Record {table}:{record_id} exceeded max retries, "
                    f"moving to dead letter queue"
                )
        return retry_count

    def _clear_queued_change(
        self, conn: sqlite3.Connection, table: str, record_id: str, local_updated_at: str
    ) -> None:
        """Mark the pending entry synced, unless a newer local write re-queued it."""
        conn.execute(
            """UPDATE sync_queue SET synced = ?
               WHERE table_name = ? AND record_id = ? AND synced = ?
                 AND local_updated_at = ?""",
            (SYNC_COMPLETED, table, record_id, SYNC_PENDING, local_updated_at),
        )

    def _pending_operation(
        self, conn: sqlite3.Connection, table: str, record_id: str
    ) -> Optional[str]:
        """Operation of the pending change for a record, or None if nothing is queued."""
        row = conn.execute(
            """SELECT operation FROM sync_queue
               WHERE table_name = ? AND record_id = ? AND synced = ?""",
            (table, record_id, SYNC_PENDING),
        ).fetchone()
        return row["operation"] if row else None

    def _is_backing_off(self, change: QueuedChange, now: datetime) -> bool:
        if change.retry_count <= 0 or change.last_attempt_at is None:
            return False
        delay = backoff_delay(
            change.retry_count - 1, self._settings.backoff_base, self._settings.backoff_cap
        )
        return (now - change.last_attempt_at).total_seconds() < delay

    def requeue_dead_letters(self, record_ids: Optional[List[int]] = None) -> int:
        """Re-enqueue dead-lettered entries for retry.

        Entries superseded by a newer pending change for the same record are
        dropped instead, since the pending change will push the latest state.

        Args:
            record_ids: Specific queue IDs to requeue, or None for all.
        Returns:
            Number of entries requeued or superseded.
        """
        id_filter = ""
        params: List[Any] = []
        if record_ids:
            id_filter = f" AND id IN ({','.join('?' for _ in record_ids)})"
            params = list(record_ids)

        with self._host._connect() as conn:
            superseded = conn.execute(
                f"""DELETE FROM sync_queue
                    WHERE synced = {SYNC_DEAD_LETTER}{id_filter}
                      AND EXISTS (
                          SELECT 1 FROM sync_queue AS p
                          WHERE p.synced = {SYNC_PENDING}
                            AND p.table_name = sync_queue.table_name
                            AND p.record_id = sync_queue.record_id
                      )""",
                params,
            ).rowcount
            requeued = conn.execute(
                f"""UPDATE sync_queue
                    SET synced = {SYNC_PENDING}, retry_count = 0, last_error = NULL
                    WHERE synced = {SYNC_DEAD_LETTER}{id_filter}""",
                params,
            ).rowcount
        if requeued or superseded:
            logger.info(f"Requeued {requeued} dead-lettered changes ({superseded} superseded)")
        return requeued + superseded

    # === Sync Metadata ===

    def _get_sync_meta(self, key: str) -> Optional[str]:
        with self._host._connect() as conn:
            row = conn.execute("SELECT value FROM sync_meta WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def _set_sync_meta(self, key: str, value: str) -> None:
        with self._host._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO sync_meta (key, value) VALUES (?, ?)", (key, value)
            )

    def get_last_sync_time(self) -> Optional[datetime]:
        """Get the timestamp of the last successful sync."""
        return parse_datetime(self._get_sync_meta("last_sync_time"))

    # === Conflict Management ===

    def save_sync_conflict(self, conflict: SyncConflict) -> str:
        with self._host._connect() as conn:
            conn.execute(
                """INSERT INTO sync_conflicts
                   (id, table_name, record_id, resolution, local_updated_at,
                    cloud_updated_at, local_payload, cloud_payload, resolved_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    conflict.id,
                    conflict.table,
                    conflict.record_id,
                    conflict.resolution,
                    conflict.local_updated_at,
                    conflict.cloud_updated_at,
                    json.dumps(conflict.local_payload, default=str),
                    json.dumps(conflict.cloud_payload, default=str),
                    conflict.resolved_at or utc_now(),
                ),
            )
        return conflict.id

    def get_sync_conflicts(self, limit: int = 100) -> List[SyncConflict]:
        """Get recent sync conflict history, newest first."""
        with self._host._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM sync_conflicts ORDER BY resolved_at DESC LIMIT ?", (limit,)
            ).fetchall()
        return [
            SyncConflict(
                id=row["id"],
                table=row["table_name"],
                record_id=row["record_id"],
                resolution=row["resolution"],
                local_updated_at=row["local_updated_at"],
                cloud_updated_at=row["cloud_updated_at"],
                local_payload=json.loads(row["local_payload"]) if row["local_payload"] else None,
                cloud_payload=json.loads(row["cloud_payload"]) if row["cloud_payload"] else None,
                resolved_at=row["resolved_at"],
            )
            for row in rows
        ]

    def _conflict(
        self, resolution: str, local: StoredRecord, remote: StoredRecord
    ) -> SyncConflict:
        conflict = SyncConflict(
            id=str(uuid.uuid4()),
            table=Table(local.table).value,
            record_id=local.key,
            resolution=resolution,
            local_updated_at=local.updated_at,
            cloud_updated_at=remote.updated_at,
            local_payload=local.payload,
            cloud_payload=remote.payload,
            resolved_at=utc_now(),
        )
        self.save_sync_conflict(conflict)
        logger.info(
            f"Sync conflict on {conflict.table}:{conflict.record_id} resolved as {resolution}"
        )
        return conflict

    # === Connectivity ===

    def is_online(self) -> bool:
        """Check if the remote store is reachable."""
        cloud = self._host.cloud_storage
        if not cloud:
            return False
        health_check = getattr(cloud, "health_check", None)
        if health_check is None:
            return True
        try:
            return bool(health_check().get("healthy"))
        except StoreError as e:
            logger.debug(f"Connectivity check failed: {e}")
            return False

    # === Local rows written from the remote ===

    def _cloud_base(self, conn: sqlite3.Connection, table: str, key: str) -> int:
        """Remote version the local row is based on; 0 if never seen remotely."""
        row = conn.execute(
            "SELECT cloud_version FROM records WHERE table_name = ? AND key = ?",
            (table, key),
        ).fetchone()
        return (row["cloud_version"] or 0) if row else 0

    def _set_cloud_marker(self, conn: sqlite3.Connection, remote: StoredRecord) -> None:
        conn.execute(
            """UPDATE records SET cloud_synced_at = ?, cloud_version = ?
               WHERE table_name = ? AND key = ?""",
            (remote.updated_at, remote.version, Table(remote.table).value, remote.key),
        )

    def _apply_remote(
        self,
        conn: sqlite3.Connection,
        remote: StoredRecord,
        expected_local_updated_at: Optional[str],
    ) -> bool:
        """Replace the local row with the remote copy and drop its pending change.

        Skipped when the local row changed after it was compared.
        """
        table = Table(remote.table).value
        row = conn.execute(
            "SELECT version, updated_at FROM records WHERE table_name = ? AND key = ?",
            (table, remote.key),
        ).fetchone()
        if row and row["updated_at"] != expected_local_updated_at:
            return False
        if row is None and expected_local_updated_at is not None:
            return False

        updated_at = remote.updated_at or utc_now()
        data = json.dumps(remote.payload, sort_keys=True, default=str)
        if row:
            conn.execute(
                """UPDATE records
                   SET payload = ?, version = version + 1, updated_at = ?,
                       cloud_synced_at = ?, cloud_version = ?
                   WHERE table_name = ? AND key = ?""",
                (data, updated_at, remote.updated_at, remote.version, table, remote.key),
            )
        else:
            conn.execute(
                """INSERT INTO records
                   (table_name, key, payload, version, updated_at, cloud_synced_at, cloud_version)
                   VALUES (?, ?, ?, 1, ?, ?, ?)""",
                (table, remote.key, data, updated_at, remote.updated_at, remote.version),
            )
        conn.execute(
            "DELETE FROM sync_queue WHERE table_name = ? AND record_id = ? AND synced = ?",
            (table, remote.key, SYNC_PENDING),
        )
        return True

    def _remote_is_newer(self, local: StoredRecord, remote: StoredRecord) -> bool:
        local_at = parse_datetime(local.updated_at)
        remote_at = parse_datetime(remote.updated_at)
        if remote_at is None:
            return False
        if local_at is None:
            return True
        return remote_at > local_at

    # === Push ===

    def push_change(
        self,
        table: Table,
        key: str,
        raise_on_failure: bool = False,
        raise_on_conflict: Optional[bool] = None,
    ) -> bool:
        """Push the local state of one record.

        Args:
            table: Table of the record
            key: Record key
            raise_on_failure: Raise store errors instead of only queueing
            raise_on_conflict: Raise when the remote copy won; defaults to
                ``raise_on_failure``

        Returns:
            True when the remote now holds the local state.

        Raises:
            StoreError: with ``raise_on_failure``, when the remote could not be
                written; the change stays queued.
            VersionConflictError: with ``raise_on_conflict``, when the remote
                copy won. The local row now holds the remote copy.
        """
        table = Table(table)
        if raise_on_conflict is None:
            raise_on_conflict = raise_on_failure
        try:
            pushed, conflict = self._push(table, key)
        except VersionConflictError as e:
            # Remote kept moving; leave the change queued for the next sync
            self._record_sync_failure(table.value, key, str(e))
            if raise_on_conflict:
                raise
            return False
        except StoreError as e:
            retry_count = self._record_sync_failure(table.value, key, str(e))
            logger.warning(
                f"Push of {table.value}:{key} failed (retry {retry_count}/"
                f"{self._settings.sync_max_retries}): {e}"
            )
            if raise_on_failure:
                raise
            return False

        if not pushed and conflict is not None and raise_on_conflict:
            raise VersionConflictError(table.value, key, 0, None)
        return pushed

    def _push(self, table: Table, key: str) -> Tuple[bool, Optional[SyncConflict]]:
        cloud = self._host.cloud_storage
        for _ in range(MAX_PUSH_ATTEMPTS):
            local = self._host.get_local(table, key)
            if local is None:
                return False, None

            remote = cloud.get(table, key)
            with self._host._connect() as conn:
                base = self._cloud_base(conn, table.value, key)
                operation = self._pending_operation(conn, table.value, key)

            if remote is not None and remote.payload == local.payload:
                with self._host._connect() as conn:
                    self._set_cloud_marker(conn, remote)
                    self._clear_queued_change(conn, table.value, key, local.updated_at)
                return True, None

            if operation is None:
                # Nothing queued: the cached copy is only stale
                return False, None

            remote_moved = remote is not None and remote.version != base
            if remote_moved and (operation == OP_UPDATE or self._remote_is_newer(local, remote)):
                with self._host._connect() as conn:
                    applied = self._apply_remote(conn, remote, local.updated_at)
                if not applied:
                    continue
                return False, self._conflict("cloud_wins", local, remote)

            try:
                written = cloud.compare_and_set(
                    table,
                    key,
                    local.payload,
                    remote.version if remote else 0,
                    updated_at=local.updated_at,
                )
            except VersionConflictError:
                logger.debug(f"Remote {table.value}:{key} moved during push, re-reading")
                continue

            with self._host._connect() as conn:
                self._set_cloud_marker(conn, written)
                self._clear_queued_change(conn, table.value, key, local.updated_at)
            conflict = self._conflict("local_wins", local, remote) if remote_moved else None
            return True, conflict

        raise VersionConflictError(table.value, key, 0, None)

    # === Pull ===

    def _merge_remote(self, remote: StoredRecord) -> Tuple[int, Optional[SyncConflict]]:
        """Bring one remote record into the cache. Returns (pulled, conflict)."""
        table = Table(remote.table)
        local = self._host.get_local(table, remote.key)

        if local is None:
            with self._host._connect() as conn:
                applied = self._apply_remote(conn, remote, None)
            return (1 if applied else 0), None

        if local.payload == remote.payload:
            with self._host._connect() as conn:
                self._set_cloud_marker(conn, remote)
            return 0, None

        with self._host._connect() as conn:
            operation = self._pending_operation(conn, table.value, remote.key)
            base = self._cloud_base(conn, table.value, remote.key)

        if operation is None:
            with self._host._connect() as conn:
                applied = self._apply_remote(conn, remote, local.updated_at)
            return (1 if applied else 0), None

        if operation == OP_UPDATE:
            cloud_wins = remote.version != base
        else:
            cloud_wins = self._remote_is_newer(local, remote)
        if cloud_wins:
            with self._host._connect() as conn:
                applied = self._apply_remote(conn, remote, local.updated_at)
            if applied:
                return 1, self._conflict("cloud_wins", local, remote)
        # The pending local change still applies; the push will carry it
        return 0, None

    def refresh_record(self, table: Table, key: str) -> Optional[SyncConflict]:
        """Pull one record from the remote into the cache.

        A pending local change of the record is pushed first, so the read
        sees either that change confirmed remotely or the remote copy that
        replaced it.
        """
        with self._host._connect() as conn:
            pending = self._pending_operation(conn, Table(table).value, key)
        if pending is not None:
            _, conflict = self._push(Table(table), key)
            if conflict is not None:
                return conflict

        remote = self._host.cloud_storage.get(table, key)
        if remote is None:
            return None
        _, conflict = self._merge_remote(remote)
        return conflict

    def refresh_table(self, table: Table) -> SyncResult:
        """Pull every record of a table from the remote into the cache."""
        result = SyncResult()
        for remote in self._host.cloud_storage.get_all(table):
            pulled, conflict = self._merge_remote(remote)
            result.pulled += pulled
            if conflict:
                result.conflicts.append(conflict)
        return result

    # === Full Sync ===

    def sync(self) -> SyncResult:
        """Push queued changes, then pull every table."""
        result = SyncResult()

        if not self._host.cloud_storage:
            logger.debug("No cloud storage configured, skipping sync")
            return result

        if not self.is_online():
            logger.info("Offline - sync skipped, changes queued")
            result.errors.append("Offline - cannot reach cloud storage")
            return result

        # Phase 1: push
        now = datetime.now(timezone.utc)
        queued = self.get_queued_changes(limit=500)
        skipped = 0
        for change in queued:
            if self._is_backing_off(change, now):
                skipped += 1
                continue
            table = Table(change.table_name)
            try:
                pushed, conflict = self._push(table, change.record_id)
            except StoreError as e:
                retry_count = self._record_sync_failure(change.table_name, change.record_id, str(e))
                logger.error(
                    f"Error pushing {change.table_name}:{change.record_id}: {e} "
                    f"(retry {retry_count}/{self._settings.sync_max_retries})"
                )
                result.errors.append(f"Error pushing {change.table_name}:{change.record_id}: {e}")
                continue
            if pushed:
                result.pushed += 1
            if conflict:
                result.conflicts.append(conflict)
        if skipped:
            logger.debug(f"Skipped {skipped} queued changes still in backoff")

        # Phase 2: pull
        for table in Table:
            try:
                pulled = self.refresh_table(table)
            except StoreError as e:
                logger.error(f"Error pulling {table.value}: {e}")
                result.errors.append(f"Error pulling {table.value}: {e}")
                continue
            result.pulled += pulled.pulled
            result.conflicts.extend(pulled.conflicts)

        if result.success or result.pushed or result.pulled:
            self._set_sync_meta("last_sync_time", utc_now())

        log_sync("push", result.pushed, errors=len(result.errors))
        log_sync("pull", result.pulled)
        logger.info(
            f"Sync complete: pushed={result.pushed}, pulled={result.pulled}, "
            f"conflicts={result.conflict_count}, errors={len(result.errors)}"
        )
        return result
