"""Supabase-backed remote record store.

Each logical table maps to a Postgres table ``bravo_<table>``:

    create table bravo_jobs (
        id text primary key,
        payload jsonb not null,
        version integer not null default 1,
        updated_at timestamptz not null default now()
    );

``bravo_users`` is keyed by ``email`` instead of ``id``. Rows written by the
mobile app carry only the key and payload; missing metadata reads as
version 1 with no timestamp.
"""

import logging
import time
from typing import Any, Callable, Dict, List, Optional, TypeVar

import httpx
from postgrest.exceptions import APIError
from supabase import Client, ClientOptions, create_client

from bravo.config import Settings
from bravo.utils import utc_now

from .base import (
    StoredRecord,
    StoreError,
    StorePermissionError,
    StoreTimeoutError,
    StoreUnavailableError,
    Table,
    VersionConflictError,
)
from .retry import call_with_retry

logger = logging.getLogger(__name__)

T = TypeVar("T")

PAGE_SIZE = 500

# Postgres error codes surfaced by PostgREST
PG_INSUFFICIENT_PRIVILEGE = "42501"
PG_UNDEFINED_TABLE = "42P01"
PG_UNIQUE_VIOLATION = "23505"


class SupabaseRecordStore:
    """Remote record store over the Supabase REST API.

    Args:
        client: A configured Supabase client.
        retries: Extra attempts for transient failures (timeouts, network).
        backoff_base: First retry delay in seconds.
        backoff_cap: Maximum retry delay in seconds.
    """

    def __init__(
        self,
        client: Client,
        retries: int = 2,
        backoff_base: float = 0.5,
        backoff_cap: float = 30.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._client = client
        self.retries = retries
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: Settings) -> "SupabaseRecordStore":
        """Build a store from settings; requires URL and key."""
        if not settings.cloud_enabled:
            raise ValueError("BRAVO_SUPABASE_URL and BRAVO_SUPABASE_KEY must both be set")
        client = create_client(
            settings.supabase_url,
            settings.supabase_key,
            options=ClientOptions(postgrest_client_timeout=settings.remote_timeout),
        )
        return cls(
            client,
            retries=settings.remote_retries,
            backoff_base=settings.backoff_base,
            backoff_cap=settings.backoff_cap,
        )

    # === Error mapping ===

    def _execute(self, description: str, fn: Callable[[], T]) -> T:
        """Run one PostgREST call, translating failures into store errors."""

        def attempt() -> T:
            try:
                return fn()
            except httpx.TimeoutException as e:
                raise StoreTimeoutError(f"{description} timed out: {e}") from e
            except httpx.HTTPError as e:
                raise StoreUnavailableError(f"{description} failed: {e}") from e
            except APIError as e:
                code = getattr(e, "code", None)
                message = getattr(e, "message", None) or str(e)
                if code == PG_INSUFFICIENT_PRIVILEGE:
                    raise StorePermissionError(f"{description} denied: {message}") from e
                if code == PG_UNDEFINED_TABLE:
                    raise StoreError(f"{description}: table missing ({message})") from e
                if code == PG_UNIQUE_VIOLATION:
                    raise
                raise StoreError(f"{description} rejected: {message}") from e

        return call_with_retry(
            attempt,
            retries=self.retries,
            base=self.backoff_base,
            cap=self.backoff_cap,
            retry_on=(StoreUnavailableError,),
            sleep=self._sleep,
            description=description,
        )

    def _row_to_record(self, table: Table, row: Dict[str, Any]) -> StoredRecord:
        return StoredRecord(
            table=table,
            key=row[table.key_field],
            payload=row.get("payload") or {},
            version=row.get("version") or 1,
            updated_at=row.get("updated_at"),
        )

    # === Reads ===

    def get(self, table: Table, key: str) -> Optional[StoredRecord]:
        table = Table(table)
        result = self._execute(
            f"get {table.remote_name}:{key}",
            lambda: self._client.table(table.remote_name)
            .select("*")
            .eq(table.key_field, key)
            .limit(1)
            .execute(),
        )
        if not result.data:
            return None
        return self._row_to_record(table, result.data[0])

    def get_all(self, table: Table) -> List[StoredRecord]:
        table = Table(table)
        records: List[StoredRecord] = []
        offset = 0
        while True:
            start = offset
            result = self._execute(
                f"list {table.remote_name}",
                lambda: self._client.table(table.remote_name)
                .select("*")
                .order(table.key_field)
                .range(start, start + PAGE_SIZE - 1)
                .execute(),
            )
            rows = result.data or []
            records.extend(self._row_to_record(table, row) for row in rows)
            if len(rows) < PAGE_SIZE:
                break
            offset += PAGE_SIZE
        return records

    # === Writes ===

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
        row = {
            table.key_field: key,
            "payload": payload,
            "version": expected_version + 1,
            "updated_at": updated_at or utc_now(),
        }

        if expected_version == 0:
            try:
                result = self._execute(
                    f"insert {table.remote_name}:{key}",
                    lambda: self._client.table(table.remote_name).insert(row).execute(),
                )
            except APIError as e:
                current = self.get(table, key)
                raise VersionConflictError(
                    table.value, key, 0, current.version if current else None
                ) from e
        else:
            # Optimistic lock: only matches while the version is unchanged
            result = self._execute(
                f"update {table.remote_name}:{key}",
                lambda: self._client.table(table.remote_name)
                .update(row)
                .eq(table.key_field, key)
                .eq("version", expected_version)
                .execute(),
            )
            if not result.data:
                current = self.get(table, key)
                actual = current.version if current else None
                logger.warning(
                    f"Version conflict on {table.remote_name}:{key}: "
                    f"expected {expected_version}, found {actual}"
                )
                raise VersionConflictError(table.value, key, expected_version, actual)

        if result.data:
            return self._row_to_record(table, result.data[0])
        return StoredRecord(
            table=table,
            key=key,
            payload=payload,
            version=row["version"],
            updated_at=row["updated_at"],
        )

    def upsert(
        self, table: Table, key: str, payload: Dict[str, Any], durable: bool = False
    ) -> StoredRecord:
        """Unconditional write built on compare-and-set, retried on conflict."""
        table = Table(table)
        last_error: Optional[VersionConflictError] = None
        for _ in range(max(1, self.retries + 3)):
            current = self.get(table, key)
            expected = current.version if current else 0
            try:
                return self.compare_and_set(table, key, payload, expected)
            except VersionConflictError as e:
                last_error = e
        raise last_error

    # === Connectivity ===

    def health_check(self) -> Dict[str, Any]:
        """Probe the remote with a one-row read.

        Returns:
            Dict with 'healthy' and either 'latency_ms' or 'error'.
        """
        start = time.time()
        try:
            self._client.table(Table.USERS.remote_name).select(
                Table.USERS.key_field
            ).limit(1).execute()
        except (httpx.HTTPError, APIError) as e:
            logger.debug(f"Remote health check failed: {e}")
            return {"healthy": False, "error": str(e)}
        return {"healthy": True, "latency_ms": round((time.time() - start) * 1000, 2)}
