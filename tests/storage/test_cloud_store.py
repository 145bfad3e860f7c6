"""Tests for SupabaseRecordStore against a fake PostgREST client."""

from types import SimpleNamespace
from unittest.mock import MagicMock

import httpx
import pytest
from postgrest.exceptions import APIError

from bravo.config import Settings
from bravo.storage import cloud as cloud_module
from bravo.storage.base import (
    StoreError,
    StorePermissionError,
    StoreTimeoutError,
    StoreUnavailableError,
    Table,
    VersionConflictError,
)
from bravo.storage.cloud import PAGE_SIZE, SupabaseRecordStore


class FakeTable:
    """Rows of one remote table plus queued failures."""

    def __init__(self, key_field: str):
        self.key_field = key_field
        self.rows = []
        self.errors = []
        self.operations = []


class FakeQuery:
    """Just enough of the PostgREST builder for the record store."""

    def __init__(self, table: FakeTable):
        self.table = table
        self.operation = "select"
        self.filters = []
        self.row = None
        self.window = None
        self.max_rows = None
        self.order_by = None

    def select(self, *columns):
        self.operation = "select"
        return self

    def insert(self, row):
        self.operation = "insert"
        self.row = row
        return self

    def update(self, row):
        self.operation = "update"
        self.row = row
        return self

    def eq(self, column, value):
        self.filters.append((column, value))
        return self

    def order(self, column):
        self.order_by = column
        return self

    def range(self, start, end):
        self.window = (start, end)
        return self

    def limit(self, n):
        self.max_rows = n
        return self

    def _matches(self, row):
        return all(row.get(column) == value for column, value in self.filters)

    def execute(self):
        self.table.operations.append(self.operation)
        if self.table.errors:
            raise self.table.errors.pop(0)

        if self.operation == "insert":
            key = self.row[self.table.key_field]
            if any(r[self.table.key_field] == key for r in self.table.rows):
                raise APIError({"code": "23505", "message": "duplicate key value"})
            self.table.rows.append(dict(self.row))
            return SimpleNamespace(data=[dict(self.row)])

        if self.operation == "update":
            updated = []
            for row in self.table.rows:
                if self._matches(row):
                    row.update(self.row)
                    updated.append(dict(row))
            return SimpleNamespace(data=updated)

        rows = [dict(r) for r in self.table.rows if self._matches(r)]
        if self.order_by:
            rows.sort(key=lambda r: r[self.order_by])
        if self.window:
            start, end = self.window
            rows = rows[start : end + 1]
        if self.max_rows is not None:
            rows = rows[: self.max_rows]
        return SimpleNamespace(data=rows)


class FakeSupabaseClient:
    def __init__(self):
        self.tables = {}

    def table(self, name):
        key_field = "email" if name == "bravo_users" else "id"
        return FakeQuery(self.tables.setdefault(name, FakeTable(key_field)))

    def rows(self, table: Table):
        return self.table(table.remote_name).table.rows

    def fail_next(self, table: Table, *errors):
        self.table(table.remote_name).table.errors.extend(errors)


@pytest.fixture
def fake_client():
    return FakeSupabaseClient()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def cloud_store(fake_client, sleeps):
    return SupabaseRecordStore(fake_client, retries=2, backoff_base=0.1, sleep=sleeps.append)


class TestReads:
    """Tests for get and get_all."""

    def test_get_missing(self, cloud_store):
        assert cloud_store.get(Table.JOBS, "job_1") is None

    def test_get_maps_row(self, cloud_store, fake_client):
        fake_client.rows(Table.JOBS).append(
            {
                "id": "job_1",
                "payload": {"id": "job_1", "price": 100},
                "version": 3,
                "updated_at": "2025-01-01T00:00:00+00:00",
            }
        )
        record = cloud_store.get(Table.JOBS, "job_1")
        assert record.payload["price"] == 100
        assert record.version == 3
        assert record.updated_at == "2025-01-01T00:00:00+00:00"

    def test_rows_without_metadata(self, cloud_store, fake_client):
        """Rows written by the app alone read as version 1."""
        fake_client.rows(Table.USERS).append(
            {"email": "anna@example.com", "payload": {"email": "anna@example.com"}}
        )
        record = cloud_store.get(Table.USERS, "anna@example.com")
        assert record.version == 1
        assert record.updated_at is None

    def test_get_all_pages(self, cloud_store, fake_client):
        """get_all keeps reading until a short page."""
        for i in range(PAGE_SIZE + 3):
            fake_client.rows(Table.REVIEWS).append(
                {"id": f"r{i:04d}", "payload": {"id": f"r{i:04d}"}}
            )
        records = cloud_store.get_all(Table.REVIEWS)
        assert len(records) == PAGE_SIZE + 3
        assert fake_client.table("bravo_reviews").table.operations == ["select", "select"]


class TestWrites:
    """Tests for compare_and_set and upsert."""

    def test_create(self, cloud_store, fake_client):
        record = cloud_store.compare_and_set(Table.JOBS, "job_1", {"id": "job_1"}, 0)
        assert record.version == 1
        assert fake_client.rows(Table.JOBS)[0]["payload"] == {"id": "job_1"}

    def test_create_existing_conflicts(self, cloud_store):
        """A unique violation on insert becomes a version conflict."""
        cloud_store.compare_and_set(Table.JOBS, "job_1", {"id": "job_1"}, 0)
        with pytest.raises(VersionConflictError) as exc_info:
            cloud_store.compare_and_set(Table.JOBS, "job_1", {"id": "job_1"}, 0)
        assert exc_info.value.actual == 1

    def test_update_matching_version(self, cloud_store):
        cloud_store.compare_and_set(Table.JOBS, "job_1", {"id": "job_1", "price": 1}, 0)
        record = cloud_store.compare_and_set(Table.JOBS, "job_1", {"id": "job_1", "price": 2}, 1)
        assert record.version == 2
        assert cloud_store.get(Table.JOBS, "job_1").payload["price"] == 2

    def test_update_stale_version(self, cloud_store):
        """The version filter matches nothing, so the write is rejected."""
        cloud_store.compare_and_set(Table.JOBS, "job_1", {"id": "job_1"}, 0)
        cloud_store.compare_and_set(Table.JOBS, "job_1", {"id": "job_1", "v": 2}, 1)
        with pytest.raises(VersionConflictError) as exc_info:
            cloud_store.compare_and_set(Table.JOBS, "job_1", {"id": "job_1", "v": 3}, 1)
        assert exc_info.value.actual == 2
        assert cloud_store.get(Table.JOBS, "job_1").payload["v"] == 2

    def test_updated_at_override(self, cloud_store, fake_client):
        cloud_store.compare_and_set(
            Table.JOBS, "job_1", {"id": "job_1"}, 0, updated_at="2025-03-01T10:00:00+00:00"
        )
        assert fake_client.rows(Table.JOBS)[0]["updated_at"] == "2025-03-01T10:00:00+00:00"

    def test_upsert_creates_and_replaces(self, cloud_store):
        cloud_store.upsert(Table.REVIEWS, "r1", {"id": "r1", "rating": 4})
        record = cloud_store.upsert(Table.REVIEWS, "r1", {"id": "r1", "rating": 5})
        assert record.version == 2
        assert cloud_store.get(Table.REVIEWS, "r1").payload["rating"] == 5


class TestErrorMapping:
    """Tests for translating client failures into store errors."""

    def test_timeout_retried_then_succeeds(self, cloud_store, fake_client, sleeps):
        """Transient timeouts are retried with backoff."""
        fake_client.fail_next(Table.JOBS, httpx.ConnectTimeout("slow"), httpx.ReadTimeout("slow"))
        assert cloud_store.get(Table.JOBS, "job_1") is None
        assert sleeps == [0.1, 0.2]

    def test_timeout_exhausted(self, cloud_store, fake_client):
        fake_client.fail_next(Table.JOBS, *[httpx.ConnectTimeout("slow")] * 3)
        with pytest.raises(StoreTimeoutError):
            cloud_store.get(Table.JOBS, "job_1")

    def test_network_error_is_unavailable(self, cloud_store, fake_client):
        fake_client.fail_next(Table.JOBS, *[httpx.ConnectError("refused")] * 3)
        with pytest.raises(StoreUnavailableError):
            cloud_store.get_all(Table.JOBS)

    def test_permission_denied(self, cloud_store, fake_client):
        """Row level security rejections are not retried."""
        fake_client.fail_next(
            Table.USERS, APIError({"code": "42501", "message": "permission denied"})
        )
        with pytest.raises(StorePermissionError):
            cloud_store.get(Table.USERS, "anna@example.com")
        assert fake_client.table("bravo_users").table.operations == ["select"]

    def test_missing_table(self, cloud_store, fake_client):
        fake_client.fail_next(
            Table.CHATS, APIError({"code": "42P01", "message": "relation does not exist"})
        )
        with pytest.raises(StoreError, match="table missing"):
            cloud_store.get_all(Table.CHATS)


class TestHealthCheck:
    def test_healthy(self, cloud_store):
        status = cloud_store.health_check()
        assert status["healthy"] is True
        assert "latency_ms" in status

    def test_unhealthy(self, cloud_store, fake_client):
        fake_client.fail_next(Table.USERS, httpx.ConnectError("refused"))
        status = cloud_store.health_check()
        assert status["healthy"] is False
        assert "refused" in status["error"]


class TestFromSettings:
    def test_requires_credentials(self):
        with pytest.raises(ValueError, match="SUPABASE"):
            SupabaseRecordStore.from_settings(Settings(_env_file=None))

    def test_builds_client(self, monkeypatch):
        create_client = MagicMock(return_value=FakeSupabaseClient())
        monkeypatch.setattr(cloud_module, "create_client", create_client)
        settings = Settings(
            _env_file=None,
            supabase_url="https://example.supabase.co",
            supabase_key="anon-key",
            remote_retries=4,
        )

        store = SupabaseRecordStore.from_settings(settings)

        assert store.retries == 4
        args = create_client.call_args[0]
        assert args == ("https://example.supabase.co", "anon-key")
