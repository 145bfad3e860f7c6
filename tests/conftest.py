"""
Pytest fixtures and test configuration for Bravo tests.
"""

from typing import Any, Dict, List, Optional

import pytest

from bravo.config import Settings, get_settings
from bravo.marketplace import Marketplace
from bravo.session import Role, SessionContext
from bravo.storage.base import StoredRecord, StoreTimeoutError, StoreUnavailableError, Table
from bravo.storage.memory import InMemoryRecordStore

CLIENT_NAME = "Anna Bianchi"
CLIENT_EMAIL = "anna@example.com"
PRO_NAME = "Mario Rossi"
PRO_EMAIL = "mario@example.com"


class FlakyRecordStore:
    """In-memory remote store that can be taken offline or made to fail reads and writes."""

    def __init__(self):
        self.inner = InMemoryRecordStore()
        self.offline = False
        self.fail_reads = 0
        self.fail_writes = 0
        self.write_calls = 0

    def _check(self, operation: str):
        if self.offline:
            raise StoreUnavailableError(f"{operation}: remote offline")

    def _check_read(self, operation: str):
        self._check(operation)
        if self.fail_reads > 0:
            self.fail_reads -= 1
            raise StoreTimeoutError(f"{operation}: timed out")

    def get(self, table: Table, key: str) -> Optional[StoredRecord]:
        self._check_read("get")
        return self.inner.get(table, key)

    def get_all(self, table: Table) -> List[StoredRecord]:
        self._check_read("get_all")
        return self.inner.get_all(table)

    def _check_write(self, operation: str):
        self._check(operation)
        self.write_calls += 1
        if self.fail_writes > 0:
            self.fail_writes -= 1
            raise StoreTimeoutError(f"{operation}: timed out")

    def upsert(self, table, key, payload: Dict[str, Any], durable: bool = False):
        self._check_write("upsert")
        return self.inner.upsert(table, key, payload)

    def compare_and_set(
        self, table, key, payload, expected_version, durable=False, updated_at=None
    ):
        self._check_write("compare_and_set")
        return self.inner.compare_and_set(
            table, key, payload, expected_version, updated_at=updated_at
        )

    def put_record(self, record: StoredRecord):
        self.inner.put_record(record)

    def health_check(self) -> Dict[str, Any]:
        return {"healthy": not self.offline}


@pytest.fixture(autouse=True)
def bravo_home(tmp_path, monkeypatch):
    """Keep logs and databases of every test inside its temp directory."""
    home = tmp_path / "bravo-home"
    monkeypatch.setenv("BRAVO_DATA_DIR", str(home))
    monkeypatch.delenv("BRAVO_SUPABASE_URL", raising=False)
    monkeypatch.delenv("BRAVO_SUPABASE_KEY", raising=False)
    get_settings.cache_clear()
    yield home
    get_settings.cache_clear()


@pytest.fixture
def settings(tmp_path):
    """Settings with no remote and no backoff delays."""
    return Settings(
        _env_file=None,
        data_dir=tmp_path / "data",
        backoff_base=0.0,
        remote_retries=0,
        sync_max_retries=3,
    )


@pytest.fixture
def memory_store():
    return InMemoryRecordStore()


@pytest.fixture
def flaky_remote():
    return FlakyRecordStore()


@pytest.fixture
def marketplace(memory_store, settings):
    """Marketplace over an in-memory store."""
    return Marketplace(storage=memory_store, config=settings)


@pytest.fixture
def client_session():
    return SessionContext(name=CLIENT_NAME, email=CLIENT_EMAIL, role=Role.CLIENT)


@pytest.fixture
def pro_session():
    return SessionContext(name=PRO_NAME, email=PRO_EMAIL, role=Role.PROFESSIONAL)


@pytest.fixture
def users(marketplace):
    """Register one client and one professional."""
    client = marketplace.wallet.register_user(CLIENT_EMAIL, CLIENT_NAME, Role.CLIENT)
    pro = marketplace.wallet.register_user(PRO_EMAIL, PRO_NAME, Role.PROFESSIONAL)
    return client, pro


@pytest.fixture
def open_request(marketplace, client_session, users):
    """An open request published by the client."""
    return marketplace.board.publish_request(
        client_session,
        category="Idraulica",
        title="Perdita sotto il lavello",
        description="Il sifone perde acqua da ieri sera",
        location="Milano",
    )


@pytest.fixture
def held_job(marketplace, open_request):
    """A job accepted at price 100 with its price held."""
    marketplace.board.apply_to_request(open_request.id, PRO_NAME)
    return marketplace.board.accept_proposal(open_request.id, PRO_NAME, CLIENT_NAME, 100)
