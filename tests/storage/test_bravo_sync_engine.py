"""Tests for the SQLite store's sync engine against a flaky remote."""

import pytest

from bravo.marketplace import Marketplace
from bravo.session import Role
from bravo.storage.base import (
    StoredRecord,
    StoreUnavailableError,
    Table,
    VersionConflictError,
)
from bravo.storage.sqlite import SQLiteRecordStore

OLD = "2000-01-01T00:00:00+00:00"
FUTURE = "2099-01-01T00:00:00+00:00"


@pytest.fixture
def store(tmp_path, settings, flaky_remote):
    return SQLiteRecordStore(
        db_path=tmp_path / "bravo.db", cloud_storage=flaky_remote, settings=settings
    )


def seed_remote(remote, table, key, payload, version=1, updated_at=OLD):
    remote.put_record(
        StoredRecord(table=table, key=key, payload=payload, version=version, updated_at=updated_at)
    )


class TestPushOnWrite:
    """Tests for pushing right after a local commit."""

    def test_write_pushes_immediately(self, store, flaky_remote):
        """With auto_push, an online write reaches the remote and leaves the queue."""
        store.upsert(Table.JOBS, "job_1", {"id": "job_1", "price": 100})

        remote = flaky_remote.inner.get(Table.JOBS, "job_1")
        assert remote.payload == {"id": "job_1", "price": 100}
        assert store.get_pending_sync_count() == 0

    def test_remote_keeps_local_commit_time(self, store, flaky_remote):
        written = store.upsert(Table.JOBS, "job_1", {"id": "job_1"})
        assert flaky_remote.inner.get(Table.JOBS, "job_1").updated_at == written.updated_at

    def test_offline_write_stays_queued(self, store, flaky_remote):
        """A non-durable write succeeds locally while the remote is down."""
        flaky_remote.offline = True
        store.upsert(Table.JOBS, "job_1", {"id": "job_1"})

        assert store.get_local(Table.JOBS, "job_1") is not None
        assert store.get_pending_sync_count() == 1
        assert flaky_remote.inner.get(Table.JOBS, "job_1") is None

    def test_durable_write_raises_when_offline(self, store, flaky_remote):
        """A durable write reports that it did not reach the remote."""
        flaky_remote.offline = True
        with pytest.raises(StoreUnavailableError):
            store.compare_and_set(Table.USERS, "a@x.it", {"email": "a@x.it"}, 0, durable=True)

        # The local commit stays queued for the next sync
        assert store.get_pending_sync_count() == 1

    def test_auto_push_disabled(self, tmp_path, settings, flaky_remote):
        settings.auto_push = False
        store = SQLiteRecordStore(
            db_path=tmp_path / "quiet.db", cloud_storage=flaky_remote, settings=settings
        )
        store.upsert(Table.JOBS, "job_1", {"id": "job_1"})

        assert flaky_remote.write_calls == 0
        assert store.get_pending_sync_count() == 1

        result = store.sync()
        assert result.pushed == 1
        assert flaky_remote.inner.get(Table.JOBS, "job_1") is not None


class TestReadThrough:
    """Tests for pulling on read."""

    def test_get_pulls_remote_record(self, store, flaky_remote):
        seed_remote(flaky_remote, Table.USERS, "m@x.it", {"email": "m@x.it", "name": "Mario"})

        record = store.get(Table.USERS, "m@x.it")
        assert record.payload["name"] == "Mario"
        assert store.get_local(Table.USERS, "m@x.it") is not None

    def test_get_all_pulls_table(self, store, flaky_remote):
        seed_remote(flaky_remote, Table.REVIEWS, "r1", {"id": "r1"})
        seed_remote(flaky_remote, Table.REVIEWS, "r2", {"id": "r2"})

        assert {r.key for r in store.get_all(Table.REVIEWS)} == {"r1", "r2"}

    def test_offline_read_serves_cache(self, store, flaky_remote):
        """Reads fall back to the cached copy when the remote is down."""
        store.upsert(Table.JOBS, "job_1", {"id": "job_1", "price": 100})
        flaky_remote.offline = True

        assert store.get(Table.JOBS, "job_1").payload["price"] == 100
        assert len(store.get_all(Table.JOBS)) == 1

    def test_remote_change_replaces_clean_local_row(self, store, flaky_remote):
        """Without a pending local change the remote copy is taken as is."""
        store.upsert(Table.JOBS, "job_1", {"id": "job_1", "v": 1})
        remote = flaky_remote.inner.get(Table.JOBS, "job_1")
        flaky_remote.inner.compare_and_set(
            Table.JOBS, "job_1", {"id": "job_1", "v": 2}, remote.version
        )

        assert store.get(Table.JOBS, "job_1").payload["v"] == 2


class TestConflicts:
    """Tests for reconciling blind writes, last-write-wins by commit time."""

    def test_cloud_wins_when_remote_is_newer(self, store, flaky_remote):
        """A remote commit later than the local change replaces it."""
        flaky_remote.offline = True
        store.upsert(Table.JOBS, "job_1", {"id": "job_1", "side": "local"})
        seed_remote(flaky_remote, Table.JOBS, "job_1", {"id": "job_1", "side": "cloud"},
                    updated_at=FUTURE)
        flaky_remote.offline = False

        result = store.sync()

        assert result.pushed == 0
        assert [c.resolution for c in result.conflicts] == ["cloud_wins"]
        assert store.get_local(Table.JOBS, "job_1").payload["side"] == "cloud"
        assert flaky_remote.inner.get(Table.JOBS, "job_1").payload["side"] == "cloud"
        assert store.get_pending_sync_count() == 0

        history = store.get_sync_conflicts()
        assert len(history) == 1
        assert history[0].local_payload["side"] == "local"
        assert history[0].cloud_payload["side"] == "cloud"

    def test_local_wins_when_local_is_newer(self, store, flaky_remote):
        """A local change later than the remote copy overwrites it."""
        flaky_remote.offline = True
        store.upsert(Table.JOBS, "job_1", {"id": "job_1", "side": "local"})
        seed_remote(flaky_remote, Table.JOBS, "job_1", {"id": "job_1", "side": "cloud"},
                    version=4, updated_at=OLD)
        flaky_remote.offline = False

        result = store.sync()

        assert result.pushed == 1
        assert [c.resolution for c in result.conflicts] == ["local_wins"]
        remote = flaky_remote.inner.get(Table.JOBS, "job_1")
        assert remote.payload["side"] == "local"
        assert remote.version == 5

    def test_durable_write_losing_to_cloud_raises_conflict(self, store, flaky_remote):
        """A durable push that loses reports a version conflict so callers re-read."""
        flaky_remote.offline = True
        store.upsert(Table.USERS, "a@x.it", {"email": "a@x.it", "walletBalance": 0})
        seed_remote(flaky_remote, Table.USERS, "a@x.it",
                    {"email": "a@x.it", "walletBalance": 95.0}, updated_at=FUTURE)
        flaky_remote.offline = False

        local = store.get_local(Table.USERS, "a@x.it")
        with pytest.raises(VersionConflictError):
            store.compare_and_set(
                Table.USERS,
                "a@x.it",
                {"email": "a@x.it", "walletBalance": 10.0},
                local.version,
                durable=True,
            )

        assert store.get_local(Table.USERS, "a@x.it").payload["walletBalance"] == 95.0

    def test_identical_payload_is_not_a_conflict(self, store, flaky_remote):
        flaky_remote.offline = True
        store.upsert(Table.JOBS, "job_1", {"id": "job_1"})
        seed_remote(flaky_remote, Table.JOBS, "job_1", {"id": "job_1"}, updated_at=FUTURE)
        flaky_remote.offline = False

        result = store.sync()
        assert result.conflicts == []
        assert store.get_pending_sync_count() == 0


class TestSyncRuns:
    """Tests for full sync runs, retries and the dead letter queue."""

    def test_sync_offline(self, store, flaky_remote):
        flaky_remote.offline = True
        result = store.sync()
        assert not result.success
        assert "Offline" in result.errors[0]

    def test_sync_pushes_backlog_and_records_time(self, store, flaky_remote):
        flaky_remote.offline = True
        store.upsert(Table.JOBS, "job_1", {"id": "job_1"})
        store.upsert(Table.REQUESTS, "req_1", {"id": "req_1"})
        flaky_remote.offline = False

        result = store.sync()

        assert result.success
        assert result.pushed == 2
        status = store.get_sync_status()
        assert status["pending"] == 0
        assert status["synced"] == 2
        assert status["last_sync_time"] is not None

    def test_sync_pulls_remote_records(self, store, flaky_remote):
        seed_remote(flaky_remote, Table.CHATS, "c1", {"id": "c1"})
        seed_remote(flaky_remote, Table.USERS, "m@x.it", {"email": "m@x.it"})

        result = store.sync()

        assert result.pulled == 2
        assert store.get_local(Table.CHATS, "c1") is not None

    def test_failures_dead_letter_at_limit(self, store, flaky_remote):
        """A change that keeps failing moves to the dead letter queue."""
        flaky_remote.fail_writes = 100
        store.upsert(Table.JOBS, "job_1", {"id": "job_1"})  # failure 1
        store.sync()  # failure 2
        result = store.sync()  # failure 3, the limit

        assert not result.success
        status = store.get_sync_status()
        assert status["pending"] == 0
        assert status["dead_letter"] == 1

        dead = store._sync_engine.get_dead_letters()
        assert dead[0].record_id == "job_1"
        assert "timed out" in dead[0].last_error

    def test_requeue_dead_letters(self, store, flaky_remote):
        flaky_remote.fail_writes = 100
        store.upsert(Table.JOBS, "job_1", {"id": "job_1"})
        store.sync()
        store.sync()

        flaky_remote.fail_writes = 0
        assert store.requeue_dead_letters() == 1
        assert store.get_pending_sync_count() == 1

        result = store.sync()
        assert result.pushed == 1
        assert flaky_remote.inner.get(Table.JOBS, "job_1") is not None

    def test_requeue_drops_superseded_entry(self, store, flaky_remote):
        """A dead letter with a newer pending change is dropped, not duplicated."""
        flaky_remote.fail_writes = 100
        store.upsert(Table.JOBS, "job_1", {"id": "job_1", "v": 1})
        store.sync()
        store.sync()
        flaky_remote.offline = True
        store.upsert(Table.JOBS, "job_1", {"id": "job_1", "v": 2})

        assert store.requeue_dead_letters() == 1
        status = store.get_sync_status()
        assert status["dead_letter"] == 0
        assert status["pending"] == 1

    def test_is_online_follows_health_check(self, store, flaky_remote):
        assert store.is_online() is True
        flaky_remote.offline = True
        assert store.is_online() is False


class TestCheckedWrites:
    """Compare-and-set writes push against the remote version they were based on."""

    def test_checked_write_pushes_against_base_version(self, store, flaky_remote):
        seed_remote(flaky_remote, Table.USERS, "m@x.it", {"email": "m@x.it", "walletBalance": 0})
        local = store.get(Table.USERS, "m@x.it")

        store.compare_and_set(
            Table.USERS, "m@x.it", {"email": "m@x.it", "walletBalance": 95.0}, local.version
        )

        remote = flaky_remote.inner.get(Table.USERS, "m@x.it")
        assert remote.payload["walletBalance"] == 95.0
        assert remote.version == 2
        assert store.get_pending_sync_count() == 0

    def test_checked_write_never_overwrites_moved_remote(self, store, flaky_remote):
        """A remote change made elsewhere wins even when its clock is behind."""
        seed_remote(flaky_remote, Table.JOBS, "job_1", {"id": "job_1", "proCompleted": False})
        local = store.get(Table.JOBS, "job_1")
        seed_remote(flaky_remote, Table.JOBS, "job_1",
                    {"id": "job_1", "proCompleted": False, "clientCompleted": True}, version=2)

        with pytest.raises(VersionConflictError):
            store.compare_and_set(
                Table.JOBS, "job_1", {"id": "job_1", "proCompleted": True}, local.version
            )

        assert flaky_remote.inner.get(Table.JOBS, "job_1").payload["clientCompleted"] is True
        assert store.get_local(Table.JOBS, "job_1").payload["clientCompleted"] is True
        assert store.get_pending_sync_count() == 0
        assert [c.resolution for c in store.get_sync_conflicts()] == ["cloud_wins"]

    def test_offline_checked_change_loses_to_moved_remote_on_sync(self, store, flaky_remote):
        seed_remote(flaky_remote, Table.JOBS, "job_1", {"id": "job_1", "v": 1})
        local = store.get(Table.JOBS, "job_1")
        flaky_remote.offline = True
        store.compare_and_set(Table.JOBS, "job_1", {"id": "job_1", "v": "local"}, local.version)
        seed_remote(flaky_remote, Table.JOBS, "job_1", {"id": "job_1", "v": "cloud"},
                    version=2, updated_at=OLD)
        flaky_remote.offline = False

        result = store.sync()

        assert result.pushed == 0
        assert [c.resolution for c in result.conflicts] == ["cloud_wins"]
        assert store.get_local(Table.JOBS, "job_1").payload["v"] == "cloud"

    def test_read_pushes_pending_change_first(self, store, flaky_remote):
        """A queued change of an unmoved record reaches the remote on the next read."""
        seed_remote(flaky_remote, Table.USERS, "m@x.it", {"email": "m@x.it", "walletBalance": 0})
        local = store.get(Table.USERS, "m@x.it")
        flaky_remote.offline = True
        with pytest.raises(StoreUnavailableError):
            store.compare_and_set(
                Table.USERS, "m@x.it", {"email": "m@x.it", "walletBalance": 95.0},
                local.version, durable=True,
            )
        flaky_remote.offline = False

        assert store.get(Table.USERS, "m@x.it").payload["walletBalance"] == 95.0
        assert flaky_remote.inner.get(Table.USERS, "m@x.it").payload["walletBalance"] == 95.0
        assert store.get_pending_sync_count() == 0


class TestTwoDevices:
    """Two local stores sharing one remote never drop each other's updates."""

    @pytest.fixture
    def devices(self, tmp_path, settings, flaky_remote):
        def device(name):
            store = SQLiteRecordStore(
                db_path=tmp_path / f"{name}.db", cloud_storage=flaky_remote, settings=settings
            )
            return Marketplace(storage=store, config=settings)

        return device("phone"), device("laptop")

    def test_wallet_credits_from_both_devices_add_up(self, devices, flaky_remote):
        """A credit built on a stale cached balance is retried instead of overwriting."""
        phone, laptop = devices
        phone.wallet.register_user("mario@example.com", "Mario Rossi", Role.PROFESSIONAL)
        laptop.wallet.get_user("mario@example.com")

        phone.wallet.credit_release("Mario Rossi", "job_1", 95.0)
        # The laptop's next two reads miss the remote and see its cached balance of 0
        flaky_remote.fail_reads = 2
        laptop.wallet.credit_release("Mario Rossi", "job_2", 190.0)

        remote = flaky_remote.inner.get(Table.USERS, "mario@example.com").payload
        assert remote["walletBalance"] == 285.0
        assert sorted(remote["releasedJobIds"]) == ["job_1", "job_2"]
        assert phone.wallet.get_balance("mario@example.com") == 285.0

    def test_confirmations_from_both_devices_complete_the_job(
        self, devices, flaky_remote, client_session
    ):
        phone, laptop = devices
        phone.wallet.register_user("anna@example.com", "Anna Bianchi", Role.CLIENT)
        phone.wallet.register_user("mario@example.com", "Mario Rossi", Role.PROFESSIONAL)
        request = phone.board.publish_request(
            client_session, "Idraulica", "Perdita", "Il sifone perde", "Milano"
        )
        phone.board.apply_to_request(request.id, "Mario Rossi")
        job = phone.board.accept_proposal(request.id, "Mario Rossi", "Anna Bianchi", 100)
        laptop.jobs.get_job(job.id)
        laptop.wallet.list_users()

        phone.jobs.set_job_completed(job.id, Role.CLIENT)
        # The laptop still believes nobody has confirmed
        flaky_remote.fail_reads = 1
        result = laptop.jobs.set_job_completed(job.id, Role.PROFESSIONAL)

        assert result.is_fully_completed is True
        remote_job = flaky_remote.inner.get(Table.JOBS, job.id).payload
        assert remote_job["clientCompleted"] is True
        assert remote_job["proCompleted"] is True
        assert remote_job["escrowStatus"] == "released"
        remote_user = flaky_remote.inner.get(Table.USERS, "mario@example.com").payload
        assert remote_user["walletBalance"] == 95.0
