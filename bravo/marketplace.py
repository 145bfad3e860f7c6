"""Marketplace: the wired set of Bravo services over one record store."""

import logging
from typing import Optional

from bravo.board.service import RequestBoard
from bravo.config import Settings, get_settings
from bravo.jobs.service import JobService
from bravo.locks import KeyedLock
from bravo.reviews.service import ReviewService
from bravo.storage.base import RecordStore, SyncResult
from bravo.wallet.service import WalletService

logger = logging.getLogger(__name__)


class Marketplace:
    """Main interface to the marketplace engine.

    All services share one store and one set of per-key locks, so a job
    confirmation and a review on the same job serialize within the process.

    Examples:
        # Local-first store, syncing with Supabase when configured
        m = Marketplace.from_settings()

        # Explicit store (tests, scripts)
        m = Marketplace(storage=InMemoryRecordStore())
        job = m.board.accept_proposal(request_id, "Mario Rossi", "Anna", 100)
    """

    def __init__(self, storage: RecordStore, config: Optional[Settings] = None):
        self.config = config or get_settings()
        self.storage = storage
        self.locks = KeyedLock()

        self.wallet = WalletService(storage=storage, config=self.config)
        self.jobs = JobService(
            storage=storage, wallet=self.wallet, config=self.config, locks=self.locks
        )
        self.board = RequestBoard(
            storage=storage, jobs=self.jobs, config=self.config, locks=self.locks
        )
        self.reviews = ReviewService(storage=storage, config=self.config, locks=self.locks)

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "Marketplace":
        """Build the local SQLite store, with Supabase behind it when configured."""
        from bravo.storage.sqlite import SQLiteRecordStore

        settings = settings or get_settings()
        cloud = None
        if settings.cloud_enabled:
            from bravo.storage.cloud import SupabaseRecordStore

            cloud = SupabaseRecordStore.from_settings(settings)
        else:
            logger.info("Supabase not configured, running local-only")

        storage = SQLiteRecordStore(
            db_path=settings.resolve_db_path(), cloud_storage=cloud, settings=settings
        )
        return cls(storage=storage, config=settings)

    def sync(self) -> SyncResult:
        """Push local changes and pull remote ones. No-op for stores without sync."""
        sync = getattr(self.storage, "sync", None)
        if sync is None:
            return SyncResult()
        return sync()
