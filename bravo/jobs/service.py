"""Escrow and job engine.

Business logic for the job lifecycle: opening a job with its price held,
dual confirmation, and the single release that charges the commission and
credits the professional's wallet.

Every read-modify-write of a job runs under a per-job lock and commits with
compare-and-set, so the release branch runs once per job even when both
parties confirm at the same moment.
"""

import logging
from typing import List, Optional

from bravo.board.models import JobRequest, RequestStatus
from bravo.config import Settings, get_settings
from bravo.errors import BravoError, InvalidInputError
from bravo.locks import KeyedLock
from bravo.logging_config import log_hold, log_release
from bravo.session import Role
from bravo.storage.base import RecordStore, Table, VersionConflictError
from bravo.utils import new_job_id, parse_datetime
from bravo.wallet.service import WalletNotFoundError, WalletService

from .models import CompletionResult, EscrowStatus, Job, JobStatus, validate_price

logger = logging.getLogger(__name__)


class JobServiceError(BravoError):
    """Base exception for job service errors."""

    pass


class JobService:
    """Service for job lifecycle and escrow settlement.

    Args:
        storage: Record store holding jobs and requests
        wallet: Wallet service credited at release
        config: Settings; defaults to ``get_settings()``
        locks: Per-key locks; pass the same instance to every service that
            writes jobs so they serialize with each other
    """

    def __init__(
        self,
        storage: RecordStore,
        wallet: WalletService,
        config: Optional[Settings] = None,
        locks: Optional[KeyedLock] = None,
    ):
        self.storage = storage
        self.wallet = wallet
        self.config = config or get_settings()
        self.locks = locks if locks is not None else KeyedLock()

    # =========================================================================
    # Creation and queries
    # =========================================================================

    def open_job(
        self,
        professional_name: str,
        client_name: str,
        price: float,
        request_id: Optional[str] = None,
    ) -> Job:
        """Open a job with its price held in escrow.

        Raises:
            InvalidInputError: If a name is empty or the price is invalid
        """
        price = validate_price(price)
        if not professional_name or not professional_name.strip():
            raise InvalidInputError("Professional name is required")
        if not client_name or not client_name.strip():
            raise InvalidInputError("Client name is required")

        job = Job(
            id=new_job_id(),
            professional_name=professional_name,
            client_name=client_name,
            price=price,
            request_id=request_id,
        )
        self.storage.compare_and_set(Table.JOBS, job.id, job.to_record(), expected_version=0)

        logger.info(f"Opened job {job.id}: {client_name} -> {professional_name} for {price:.2f}")
        log_hold(job.id, price, professional_name, client_name)
        return job

    def get_job(self, job_id: str) -> Optional[Job]:
        record = self.storage.get(Table.JOBS, job_id)
        return Job.from_record(record.payload) if record else None

    def list_jobs(
        self,
        professional_name: Optional[str] = None,
        client_name: Optional[str] = None,
        status: Optional[JobStatus] = None,
    ) -> List[Job]:
        """List jobs, newest first, with optional filters."""
        jobs = self._load_jobs()
        if professional_name is not None:
            jobs = [j for j in jobs if j.professional_name == professional_name]
        if client_name is not None:
            jobs = [j for j in jobs if j.client_name == client_name]
        if status is not None:
            status = JobStatus(status)
            jobs = [j for j in jobs if j.status == status.value]
        return sorted(jobs, key=_created_sort_key, reverse=True)

    def _load_jobs(self) -> List[Job]:
        jobs = []
        for record in self.storage.get_all(Table.JOBS):
            try:
                jobs.append(Job.from_record(record.payload))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping unreadable job record {record.key}: {e}")
        return jobs

    def get_platform_revenue(self) -> float:
        """Total commission retained by the platform."""
        return sum(j.commission_amount for j in self._load_jobs())

    # =========================================================================
    # Completion and release
    # =========================================================================

    def set_job_completed(
        self,
        job_id: str,
        confirming_role: Role,
        work_report: Optional[str] = None,
    ) -> Optional[CompletionResult]:
        """Record a party's completion confirmation.

        When this confirmation completes the job, the escrow is released in
        the same write: commission charged, the professional's wallet
        credited, and the linked request marked completed.

        Args:
            job_id: Job to confirm
            confirming_role: Which party confirms
            work_report: Professional's report; ignored for the client

        Returns:
            The updated job and whether this call completed it, or None if
            the job does not exist.

        Raises:
            InvalidInputError: If the role is unknown
            WalletNotFoundError: If the professional has no account. Both
                confirmations are kept and the job completes with its escrow
                held; ``settle_job`` (or a repeated confirmation) releases it
                once the account exists
            StoreError: If a write could not be persisted
        """
        try:
            role = Role.coerce(confirming_role)
        except ValueError as e:
            raise InvalidInputError(str(e)) from e

        with self.locks.hold(job_id):
            for attempt in range(self.config.cas_max_attempts):
                record = self.storage.get(Table.JOBS, job_id)
                if record is None:
                    return None
                before = Job.from_record(record.payload)
                job = Job.from_record(record.payload)

                completed_now = job.confirm(role, work_report)
                if job == before:
                    if job.is_completed and not job.is_released:
                        # Completed while the professional had no wallet
                        settled = self.settle_job(job_id)
                        return CompletionResult(job=settled, is_fully_completed=False)
                    # Repeated confirmation: nothing to write
                    self._sync_request(job)
                    return CompletionResult(job=job, is_fully_completed=False)

                released_now = job.is_released and not before.is_released
                wallet_missing = None
                if released_now:
                    # Idempotent per job, so a retry after a lost write is safe
                    try:
                        self.wallet.credit_release(
                            job.professional_name, job.id, job.pro_earning
                        )
                    except WalletNotFoundError as e:
                        # Keep both confirmations; the escrow stays held for settle_job
                        job.escrow_status = EscrowStatus.HELD.value
                        job.commission_amount = 0.0
                        released_now = False
                        wallet_missing = e

                try:
                    self.storage.compare_and_set(
                        Table.JOBS,
                        job.id,
                        job.to_record(),
                        expected_version=record.version,
                        durable=released_now,
                    )
                except VersionConflictError:
                    logger.debug(f"Job {job_id} changed concurrently, retry {attempt + 1}")
                    continue

                if completed_now:
                    logger.info(f"Job {job.id} completed by {role.value} confirmation")
                if released_now:
                    log_release(job.id, job.price, job.commission_amount, job.pro_earning)
                self._sync_request(job)
                if wallet_missing is not None:
                    logger.warning(
                        f"Job {job.id} completed but escrow held: {wallet_missing}; "
                        f"settle it once the account exists"
                    )
                    raise wallet_missing
                return CompletionResult(job=job, is_fully_completed=completed_now)

        raise JobServiceError(f"Could not update job {job_id}: too many concurrent updates")

    def settle_job(self, job_id: str) -> Optional[Job]:
        """Re-apply the side effects of a completed job.

        Credits the wallet and marks the linked request completed if an
        earlier attempt stopped part way. Jobs still in progress are
        returned unchanged.
        """
        with self.locks.hold(job_id):
            for attempt in range(self.config.cas_max_attempts):
                record = self.storage.get(Table.JOBS, job_id)
                if record is None:
                    return None
                job = Job.from_record(record.payload)
                if not job.is_completed:
                    return job

                if not job.is_released:
                    job.release()
                    self.wallet.credit_release(job.professional_name, job.id, job.pro_earning)
                    try:
                        self.storage.compare_and_set(
                            Table.JOBS,
                            job.id,
                            job.to_record(),
                            expected_version=record.version,
                            durable=True,
                        )
                    except VersionConflictError:
                        continue
                    log_release(job.id, job.price, job.commission_amount, job.pro_earning)
                else:
                    self.wallet.credit_release(job.professional_name, job.id, job.pro_earning)

                self._sync_request(job)
                logger.info(f"Settled job {job.id}")
                return job

        raise JobServiceError(f"Could not settle job {job_id}: too many concurrent updates")

    def _sync_request(self, job: Job) -> None:
        """Mark the job's request completed once the job is."""
        if not job.is_completed or not job.request_id:
            return

        with self.locks.hold(job.request_id):
            for _ in range(self.config.cas_max_attempts):
                record = self.storage.get(Table.REQUESTS, job.request_id)
                if record is None:
                    logger.warning(f"Job {job.id} links to missing request {job.request_id}")
                    return
                request = JobRequest.from_record(record.payload)
                if request.status == RequestStatus.COMPLETED.value:
                    return
                request.status = RequestStatus.COMPLETED.value
                if not request.assigned_pro:
                    request.assigned_pro = job.professional_name
                try:
                    self.storage.compare_and_set(
                        Table.REQUESTS,
                        request.id,
                        request.to_record(),
                        expected_version=record.version,
                    )
                except VersionConflictError:
                    continue
                logger.info(f"Request {request.id} completed with job {job.id}")
                return

        raise JobServiceError(
            f"Could not complete request {job.request_id}: too many concurrent updates"
        )


def _created_sort_key(job: Job):
    parsed = parse_datetime(job.created_at)
    return parsed.timestamp() if parsed else 0.0
