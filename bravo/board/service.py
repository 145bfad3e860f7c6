"""Request board service.

Clients publish requests; professionals apply as candidates; the client
accepts one proposal, which assigns the professional and opens the job with
its price held in escrow.
"""

import logging
from typing import TYPE_CHECKING, List, Optional

from bravo.config import Settings, get_settings
from bravo.errors import BravoError, InvalidInputError, UnauthorizedError
from bravo.jobs.models import Job, validate_price
from bravo.locks import KeyedLock
from bravo.session import Role, SessionContext
from bravo.storage.base import RecordStore, StoreError, Table, VersionConflictError
from bravo.utils import new_request_id, parse_datetime

from .models import DEFAULT_BUDGET, JobRequest, RequestStatus

if TYPE_CHECKING:
    from bravo.jobs.service import JobService

logger = logging.getLogger(__name__)


class RequestBoardError(BravoError):
    """Base exception for request board errors."""

    pass


class RequestBoard:
    """Service for publishing requests and matching them with professionals.

    Args:
        storage: Record store holding the requests table
        jobs: Job service used to open the job on acceptance
        config: Settings; defaults to ``get_settings()``
        locks: Per-key locks shared with the job service
    """

    def __init__(
        self,
        storage: RecordStore,
        jobs: "JobService",
        config: Optional[Settings] = None,
        locks: Optional[KeyedLock] = None,
    ):
        self.storage = storage
        self.jobs = jobs
        self.config = config or get_settings()
        self.locks = locks if locks is not None else jobs.locks

    # =========================================================================
    # Publishing and queries
    # =========================================================================

    def publish_request(
        self,
        session: SessionContext,
        category: str,
        title: str,
        description: str,
        location: str,
        budget: Optional[str] = None,
        images: Optional[List[str]] = None,
        client_avatar: str = "",
    ) -> JobRequest:
        """Publish a new open request on behalf of a client.

        Raises:
            UnauthorizedError: If the session is not a client
            InvalidInputError: If title, description or location is empty
        """
        if session.role is Role.CLIENT:
            pass
        elif session.role is Role.PROFESSIONAL:
            raise UnauthorizedError("Only clients can publish requests")
        else:
            raise UnauthorizedError(f"Unhandled role: {session.role}")

        fields = {"title": title, "description": description, "location": location}
        missing = [name for name, value in fields.items() if not value or not value.strip()]
        if missing:
            raise InvalidInputError(f"Required fields missing: {', '.join(missing)}")

        request = JobRequest(
            id=new_request_id(),
            client_id=session.email,
            client_name=session.name,
            client_avatar=client_avatar,
            category=category or "",
            title=title.strip(),
            description=description.strip(),
            location=location.strip(),
            budget=(budget or "").strip() or DEFAULT_BUDGET,
            images=list(images or []),
        )
        self.storage.compare_and_set(
            Table.REQUESTS, request.id, request.to_record(), expected_version=0
        )

        logger.info(f"Published request {request.id} by {session.email}")
        return request

    def get_request(self, request_id: str) -> Optional[JobRequest]:
        record = self.storage.get(Table.REQUESTS, request_id)
        return JobRequest.from_record(record.payload) if record else None

    def list_requests(
        self,
        status: Optional[RequestStatus] = None,
        client_id: Optional[str] = None,
    ) -> List[JobRequest]:
        """List requests, newest first."""
        requests = []
        for record in self.storage.get_all(Table.REQUESTS):
            try:
                requests.append(JobRequest.from_record(record.payload))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping unreadable request record {record.key}: {e}")

        if status is not None:
            status = RequestStatus(status)
            requests = [r for r in requests if r.status == status.value]
        if client_id is not None:
            requests = [r for r in requests if r.client_id == client_id]
        return sorted(requests, key=_created_sort_key, reverse=True)

    # =========================================================================
    # Candidacy and acceptance
    # =========================================================================

    def apply_to_request(self, request_id: str, professional_name: str) -> bool:
        """Add a professional to an open request's candidates.

        Returns:
            True if added; False if the request is missing, not open, or the
            professional already applied.

        Raises:
            InvalidInputError: If the professional name is empty
        """
        if not professional_name or not professional_name.strip():
            raise InvalidInputError("Professional name is required")

        with self.locks.hold(request_id):
            for attempt in range(self.config.cas_max_attempts):
                record = self.storage.get(Table.REQUESTS, request_id)
                if record is None:
                    return False
                request = JobRequest.from_record(record.payload)
                if not request.is_open:
                    logger.debug(f"Request {request_id} is {request.status}, not accepting candidates")
                    return False
                if professional_name in request.candidates:
                    return False

                request.candidates.append(professional_name)
                try:
                    self.storage.compare_and_set(
                        Table.REQUESTS,
                        request_id,
                        request.to_record(),
                        expected_version=record.version,
                    )
                except VersionConflictError:
                    logger.debug(f"Request {request_id} changed concurrently, retry {attempt + 1}")
                    continue

                logger.info(f"{professional_name} applied to request {request_id}")
                return True

        raise RequestBoardError(f"Could not apply to {request_id}: too many concurrent updates")

    def accept_proposal(
        self,
        request_id: str,
        professional_name: str,
        client_name: str,
        price: float,
    ) -> Optional[Job]:
        """Assign the professional and open the job with the price held.

        Returns:
            The new job, or None if the request is missing or no longer open
            (including losing a concurrent acceptance).

        Raises:
            InvalidInputError: If a name is empty or the price is invalid
            StoreError: If the job could not be persisted; the request is
                reopened before the error propagates
        """
        price = validate_price(price)
        if not professional_name or not professional_name.strip():
            raise InvalidInputError("Professional name is required")
        if not client_name or not client_name.strip():
            raise InvalidInputError("Client name is required")

        with self.locks.hold(request_id):
            if not self._assign(request_id, professional_name):
                return None

            try:
                job = self.jobs.open_job(
                    professional_name, client_name, price, request_id=request_id
                )
            except StoreError:
                logger.error(f"Could not open job for request {request_id}, reopening it")
                try:
                    self._unassign(request_id, professional_name)
                except StoreError as revert_error:
                    logger.error(f"Could not reopen request {request_id}: {revert_error}")
                raise

        logger.info(f"Request {request_id} accepted: {professional_name} at {price:.2f}")
        return job

    def _assign(self, request_id: str, professional_name: str) -> bool:
        for attempt in range(self.config.cas_max_attempts):
            record = self.storage.get(Table.REQUESTS, request_id)
            if record is None:
                return False
            request = JobRequest.from_record(record.payload)
            if not request.is_open:
                logger.info(f"Request {request_id} is already {request.status}")
                return False

            request.status = RequestStatus.IN_PROGRESS.value
            request.assigned_pro = professional_name
            try:
                self.storage.compare_and_set(
                    Table.REQUESTS,
                    request_id,
                    request.to_record(),
                    expected_version=record.version,
                )
            except VersionConflictError:
                logger.debug(f"Request {request_id} changed concurrently, retry {attempt + 1}")
                continue
            return True

        raise RequestBoardError(f"Could not accept {request_id}: too many concurrent updates")

    def _unassign(self, request_id: str, professional_name: str) -> None:
        """Reopen a request whose job could not be opened."""
        for _ in range(self.config.cas_max_attempts):
            record = self.storage.get(Table.REQUESTS, request_id)
            if record is None:
                return
            request = JobRequest.from_record(record.payload)
            if (
                request.status != RequestStatus.IN_PROGRESS.value
                or request.assigned_pro != professional_name
            ):
                return
            request.status = RequestStatus.OPEN.value
            request.assigned_pro = None
            try:
                self.storage.compare_and_set(
                    Table.REQUESTS,
                    request_id,
                    request.to_record(),
                    expected_version=record.version,
                )
            except VersionConflictError:
                continue
            return
        logger.error(f"Could not reopen request {request_id} after a failed acceptance")


def _created_sort_key(request: JobRequest):
    parsed = parse_datetime(request.created_at)
    return parsed.timestamp() if parsed else 0.0
