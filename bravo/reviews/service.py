"""Review service.

A client may review a professional once per completed job between them.
Submitting a review consumes one eligible job by setting its
``clientReviewed`` flag, which never clears.

Read operations degrade to empty results when the store is unavailable;
writes propagate store errors.
"""

import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Optional

from bravo.config import Settings, get_settings
from bravo.errors import BravoError, InvalidInputError, UnauthorizedError
from bravo.jobs.models import Job
from bravo.locks import KeyedLock
from bravo.session import Role, SessionContext
from bravo.storage.base import RecordStore, StoreError, Table, VersionConflictError
from bravo.utils import new_review_id, parse_datetime

from .models import Review, ReviewStats

logger = logging.getLogger(__name__)


class ReviewServiceError(BravoError):
    """Base exception for review service errors."""

    pass


class ReviewNotAllowedError(ReviewServiceError):
    """Raised when the client has no completed, unreviewed job with the professional."""

    pass


class ReviewService:
    """Service for review eligibility, submission and aggregation.

    Args:
        storage: Record store holding jobs and reviews
        config: Settings; defaults to ``get_settings()``
        locks: Per-key locks shared with the job service
    """

    def __init__(
        self,
        storage: RecordStore,
        config: Optional[Settings] = None,
        locks: Optional[KeyedLock] = None,
    ):
        self.storage = storage
        self.config = config or get_settings()
        self.locks = locks if locks is not None else KeyedLock()

    # =========================================================================
    # Eligibility
    # =========================================================================

    def _reviewable_jobs(self, client_name: str, professional_name: str) -> List[Job]:
        """Completed, unreviewed jobs for the pair, oldest first."""
        jobs = []
        for record in self.storage.get_all(Table.JOBS):
            try:
                job = Job.from_record(record.payload)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping unreadable job record {record.key}: {e}")
                continue
            if (
                job.client_name == client_name
                and job.professional_name == professional_name
                and job.is_completed
                and not job.client_reviewed
            ):
                jobs.append(job)
        return sorted(jobs, key=lambda j: _timestamp(j.created_at))

    def can_review(self, client_name: str, professional_name: str) -> bool:
        """Whether the client has a completed job with the professional left to review."""
        try:
            return bool(self._reviewable_jobs(client_name, professional_name))
        except StoreError as e:
            logger.warning(f"Cannot check review eligibility, store unavailable: {e}")
            return False

    def mark_job_as_reviewed(self, client_name: str, professional_name: str) -> Optional[Job]:
        """Consume the first eligible job of the pair.

        Returns:
            The job now flagged as reviewed, or None if none was eligible.
        """
        for _ in range(self.config.cas_max_attempts):
            candidates = self._reviewable_jobs(client_name, professional_name)
            if not candidates:
                return None
            target = candidates[0]
            if self._flag_reviewed(target.id):
                logger.info(f"Job {target.id} marked as reviewed by {client_name}")
                target.client_reviewed = True
                return target
            # Another caller consumed this job first; look again
        raise ReviewServiceError(
            f"Could not mark a job reviewed for {client_name}: too many concurrent updates"
        )

    def _flag_reviewed(self, job_id: str) -> bool:
        with self.locks.hold(job_id):
            for _ in range(self.config.cas_max_attempts):
                record = self.storage.get(Table.JOBS, job_id)
                if record is None:
                    return False
                job = Job.from_record(record.payload)
                if not job.is_completed or job.client_reviewed:
                    return False
                job.client_reviewed = True
                try:
                    self.storage.compare_and_set(
                        Table.JOBS, job_id, job.to_record(), expected_version=record.version
                    )
                except VersionConflictError:
                    continue
                return True
        return False

    # =========================================================================
    # Writes
    # =========================================================================

    def add_review(self, professional_name: str, review: Review) -> Review:
        """Store a review under the professional's name."""
        review.professional_name = professional_name
        self.storage.upsert(Table.REVIEWS, review.id, review.to_record())
        logger.info(f"Review {review.id} added for {professional_name}")
        return review

    def add_review_response(
        self,
        review_id: str,
        text: str,
        professional_name: Optional[str] = None,
    ) -> Optional[Review]:
        """Set the professional's reply to a review. A later reply replaces it.

        Args:
            review_id: Review to answer
            text: Reply text
            professional_name: When given, must own the review

        Returns:
            The updated review, or None if it does not exist.

        Raises:
            InvalidInputError: If the text is empty
            UnauthorizedError: If the review belongs to another professional
        """
        if not text or not text.strip():
            raise InvalidInputError("Response text cannot be empty")

        for _ in range(self.config.cas_max_attempts):
            record = self.storage.get(Table.REVIEWS, review_id)
            if record is None:
                return None
            review = Review.from_record(record.payload)
            if professional_name is not None and review.professional_name != professional_name:
                raise UnauthorizedError(
                    f"Review {review_id} does not belong to {professional_name}"
                )
            review.response = text.strip()
            try:
                self.storage.compare_and_set(
                    Table.REVIEWS, review_id, review.to_record(), expected_version=record.version
                )
            except VersionConflictError:
                continue
            return review

        raise ReviewServiceError(f"Could not update review {review_id}: too many concurrent updates")

    def submit_review(
        self,
        session: SessionContext,
        professional_name: str,
        rating: int,
        text: str,
        job_title: Optional[str] = None,
    ) -> Review:
        """Submit a client's review and consume the job that allowed it.

        Raises:
            UnauthorizedError: If the session is not a client
            InvalidInputError: If the rating or text is invalid
            ReviewNotAllowedError: If no completed, unreviewed job exists
        """
        if session.role is Role.CLIENT:
            pass
        elif session.role is Role.PROFESSIONAL:
            raise UnauthorizedError("Only clients can write reviews")
        else:
            raise UnauthorizedError(f"Unhandled role: {session.role}")

        text = (text or "").strip()
        if len(text) < self.config.review_min_length:
            raise InvalidInputError(
                f"Review text must be at least {self.config.review_min_length} characters"
            )

        with self.locks.hold(f"review:{session.name}:{professional_name}"):
            if not self._reviewable_jobs(session.name, professional_name):
                raise ReviewNotAllowedError(
                    f"{session.name} has no completed job to review with {professional_name}"
                )
            try:
                review = Review(
                    id=new_review_id(),
                    client_name=session.name,
                    rating=rating,
                    text=text,
                    job_title=job_title,
                )
            except ValueError as e:
                raise InvalidInputError(str(e)) from e

            self.add_review(professional_name, review)
            self.mark_job_as_reviewed(session.name, professional_name)
        return review

    # =========================================================================
    # Reads
    # =========================================================================

    def list_reviews(self, professional_name: str) -> List[Review]:
        """Reviews of a professional, newest first."""
        try:
            records = self.storage.get_all(Table.REVIEWS)
        except StoreError as e:
            logger.warning(f"Cannot list reviews, store unavailable: {e}")
            return []

        reviews = []
        for record in records:
            if record.payload.get("professionalName") != professional_name:
                continue
            try:
                reviews.append(Review.from_record(record.payload))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping unreadable review record {record.key}: {e}")
        return sorted(reviews, key=lambda r: _timestamp(r.date), reverse=True)

    def get_review_stats(self, professional_name: str) -> ReviewStats:
        """Review count and mean rating (one decimal) of a professional."""
        reviews = self.list_reviews(professional_name)
        if not reviews:
            return ReviewStats(count=0, rating=0.0, reviews=[])
        average = sum(r.rating for r in reviews) / len(reviews)
        rating = Decimal(str(average)).quantize(Decimal("0.1"), rounding=ROUND_HALF_UP)
        return ReviewStats(count=len(reviews), rating=float(rating), reviews=reviews)


def _timestamp(value: str) -> float:
    parsed = parse_datetime(value)
    return parsed.timestamp() if parsed else 0.0
