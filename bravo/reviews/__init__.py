"""Reviews unlocked by completed jobs."""

from bravo.reviews.models import Review, ReviewStats
from bravo.reviews.service import ReviewNotAllowedError, ReviewService, ReviewServiceError

__all__ = [
    "Review",
    "ReviewStats",
    "ReviewService",
    "ReviewServiceError",
    "ReviewNotAllowedError",
]
