"""Review data model."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from bravo.utils import utc_now

MIN_RATING = 1
MAX_RATING = 5

_REVIEW_KEYS = frozenset(
    {"id", "clientName", "professionalName", "rating", "text", "date", "response", "jobTitle"}
)


@dataclass
class Review:
    """A client's review of a professional, with an optional reply."""

    id: str
    client_name: str
    rating: int
    text: str
    professional_name: str = ""
    date: str = field(default_factory=utc_now)
    response: Optional[str] = None
    job_title: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict, repr=False)

    def __post_init__(self):
        if isinstance(self.rating, bool) or not isinstance(self.rating, int):
            raise ValueError(f"Rating must be an integer, got {self.rating!r}")
        if not MIN_RATING <= self.rating <= MAX_RATING:
            raise ValueError(f"Rating must be between {MIN_RATING} and {MAX_RATING}")

    def to_record(self) -> Dict[str, Any]:
        record = dict(self.extra)
        record.update(
            {
                "id": self.id,
                "clientName": self.client_name,
                "professionalName": self.professional_name,
                "rating": self.rating,
                "text": self.text,
                "date": self.date,
            }
        )
        if self.response is not None:
            record["response"] = self.response
        if self.job_title:
            record["jobTitle"] = self.job_title
        return record

    @classmethod
    def from_record(cls, data: Dict[str, Any]) -> "Review":
        rating = data.get("rating")
        if isinstance(rating, float) and rating.is_integer():
            rating = int(rating)
        return cls(
            id=data["id"],
            client_name=data.get("clientName", ""),
            professional_name=data.get("professionalName", ""),
            rating=rating,
            text=data.get("text", ""),
            date=data.get("date") or "",
            response=data.get("response"),
            job_title=data.get("jobTitle"),
            extra={k: v for k, v in data.items() if k not in _REVIEW_KEYS},
        )


@dataclass
class ReviewStats:
    """Aggregate rating of one professional."""

    count: int
    rating: float  # mean, rounded to one decimal; 0.0 without reviews
    reviews: List[Review] = field(default_factory=list)
