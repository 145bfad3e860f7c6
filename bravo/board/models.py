"""Request board data models.

A JobRequest is a client's posting. Professionals apply as candidates while
it is open; accepting a proposal assigns one of them and moves the request
to in_progress. Requests are never deleted.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from bravo.utils import utc_now

DEFAULT_BUDGET = "Da concordare"


class RequestStatus(str, Enum):
    """Lifecycle of a job request."""

    OPEN = "open"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


# Payload keys written by this model; anything else in a stored payload is
# carried through untouched.
_REQUEST_KEYS = frozenset(
    {
        "id",
        "clientId",
        "clientName",
        "clientAvatar",
        "category",
        "title",
        "description",
        "location",
        "budget",
        "images",
        "status",
        "candidates",
        "assignedPro",
        "createdAt",
    }
)


@dataclass
class JobRequest:
    """A client's request for work.

    Attributes:
        id: Creation-time-derived identifier (``req_<epoch ms>_<hex>``)
        client_id: Email of the posting client
        budget: Free text; the client may leave it as ``Da concordare``
        candidates: Professionals who applied, in order, without duplicates
        assigned_pro: Set exactly when the request leaves ``open``
    """

    id: str
    client_id: str
    client_name: str
    title: str
    description: str
    location: str
    category: str = ""
    client_avatar: str = ""
    budget: str = DEFAULT_BUDGET
    images: List[str] = field(default_factory=list)
    status: str = RequestStatus.OPEN.value
    candidates: List[str] = field(default_factory=list)
    assigned_pro: Optional[str] = None
    created_at: str = field(default_factory=utc_now)
    extra: Dict[str, Any] = field(default_factory=dict, repr=False)

    def __post_init__(self):
        if isinstance(self.status, RequestStatus):
            self.status = self.status.value
        valid = [s.value for s in RequestStatus]
        if self.status not in valid:
            raise ValueError(f"Invalid status: {self.status}. Must be one of {valid}")
        if not self.id:
            raise ValueError("Request id cannot be empty")
        if self.status == RequestStatus.OPEN.value and self.assigned_pro:
            raise ValueError("An open request cannot have an assigned professional")
        if self.status != RequestStatus.OPEN.value and not self.assigned_pro:
            raise ValueError(f"A {self.status} request must have an assigned professional")
        self.candidates = list(dict.fromkeys(self.candidates))

    @property
    def is_open(self) -> bool:
        return self.status == RequestStatus.OPEN.value

    def to_record(self) -> Dict[str, Any]:
        """Convert to the stored payload shape."""
        record = dict(self.extra)
        record.update(
            {
                "id": self.id,
                "clientId": self.client_id,
                "clientName": self.client_name,
                "clientAvatar": self.client_avatar,
                "category": self.category,
                "title": self.title,
                "description": self.description,
                "location": self.location,
                "budget": self.budget,
                "images": list(self.images),
                "status": self.status,
                "candidates": list(self.candidates),
                "createdAt": self.created_at,
            }
        )
        if self.assigned_pro:
            record["assignedPro"] = self.assigned_pro
        return record

    @classmethod
    def from_record(cls, data: Dict[str, Any]) -> "JobRequest":
        """Create from a stored payload."""
        return cls(
            id=data["id"],
            client_id=data.get("clientId", ""),
            client_name=data.get("clientName", ""),
            client_avatar=data.get("clientAvatar") or "",
            category=data.get("category") or "",
            title=data.get("title", ""),
            description=data.get("description", ""),
            location=data.get("location", ""),
            budget=data.get("budget") or DEFAULT_BUDGET,
            images=list(data.get("images") or []),
            status=data.get("status", RequestStatus.OPEN.value),
            candidates=list(data.get("candidates") or []),
            assigned_pro=data.get("assignedPro") or None,
            created_at=data.get("createdAt") or "",
            extra={k: v for k, v in data.items() if k not in _REQUEST_KEYS},
        )
