"""Job and escrow data models.

A Job is created with its price held in escrow. Both parties confirm
completion independently; the confirmation that completes the pair releases
the escrow, deducting the platform commission.

State machine (no reverse transitions):

    in_progress/held --(client and professional confirmed)--> completed/released
"""

import math
from dataclasses import dataclass, field
from enum import Enum
from numbers import Real
from typing import Any, Dict, Optional, Tuple

from bravo.errors import InvalidInputError
from bravo.session import Role
from bravo.utils import utc_now

# Platform fee deducted from the job price at release
COMMISSION_RATE = 0.05


class JobStatus(str, Enum):
    """Job lifecycle status."""

    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class EscrowStatus(str, Enum):
    """Where the job price currently sits."""

    HELD = "held"  # Frozen at acceptance
    RELEASED = "released"  # Paid out at completion


def validate_price(price: Any) -> float:
    """Return ``price`` as a float, or raise InvalidInputError.

    Prices must be real, finite and positive. Booleans are rejected.
    """
    if isinstance(price, bool) or not isinstance(price, Real):
        raise InvalidInputError(f"Price must be a number, got {price!r}")
    value = float(price)
    if not math.isfinite(value):
        raise InvalidInputError("Price must be finite")
    if value <= 0:
        raise InvalidInputError("Price must be positive")
    return value


def compute_commission(price: float) -> Tuple[float, float]:
    """Split a job price into (commission, professional earning)."""
    commission = price * COMMISSION_RATE
    return commission, price - commission


_JOB_KEYS = frozenset(
    {
        "id",
        "professionalName",
        "clientName",
        "status",
        "clientCompleted",
        "proCompleted",
        "clientReviewed",
        "createdAt",
        "completedAt",
        "requestId",
        "workReport",
        "price",
        "escrowStatus",
        "commissionAmount",
    }
)


@dataclass
class Job:
    """An accepted engagement between a client and a professional.

    Invariants:
        - status is completed exactly when both completion flags are set
        - escrow released implies completed
        - a positive commission implies escrow released
    """

    id: str
    professional_name: str
    client_name: str
    price: float
    request_id: Optional[str] = None
    status: str = JobStatus.IN_PROGRESS.value
    escrow_status: str = EscrowStatus.HELD.value
    commission_amount: float = 0.0
    client_completed: bool = False
    pro_completed: bool = False
    client_reviewed: bool = False
    created_at: str = field(default_factory=utc_now)
    completed_at: Optional[str] = None
    work_report: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    def __post_init__(self):
        if isinstance(self.status, JobStatus):
            self.status = self.status.value
        if isinstance(self.escrow_status, EscrowStatus):
            self.escrow_status = self.escrow_status.value

        if self.status not in [s.value for s in JobStatus]:
            raise ValueError(f"Invalid job status: {self.status}")
        if self.escrow_status not in [s.value for s in EscrowStatus]:
            raise ValueError(f"Invalid escrow status: {self.escrow_status}")

        if isinstance(self.price, bool) or not isinstance(self.price, Real):
            raise ValueError("Price must be a number")
        if not math.isfinite(self.price) or self.price <= 0:
            raise ValueError("Price must be positive and finite")

        both = self.client_completed and self.pro_completed
        if self.is_completed != both:
            raise ValueError("A job is completed exactly when both parties confirmed")
        if self.is_released and not self.is_completed:
            raise ValueError("Escrow can only be released on a completed job")
        if self.commission_amount > 0 and not self.is_released:
            raise ValueError("Commission is only charged at release")

    @property
    def is_completed(self) -> bool:
        return self.status == JobStatus.COMPLETED.value

    @property
    def is_released(self) -> bool:
        return self.escrow_status == EscrowStatus.RELEASED.value

    @property
    def pro_earning(self) -> float:
        """What the professional is paid once the escrow is released."""
        if not self.is_released:
            return 0.0
        return self.price - self.commission_amount

    def confirm(self, role: Role, work_report: Optional[str] = None) -> bool:
        """Record one party's completion confirmation.

        Returns True when this confirmation completed the job. Confirming
        again for the same role changes nothing beyond the work report.
        """
        role = Role.coerce(role)
        if role is Role.CLIENT:
            self.client_completed = True
        elif role is Role.PROFESSIONAL:
            self.pro_completed = True
            if work_report:
                self.work_report = work_report
        else:
            raise ValueError(f"Unhandled role: {role}")

        if self.client_completed and self.pro_completed and not self.is_completed:
            self.status = JobStatus.COMPLETED.value
            self.completed_at = utc_now()
            if not self.is_released:
                self.release()
            return True
        return False

    def release(self) -> float:
        """Release the held escrow. Returns the professional's earning."""
        if self.is_released:
            raise ValueError(f"Escrow for job {self.id} was already released")
        if not self.is_completed:
            raise ValueError(f"Job {self.id} is not completed")
        commission, earning = compute_commission(self.price)
        self.commission_amount = commission
        self.escrow_status = EscrowStatus.RELEASED.value
        return earning

    def to_record(self) -> Dict[str, Any]:
        """Convert to the stored payload shape."""
        record = dict(self.extra)
        record.update(
            {
                "id": self.id,
                "professionalName": self.professional_name,
                "clientName": self.client_name,
                "status": self.status,
                "clientCompleted": self.client_completed,
                "proCompleted": self.pro_completed,
                "clientReviewed": self.client_reviewed,
                "createdAt": self.created_at,
                "price": self.price,
                "escrowStatus": self.escrow_status,
                "commissionAmount": self.commission_amount,
            }
        )
        if self.request_id:
            record["requestId"] = self.request_id
        if self.completed_at:
            record["completedAt"] = self.completed_at
        if self.work_report:
            record["workReport"] = self.work_report
        return record

    @classmethod
    def from_record(cls, data: Dict[str, Any]) -> "Job":
        """Create from a stored payload."""
        return cls(
            id=data["id"],
            professional_name=data.get("professionalName", ""),
            client_name=data.get("clientName", ""),
            price=data.get("price"),
            request_id=data.get("requestId") or None,
            status=data.get("status", JobStatus.IN_PROGRESS.value),
            escrow_status=data.get("escrowStatus", EscrowStatus.HELD.value),
            commission_amount=data.get("commissionAmount") or 0.0,
            client_completed=bool(data.get("clientCompleted")),
            pro_completed=bool(data.get("proCompleted")),
            client_reviewed=bool(data.get("clientReviewed")),
            created_at=data.get("createdAt") or "",
            completed_at=data.get("completedAt"),
            work_report=data.get("workReport"),
            extra={k: v for k, v in data.items() if k not in _JOB_KEYS},
        )


@dataclass
class CompletionResult:
    """Outcome of a completion confirmation.

    ``is_fully_completed`` is True only for the call that completed the job.
    """

    job: Job
    is_fully_completed: bool
