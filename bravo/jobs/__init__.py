"""Escrow and job engine.

Models:
- Job: An accepted engagement with its price held in escrow
- JobStatus / EscrowStatus: Lifecycle states
- CompletionResult: Outcome of a completion confirmation

Service:
- JobService: open, confirm, settle, revenue
"""

from bravo.jobs.models import (
    COMMISSION_RATE,
    CompletionResult,
    EscrowStatus,
    Job,
    JobStatus,
    compute_commission,
    validate_price,
)
from bravo.jobs.service import JobService, JobServiceError

__all__ = [
    # Models
    "Job",
    "JobStatus",
    "EscrowStatus",
    "CompletionResult",
    "COMMISSION_RATE",
    "compute_commission",
    "validate_price",
    # Service
    "JobService",
    "JobServiceError",
]
