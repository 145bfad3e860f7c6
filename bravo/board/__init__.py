"""Request board: clients publish requests, professionals apply, clients accept.

Models:
- JobRequest: A client's posting
- RequestStatus: open, in_progress, completed

Service:
- RequestBoard: publish, apply, accept
"""

from bravo.board.models import DEFAULT_BUDGET, JobRequest, RequestStatus
from bravo.board.service import RequestBoard, RequestBoardError

__all__ = [
    "JobRequest",
    "RequestStatus",
    "DEFAULT_BUDGET",
    "RequestBoard",
    "RequestBoardError",
]
