"""
Bravo - marketplace engine connecting clients with professionals.

Request board, escrow-backed jobs with dual confirmation, reviews and wallet.
"""

from .marketplace import Marketplace
from .session import Role, SessionContext

try:
    from importlib.metadata import version

    __version__ = version("bravo")
except Exception:
    __version__ = "0.0.0"

__all__ = ["Marketplace", "Role", "SessionContext"]
