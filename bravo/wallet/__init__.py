"""User accounts and wallet crediting."""

from bravo.wallet.models import UserAccount
from bravo.wallet.service import (
    DuplicateUserError,
    WalletNotFoundError,
    WalletService,
    WalletServiceError,
)

__all__ = [
    "UserAccount",
    "WalletService",
    "WalletServiceError",
    "WalletNotFoundError",
    "DuplicateUserError",
]
