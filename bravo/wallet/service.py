"""Wallet service.

Registers users and credits professionals when an escrow is released. The
wallet balance changes in exactly one place, ``credit_release``, which is
idempotent per job and applied with compare-and-set on the user record.
"""

import logging
import math
from typing import List, Optional

from bravo.config import Settings, get_settings
from bravo.errors import BravoError, InvalidInputError
from bravo.logging_config import log_credit
from bravo.session import Role
from bravo.storage.base import RecordStore, Table, VersionConflictError
from bravo.wallet.models import UserAccount

logger = logging.getLogger(__name__)


class WalletServiceError(BravoError):
    """Base exception for wallet service errors."""

    pass


class WalletNotFoundError(WalletServiceError):
    """Raised when no user account matches."""

    pass


class DuplicateUserError(WalletServiceError):
    """Raised when registering an email that already exists."""

    pass


class WalletService:
    """User accounts and wallet crediting.

    Args:
        storage: Record store holding the users table
        config: Settings; defaults to ``get_settings()``
    """

    def __init__(self, storage: RecordStore, config: Optional[Settings] = None):
        self.storage = storage
        self.config = config or get_settings()

    def register_user(
        self,
        email: str,
        name: str,
        role: Role,
        phone: str = "",
        bio: str = "",
        city: Optional[str] = None,
        piva: Optional[str] = None,
    ) -> UserAccount:
        """Create a user with an empty wallet.

        Raises:
            InvalidInputError: If email or name is empty, or role is unknown
            DuplicateUserError: If the email is already registered
        """
        email = (email or "").strip()
        name = (name or "").strip()
        if not email:
            raise InvalidInputError("Email is required")
        if not name:
            raise InvalidInputError("Name is required")
        try:
            role = Role.coerce(role)
        except ValueError as e:
            raise InvalidInputError(str(e)) from e

        user = UserAccount(
            email=email,
            name=name,
            role=role.value,
            phone=phone,
            bio=bio,
            city=city,
            piva=piva,
        )
        try:
            self.storage.compare_and_set(Table.USERS, email, user.to_record(), expected_version=0)
        except VersionConflictError as e:
            raise DuplicateUserError(f"User {email} already exists") from e

        logger.info(f"Registered {role.value} {email}")
        return user

    def get_user(self, email: str) -> Optional[UserAccount]:
        record = self.storage.get(Table.USERS, email)
        return UserAccount.from_record(record.payload) if record else None

    def list_users(self, role: Optional[Role] = None) -> List[UserAccount]:
        users = [UserAccount.from_record(r.payload) for r in self.storage.get_all(Table.USERS)]
        if role is not None:
            role = Role.coerce(role)
            users = [u for u in users if u.role == role.value]
        return users

    def find_user_by_name(self, name: str) -> Optional[UserAccount]:
        """Find a user by display name.

        Jobs reference professionals by name, so a professional account is
        preferred when a client shares the same name.
        """
        matches = [u for u in self.list_users() if u.name == name]
        if not matches:
            return None
        for user in matches:
            if user.is_professional:
                return user
        return matches[0]

    def get_balance(self, email: str) -> float:
        """Get a user's wallet balance.

        Raises:
            WalletNotFoundError: If the email is not registered
        """
        user = self.get_user(email)
        if user is None:
            raise WalletNotFoundError(f"User {email} not found")
        return user.wallet_balance

    def credit_release(self, professional_name: str, job_id: str, amount: float) -> UserAccount:
        """Credit a released escrow to the professional's wallet.

        Crediting the same job twice is a no-op that returns the account.

        Raises:
            InvalidInputError: If amount is not positive and finite
            WalletNotFoundError: If no user has this name
            WalletServiceError: If the update kept losing to concurrent writers
        """
        if isinstance(amount, bool) or not math.isfinite(amount) or amount <= 0:
            raise InvalidInputError(f"Credit amount must be positive, got {amount!r}")

        account = self.find_user_by_name(professional_name)
        if account is None:
            raise WalletNotFoundError(f"No wallet for professional {professional_name!r}")

        for attempt in range(self.config.cas_max_attempts):
            record = self.storage.get(Table.USERS, account.email)
            if record is None:
                raise WalletNotFoundError(f"User {account.email} not found")
            user = UserAccount.from_record(record.payload)

            if user.has_credited(job_id):
                logger.debug(f"Job {job_id} already credited to {user.email}")
                return user

            user.wallet_balance += amount
            user.released_job_ids.append(job_id)
            try:
                self.storage.compare_and_set(
                    Table.USERS,
                    user.email,
                    user.to_record(),
                    expected_version=record.version,
                    durable=True,
                )
            except VersionConflictError:
                logger.debug(f"Wallet of {user.email} changed concurrently, retry {attempt + 1}")
                continue

            logger.info(f"Credited {amount:.2f} to {user.email} for job {job_id}")
            log_credit(user.email, job_id, amount, user.wallet_balance)
            return user

        raise WalletServiceError(
            f"Could not credit job {job_id}: too many concurrent updates to the wallet"
        )
