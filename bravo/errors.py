"""Errors shared by the marketplace services."""


class BravoError(Exception):
    """Base exception for marketplace operations."""

    pass


class InvalidInputError(BravoError, ValueError):
    """Raised when a caller passes an invalid value (empty name, bad price)."""

    pass


class UnauthorizedError(BravoError):
    """Raised when the acting session may not perform an operation."""

    pass
