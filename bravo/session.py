"""Caller identity passed explicitly into marketplace operations."""

from dataclasses import dataclass
from enum import Enum
from typing import Union


class Role(str, Enum):
    """The two sides of every engagement.

    Values match the stored payloads of the mobile app.
    """

    CLIENT = "cliente"
    PROFESSIONAL = "professionista"

    @classmethod
    def coerce(cls, value: Union["Role", str]) -> "Role":
        """Accept a Role or its stored string value."""
        if isinstance(value, Role):
            return value
        try:
            return cls(value)
        except ValueError:
            raise ValueError(f"Invalid role: {value!r}") from None


@dataclass(frozen=True)
class SessionContext:
    """Who is acting. Built by the session layer, never read from globals."""

    name: str
    email: str
    role: Role

    def __post_init__(self):
        if not self.name or not self.name.strip():
            raise ValueError("Session name cannot be empty")
        object.__setattr__(self, "role", Role.coerce(self.role))

    @property
    def is_client(self) -> bool:
        return self.role is Role.CLIENT

    @property
    def is_professional(self) -> bool:
        return self.role is Role.PROFESSIONAL
