"""User account model, as seen by the wallet."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from bravo.session import Role
from bravo.utils import utc_now

_USER_KEYS = frozenset(
    {
        "email",
        "name",
        "role",
        "phone",
        "bio",
        "city",
        "avatar",
        "piva",
        "isVerified",
        "verificationStatus",
        "availability",
        "walletBalance",
        "releasedJobIds",
        "createdAt",
    }
)


@dataclass
class UserAccount:
    """A registered user keyed by email.

    ``wallet_balance`` only grows, and only through escrow releases;
    ``released_job_ids`` lists the jobs already credited so each release is
    applied once.
    """

    email: str
    name: str
    role: str
    phone: str = ""
    bio: str = ""
    city: Optional[str] = None
    avatar: Optional[str] = None
    piva: Optional[str] = None
    is_verified: bool = False
    verification_status: str = "none"
    availability: Optional[str] = None
    wallet_balance: float = 0.0
    released_job_ids: List[str] = field(default_factory=list)
    created_at: str = field(default_factory=utc_now)
    # Fields owned by other parts of the app (credentials, preferences)
    extra: Dict[str, Any] = field(default_factory=dict, repr=False)

    def __post_init__(self):
        self.role = Role.coerce(self.role).value
        if not self.email:
            raise ValueError("Email cannot be empty")
        if self.wallet_balance < 0:
            raise ValueError("Wallet balance cannot be negative")

    @property
    def is_professional(self) -> bool:
        return self.role == Role.PROFESSIONAL.value

    def has_credited(self, job_id: str) -> bool:
        return job_id in self.released_job_ids

    def to_record(self) -> Dict[str, Any]:
        record = dict(self.extra)
        record.update(
            {
                "email": self.email,
                "name": self.name,
                "role": self.role,
                "phone": self.phone,
                "bio": self.bio,
                "piva": self.piva,
                "isVerified": self.is_verified,
                "verificationStatus": self.verification_status,
                "walletBalance": self.wallet_balance,
                "releasedJobIds": list(self.released_job_ids),
                "createdAt": self.created_at,
            }
        )
        for key, value in (
            ("city", self.city),
            ("avatar", self.avatar),
            ("availability", self.availability),
        ):
            if value is not None:
                record[key] = value
        return record

    @classmethod
    def from_record(cls, data: Dict[str, Any]) -> "UserAccount":
        return cls(
            email=data["email"],
            name=data.get("name", ""),
            role=data.get("role", Role.CLIENT.value),
            phone=data.get("phone") or "",
            bio=data.get("bio") or "",
            city=data.get("city"),
            avatar=data.get("avatar"),
            piva=data.get("piva"),
            is_verified=bool(data.get("isVerified")),
            verification_status=data.get("verificationStatus") or "none",
            availability=data.get("availability"),
            wallet_balance=float(data.get("walletBalance") or 0.0),
            released_job_ids=list(data.get("releasedJobIds") or []),
            created_at=data.get("createdAt") or "",
            extra={k: v for k, v in data.items() if k not in _USER_KEYS},
        )
