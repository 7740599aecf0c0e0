"""
Request-scoped caller context.

Every core operation takes an ``Actor`` as its first argument instead of
reading the session or a global. Build one per request with
``Actor.for_user(request.user)``; sweeps and webhooks use ``Actor.system()``.
"""

from dataclasses import dataclass
from typing import Optional

SYSTEM_ROLE = "system"


@dataclass(frozen=True)
class Actor:
    user_id: Optional[int]
    role: str
    subscription_id: Optional[int] = None

    @classmethod
    def for_user(cls, user) -> "Actor":
        profile = getattr(user, "team_profile", None)
        return cls(
            user_id=user.pk,
            role=user.role,
            subscription_id=getattr(profile, "subscription_id", None),
        )

    @classmethod
    def system(cls) -> "Actor":
        return cls(user_id=None, role=SYSTEM_ROLE)

    @property
    def is_shipper(self) -> bool:
        return self.role == "shipper"

    @property
    def is_carrier(self) -> bool:
        return self.role == "carrier"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    @property
    def is_system(self) -> bool:
        return self.role == SYSTEM_ROLE

    def __str__(self):
        if self.is_system:
            return "system"
        return f"{self.role}#{self.user_id}"
