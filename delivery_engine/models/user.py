"""Identity models used for permission checks."""

from enum import Enum
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


class Role(str, Enum):
    """Roles that may act on deliveries."""

    ADMIN = "admin"
    RIDER = "rider"
    CUSTOMER = "customer"
    SYSTEM = "system"


class User(BaseModel):
    """Identity record as exposed by the identity collaborator."""

    id: UUID = Field(default_factory=uuid4)
    name: str
    role: Role
    email: str | None = None
    phone: str | None = None


class Actor(BaseModel):
    """The party requesting an operation."""

    user_id: UUID | None = None
    role: Role
    name: str | None = None

    @classmethod
    def system(cls) -> "Actor":
        return cls(role=Role.SYSTEM, name="system")

    @classmethod
    def from_user(cls, user: User) -> "Actor":
        return cls(user_id=user.id, role=user.role, name=user.name)

    @property
    def is_privileged(self) -> bool:
        """Admins and the system itself may request any legal transition."""
        return self.role in (Role.ADMIN, Role.SYSTEM)

    @property
    def label(self) -> str:
        """Audit-trail representation."""
        if self.user_id is None:
            return self.role.value
        return f"{self.role.value}:{self.user_id}"
