"""Authentication schemas."""

from uuid import UUID

from pydantic import BaseModel, Field

from app.core.security import APPOINTMENTS_MANAGE


class Principal(BaseModel):
    """Authenticated caller as asserted by the identity service."""

    id: UUID
    permissions: frozenset[str] = Field(default_factory=frozenset)

    def has(self, permission: str) -> bool:
        return permission in self.permissions

    def may_act_for(self, owner_id: UUID) -> bool:
        """Owners act on their own appointments; managers act on anyone's."""
        return self.id == owner_id or self.has(APPOINTMENTS_MANAGE)
