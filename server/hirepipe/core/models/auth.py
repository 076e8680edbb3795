from typing import Literal, Optional
from uuid import UUID

from pydantic import BaseModel

UserRole = Literal["admin", "employer", "candidate"]


class TokenPayload(BaseModel):
    sub: str  # user_id
    email: str
    role: UserRole
    exp: int


class CurrentUser(BaseModel):
    """Authenticated actor passed explicitly into every pipeline command."""

    id: UUID
    email: str
    role: UserRole
    # Resolved from the employers/candidates tables by the auth dependency
    employer_id: Optional[UUID] = None
    candidate_id: Optional[UUID] = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"
