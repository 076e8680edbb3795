"""Actor checks and row helpers shared by the pipeline commands."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Mapping, Optional
from uuid import UUID

from ..core.models.auth import CurrentUser
from .errors import ForbiddenError


def utcnow(now: Optional[datetime] = None) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now


def as_aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def row_to_dict(row: Optional[Mapping[str, Any]]) -> Optional[dict[str, Any]]:
    if row is None:
        return None
    return dict(row)


def require_candidate(actor: CurrentUser) -> UUID:
    if actor.role != "candidate" or actor.candidate_id is None:
        raise ForbiddenError("Only candidates can perform this action")
    return actor.candidate_id


def require_admin(actor: CurrentUser) -> None:
    if not actor.is_admin:
        raise ForbiddenError("Admin access required")


def require_employer_of(actor: CurrentUser, employer_id: UUID, *, allow_admin: bool = True) -> None:
    if allow_admin and actor.is_admin:
        return
    if actor.role != "employer" or actor.employer_id is None or actor.employer_id != employer_id:
        raise ForbiddenError("You don't have permission to manage this record")


def is_party(actor: CurrentUser, *, candidate_id: UUID, employer_id: UUID) -> bool:
    if actor.is_admin:
        return True
    if actor.role == "candidate":
        return actor.candidate_id == candidate_id
    if actor.role == "employer":
        return actor.employer_id == employer_id
    return False
