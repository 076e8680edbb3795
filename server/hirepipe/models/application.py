from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from ..services.pipeline_state_machine import ApplicationStatus, ClaimStatus


class ApplicationCreate(BaseModel):
    job_id: UUID
    cover_letter: Optional[str] = Field(default=None, max_length=10_000)


class ApplicationStatusUpdate(BaseModel):
    status: ApplicationStatus


class ClaimRequest(BaseModel):
    notes: Optional[str] = Field(default=None, max_length=2_000)


class ApplicationListQuery(BaseModel):
    """Filters for the admin application list. Each field maps to one fixed SQL predicate."""

    status: Optional[ApplicationStatus] = None
    claim_status: Optional[ClaimStatus] = None
    claimed_by: Optional[UUID] = None
    job_id: Optional[UUID] = None
    search: Optional[str] = Field(default=None, max_length=100)
    limit: int = Field(default=50, ge=1, le=200)
    offset: int = Field(default=0, ge=0)

    @field_validator("search")
    @classmethod
    def normalize_search(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip()
        return v or None
