from datetime import date, datetime
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field


class OfferDecision(str, Enum):
    ACCEPT = "accept"
    DECLINE = "decline"


class OfferTerms(BaseModel):
    position: str = Field(..., min_length=1, max_length=255)
    salary: int = Field(..., ge=0, description="Annual salary in cents")
    start_date: date
    expires_at: Optional[datetime] = None
    benefits: Optional[str] = None
    notes: Optional[str] = None


class OfferCreate(OfferTerms):
    application_id: UUID


class OfferResponseRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=2_000)


class WithdrawOfferRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=2_000)
