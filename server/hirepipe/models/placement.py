from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field

from ..services.pipeline_state_machine import PaymentStatus


class PaymentType(str, Enum):
    UPFRONT = "upfront"
    REMAINING = "remaining"
    FULL = "full"


class PaymentMethod(str, Enum):
    CASH = "cash"
    CHECK = "check"
    BANK_TRANSFER = "bank_transfer"
    STRIPE = "stripe"
    OTHER = "other"


class PlacementStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class RecordPaymentRequest(BaseModel):
    payment_type: PaymentType
    payment_method: PaymentMethod
    amount: Optional[int] = Field(default=None, ge=0, description="Cents; defaults to the expected amount")
    transaction_id: Optional[str] = Field(default=None, max_length=255)
    notes: Optional[str] = Field(default=None, max_length=2_000)


class PaymentIntentRequest(BaseModel):
    payment_type: PaymentType


class PlacementListQuery(BaseModel):
    payment_status: Optional[PaymentStatus] = None
    status: Optional[PlacementStatus] = None
    employer_id: Optional[UUID] = None
    limit: int = Field(default=50, ge=1, le=200)
    offset: int = Field(default=0, ge=0)
