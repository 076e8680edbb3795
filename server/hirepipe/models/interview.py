from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field, model_validator


class AvailabilitySlotInput(BaseModel):
    start_time: datetime
    end_time: datetime

    @model_validator(mode="after")
    def validate_window(self) -> "AvailabilitySlotInput":
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self


class ProposeSlotsRequest(BaseModel):
    application_id: UUID
    # Emptiness is checked by the service so every caller gets the same error
    slots: list[AvailabilitySlotInput]
    duration_minutes: int = Field(..., gt=0, le=480)
    interview_type: str = Field(default="video", max_length=30)
    round_name: Optional[str] = Field(default=None, max_length=255)
    round_number: Optional[int] = Field(default=None, ge=1)


class SelectSlotsRequest(BaseModel):
    slot_ids: list[UUID]


class MeetingDetails(BaseModel):
    meeting_link: Optional[str] = None
    meeting_platform: Optional[str] = Field(default=None, max_length=50)
    notes: Optional[str] = None


class ConfirmSlotRequest(MeetingDetails):
    slot_id: UUID


class RescheduleRequest(BaseModel):
    reason: str = Field(..., max_length=2_000)


class CancelInterviewRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=2_000)
