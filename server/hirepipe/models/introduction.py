from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field


class CandidateResponse(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    QUESTIONS = "questions"


class IntroductionRequest(BaseModel):
    candidate_id: UUID
    job_id: Optional[UUID] = None
    message: Optional[str] = Field(default=None, max_length=2_000)


class IntroductionResponseRequest(BaseModel):
    response: CandidateResponse
    message: Optional[str] = Field(default=None, max_length=5_000)
