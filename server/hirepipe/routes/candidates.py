from typing import Optional
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends

from ..config import get_settings
from ..core.models.auth import CurrentUser
from ..database import get_connection
from ..dependencies import get_current_user, get_notifier, rate_limited
from ..models.introduction import IntroductionRequest
from ..services.access_gate import get_candidate_view
from ..services.introductions import list_employer_introductions, request_introduction
from ..services.notifications import NotificationSender
from .responses import command_response

router = APIRouter()


@router.get("/candidates/{candidate_id}")
async def get_candidate(
    candidate_id: UUID,
    current_user: CurrentUser = Depends(get_current_user),
):
    """Candidate profile gated by agreement and introduction state."""
    async with get_connection() as conn:
        return await get_candidate_view(conn, current_user, candidate_id)


@router.post("/introductions/request")
async def create_introduction_request(
    body: IntroductionRequest,
    background_tasks: BackgroundTasks,
    current_user: CurrentUser = Depends(rate_limited("request_introduction")),
    notifier: NotificationSender = Depends(get_notifier),
):
    """Employer asks to be introduced; the candidate gets a response link."""
    settings = get_settings()
    async with get_connection() as conn:
        return await command_response(
            request_introduction(
                conn,
                current_user,
                body.candidate_id,
                body.job_id,
                body.message,
                protection_days=settings.introduction_protection_days,
                token_expiry_days=settings.introduction_token_expiry_days,
                app_base_url=settings.app_base_url,
            ),
            "introduction",
            background_tasks,
            notifier,
        )


@router.get("/introductions")
async def get_introductions(
    status: Optional[str] = None,
    current_user: CurrentUser = Depends(get_current_user),
):
    async with get_connection() as conn:
        introductions = await list_employer_introductions(conn, current_user, status=status)
    return {"introductions": introductions}
