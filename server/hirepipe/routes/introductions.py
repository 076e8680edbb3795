from fastapi import APIRouter, BackgroundTasks, Depends

from ..config import get_settings
from ..database import get_connection
from ..dependencies import get_notifier
from ..models.introduction import IntroductionResponseRequest
from ..services.introductions import get_introduction_for_response, respond_to_introduction
from ..services.notifications import NotificationSender
from .responses import command_response

# Public: the emailed token is the credential
router = APIRouter()


@router.get("/respond/{token}")
async def get_introduction(token: str):
    async with get_connection() as conn:
        introduction = await get_introduction_for_response(conn, token)
    return {"introduction": introduction}


@router.post("/respond/{token}")
async def respond(
    token: str,
    body: IntroductionResponseRequest,
    background_tasks: BackgroundTasks,
    notifier: NotificationSender = Depends(get_notifier),
):
    """Candidate accepts, declines, or asks questions about an introduction."""
    settings = get_settings()
    async with get_connection() as conn:
        return await command_response(
            respond_to_introduction(
                conn,
                token,
                body.response,
                body.message,
                admin_email=settings.admin_email,
            ),
            "introduction",
            background_tasks,
            notifier,
        )
