from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends

from ..core.models.auth import CurrentUser
from ..database import get_connection
from ..dependencies import get_notifier, rate_limited, require_admin_or_employer
from ..models.application import ApplicationCreate, ApplicationStatusUpdate
from ..services.applications import review_application, submit_application, withdraw_application
from ..services.notifications import NotificationSender
from .responses import command_response

router = APIRouter()


@router.post("")
async def create_application(
    body: ApplicationCreate,
    background_tasks: BackgroundTasks,
    current_user: CurrentUser = Depends(rate_limited("submit_application")),
    notifier: NotificationSender = Depends(get_notifier),
):
    """Candidate applies to an active job."""
    async with get_connection() as conn:
        return await command_response(
            submit_application(conn, current_user, body.job_id, body.cover_letter),
            "application",
            background_tasks,
            notifier,
        )


@router.patch("/{application_id}/status")
async def update_application_status(
    application_id: UUID,
    body: ApplicationStatusUpdate,
    background_tasks: BackgroundTasks,
    current_user: CurrentUser = Depends(require_admin_or_employer),
    notifier: NotificationSender = Depends(get_notifier),
):
    """Employer review action (forward moves only)."""
    async with get_connection() as conn:
        return await command_response(
            review_application(conn, current_user, application_id, body.status),
            "application",
            background_tasks,
            notifier,
        )


@router.post("/{application_id}/withdraw")
async def withdraw(
    application_id: UUID,
    background_tasks: BackgroundTasks,
    current_user: CurrentUser = Depends(rate_limited("withdraw_application")),
    notifier: NotificationSender = Depends(get_notifier),
):
    async with get_connection() as conn:
        return await command_response(
            withdraw_application(conn, current_user, application_id),
            "application",
            background_tasks,
            notifier,
        )
