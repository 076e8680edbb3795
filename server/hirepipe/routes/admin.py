from typing import Optional
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends

from ..config import get_settings
from ..core.models.auth import CurrentUser
from ..database import get_connection
from ..dependencies import get_notifier, require_admin
from ..models.application import ApplicationListQuery, ClaimRequest
from ..models.placement import PlacementListQuery
from ..services.applications import claim_application, list_applications, release_claim
from ..services.expiration_sweeper import SweepKind, run_sweep
from ..services.notifications import NotificationSender
from ..services.payment_ledger import list_placements
from ..services.pipeline_state_machine import state_machine_map
from .responses import command_response

router = APIRouter()


@router.get("/applications")
async def get_applications(
    query: ApplicationListQuery = Depends(),
    current_user: CurrentUser = Depends(require_admin),
):
    async with get_connection() as conn:
        applications = await list_applications(conn, query)
    return {"applications": applications, "limit": query.limit, "offset": query.offset}


@router.post("/applications/{application_id}/claim")
async def claim(
    application_id: UUID,
    background_tasks: BackgroundTasks,
    body: Optional[ClaimRequest] = None,
    current_user: CurrentUser = Depends(require_admin),
    notifier: NotificationSender = Depends(get_notifier),
):
    """Claim an application for placement tracking."""
    async with get_connection() as conn:
        return await command_response(
            claim_application(conn, current_user, application_id, body.notes if body else None),
            "application",
            background_tasks,
            notifier,
        )


@router.post("/applications/{application_id}/release")
async def release(
    application_id: UUID,
    background_tasks: BackgroundTasks,
    current_user: CurrentUser = Depends(require_admin),
    notifier: NotificationSender = Depends(get_notifier),
):
    async with get_connection() as conn:
        return await command_response(
            release_claim(conn, current_user, application_id),
            "application",
            background_tasks,
            notifier,
        )


@router.get("/placements")
async def get_placements(
    query: PlacementListQuery = Depends(),
    current_user: CurrentUser = Depends(require_admin),
):
    async with get_connection() as conn:
        placements = await list_placements(conn, query)
    return {"placements": placements, "limit": query.limit, "offset": query.offset}


@router.get("/state-machines")
async def get_state_machines(current_user: CurrentUser = Depends(require_admin)):
    """Allowed transitions per entity, for admin tooling."""
    return state_machine_map()


@router.post("/introductions/run-expiry-check")
async def run_introduction_expiry_check(
    current_user: CurrentUser = Depends(require_admin),
    notifier: NotificationSender = Depends(get_notifier),
):
    """Run the introductions sweep on demand."""
    settings = get_settings()
    async with get_connection() as conn:
        summary = await run_sweep(conn, SweepKind.INTRODUCTIONS, notifier, admin_email=settings.admin_email)
    return summary.to_dict()
