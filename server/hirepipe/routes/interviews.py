from typing import Optional
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException

from ..core.models.auth import CurrentUser
from ..database import get_connection
from ..dependencies import get_current_user, get_notifier, rate_limited
from ..models.interview import (
    CancelInterviewRequest,
    ConfirmSlotRequest,
    MeetingDetails,
    ProposeSlotsRequest,
    RescheduleRequest,
    SelectSlotsRequest,
)
from ..services.actors import is_party
from ..services.availability import (
    cancel_interview,
    complete_interview,
    confirm_slot,
    propose_slots,
    request_reschedule,
    reschedule_chain,
    select_slots,
)
from ..services.notifications import NotificationSender
from .responses import command_response

router = APIRouter()


@router.post("/availability")
async def propose_availability(
    body: ProposeSlotsRequest,
    background_tasks: BackgroundTasks,
    current_user: CurrentUser = Depends(rate_limited("propose_slots")),
    notifier: NotificationSender = Depends(get_notifier),
):
    """Employer proposes availability slots (also used to reschedule)."""
    async with get_connection() as conn:
        return await command_response(
            propose_slots(
                conn,
                current_user,
                body.application_id,
                body.slots,
                body.duration_minutes,
                round_name=body.round_name,
                round_number=body.round_number,
                interview_type=body.interview_type,
            ),
            "interview",
            background_tasks,
            notifier,
        )


@router.post("/{interview_id}/select-slots")
async def select_interview_slots(
    interview_id: UUID,
    body: SelectSlotsRequest,
    background_tasks: BackgroundTasks,
    current_user: CurrentUser = Depends(rate_limited("select_slots")),
    notifier: NotificationSender = Depends(get_notifier),
):
    async with get_connection() as conn:
        return await command_response(
            select_slots(conn, current_user, interview_id, body.slot_ids),
            "interview",
            background_tasks,
            notifier,
        )


@router.post("/{interview_id}/confirm")
async def confirm_interview_slot(
    interview_id: UUID,
    body: ConfirmSlotRequest,
    background_tasks: BackgroundTasks,
    current_user: CurrentUser = Depends(rate_limited("confirm_slot")),
    notifier: NotificationSender = Depends(get_notifier),
):
    meeting = MeetingDetails(
        meeting_link=body.meeting_link,
        meeting_platform=body.meeting_platform,
        notes=body.notes,
    )
    async with get_connection() as conn:
        return await command_response(
            confirm_slot(conn, current_user, interview_id, body.slot_id, meeting),
            "interview",
            background_tasks,
            notifier,
        )


@router.post("/{interview_id}/request-reschedule")
async def request_interview_reschedule(
    interview_id: UUID,
    body: RescheduleRequest,
    background_tasks: BackgroundTasks,
    current_user: CurrentUser = Depends(rate_limited("request_reschedule")),
    notifier: NotificationSender = Depends(get_notifier),
):
    async with get_connection() as conn:
        return await command_response(
            request_reschedule(conn, current_user, interview_id, body.reason),
            "interview",
            background_tasks,
            notifier,
        )


@router.post("/{interview_id}/complete")
async def mark_interview_complete(
    interview_id: UUID,
    background_tasks: BackgroundTasks,
    current_user: CurrentUser = Depends(get_current_user),
    notifier: NotificationSender = Depends(get_notifier),
):
    async with get_connection() as conn:
        return await command_response(
            complete_interview(conn, current_user, interview_id),
            "interview",
            background_tasks,
            notifier,
        )


@router.post("/{interview_id}/cancel")
async def cancel(
    interview_id: UUID,
    background_tasks: BackgroundTasks,
    body: Optional[CancelInterviewRequest] = None,
    current_user: CurrentUser = Depends(get_current_user),
    notifier: NotificationSender = Depends(get_notifier),
):
    async with get_connection() as conn:
        return await command_response(
            cancel_interview(conn, current_user, interview_id, body.reason if body else None),
            "interview",
            background_tasks,
            notifier,
        )


@router.get("/{interview_id}/history")
async def get_reschedule_history(
    interview_id: UUID,
    current_user: CurrentUser = Depends(get_current_user),
):
    """Reschedule chain for an interview, newest first."""
    async with get_connection() as conn:
        parties = await conn.fetchrow(
            "SELECT candidate_id, employer_id FROM interviews WHERE id = $1",
            interview_id,
        )
        if parties is None:
            raise HTTPException(status_code=404, detail="Interview not found")
        if not is_party(current_user, candidate_id=parties["candidate_id"], employer_id=parties["employer_id"]):
            raise HTTPException(status_code=403, detail="You don't have access to this interview")
        chain = await reschedule_chain(conn, interview_id)
    return {"interview_id": str(interview_id), "history": chain}
