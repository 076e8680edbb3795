from typing import Optional
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends

from ..config import get_settings
from ..core.models.auth import CurrentUser
from ..database import get_connection
from ..dependencies import get_notifier, rate_limited
from ..models.offer import OfferCreate, OfferDecision, OfferResponseRequest, WithdrawOfferRequest
from ..services.notifications import NotificationSender
from ..services.offers import make_offer, respond_to_offer, withdraw_offer
from .responses import command_response

router = APIRouter()


@router.post("")
async def create_offer(
    body: OfferCreate,
    background_tasks: BackgroundTasks,
    current_user: CurrentUser = Depends(rate_limited("make_offer")),
    notifier: NotificationSender = Depends(get_notifier),
):
    """Employer extends an offer on an application."""
    settings = get_settings()
    async with get_connection() as conn:
        return await command_response(
            make_offer(
                conn,
                current_user,
                body.application_id,
                body,
                default_expiry_days=settings.offer_default_expiry_days,
            ),
            "offer",
            background_tasks,
            notifier,
        )


async def _respond(
    offer_id: UUID,
    decision: OfferDecision,
    reason: Optional[str],
    current_user: CurrentUser,
    background_tasks: BackgroundTasks,
    notifier: NotificationSender,
):
    settings = get_settings()
    async with get_connection() as conn:
        return await command_response(
            respond_to_offer(
                conn,
                current_user,
                offer_id,
                decision,
                reason,
                upfront_percentage=settings.upfront_percentage,
                guarantee_period_days=settings.guarantee_period_days,
            ),
            "offer",
            background_tasks,
            notifier,
        )


@router.post("/{offer_id}/accept")
async def accept_offer(
    offer_id: UUID,
    background_tasks: BackgroundTasks,
    current_user: CurrentUser = Depends(rate_limited("respond_to_offer")),
    notifier: NotificationSender = Depends(get_notifier),
):
    """Candidate accepts; creates the placement and its fee schedule."""
    return await _respond(offer_id, OfferDecision.ACCEPT, None, current_user, background_tasks, notifier)


@router.post("/{offer_id}/decline")
async def decline_offer(
    offer_id: UUID,
    background_tasks: BackgroundTasks,
    body: Optional[OfferResponseRequest] = None,
    current_user: CurrentUser = Depends(rate_limited("respond_to_offer")),
    notifier: NotificationSender = Depends(get_notifier),
):
    reason = body.reason if body else None
    return await _respond(offer_id, OfferDecision.DECLINE, reason, current_user, background_tasks, notifier)


@router.post("/{offer_id}/withdraw")
async def withdraw(
    offer_id: UUID,
    background_tasks: BackgroundTasks,
    body: Optional[WithdrawOfferRequest] = None,
    current_user: CurrentUser = Depends(rate_limited("withdraw_offer")),
    notifier: NotificationSender = Depends(get_notifier),
):
    async with get_connection() as conn:
        return await command_response(
            withdraw_offer(conn, current_user, offer_id, body.reason if body else None),
            "offer",
            background_tasks,
            notifier,
        )
