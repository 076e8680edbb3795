from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException

from ..config import get_settings
from ..core.models.auth import CurrentUser
from ..core.services.stripe_service import PaymentGateway
from ..database import get_connection
from ..dependencies import get_current_user, get_notifier, get_payment_gateway, require_admin
from ..models.placement import PaymentIntentRequest, RecordPaymentRequest
from ..services.actors import is_party
from ..services.notifications import NotificationSender
from ..services.payment_ledger import (
    create_payment_intent,
    payment_details,
    reconcile_payment_intent,
    record_payment,
)
from .responses import command_response

router = APIRouter()


@router.get("/{placement_id}/payment")
async def get_payment(
    placement_id: UUID,
    current_user: CurrentUser = Depends(get_current_user),
):
    """Fee schedule and payment state for a placement."""
    async with get_connection() as conn:
        row = await conn.fetchrow("SELECT * FROM placements WHERE id = $1", placement_id)
    if row is None:
        raise HTTPException(status_code=404, detail="Placement not found")
    if not is_party(current_user, candidate_id=row["candidate_id"], employer_id=row["employer_id"]):
        raise HTTPException(status_code=403, detail="You don't have access to this placement")
    return payment_details(dict(row), get_settings().remaining_due_days)


@router.patch("/{placement_id}/payment")
async def update_payment(
    placement_id: UUID,
    body: RecordPaymentRequest,
    background_tasks: BackgroundTasks,
    current_user: CurrentUser = Depends(require_admin),
    notifier: NotificationSender = Depends(get_notifier),
):
    """Record an upfront, remaining, or full payment (admin)."""
    async with get_connection() as conn:
        return await command_response(
            record_payment(
                conn,
                current_user,
                placement_id,
                body.payment_type,
                body.payment_method,
                amount=body.amount,
                transaction_id=body.transaction_id,
                notes=body.notes,
            ),
            "placement",
            background_tasks,
            notifier,
        )


@router.post("/{placement_id}/payment-intent")
async def create_intent(
    placement_id: UUID,
    body: PaymentIntentRequest,
    background_tasks: BackgroundTasks,
    current_user: CurrentUser = Depends(get_current_user),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    notifier: NotificationSender = Depends(get_notifier),
):
    async with get_connection() as conn:
        return await command_response(
            create_payment_intent(
                conn,
                current_user,
                gateway,
                placement_id,
                body.payment_type,
                currency=get_settings().payment_currency,
            ),
            "payment_intent",
            background_tasks,
            notifier,
        )


@router.post("/{placement_id}/reconcile")
async def reconcile(
    placement_id: UUID,
    body: PaymentIntentRequest,
    background_tasks: BackgroundTasks,
    current_user: CurrentUser = Depends(get_current_user),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    notifier: NotificationSender = Depends(get_notifier),
):
    """Record the leg if its Stripe intent has succeeded."""
    async with get_connection() as conn:
        return await command_response(
            reconcile_payment_intent(conn, current_user, gateway, placement_id, body.payment_type),
            "placement",
            background_tasks,
            notifier,
        )
