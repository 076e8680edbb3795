"""Placement fee payments: manual recording and Stripe intents."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Optional
from uuid import UUID

import asyncpg

from ..core.models.auth import CurrentUser
from ..core.services.stripe_service import PaymentGateway
from ..models.placement import PaymentMethod, PaymentType, PlacementListQuery, PlacementStatus
from .actors import require_admin, require_employer_of, row_to_dict, utcnow
from .errors import ConflictError, InvalidStateError, NotFoundError, ValidationError
from .fee_calculator import DEFAULT_REMAINING_DUE_DAYS, remaining_due_date
from .notifications import CommandResult, TemplateKey, intent
from .pipeline_state_machine import PaymentStatus, coerce_status, validate_payment_transition

logger = logging.getLogger(__name__)

PLACEMENT_CONTEXT_SQL = """
    SELECT
        p.*,
        e.company_name,
        e.stripe_customer_id,
        eu.email AS employer_email,
        eu.name AS employer_name
    FROM placements p
    JOIN employers e ON e.id = p.employer_id
    JOIN users eu ON eu.id = e.user_id
    WHERE p.id = $1
"""

_INTENT_COLUMNS = {
    PaymentType.UPFRONT: "upfront_payment_intent_id",
    PaymentType.REMAINING: "remaining_payment_intent_id",
}


def _coerce(enum_cls, value, label: str):
    try:
        return enum_cls(value)
    except ValueError as exc:
        raise ValidationError(f"Invalid {label} '{value}'") from exc


async def _load_placement(conn: asyncpg.Connection, placement_id: UUID, *, lock: bool = False) -> dict[str, Any]:
    sql = PLACEMENT_CONTEXT_SQL + (" FOR UPDATE OF p" if lock else "")
    row = row_to_dict(await conn.fetchrow(sql, placement_id))
    if row is None:
        raise NotFoundError("Placement")
    return row


def _check_leg(placement: dict[str, Any], payment_type: PaymentType) -> None:
    """Raise unless ``payment_type`` can still be paid on this placement."""
    if placement["status"] == PlacementStatus.CANCELLED.value:
        raise InvalidStateError("Placement has been cancelled")
    upfront_paid = placement["upfront_paid_at"] is not None
    remaining_paid = placement["remaining_paid_at"] is not None

    if payment_type == PaymentType.UPFRONT:
        if upfront_paid:
            raise ConflictError("Upfront payment already recorded")
    elif payment_type == PaymentType.REMAINING:
        if not upfront_paid:
            raise ValidationError("Upfront payment must be completed first")
        if remaining_paid:
            raise ConflictError("Remaining payment already recorded")
    elif upfront_paid or remaining_paid:
        raise ConflictError("A payment has already been recorded for this placement")


def _expected_amount(placement: dict[str, Any], payment_type: PaymentType) -> int:
    if payment_type == PaymentType.UPFRONT:
        return int(placement["upfront_amount"])
    if payment_type == PaymentType.REMAINING:
        return int(placement["remaining_amount"])
    return int(placement["placement_fee"])


def _is_leg_paid(placement: dict[str, Any], payment_type: PaymentType) -> bool:
    if payment_type == PaymentType.UPFRONT:
        return placement["upfront_paid_at"] is not None
    return placement["remaining_paid_at"] is not None


async def _apply_payment(
    conn: asyncpg.Connection,
    placement: dict[str, Any],
    payment_type: PaymentType,
    method: PaymentMethod,
    *,
    amount: Optional[int],
    transaction_id: Optional[str],
    notes: Optional[str],
    recorded_by: Optional[UUID],
    now: datetime,
) -> CommandResult:
    """Record one leg on a placement locked by the caller's transaction."""
    _check_leg(placement, payment_type)

    expected = _expected_amount(placement, payment_type)
    if amount is None:
        amount = expected
    if amount != expected:
        raise ValidationError(
            f"Amount {amount} does not match the expected {payment_type.value} amount {expected}",
            details={"expected": expected, "amount": amount},
        )

    upfront_paid_at = remaining_paid_at = None
    if payment_type in (PaymentType.UPFRONT, PaymentType.FULL):
        upfront_paid_at = now
    if payment_type in (PaymentType.REMAINING, PaymentType.FULL) or (
        payment_type == PaymentType.UPFRONT and int(placement["remaining_amount"]) == 0
    ):
        remaining_paid_at = now

    current = coerce_status(PaymentStatus, placement["payment_status"])
    target = PaymentStatus.FULLY_PAID if remaining_paid_at else PaymentStatus.UPFRONT_PAID
    validate_payment_transition(current, target)

    row = await conn.fetchrow(
        """
        UPDATE placements
        SET payment_status = $2,
            upfront_paid_at = COALESCE(upfront_paid_at, $3),
            remaining_paid_at = COALESCE(remaining_paid_at, $4),
            status = CASE WHEN status = 'pending' THEN 'confirmed' ELSE status END,
            updated_at = NOW()
        WHERE id = $1 AND payment_status = $5
        RETURNING *
        """,
        placement["id"],
        target.value,
        upfront_paid_at,
        remaining_paid_at,
        current.value,
    )
    if row is None:
        raise ConflictError("Payment status changed concurrently, refresh and retry")

    await conn.execute(
        """
        INSERT INTO placement_payments (
            placement_id, payment_type, amount, method, transaction_id, notes, recorded_by, recorded_at
        )
        VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
        """,
        placement["id"],
        payment_type.value,
        amount,
        method.value,
        transaction_id,
        notes,
        recorded_by,
        now,
    )

    if target == PaymentStatus.FULLY_PAID:
        # Runs only on the transition into fully_paid, guarded by the CAS above
        await conn.execute(
            "UPDATE employers SET total_spent = total_spent + $2 WHERE id = $1",
            placement["employer_id"],
            int(placement["placement_fee"]),
        )

    updated = dict(row)
    logger.info(
        "[Payments] Recorded %s payment of %s cents on placement %s (%s -> %s)",
        payment_type.value,
        amount,
        placement["id"],
        current.value,
        target.value,
    )
    return CommandResult(
        entity=updated,
        notifications=[
            intent(
                placement.get("employer_email"),
                placement.get("employer_name"),
                TemplateKey.PAYMENT_RECORDED,
                role="employer",
                placement_id=placement["id"],
                job_title=placement["job_title"],
                company_name=placement.get("company_name"),
                payment_type=payment_type.value,
                amount=amount,
                payment_status=target.value,
            )
        ],
    )


async def record_payment(
    conn: asyncpg.Connection,
    actor: CurrentUser,
    placement_id: UUID,
    payment_type: str | PaymentType,
    method: Optional[str | PaymentMethod],
    amount: Optional[int] = None,
    transaction_id: Optional[str] = None,
    notes: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
) -> CommandResult:
    require_admin(actor)
    payment_type = _coerce(PaymentType, payment_type, "payment type")
    if not method:
        raise ValidationError("payment_method is required")
    method = _coerce(PaymentMethod, method, "payment method")
    if amount is not None and amount < 0:
        raise ValidationError("amount cannot be negative")
    now = utcnow(now)

    async with conn.transaction():
        placement = await _load_placement(conn, placement_id, lock=True)
        return await _apply_payment(
            conn,
            placement,
            payment_type,
            method,
            amount=amount,
            transaction_id=(transaction_id or "").strip() or None,
            notes=(notes or "").strip() or None,
            recorded_by=actor.id,
            now=now,
        )


async def create_payment_intent(
    conn: asyncpg.Connection,
    actor: CurrentUser,
    gateway: PaymentGateway,
    placement_id: UUID,
    payment_type: str | PaymentType,
    *,
    currency: str = "usd",
) -> CommandResult:
    """Create (or reuse) the Stripe intent for one fee leg.

    No row lock is held while the gateway is called. The idempotency key is
    derived from the placement and leg, so a retry after a timeout returns the
    same intent instead of a duplicate.
    """
    payment_type = _coerce(PaymentType, payment_type, "payment type")
    if payment_type == PaymentType.FULL:
        raise ValidationError("Payment intents are created per leg: use 'upfront' or 'remaining'")
    column = _INTENT_COLUMNS[payment_type]

    placement = await _load_placement(conn, placement_id)
    require_employer_of(actor, placement["employer_id"])
    _check_leg(placement, payment_type)
    amount = _expected_amount(placement, payment_type)
    if amount <= 0:
        raise ValidationError(f"Nothing is due for the {payment_type.value} payment")

    if placement[column]:
        existing = await gateway.retrieve_payment_intent(placement[column])
        return CommandResult(entity=existing, extra={"reused": True})

    customer_ref = placement["stripe_customer_id"]
    if not customer_ref:
        customer = await gateway.create_customer(
            placement.get("employer_email"),
            placement.get("company_name"),
            {"employer_id": str(placement["employer_id"])},
        )
        stored = await conn.fetchval(
            """
            UPDATE employers SET stripe_customer_id = $2
            WHERE id = $1 AND stripe_customer_id IS NULL
            RETURNING stripe_customer_id
            """,
            placement["employer_id"],
            customer["id"],
        )
        customer_ref = stored or await conn.fetchval(
            "SELECT stripe_customer_id FROM employers WHERE id = $1",
            placement["employer_id"],
        )

    payment_intent = await gateway.create_payment_intent(
        amount,
        currency,
        customer_ref,
        {"placement_id": str(placement_id), "payment_type": payment_type.value},
        f"placement-{placement_id}-{payment_type.value}",
    )

    await conn.execute(
        f"UPDATE placements SET {column} = $2, updated_at = NOW() WHERE id = $1 AND {column} IS NULL",
        placement_id,
        payment_intent["id"],
    )
    logger.info(
        "[Payments] Created %s payment intent %s for placement %s",
        payment_type.value,
        payment_intent["id"],
        placement_id,
    )
    return CommandResult(entity=payment_intent, extra={"reused": False})


async def reconcile_payment_intent(
    conn: asyncpg.Connection,
    actor: CurrentUser,
    gateway: PaymentGateway,
    placement_id: UUID,
    payment_type: str | PaymentType,
    *,
    now: Optional[datetime] = None,
) -> CommandResult:
    """Record the leg once its Stripe intent has succeeded. Safe to repeat."""
    payment_type = _coerce(PaymentType, payment_type, "payment type")
    if payment_type == PaymentType.FULL:
        raise ValidationError("Payment intents are created per leg: use 'upfront' or 'remaining'")
    column = _INTENT_COLUMNS[payment_type]
    now = utcnow(now)

    placement = await _load_placement(conn, placement_id)
    require_employer_of(actor, placement["employer_id"])
    intent_id = placement[column]
    if not intent_id:
        raise InvalidStateError(f"No {payment_type.value} payment intent exists for this placement")

    payment_intent = await gateway.retrieve_payment_intent(intent_id)
    if payment_intent["status"] != "succeeded":
        return CommandResult(
            entity=_public_placement(placement),
            extra={"payment_intent": payment_intent, "recorded": False},
        )

    async with conn.transaction():
        locked = await _load_placement(conn, placement_id, lock=True)
        if _is_leg_paid(locked, payment_type):
            return CommandResult(
                entity=_public_placement(locked),
                extra={"payment_intent": payment_intent, "recorded": False},
            )
        result = await _apply_payment(
            conn,
            locked,
            payment_type,
            PaymentMethod.STRIPE,
            amount=int(payment_intent["amount"]),
            transaction_id=intent_id,
            notes=None,
            recorded_by=actor.id,
            now=now,
        )
    result.extra.update({"payment_intent": payment_intent, "recorded": True})
    return result


def _public_placement(placement: dict[str, Any]) -> dict[str, Any]:
    hidden = {"stripe_customer_id", "employer_email", "employer_name"}
    return {key: value for key, value in placement.items() if key not in hidden}


def payment_details(
    placement: dict[str, Any],
    remaining_due_days: int = DEFAULT_REMAINING_DUE_DAYS,
) -> dict[str, Any]:
    upfront_paid_at = placement.get("upfront_paid_at")
    return {
        "placement_id": str(placement["id"]),
        "salary": placement["salary"],
        "placement_fee": placement["placement_fee"],
        "upfront_amount": placement["upfront_amount"],
        "remaining_amount": placement["remaining_amount"],
        "payment_status": placement["payment_status"],
        "upfront_paid_at": upfront_paid_at,
        "remaining_paid_at": placement.get("remaining_paid_at"),
        "remaining_due_date": (
            remaining_due_date(upfront_paid_at, remaining_due_days) if upfront_paid_at else None
        ),
    }


async def list_placements(conn: asyncpg.Connection, query: PlacementListQuery) -> list[dict[str, Any]]:
    clauses: list[str] = []
    args: list[Any] = []

    def _add(fragment: str, value: Any) -> None:
        args.append(value)
        clauses.append(fragment.format(n=len(args)))

    if query.payment_status is not None:
        _add("p.payment_status = ${n}", query.payment_status.value)
    if query.status is not None:
        _add("p.status = ${n}", query.status.value)
    if query.employer_id is not None:
        _add("p.employer_id = ${n}", query.employer_id)

    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    args.extend([query.limit, query.offset])
    rows = await conn.fetch(
        f"""
        SELECT p.*, e.company_name, c.name AS candidate_name
        FROM placements p
        JOIN employers e ON e.id = p.employer_id
        JOIN candidates c ON c.id = p.candidate_id
        {where}
        ORDER BY p.created_at DESC
        LIMIT ${len(args) - 1} OFFSET ${len(args)}
        """,
        *args,
    )
    return [dict(row) for row in rows]
