"""Offer commands and the offer -> placement transition."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Optional
from uuid import UUID

import asyncpg

from ..core.models.auth import CurrentUser
from ..models.offer import OfferDecision, OfferTerms
from .actors import as_aware, require_candidate, require_employer_of, row_to_dict, utcnow
from .applications import lock_application
from .errors import ConflictError, ExpiredError, ForbiddenError, InvalidStateError, NotFoundError, ValidationError
from .fee_calculator import (
    DEFAULT_GUARANTEE_PERIOD_DAYS,
    DEFAULT_UPFRONT_PERCENTAGE,
    calculate_fee,
    guarantee_end_date,
)
from .notifications import CommandResult, NotificationIntent, TemplateKey, intent
from .pipeline_state_machine import (
    OFFERABLE_APPLICATION_STATUSES,
    ApplicationStatus,
    IntroductionStatus,
    OfferStatus,
    coerce_status,
    introduction_statuses_before,
    is_application_terminal,
    validate_offer_transition,
)

logger = logging.getLogger(__name__)

DEFAULT_OFFER_EXPIRY_DAYS = 7

OFFER_CONTEXT_SQL = """
    SELECT
        o.*,
        j.title AS job_title,
        j.experience_level,
        c.email AS candidate_email,
        c.name AS candidate_name,
        e.company_name,
        eu.email AS employer_email,
        eu.name AS employer_name
    FROM offers o
    JOIN jobs j ON j.id = o.job_id
    JOIN candidates c ON c.id = o.candidate_id
    JOIN employers e ON e.id = o.employer_id
    JOIN users eu ON eu.id = e.user_id
    WHERE o.id = $1
    FOR UPDATE OF o
"""


async def lock_offer(conn: asyncpg.Connection, offer_id: UUID) -> dict[str, Any]:
    row = row_to_dict(await conn.fetchrow(OFFER_CONTEXT_SQL, offer_id))
    if row is None:
        raise NotFoundError("Offer")
    return row


async def advance_introduction(
    conn: asyncpg.Connection,
    employer_id: UUID,
    candidate_id: UUID,
    target: IntroductionStatus,
) -> None:
    """Move the pair's introduction forward to ``target`` if it is behind it."""
    await conn.execute(
        """
        UPDATE candidate_introductions
        SET status = $3, updated_at = NOW()
        WHERE employer_id = $1 AND candidate_id = $2 AND status = ANY($4::text[])
        """,
        employer_id,
        candidate_id,
        target.value,
        introduction_statuses_before(target),
    )


def offer_expired_intents(offer: dict[str, Any]) -> list[NotificationIntent]:
    common = {
        "offer_id": offer["id"],
        "position": offer["position"],
        "job_title": offer.get("job_title"),
        "company_name": offer.get("company_name"),
        "expires_at": offer.get("expires_at"),
    }
    return [
        intent(offer.get("candidate_email"), offer.get("candidate_name"), TemplateKey.OFFER_EXPIRED, role="candidate", **common),
        intent(offer.get("employer_email"), offer.get("employer_name"), TemplateKey.OFFER_EXPIRED, role="employer", **common),
    ]


async def expire_offer(
    conn: asyncpg.Connection,
    offer: dict[str, Any],
    now: datetime,
    *,
    mark_notified: bool = False,
) -> bool:
    """Pending -> expired and application -> rejected. Must run inside a transaction.

    Returns False when the offer was no longer pending at write time.
    """
    expired = await conn.fetchrow(
        """
        UPDATE offers
        SET status = 'expired', responded_at = NULL,
            expiry_notified_at = CASE WHEN $3 THEN $2 ELSE expiry_notified_at END
        WHERE id = $1 AND status = 'pending'
        RETURNING id
        """,
        offer["id"],
        now,
        mark_notified,
    )
    if expired is None:
        return False
    await conn.execute(
        """
        UPDATE applications
        SET status = 'rejected', updated_at = NOW()
        WHERE id = $1 AND status = 'offered'
        """,
        offer["application_id"],
    )
    return True


def is_offer_expired(offer: dict[str, Any], now: datetime) -> bool:
    expires_at = as_aware(offer["expires_at"])
    return expires_at is not None and now > expires_at


async def make_offer(
    conn: asyncpg.Connection,
    actor: CurrentUser,
    application_id: UUID,
    terms: OfferTerms,
    *,
    now: Optional[datetime] = None,
    default_expiry_days: int = DEFAULT_OFFER_EXPIRY_DAYS,
) -> CommandResult:
    now = utcnow(now)
    if terms.salary < 0:
        raise ValidationError("salary cannot be negative")
    expires_at = as_aware(terms.expires_at) or now + timedelta(days=default_expiry_days)
    if expires_at <= now:
        raise ValidationError("expires_at must be in the future")

    async with conn.transaction():
        application = await lock_application(conn, application_id)
        require_employer_of(actor, application["employer_id"])

        status = coerce_status(ApplicationStatus, application["status"])
        if is_application_terminal(status):
            raise InvalidStateError(f"Cannot make an offer on a {status.value} application")
        if status not in OFFERABLE_APPLICATION_STATUSES:
            has_completed_interview = await conn.fetchval(
                """
                SELECT EXISTS(
                    SELECT 1 FROM interviews WHERE application_id = $1 AND status = 'completed'
                )
                """,
                application_id,
            )
            if not has_completed_interview and status != ApplicationStatus.OFFERED:
                raise InvalidStateError(
                    f"Cannot make an offer while the application is {status.value}"
                )

        # UNIQUE(application_id) decides concurrent offers
        offer = await conn.fetchrow(
            """
            INSERT INTO offers (
                application_id, job_id, candidate_id, employer_id, position, salary,
                start_date, benefits, notes, status, expires_at
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, 'pending', $10)
            ON CONFLICT (application_id) DO NOTHING
            RETURNING *
            """,
            application_id,
            application["job_id"],
            application["candidate_id"],
            application["employer_id"],
            terms.position.strip(),
            terms.salary,
            terms.start_date,
            terms.benefits,
            terms.notes,
            expires_at,
        )
        if offer is None:
            raise ConflictError("An offer already exists for this application")

        await conn.execute(
            "UPDATE applications SET status = 'offered', updated_at = NOW() WHERE id = $1",
            application_id,
        )
        await advance_introduction(
            conn,
            application["employer_id"],
            application["candidate_id"],
            IntroductionStatus.OFFER_EXTENDED,
        )

    offer = dict(offer)
    logger.info("[Offers] Offer %s extended for application %s", offer["id"], application_id)
    return CommandResult(
        entity=offer,
        notifications=[
            intent(
                application["candidate_email"],
                application["candidate_name"],
                TemplateKey.OFFER_EXTENDED,
                role="candidate",
                offer_id=offer["id"],
                position=offer["position"],
                company_name=application["company_name"],
                salary=offer["salary"],
                start_date=offer["start_date"],
                expires_at=offer["expires_at"],
            )
        ],
    )


async def respond_to_offer(
    conn: asyncpg.Connection,
    actor: CurrentUser,
    offer_id: UUID,
    decision: str | OfferDecision,
    reason: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
    upfront_percentage: int = DEFAULT_UPFRONT_PERCENTAGE,
    guarantee_period_days: int = DEFAULT_GUARANTEE_PERIOD_DAYS,
) -> CommandResult:
    """Candidate accepts or declines a pending offer.

    An expired offer is moved to expired (and its application to rejected) and
    committed before ExpiredError is raised.
    """
    candidate_id = require_candidate(actor)
    try:
        decision = OfferDecision(decision)
    except ValueError as exc:
        raise ValidationError(f"Invalid decision '{decision}'. Use 'accept' or 'decline'.") from exc
    now = utcnow(now)

    expired_offer: Optional[dict[str, Any]] = None
    async with conn.transaction():
        offer = await lock_offer(conn, offer_id)
        if offer["candidate_id"] != candidate_id:
            raise ForbiddenError("You do not have permission to respond to this offer")
        if offer["status"] != OfferStatus.PENDING.value:
            raise ConflictError(f"Cannot respond to an offer with status: {offer['status']}")

        if is_offer_expired(offer, now):
            await expire_offer(conn, offer, now, mark_notified=True)
            expired_offer = offer
        elif decision == OfferDecision.ACCEPT:
            result = await _accept_offer(
                conn,
                offer,
                now,
                upfront_percentage=upfront_percentage,
                guarantee_period_days=guarantee_period_days,
            )
        else:
            result = await _decline_offer(conn, offer, now, reason)

    if expired_offer is not None:
        raise ExpiredError(
            "This offer has expired",
            details={"offer_id": str(offer_id), "expires_at": str(expired_offer["expires_at"])},
            notifications=offer_expired_intents(expired_offer),
        )
    return result


async def _accept_offer(
    conn: asyncpg.Connection,
    offer: dict[str, Any],
    now: datetime,
    *,
    upfront_percentage: int,
    guarantee_period_days: int,
) -> CommandResult:
    validate_offer_transition(offer["status"], OfferStatus.ACCEPTED)

    updated = await conn.fetchrow(
        """
        UPDATE offers
        SET status = 'accepted', responded_at = $2
        WHERE id = $1 AND status = 'pending'
        RETURNING *
        """,
        offer["id"],
        now,
    )
    if updated is None:
        raise ConflictError("Offer was already responded to")

    application = await conn.fetchrow(
        """
        UPDATE applications
        SET status = 'accepted',
            claim_status = CASE WHEN claim_status = 'claimed' THEN 'converted' ELSE claim_status END,
            updated_at = NOW()
        WHERE id = $1 AND status = 'offered'
        RETURNING id
        """,
        offer["application_id"],
    )
    if application is None:
        raise ConflictError("Application is no longer awaiting an offer decision")

    fee = calculate_fee(offer["salary"], offer["experience_level"], upfront_percentage=upfront_percentage)
    placement = await conn.fetchrow(
        """
        INSERT INTO placements (
            offer_id, candidate_id, employer_id, job_id, job_title, salary,
            fee_percentage, placement_fee, upfront_amount, remaining_amount,
            start_date, guarantee_period_days, guarantee_end_date,
            status, payment_status
        )
        VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, 'pending', 'pending')
        ON CONFLICT (offer_id) DO NOTHING
        RETURNING *
        """,
        offer["id"],
        offer["candidate_id"],
        offer["employer_id"],
        offer["job_id"],
        offer["position"],
        offer["salary"],
        fee.fee_percentage,
        fee.placement_fee,
        fee.upfront_amount,
        fee.remaining_amount,
        offer["start_date"],
        guarantee_period_days,
        guarantee_end_date(offer["start_date"], guarantee_period_days),
    )
    if placement is None:
        raise ConflictError("A placement already exists for this offer")

    await conn.execute(
        "UPDATE candidates SET is_available = false WHERE id = $1",
        offer["candidate_id"],
    )
    await advance_introduction(conn, offer["employer_id"], offer["candidate_id"], IntroductionStatus.HIRED)

    placement = dict(placement)
    logger.info(
        "[Offers] Offer %s accepted, placement %s created (fee %s cents)",
        offer["id"],
        placement["id"],
        fee.placement_fee,
    )
    common = {
        "offer_id": offer["id"],
        "position": offer["position"],
        "company_name": offer["company_name"],
        "candidate_name": offer["candidate_name"],
        "start_date": offer["start_date"],
    }
    return CommandResult(
        entity=dict(updated),
        notifications=[
            intent(offer["candidate_email"], offer["candidate_name"], TemplateKey.OFFER_ACCEPTED, role="candidate", **common),
            intent(offer["employer_email"], offer["employer_name"], TemplateKey.OFFER_ACCEPTED, role="employer", **common),
            intent(
                offer["employer_email"],
                offer["employer_name"],
                TemplateKey.PLACEMENT_CREATED,
                role="employer",
                placement_id=placement["id"],
                job_title=placement["job_title"],
                **fee.to_dict(),
            ),
        ],
        extra={"placement": placement},
    )


async def _decline_offer(
    conn: asyncpg.Connection,
    offer: dict[str, Any],
    now: datetime,
    reason: Optional[str],
) -> CommandResult:
    validate_offer_transition(offer["status"], OfferStatus.DECLINED)

    updated = await conn.fetchrow(
        """
        UPDATE offers
        SET status = 'declined', responded_at = $2, decline_reason = $3
        WHERE id = $1 AND status = 'pending'
        RETURNING *
        """,
        offer["id"],
        now,
        (reason or "").strip() or None,
    )
    if updated is None:
        raise ConflictError("Offer was already responded to")

    await conn.execute(
        "UPDATE applications SET status = 'rejected', updated_at = NOW() WHERE id = $1 AND status = 'offered'",
        offer["application_id"],
    )

    return CommandResult(
        entity=dict(updated),
        notifications=[
            intent(
                offer["employer_email"],
                offer["employer_name"],
                TemplateKey.OFFER_DECLINED,
                role="employer",
                offer_id=offer["id"],
                position=offer["position"],
                candidate_name=offer["candidate_name"],
                reason=(reason or "").strip() or None,
            )
        ],
    )


async def withdraw_offer(
    conn: asyncpg.Connection,
    actor: CurrentUser,
    offer_id: UUID,
    reason: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
) -> CommandResult:
    now = utcnow(now)

    async with conn.transaction():
        offer = await lock_offer(conn, offer_id)
        require_employer_of(actor, offer["employer_id"])
        validate_offer_transition(offer["status"], OfferStatus.WITHDRAWN)

        updated = await conn.fetchrow(
            """
            UPDATE offers
            SET status = 'withdrawn', responded_at = $2, withdraw_reason = $3
            WHERE id = $1 AND status = 'pending'
            RETURNING *
            """,
            offer_id,
            now,
            (reason or "").strip() or None,
        )
        if updated is None:
            raise ConflictError("Offer was already responded to")

        await conn.execute(
            "UPDATE applications SET status = 'interviewed', updated_at = NOW() WHERE id = $1 AND status = 'offered'",
            offer["application_id"],
        )

    return CommandResult(
        entity=dict(updated),
        notifications=[
            intent(
                offer["candidate_email"],
                offer["candidate_name"],
                TemplateKey.OFFER_WITHDRAWN,
                role="candidate",
                offer_id=offer_id,
                position=offer["position"],
                company_name=offer["company_name"],
                reason=(reason or "").strip() or None,
            )
        ],
    )
