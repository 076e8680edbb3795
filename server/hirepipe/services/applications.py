"""Application commands: submit, review, withdraw, and admin claim tracking."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Optional
from uuid import UUID

import asyncpg

from ..core.models.auth import CurrentUser
from ..models.application import ApplicationListQuery
from .actors import (
    as_aware,
    require_admin,
    require_candidate,
    require_employer_of,
    row_to_dict,
    utcnow,
)
from .errors import ConflictError, ForbiddenError, InvalidStateError, InvalidTransitionError, NotFoundError, ValidationError
from .notifications import CommandResult, TemplateKey, intent
from .pipeline_state_machine import (
    OFFER_GATED_APPLICATION_STATUSES,
    ApplicationStatus,
    ClaimStatus,
    OfferStatus,
    coerce_status,
    is_application_terminal,
    is_forward_review,
    validate_application_transition,
)

logger = logging.getLogger(__name__)

APPLICATION_CONTEXT_SQL = """
    SELECT
        a.*,
        j.employer_id,
        j.title AS job_title,
        c.email AS candidate_email,
        c.name AS candidate_name,
        e.company_name,
        eu.email AS employer_email,
        eu.name AS employer_name
    FROM applications a
    JOIN jobs j ON j.id = a.job_id
    JOIN candidates c ON c.id = a.candidate_id
    JOIN employers e ON e.id = j.employer_id
    JOIN users eu ON eu.id = e.user_id
    WHERE a.id = $1
    FOR UPDATE OF a
"""


async def lock_application(conn: asyncpg.Connection, application_id: UUID) -> dict[str, Any]:
    """Load an application with its job/candidate/employer context and lock the row."""
    row = row_to_dict(await conn.fetchrow(APPLICATION_CONTEXT_SQL, application_id))
    if row is None:
        raise NotFoundError("Application")
    return row


async def submit_application(
    conn: asyncpg.Connection,
    actor: CurrentUser,
    job_id: UUID,
    cover_letter: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
) -> CommandResult:
    candidate_id = require_candidate(actor)
    now = utcnow(now)

    async with conn.transaction():
        job = await conn.fetchrow(
            """
            SELECT j.id, j.title, j.status, j.deadline, j.employer_id,
                   e.company_name, eu.email AS employer_email, eu.name AS employer_name
            FROM jobs j
            JOIN employers e ON e.id = j.employer_id
            JOIN users eu ON eu.id = e.user_id
            WHERE j.id = $1
            """,
            job_id,
        )
        if job is None:
            raise NotFoundError("Job")
        if job["status"] != "active":
            raise InvalidStateError(f"Job is not accepting applications (status: {job['status']})")
        deadline = as_aware(job["deadline"])
        if deadline is not None and deadline < now:
            raise InvalidStateError("The application deadline for this job has passed")

        # The (candidate_id, job_id) unique constraint decides concurrent submissions
        row = await conn.fetchrow(
            """
            INSERT INTO applications (candidate_id, job_id, status, cover_letter, applied_at)
            VALUES ($1, $2, 'pending', $3, $4)
            ON CONFLICT (candidate_id, job_id) DO NOTHING
            RETURNING *
            """,
            candidate_id,
            job_id,
            (cover_letter or "").strip() or None,
            now,
        )
        if row is None:
            raise ConflictError("You have already applied to this job")

    application = dict(row)
    logger.info("[Applications] Candidate %s applied to job %s", candidate_id, job_id)
    return CommandResult(
        entity=application,
        notifications=[
            intent(
                job["employer_email"],
                job["employer_name"],
                TemplateKey.APPLICATION_RECEIVED,
                role="employer",
                application_id=application["id"],
                job_id=job_id,
                job_title=job["title"],
            )
        ],
    )


async def review_application(
    conn: asyncpg.Connection,
    actor: CurrentUser,
    application_id: UUID,
    new_status: str | ApplicationStatus,
    *,
    now: Optional[datetime] = None,
) -> CommandResult:
    """Employer review action. Only forward moves; offered needs a pending offer
    and accepted is reserved for the candidate's offer acceptance."""
    target = coerce_status(ApplicationStatus, new_status)
    now = utcnow(now)

    if target == ApplicationStatus.WITHDRAWN:
        raise ValidationError("Only the candidate can withdraw an application")
    if target == ApplicationStatus.ACCEPTED:
        raise InvalidTransitionError(
            "An application becomes accepted only when the candidate accepts its offer"
        )

    async with conn.transaction():
        application = await lock_application(conn, application_id)
        require_employer_of(actor, application["employer_id"])

        current = coerce_status(ApplicationStatus, application["status"])
        if current == target:
            raise ConflictError(f"Application is already {current.value}")
        if is_application_terminal(current):
            raise InvalidTransitionError(
                f"Application is {current.value} and can no longer change status"
            )
        if target in OFFER_GATED_APPLICATION_STATUSES:
            has_offer = await conn.fetchval(
                "SELECT EXISTS(SELECT 1 FROM offers WHERE application_id = $1 AND status = $2)",
                application_id,
                OfferStatus.PENDING.value,
            )
            if not has_offer:
                raise InvalidStateError(
                    f"Cannot move an application to {target.value} without a pending offer"
                )
        if not is_forward_review(current, target):
            raise InvalidTransitionError(
                f"Cannot move application backwards from {current.value} to {target.value}"
            )

        row = await conn.fetchrow(
            """
            UPDATE applications
            SET status = $2,
                reviewed_at = COALESCE(reviewed_at, $3),
                updated_at = NOW()
            WHERE id = $1 AND status = $4
            RETURNING *
            """,
            application_id,
            target.value,
            now,
            current.value,
        )
        if row is None:
            raise ConflictError("Application status changed concurrently, refresh and retry")

    return CommandResult(
        entity=dict(row),
        notifications=[
            intent(
                application["candidate_email"],
                application["candidate_name"],
                TemplateKey.APPLICATION_STATUS_CHANGED,
                role="candidate",
                application_id=application_id,
                job_title=application["job_title"],
                company_name=application["company_name"],
                previous_status=current.value,
                status=target.value,
            )
        ],
    )


async def withdraw_application(
    conn: asyncpg.Connection,
    actor: CurrentUser,
    application_id: UUID,
    *,
    now: Optional[datetime] = None,
) -> CommandResult:
    candidate_id = require_candidate(actor)
    now = utcnow(now)

    async with conn.transaction():
        application = await lock_application(conn, application_id)
        if application["candidate_id"] != candidate_id:
            raise ForbiddenError("You don't have permission to withdraw this application")

        current, _ = validate_application_transition(application["status"], ApplicationStatus.WITHDRAWN)

        row = await conn.fetchrow(
            """
            UPDATE applications
            SET status = 'withdrawn', updated_at = NOW()
            WHERE id = $1 AND status = $2
            RETURNING *
            """,
            application_id,
            current.value,
        )
        if row is None:
            raise ConflictError("Application status changed concurrently, refresh and retry")

        # A pending offer cannot outlive its application
        await conn.execute(
            """
            UPDATE offers
            SET status = 'withdrawn', withdraw_reason = 'Application withdrawn by candidate',
                responded_at = $2
            WHERE application_id = $1 AND status = $3
            """,
            application_id,
            now,
            OfferStatus.PENDING.value,
        )

    return CommandResult(
        entity=dict(row),
        notifications=[
            intent(
                application["employer_email"],
                application["employer_name"],
                TemplateKey.APPLICATION_WITHDRAWN,
                role="employer",
                application_id=application_id,
                job_title=application["job_title"],
                candidate_name=application["candidate_name"],
            )
        ],
    )


async def claim_application(
    conn: asyncpg.Connection,
    actor: CurrentUser,
    application_id: UUID,
    notes: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
) -> CommandResult:
    require_admin(actor)
    now = utcnow(now)

    async with conn.transaction():
        row = await conn.fetchrow(
            """
            UPDATE applications
            SET claim_status = 'claimed', claimed_by = $2, claimed_at = $3,
                claim_notes = $4, updated_at = NOW()
            WHERE id = $1 AND claim_status = 'unclaimed'
            RETURNING *
            """,
            application_id,
            actor.id,
            now,
            (notes or "").strip() or None,
        )
        if row is None:
            existing = await conn.fetchrow(
                "SELECT claim_status FROM applications WHERE id = $1",
                application_id,
            )
            if existing is None:
                raise NotFoundError("Application")
            if existing["claim_status"] == ClaimStatus.CONVERTED.value:
                raise ConflictError("Application has already been converted to a placement")
            raise ConflictError("Application is already claimed")

    logger.info("[Applications] Admin %s claimed application %s", actor.id, application_id)
    return CommandResult(entity=dict(row))


async def release_claim(
    conn: asyncpg.Connection,
    actor: CurrentUser,
    application_id: UUID,
) -> CommandResult:
    require_admin(actor)

    async with conn.transaction():
        existing = await conn.fetchrow(
            "SELECT claim_status, claimed_by FROM applications WHERE id = $1 FOR UPDATE",
            application_id,
        )
        if existing is None:
            raise NotFoundError("Application")
        if existing["claim_status"] != ClaimStatus.CLAIMED.value:
            raise InvalidStateError("Application is not currently claimed")
        if existing["claimed_by"] != actor.id:
            raise ForbiddenError("Only the admin who claimed this application can release it")

        row = await conn.fetchrow(
            """
            UPDATE applications
            SET claim_status = 'unclaimed', claimed_by = NULL, claimed_at = NULL,
                claim_notes = NULL, updated_at = NOW()
            WHERE id = $1 AND claim_status = 'claimed' AND claimed_by = $2
            RETURNING *
            """,
            application_id,
            actor.id,
        )
        if row is None:
            raise ConflictError("Claim changed concurrently, refresh and retry")

    return CommandResult(entity=dict(row))


async def list_applications(
    conn: asyncpg.Connection,
    query: ApplicationListQuery,
) -> list[dict[str, Any]]:
    clauses: list[str] = []
    args: list[Any] = []

    def _add(fragment: str, value: Any) -> None:
        args.append(value)
        clauses.append(fragment.format(n=len(args)))

    if query.status is not None:
        _add("a.status = ${n}", query.status.value)
    if query.claim_status is not None:
        _add("a.claim_status = ${n}", query.claim_status.value)
    if query.claimed_by is not None:
        _add("a.claimed_by = ${n}", query.claimed_by)
    if query.job_id is not None:
        _add("a.job_id = ${n}", query.job_id)
    if query.search:
        _add("(c.name ILIKE ${n} OR j.title ILIKE ${n})", f"%{query.search}%")

    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    args.extend([query.limit, query.offset])
    rows = await conn.fetch(
        f"""
        SELECT a.*, j.title AS job_title, c.name AS candidate_name
        FROM applications a
        JOIN jobs j ON j.id = a.job_id
        JOIN candidates c ON c.id = a.candidate_id
        {where}
        ORDER BY a.applied_at DESC
        LIMIT ${len(args) - 1} OFFSET ${len(args)}
        """,
        *args,
    )
    return [dict(row) for row in rows]
