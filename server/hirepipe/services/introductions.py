"""Introduction requests between an employer and a candidate.

An employer with a signed service agreement asks to be introduced; the
candidate answers through a single-use link. Accepting moves the pair to
``introduced``, which unlocks full profile access and starts the
protection window tracked by the introductions sweep.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta
from typing import Any, Optional
from uuid import UUID

import asyncpg

from ..core.models.auth import CurrentUser
from ..models.introduction import CandidateResponse
from .access_gate import AccessLevel, determine_access_level, gated_name
from .actors import as_aware, row_to_dict, utcnow
from .errors import (
    ConflictError,
    ExpiredError,
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from .notifications import CommandResult, TemplateKey, intent
from .pipeline_state_machine import IntroductionStatus, can_advance_introduction, coerce_status

logger = logging.getLogger(__name__)

DEFAULT_PROTECTION_DAYS = 365
DEFAULT_TOKEN_EXPIRY_DAYS = 7

_RESPONSE_TARGETS = {
    CandidateResponse.ACCEPTED: IntroductionStatus.INTRODUCED,
    CandidateResponse.DECLINED: IntroductionStatus.CANDIDATE_DECLINED,
}

INTRODUCTION_BY_TOKEN_SQL = """
    SELECT
        ci.*,
        c.name AS candidate_name,
        c.email AS candidate_email,
        c.phone AS candidate_phone,
        c.linkedin_url AS candidate_linkedin_url,
        e.company_name,
        eu.email AS employer_email,
        eu.name AS employer_name,
        j.title AS job_title
    FROM candidate_introductions ci
    JOIN candidates c ON c.id = ci.candidate_id
    JOIN employers e ON e.id = ci.employer_id
    JOIN users eu ON eu.id = e.user_id
    LEFT JOIN jobs j ON j.id = ci.job_id
    WHERE ci.response_token = $1
"""


def generate_response_token() -> str:
    return secrets.token_urlsafe(32)


def is_token_expired(expires_at: Optional[datetime], now: datetime) -> bool:
    expires_at = as_aware(expires_at)
    return expires_at is None or now > expires_at


def _require_employer(actor: CurrentUser) -> UUID:
    if actor.role != "employer" or actor.employer_id is None:
        raise ForbiddenError("Employer access required")
    return actor.employer_id


async def request_introduction(
    conn: asyncpg.Connection,
    actor: CurrentUser,
    candidate_id: UUID,
    job_id: Optional[UUID] = None,
    message: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
    protection_days: int = DEFAULT_PROTECTION_DAYS,
    token_expiry_days: int = DEFAULT_TOKEN_EXPIRY_DAYS,
    app_base_url: str = "",
) -> CommandResult:
    """Employer asks for an introduction. Re-requesting reissues the response link."""
    employer_id = _require_employer(actor)
    now = utcnow(now)

    async with conn.transaction():
        employer = await conn.fetchrow(
            """
            SELECT e.id, e.company_name,
                   EXISTS(SELECT 1 FROM service_agreements sa WHERE sa.employer_id = e.id) AS has_agreement
            FROM employers e
            WHERE e.id = $1
            """,
            employer_id,
        )
        if employer is None:
            raise NotFoundError("Employer")
        if not employer["has_agreement"]:
            raise ForbiddenError("Service agreement must be signed to request introductions")

        candidate = await conn.fetchrow(
            "SELECT id, name, email FROM candidates WHERE id = $1",
            candidate_id,
        )
        if candidate is None:
            raise NotFoundError("Candidate")

        job_title = None
        if job_id is not None:
            job = await conn.fetchrow("SELECT id, title, employer_id FROM jobs WHERE id = $1", job_id)
            if job is None:
                raise NotFoundError("Job")
            if job["employer_id"] != employer_id:
                raise ForbiddenError("You can only request introductions for your own jobs")
            job_title = job["title"]

        token = generate_response_token()
        row = await conn.fetchrow(
            """
            INSERT INTO candidate_introductions (
                employer_id, candidate_id, job_id, status, intro_requested_at,
                candidate_response, response_token, response_token_expires_at, protection_ends_at
            )
            VALUES ($1, $2, $3, 'intro_requested', $4, 'pending', $5, $6, $7)
            ON CONFLICT (employer_id, candidate_id) DO UPDATE
            SET status = 'intro_requested',
                intro_requested_at = EXCLUDED.intro_requested_at,
                job_id = COALESCE(EXCLUDED.job_id, candidate_introductions.job_id),
                candidate_response = 'pending',
                candidate_responded_at = NULL,
                response_token = EXCLUDED.response_token,
                response_token_expires_at = EXCLUDED.response_token_expires_at,
                protection_ends_at = COALESCE(
                    candidate_introductions.protection_ends_at, EXCLUDED.protection_ends_at
                ),
                updated_at = NOW()
            WHERE candidate_introductions.status IN ('profile_viewed', 'intro_requested')
            RETURNING *
            """,
            employer_id,
            candidate_id,
            job_id,
            now,
            token,
            now + timedelta(days=token_expiry_days),
            now + timedelta(days=protection_days),
        )
        if row is None:
            raise ConflictError("The introduction with this candidate is already past the request stage")

    introduction = dict(row)
    # The link goes to the candidate only
    introduction.pop("response_token", None)
    logger.info("[Introductions] Employer %s requested introduction to candidate %s", employer_id, candidate_id)
    return CommandResult(
        entity=introduction,
        notifications=[
            intent(
                candidate["email"],
                candidate["name"],
                TemplateKey.INTRODUCTION_REQUESTED,
                role="candidate",
                introduction_id=introduction["id"],
                company_name=employer["company_name"],
                job_title=job_title,
                message=(message or "").strip() or None,
                response_url=f"{app_base_url}/introductions/respond/{token}",
                response_expires_at=introduction["response_token_expires_at"],
            )
        ],
    )


async def get_introduction_for_response(
    conn: asyncpg.Connection,
    token: str,
    *,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    """What the candidate sees before answering. Contact details are never included."""
    now = utcnow(now)
    introduction = row_to_dict(await conn.fetchrow(INTRODUCTION_BY_TOKEN_SQL, token))
    if introduction is None:
        raise NotFoundError("Introduction")
    if is_token_expired(introduction["response_token_expires_at"], now):
        raise ExpiredError("This link has expired. Please contact support for a new link.")
    if introduction["candidate_response"] not in (None, CandidateResponse.PENDING.value):
        raise ConflictError(
            "You have already responded to this introduction request",
            details={"response": introduction["candidate_response"]},
        )
    return {
        "id": introduction["id"],
        "status": introduction["status"],
        "requested_at": introduction["intro_requested_at"],
        "company_name": introduction["company_name"],
        "job_title": introduction["job_title"],
        "candidate_name": introduction["candidate_name"],
    }


async def respond_to_introduction(
    conn: asyncpg.Connection,
    token: str,
    response: str | CandidateResponse,
    message: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
    admin_email: Optional[str] = None,
) -> CommandResult:
    """Candidate answers through the emailed link. The token is single use."""
    try:
        response = CandidateResponse(response)
    except ValueError as exc:
        raise ValidationError("Response must be accepted, declined or questions") from exc
    if response == CandidateResponse.PENDING:
        raise ValidationError("Response must be accepted, declined or questions")
    message = (message or "").strip() or None
    if response == CandidateResponse.QUESTIONS and message is None:
        raise ValidationError("A message is required when asking questions")
    now = utcnow(now)

    async with conn.transaction():
        introduction = row_to_dict(await conn.fetchrow(f"{INTRODUCTION_BY_TOKEN_SQL} FOR UPDATE OF ci", token))
        if introduction is None:
            raise NotFoundError("Introduction")
        if is_token_expired(introduction["response_token_expires_at"], now):
            raise ExpiredError("This link has expired. Please contact support for a new link.")
        if introduction["candidate_response"] not in (None, CandidateResponse.PENDING.value):
            raise ConflictError("You have already responded to this introduction request")

        current = coerce_status(IntroductionStatus, introduction["status"])
        target = _RESPONSE_TARGETS.get(response, current)
        if target != current and not can_advance_introduction(current, target):
            raise InvalidTransitionError(
                f"Introduction is {current.value} and cannot move to {target.value}"
            )

        row = await conn.fetchrow(
            """
            UPDATE candidate_introductions
            SET candidate_response = $3,
                candidate_responded_at = $4,
                candidate_message = $5,
                status = $6,
                introduced_at = COALESCE($7, introduced_at),
                response_token = NULL,
                response_token_expires_at = NULL,
                updated_at = NOW()
            WHERE id = $1 AND response_token = $2
            RETURNING *
            """,
            introduction["id"],
            token,
            response.value,
            now,
            message,
            target.value,
            now if target == IntroductionStatus.INTRODUCED else None,
        )
        if row is None:
            raise ConflictError("You have already responded to this introduction request")

    logger.info(
        "[Introductions] Candidate %s responded %s to employer %s",
        introduction["candidate_id"],
        response.value,
        introduction["employer_id"],
    )
    job_title = introduction["job_title"] or "Open Position"
    if response == CandidateResponse.ACCEPTED:
        notice = intent(
            introduction["employer_email"],
            introduction["employer_name"],
            TemplateKey.INTRODUCTION_ACCEPTED,
            role="employer",
            introduction_id=introduction["id"],
            candidate_id=introduction["candidate_id"],
            candidate_name=introduction["candidate_name"],
            candidate_email=introduction["candidate_email"],
            candidate_phone=introduction["candidate_phone"],
            candidate_linkedin_url=introduction["candidate_linkedin_url"],
            job_title=job_title,
        )
    elif response == CandidateResponse.DECLINED:
        first_name = (introduction["candidate_name"] or "").split(" ")[0] or None
        notice = intent(
            introduction["employer_email"],
            introduction["employer_name"],
            TemplateKey.INTRODUCTION_DECLINED,
            role="employer",
            introduction_id=introduction["id"],
            candidate_first_name=first_name,
            job_title=job_title,
        )
    else:
        notice = intent(
            admin_email,
            None,
            TemplateKey.INTRODUCTION_QUESTIONS,
            role="admin",
            introduction_id=introduction["id"],
            candidate_name=introduction["candidate_name"],
            candidate_email=introduction["candidate_email"],
            company_name=introduction["company_name"],
            job_title=job_title,
            questions=message,
        )
    return CommandResult(entity=dict(row), notifications=[notice])


async def list_employer_introductions(
    conn: asyncpg.Connection,
    actor: CurrentUser,
    *,
    status: Optional[str] = None,
) -> list[dict[str, Any]]:
    employer_id = _require_employer(actor)
    args: list[Any] = [employer_id]
    status_clause = ""
    if status is not None:
        args.append(coerce_status(IntroductionStatus, status).value)
        status_clause = "AND ci.status = $2"
    rows = await conn.fetch(
        f"""
        SELECT ci.id, ci.candidate_id, ci.job_id, ci.status, ci.candidate_response,
               ci.intro_requested_at, ci.introduced_at, ci.protection_ends_at,
               c.name AS candidate_name, j.title AS job_title
        FROM candidate_introductions ci
        JOIN candidates c ON c.id = ci.candidate_id
        LEFT JOIN jobs j ON j.id = ci.job_id
        WHERE ci.employer_id = $1 {status_clause}
        ORDER BY ci.updated_at DESC
        """,
        *args,
    )
    introductions = []
    for row in rows:
        introduction = dict(row)
        if determine_access_level(True, introduction) != AccessLevel.FULL_ACCESS:
            introduction["candidate_name"] = gated_name(introduction["candidate_name"])
        introductions.append(introduction)
    return introductions
