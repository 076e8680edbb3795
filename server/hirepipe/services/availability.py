"""Interview scheduling: propose / select / confirm slots and reschedules.

Employer proposes availability, the candidate picks a subset, the employer
confirms exactly one. A reschedule archives the booked interview and links the
replacement through ``rescheduled_from_id`` so the history stays auditable.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Optional, Sequence
from uuid import UUID

import asyncpg

from ..core.models.auth import CurrentUser
from ..models.interview import AvailabilitySlotInput, MeetingDetails
from .actors import as_aware, is_party, require_candidate, require_employer_of, row_to_dict, utcnow
from .applications import lock_application
from .errors import ConflictError, ExpiredError, ForbiddenError, InvalidStateError, NotFoundError, ValidationError
from .notifications import CommandResult, NotificationIntent, TemplateKey, intent
from .offers import advance_introduction
from .pipeline_state_machine import (
    BOOKED_INTERVIEW_STATUSES,
    SLOT_SELECTABLE_INTERVIEW_STATUSES,
    ApplicationStatus,
    InterviewStatus,
    IntroductionStatus,
    can_transition_application,
    coerce_status,
    is_application_terminal,
    validate_interview_transition,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_CHAIN_HOPS = 50

INTERVIEW_CONTEXT_SQL = """
    SELECT
        i.*,
        j.title AS job_title,
        c.email AS candidate_email,
        c.name AS candidate_name,
        e.company_name,
        eu.email AS employer_email,
        eu.name AS employer_name
    FROM interviews i
    JOIN applications a ON a.id = i.application_id
    JOIN jobs j ON j.id = a.job_id
    JOIN candidates c ON c.id = i.candidate_id
    JOIN employers e ON e.id = i.employer_id
    JOIN users eu ON eu.id = e.user_id
    WHERE i.id = $1
    FOR UPDATE OF i
"""


async def lock_interview(conn: asyncpg.Connection, interview_id: UUID) -> dict[str, Any]:
    row = row_to_dict(await conn.fetchrow(INTERVIEW_CONTEXT_SQL, interview_id))
    if row is None:
        raise NotFoundError("Interview")
    return row


def _interview_payload(interview: dict[str, Any], **extra: Any) -> dict[str, Any]:
    return {
        "interview_id": interview["id"],
        "job_title": interview.get("job_title"),
        "company_name": interview.get("company_name"),
        "candidate_name": interview.get("candidate_name"),
        **extra,
    }


def _to_candidate(interview: dict[str, Any], template_key: str, **extra: Any) -> NotificationIntent:
    return intent(
        interview.get("candidate_email"),
        interview.get("candidate_name"),
        template_key,
        role="candidate",
        **_interview_payload(interview, **extra),
    )


def _to_employer(interview: dict[str, Any], template_key: str, **extra: Any) -> NotificationIntent:
    return intent(
        interview.get("employer_email"),
        interview.get("employer_name"),
        template_key,
        role="employer",
        **_interview_payload(interview, **extra),
    )


def _archive_note(notes: Optional[str], reason: Optional[str], scheduled_at: Optional[datetime]) -> str:
    former = scheduled_at.isoformat() if scheduled_at else "unscheduled"
    line = f"[Rescheduled] previously at {former}"
    if reason:
        line += f": {reason}"
    return f"{notes}\n{line}" if notes else line


async def propose_slots(
    conn: asyncpg.Connection,
    actor: CurrentUser,
    application_id: UUID,
    slots: Sequence[AvailabilitySlotInput],
    duration_minutes: int,
    *,
    round_name: Optional[str] = None,
    round_number: Optional[int] = None,
    interview_type: str = "video",
    now: Optional[datetime] = None,
) -> CommandResult:
    if not slots:
        raise ValidationError("At least one availability slot is required")
    for slot in slots:
        if slot.end_time <= slot.start_time:
            raise ValidationError("Slot end_time must be after start_time")
    if duration_minutes <= 0:
        raise ValidationError("duration_minutes must be positive")
    now = utcnow(now)

    async with conn.transaction():
        application = await lock_application(conn, application_id)
        require_employer_of(actor, application["employer_id"])
        status = coerce_status(ApplicationStatus, application["status"])
        if is_application_terminal(status) or status == ApplicationStatus.OFFERED:
            raise InvalidStateError(f"Cannot schedule an interview while the application is {status.value}")

        # Only a booked interview with a pending reschedule request is replaced;
        # otherwise this opens a fresh interview (e.g. the next round)
        previous = row_to_dict(await conn.fetchrow(
            """
            SELECT id, status, scheduled_at, pending_reschedule, reschedule_reason, notes
            FROM interviews
            WHERE application_id = $1
              AND status IN ('scheduled', 'confirmed')
              AND pending_reschedule = true
            ORDER BY created_at DESC
            LIMIT 1
            FOR UPDATE
            """,
            application_id,
        ))

        rescheduled_from_id = None
        if previous is not None:
            previous_status, _ = validate_interview_transition(previous["status"], InterviewStatus.RESCHEDULED)
            archived = await conn.fetchrow(
                """
                UPDATE interviews
                SET status = 'rescheduled', scheduled_at = NULL, pending_reschedule = false,
                    notes = $3, updated_at = NOW()
                WHERE id = $1 AND status = $2 AND pending_reschedule = true
                RETURNING id
                """,
                previous["id"],
                previous_status.value,
                _archive_note(previous["notes"], previous["reschedule_reason"], as_aware(previous["scheduled_at"])),
            )
            if archived is None:
                raise ConflictError("Interview changed concurrently, refresh and retry")
            rescheduled_from_id = previous["id"]

        interview = await conn.fetchrow(
            """
            INSERT INTO interviews (
                application_id, candidate_id, employer_id, status, duration_minutes,
                interview_type, round_number, round_name, rescheduled_from_id
            )
            VALUES ($1, $2, $3, 'awaiting_candidate', $4, $5, $6, $7, $8)
            RETURNING *
            """,
            application_id,
            application["candidate_id"],
            application["employer_id"],
            duration_minutes,
            interview_type,
            round_number,
            round_name,
            rescheduled_from_id,
        )
        await conn.executemany(
            """
            INSERT INTO interview_availability_slots (interview_id, start_time, end_time)
            VALUES ($1, $2, $3)
            """,
            [(interview["id"], slot.start_time, slot.end_time) for slot in slots],
        )

        if status != ApplicationStatus.INTERVIEW_SCHEDULED and can_transition_application(
            status, ApplicationStatus.INTERVIEW_SCHEDULED
        ):
            await conn.execute(
                """
                UPDATE applications SET status = 'interview_scheduled', updated_at = NOW()
                WHERE id = $1 AND status = $2
                """,
                application_id,
                status.value,
            )
        await advance_introduction(
            conn,
            application["employer_id"],
            application["candidate_id"],
            IntroductionStatus.INTERVIEWING,
        )

    interview = dict(interview)
    logger.info(
        "[Interviews] %d slot(s) proposed for application %s (interview %s)",
        len(slots),
        application_id,
        interview["id"],
    )
    context = {**interview, **{k: application[k] for k in (
        "job_title", "candidate_email", "candidate_name", "company_name",
    )}}
    return CommandResult(
        entity=interview,
        notifications=[
            _to_candidate(
                context,
                TemplateKey.INTERVIEW_SLOTS_PROPOSED,
                slot_count=len(slots),
                duration_minutes=duration_minutes,
                rescheduled=rescheduled_from_id is not None,
            )
        ],
    )


async def request_reschedule(
    conn: asyncpg.Connection,
    actor: CurrentUser,
    interview_id: UUID,
    reason: str,
) -> CommandResult:
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("A reason is required to request a reschedule")

    async with conn.transaction():
        interview = await lock_interview(conn, interview_id)
        if not is_party(actor, candidate_id=interview["candidate_id"], employer_id=interview["employer_id"]):
            raise ForbiddenError("You don't have permission to reschedule this interview")

        status = coerce_status(InterviewStatus, interview["status"])
        if status not in BOOKED_INTERVIEW_STATUSES:
            raise InvalidStateError(f"Cannot reschedule an interview with status: {status.value}")
        if interview["pending_reschedule"]:
            raise ConflictError("A reschedule has already been requested for this interview")

        row = await conn.fetchrow(
            """
            UPDATE interviews
            SET pending_reschedule = true, reschedule_reason = $2, updated_at = NOW()
            WHERE id = $1 AND status = $3 AND pending_reschedule = false
            RETURNING *
            """,
            interview_id,
            reason,
            status.value,
        )
        if row is None:
            raise ConflictError("Interview changed concurrently, refresh and retry")

    # Tell the other side
    if actor.role == "candidate":
        notice = _to_employer(interview, TemplateKey.INTERVIEW_RESCHEDULE_REQUESTED, reason=reason, requested_by="candidate")
    else:
        notice = _to_candidate(interview, TemplateKey.INTERVIEW_RESCHEDULE_REQUESTED, reason=reason, requested_by=actor.role)
    return CommandResult(entity=dict(row), notifications=[notice])


async def select_slots(
    conn: asyncpg.Connection,
    actor: CurrentUser,
    interview_id: UUID,
    slot_ids: Sequence[UUID],
) -> CommandResult:
    candidate_id = require_candidate(actor)
    slot_ids = list(dict.fromkeys(slot_ids))
    if not slot_ids:
        raise ValidationError("Select at least one slot")

    async with conn.transaction():
        interview = await lock_interview(conn, interview_id)
        if interview["candidate_id"] != candidate_id:
            raise ForbiddenError("You don't have permission to select slots for this interview")

        status = coerce_status(InterviewStatus, interview["status"])
        if status not in SLOT_SELECTABLE_INTERVIEW_STATUSES:
            raise InvalidStateError(f"Cannot select slots for an interview with status: {status.value}")

        valid = await conn.fetch(
            """
            SELECT id FROM interview_availability_slots
            WHERE interview_id = $1 AND id = ANY($2::uuid[])
            """,
            interview_id,
            slot_ids,
        )
        if len(valid) != len(slot_ids):
            raise ValidationError("One or more selected slots do not belong to this interview")

        await conn.execute("DELETE FROM interview_slot_selections WHERE interview_id = $1", interview_id)
        await conn.executemany(
            """
            INSERT INTO interview_slot_selections (interview_id, availability_slot_id)
            VALUES ($1, $2)
            """,
            [(interview_id, slot_id) for slot_id in slot_ids],
        )

        row = await conn.fetchrow(
            """
            UPDATE interviews
            SET status = 'awaiting_confirmation', updated_at = NOW()
            WHERE id = $1 AND status = $2
            RETURNING *
            """,
            interview_id,
            status.value,
        )
        if row is None:
            raise ConflictError("Interview changed concurrently, refresh and retry")

    return CommandResult(
        entity=dict(row),
        notifications=[
            _to_employer(interview, TemplateKey.INTERVIEW_SLOTS_SELECTED, slot_count=len(slot_ids))
        ],
        extra={"selected_slot_ids": [str(slot_id) for slot_id in slot_ids]},
    )


async def confirm_slot(
    conn: asyncpg.Connection,
    actor: CurrentUser,
    interview_id: UUID,
    slot_id: UUID,
    meeting: Optional[MeetingDetails] = None,
    *,
    now: Optional[datetime] = None,
) -> CommandResult:
    """Employer picks one of the candidate's selections.

    A selected slot that already started is dropped from the selection and
    ExpiredError is raised once that removal has committed.
    """
    meeting = meeting or MeetingDetails()
    now = utcnow(now)
    expired_slot: Optional[dict[str, Any]] = None

    async with conn.transaction():
        interview = await lock_interview(conn, interview_id)
        require_employer_of(actor, interview["employer_id"])
        validate_interview_transition(interview["status"], InterviewStatus.SCHEDULED)

        slot = row_to_dict(await conn.fetchrow(
            """
            SELECT s.id, s.start_time, s.end_time
            FROM interview_slot_selections sel
            JOIN interview_availability_slots s ON s.id = sel.availability_slot_id
            WHERE sel.interview_id = $1 AND sel.availability_slot_id = $2
            """,
            interview_id,
            slot_id,
        ))
        if slot is None:
            raise ValidationError("The slot was not selected by the candidate")

        start_time = as_aware(slot["start_time"])
        if start_time <= now:
            await conn.execute(
                "DELETE FROM interview_slot_selections WHERE interview_id = $1 AND availability_slot_id = $2",
                interview_id,
                slot_id,
            )
            expired_slot = slot
        else:
            row = await conn.fetchrow(
                """
                UPDATE interviews
                SET status = 'scheduled', scheduled_at = $2, meeting_link = $3,
                    meeting_platform = $4, notes = COALESCE($5, notes), updated_at = NOW()
                WHERE id = $1 AND status = 'awaiting_confirmation'
                RETURNING *
                """,
                interview_id,
                start_time,
                meeting.meeting_link,
                meeting.meeting_platform,
                meeting.notes,
            )
            if row is None:
                raise ConflictError("Interview changed concurrently, refresh and retry")

    if expired_slot is not None:
        raise ExpiredError(
            "The selected slot has already started",
            details={"slot_id": str(slot_id), "start_time": str(expired_slot["start_time"])},
        )

    scheduled = dict(row)
    logger.info("[Interviews] Interview %s scheduled for %s", interview_id, start_time.isoformat())
    details = {
        "scheduled_at": start_time,
        "duration_minutes": scheduled["duration_minutes"],
        "meeting_link": meeting.meeting_link,
        "meeting_platform": meeting.meeting_platform,
    }
    return CommandResult(
        entity=scheduled,
        notifications=[
            _to_candidate(interview, TemplateKey.INTERVIEW_CONFIRMED, **details),
            _to_employer(interview, TemplateKey.INTERVIEW_CONFIRMED, **details),
        ],
    )


async def complete_interview(
    conn: asyncpg.Connection,
    actor: CurrentUser,
    interview_id: UUID,
) -> CommandResult:
    async with conn.transaction():
        interview = await lock_interview(conn, interview_id)
        require_employer_of(actor, interview["employer_id"])
        current, _ = validate_interview_transition(interview["status"], InterviewStatus.COMPLETED)

        row = await conn.fetchrow(
            """
            UPDATE interviews
            SET status = 'completed', pending_reschedule = false, updated_at = NOW()
            WHERE id = $1 AND status = $2
            RETURNING *
            """,
            interview_id,
            current.value,
        )
        if row is None:
            raise ConflictError("Interview changed concurrently, refresh and retry")

        await conn.execute(
            """
            UPDATE applications SET status = 'interviewed', updated_at = NOW()
            WHERE id = $1 AND status = 'interview_scheduled'
            """,
            interview["application_id"],
        )

    return CommandResult(entity=dict(row))


async def cancel_interview(
    conn: asyncpg.Connection,
    actor: CurrentUser,
    interview_id: UUID,
    reason: Optional[str] = None,
) -> CommandResult:
    reason = (reason or "").strip() or None

    async with conn.transaction():
        interview = await lock_interview(conn, interview_id)
        if not is_party(actor, candidate_id=interview["candidate_id"], employer_id=interview["employer_id"]):
            raise ForbiddenError("You don't have permission to cancel this interview")
        current, _ = validate_interview_transition(interview["status"], InterviewStatus.CANCELLED)

        row = await conn.fetchrow(
            """
            UPDATE interviews
            SET status = 'cancelled', scheduled_at = NULL, pending_reschedule = false,
                notes = CASE WHEN $3::text IS NULL THEN notes
                             ELSE COALESCE(notes || E'\\n', '') || '[Cancelled] ' || $3::text END,
                updated_at = NOW()
            WHERE id = $1 AND status = $2
            RETURNING *
            """,
            interview_id,
            current.value,
            reason,
        )
        if row is None:
            raise ConflictError("Interview changed concurrently, refresh and retry")

    if actor.role == "candidate":
        notice = _to_employer(interview, TemplateKey.INTERVIEW_CANCELLED, reason=reason, cancelled_by="candidate")
    else:
        notice = _to_candidate(interview, TemplateKey.INTERVIEW_CANCELLED, reason=reason, cancelled_by=actor.role)
    return CommandResult(entity=dict(row), notifications=[notice])


async def reschedule_chain(
    conn: asyncpg.Connection,
    interview_id: UUID,
    max_hops: int = DEFAULT_MAX_CHAIN_HOPS,
) -> list[dict[str, Any]]:
    """Follow ``rescheduled_from_id`` back to the root, newest first."""
    chain: list[dict[str, Any]] = []
    seen: set = set()
    current_id: Optional[UUID] = interview_id

    while current_id is not None:
        if current_id in seen:
            raise InvalidStateError(
                "Reschedule history contains a cycle",
                details={"interview_id": str(current_id)},
            )
        if len(chain) >= max_hops:
            raise InvalidStateError(
                f"Reschedule history exceeds {max_hops} entries",
                details={"interview_id": str(interview_id)},
            )
        seen.add(current_id)

        row = await conn.fetchrow(
            """
            SELECT id, status, scheduled_at, rescheduled_from_id, reschedule_reason, notes, created_at
            FROM interviews
            WHERE id = $1
            """,
            current_id,
        )
        if row is None:
            if not chain:
                raise NotFoundError("Interview")
            break
        chain.append(dict(row))
        current_id = row["rescheduled_from_id"]

    return chain
