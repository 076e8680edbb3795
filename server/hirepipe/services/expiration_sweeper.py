"""Time-driven passes over offers, jobs, interviews, placements and introductions.

Each pass is safe to re-run: state changes are compare-and-swap updates and
reminders claim a ``*_sent_at`` column before sending, so a sweep running
next to live requests never regresses a row that just moved on. A failure
while handling one row is recorded on the summary and the pass moves on to
the next row.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Optional

import asyncpg

from .actors import as_aware, utcnow
from .fee_calculator import DEFAULT_REMAINING_DUE_DAYS, remaining_due_date
from .notifications import NotificationIntent, NotificationSender, TemplateKey, dispatch_notifications, intent
from .offers import expire_offer, offer_expired_intents

logger = logging.getLogger(__name__)

DEFAULT_JOB_MAX_AGE_DAYS = 60
DEFAULT_SWEEP_LIMIT = 500
GUARANTEE_WARNING_DAYS = 7
INTRODUCTION_WARNING_DAYS = 7


class SweepKind(str, Enum):
    OFFERS = "offers"
    JOBS = "jobs"
    INTERVIEW_REMINDERS_24H = "interview_reminders_24h"
    INTERVIEW_REMINDERS_1H = "interview_reminders_1h"
    PAYMENT_REMINDERS = "payment_reminders"
    GUARANTEE_CHECKS = "guarantee_checks"
    INTRODUCTIONS = "introductions"


@dataclass
class SweepSummary:
    kind: SweepKind
    scanned: int = 0
    transitioned: int = 0
    notified: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def record_error(self, entity_id: Any, stage: str, error: Any) -> None:
        self.errors.append({"entity_id": str(entity_id), "stage": stage, "error": str(error)})

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "scanned": self.scanned,
            "transitioned": self.transitioned,
            "notified": self.notified,
            "errors": list(self.errors),
        }


@dataclass(frozen=True)
class ReminderWindow:
    lead: timedelta
    tolerance: timedelta
    column: str
    template_key: str

    def bounds(self, now: datetime) -> tuple[datetime, datetime]:
        target = now + self.lead
        return target - self.tolerance, target + self.tolerance


REMINDER_WINDOWS: dict[SweepKind, ReminderWindow] = {
    SweepKind.INTERVIEW_REMINDERS_24H: ReminderWindow(
        lead=timedelta(hours=24),
        tolerance=timedelta(minutes=30),
        column="reminder_24h_sent_at",
        template_key=TemplateKey.INTERVIEW_REMINDER_24H,
    ),
    SweepKind.INTERVIEW_REMINDERS_1H: ReminderWindow(
        lead=timedelta(hours=1),
        tolerance=timedelta(minutes=5),
        column="reminder_1h_sent_at",
        template_key=TemplateKey.INTERVIEW_REMINDER_1H,
    ),
}


def is_within_window(scheduled_at: datetime, now: datetime, window: ReminderWindow) -> bool:
    lower, upper = window.bounds(now)
    return lower <= as_aware(scheduled_at) <= upper


def payment_reminder_state(
    upfront_paid_at: datetime,
    now: datetime,
    remaining_due_days: int = DEFAULT_REMAINING_DUE_DAYS,
) -> Optional[str]:
    """None before the due date, "due" on it, "overdue" after it."""
    due = remaining_due_date(as_aware(upfront_paid_at), remaining_due_days)
    if now < due:
        return None
    if now.date() == due.date():
        return "due"
    return "overdue"


def _start_of_day(now: datetime) -> datetime:
    return datetime.combine(now.date(), time.min, tzinfo=timezone.utc)


async def _deliver(
    notifier: NotificationSender,
    intents: list[NotificationIntent],
    summary: SweepSummary,
    entity_id: Any,
) -> int:
    """Send intents, record failures on the summary, return the number delivered."""
    deliverable = [item for item in intents if item.recipient.email]
    failures = await dispatch_notifications(notifier, intents)
    for failure in failures:
        summary.record_error(entity_id, "notify", f"{failure['template_key']}: {failure['error']}")
    delivered = len(deliverable) - len(failures)
    summary.notified += delivered
    return delivered


async def _for_each(
    rows: Iterable[Any],
    summary: SweepSummary,
    handle: Callable[[dict[str, Any]], Awaitable[None]],
) -> None:
    """Run ``handle`` per row. A failing row is recorded and skipped."""
    for row in rows:
        entity = dict(row)
        summary.scanned += 1
        try:
            await handle(entity)
        except Exception as exc:
            logger.warning(
                "[Expiry Sweep] %s: failed on %s: %s",
                summary.kind.value,
                entity.get("id"),
                exc,
            )
            summary.record_error(entity.get("id"), "state", exc)


async def _sweep_offers(conn, notifier, summary: SweepSummary, now: datetime, *, limit: int) -> None:
    rows = await conn.fetch(
        """
        SELECT
            o.id, o.application_id, o.status, o.position, o.expires_at,
            j.title AS job_title,
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
        WHERE (o.status = 'pending' AND o.expires_at < $1)
           OR (o.status = 'expired' AND o.expiry_notified_at IS NULL)
        ORDER BY o.expires_at ASC
        LIMIT $2
        """,
        now,
        limit,
    )

    async def handle(offer: dict[str, Any]) -> None:
        if offer["status"] == "pending":
            async with conn.transaction():
                moved = await expire_offer(conn, offer, now)
            if not moved:
                return
            summary.transitioned += 1

        errors_before = len(summary.errors)
        await _deliver(notifier, offer_expired_intents(offer), summary, offer["id"])
        if len(summary.errors) == errors_before:
            await conn.execute(
                "UPDATE offers SET expiry_notified_at = $2 WHERE id = $1 AND expiry_notified_at IS NULL",
                offer["id"],
                now,
            )

    await _for_each(rows, summary, handle)


async def _sweep_jobs(
    conn,
    notifier,
    summary: SweepSummary,
    now: datetime,
    *,
    limit: int,
    job_max_age_days: int,
) -> None:
    rows = await conn.fetch(
        """
        SELECT
            j.id, j.title, j.status, j.deadline, j.created_at,
            e.company_name,
            eu.email AS employer_email,
            eu.name AS employer_name
        FROM jobs j
        JOIN employers e ON e.id = j.employer_id
        JOIN users eu ON eu.id = e.user_id
        WHERE (
            j.status = 'active' AND (
                (j.deadline IS NOT NULL AND j.deadline < $1)
                OR (j.deadline IS NULL AND j.created_at < $2)
            )
        )
        OR (j.status = 'expired' AND j.expiry_notified_at IS NULL)
        ORDER BY j.created_at ASC
        LIMIT $3
        """,
        now,
        now - timedelta(days=job_max_age_days),
        limit,
    )

    async def handle(job: dict[str, Any]) -> None:
        if job["status"] == "active":
            moved = await conn.fetchval(
                "UPDATE jobs SET status = 'expired' WHERE id = $1 AND status = 'active' RETURNING id",
                job["id"],
            )
            if moved is None:
                return
            summary.transitioned += 1

        notice = intent(
            job["employer_email"],
            job["employer_name"],
            TemplateKey.JOB_EXPIRED,
            role="employer",
            job_id=job["id"],
            job_title=job["title"],
            company_name=job["company_name"],
            deadline=job["deadline"],
        )
        errors_before = len(summary.errors)
        await _deliver(notifier, [notice], summary, job["id"])
        if len(summary.errors) == errors_before:
            await conn.execute(
                "UPDATE jobs SET expiry_notified_at = $2 WHERE id = $1 AND expiry_notified_at IS NULL",
                job["id"],
                now,
            )

    await _for_each(rows, summary, handle)


async def _sweep_interview_reminders(
    conn,
    notifier,
    summary: SweepSummary,
    now: datetime,
    window: ReminderWindow,
    *,
    limit: int,
) -> None:
    lower, upper = window.bounds(now)
    column = window.column
    rows = await conn.fetch(
        f"""
        SELECT
            i.id, i.scheduled_at, i.duration_minutes, i.meeting_link, i.meeting_platform,
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
        WHERE i.status IN ('scheduled', 'confirmed')
          AND i.scheduled_at BETWEEN $1 AND $2
          AND i.{column} IS NULL
        ORDER BY i.scheduled_at ASC
        LIMIT $3
        """,
        lower,
        upper,
        limit,
    )

    async def handle(interview: dict[str, Any]) -> None:
        claimed = await conn.fetchval(
            f"""
            UPDATE interviews
            SET {column} = $2
            WHERE id = $1 AND {column} IS NULL AND status IN ('scheduled', 'confirmed')
            RETURNING id
            """,
            interview["id"],
            now,
        )
        if not claimed:
            return

        payload = {
            "interview_id": interview["id"],
            "scheduled_at": interview["scheduled_at"],
            "duration_minutes": interview["duration_minutes"],
            "meeting_link": interview["meeting_link"],
            "meeting_platform": interview["meeting_platform"],
            "job_title": interview["job_title"],
            "company_name": interview["company_name"],
            "candidate_name": interview["candidate_name"],
        }
        intents = [
            intent(interview["candidate_email"], interview["candidate_name"], window.template_key, role="candidate", **payload),
            intent(interview["employer_email"], interview["employer_name"], window.template_key, role="employer", **payload),
        ]
        delivered = await _deliver(notifier, intents, summary, interview["id"])
        if delivered == 0:
            await conn.execute(
                f"UPDATE interviews SET {column} = NULL WHERE id = $1 AND {column} = $2",
                interview["id"],
                now,
            )

    await _for_each(rows, summary, handle)


async def _sweep_payment_reminders(
    conn,
    notifier,
    summary: SweepSummary,
    now: datetime,
    *,
    limit: int,
    remaining_due_days: int,
) -> None:
    today = _start_of_day(now)
    rows = await conn.fetch(
        """
        SELECT
            p.id, p.job_title, p.remaining_amount, p.upfront_paid_at, p.payment_reminder_sent_at,
            e.company_name,
            eu.email AS employer_email,
            eu.name AS employer_name
        FROM placements p
        JOIN employers e ON e.id = p.employer_id
        JOIN users eu ON eu.id = e.user_id
        WHERE p.payment_status = 'upfront_paid'
          AND p.status <> 'cancelled'
          AND p.remaining_paid_at IS NULL
          AND p.upfront_paid_at <= $1
          AND (p.payment_reminder_sent_at IS NULL OR p.payment_reminder_sent_at < $2)
        ORDER BY p.upfront_paid_at ASC
        LIMIT $3
        """,
        now - timedelta(days=remaining_due_days),
        today,
        limit,
    )

    async def handle(placement: dict[str, Any]) -> None:
        state = payment_reminder_state(placement["upfront_paid_at"], now, remaining_due_days)
        if state is None:
            return

        previous = placement["payment_reminder_sent_at"]
        claimed = await conn.fetchval(
            """
            UPDATE placements
            SET payment_reminder_sent_at = $2
            WHERE id = $1
              AND remaining_paid_at IS NULL
              AND (payment_reminder_sent_at IS NULL OR payment_reminder_sent_at < $3)
            RETURNING id
            """,
            placement["id"],
            now,
            today,
        )
        if not claimed:
            return

        template_key = (
            TemplateKey.PAYMENT_REMAINING_DUE if state == "due" else TemplateKey.PAYMENT_REMAINING_OVERDUE
        )
        due_date = remaining_due_date(as_aware(placement["upfront_paid_at"]), remaining_due_days)
        notice = intent(
            placement["employer_email"],
            placement["employer_name"],
            template_key,
            role="employer",
            placement_id=placement["id"],
            job_title=placement["job_title"],
            company_name=placement["company_name"],
            amount=placement["remaining_amount"],
            due_date=due_date,
            days_overdue=max((now.date() - due_date.date()).days, 0),
        )
        delivered = await _deliver(notifier, [notice], summary, placement["id"])
        if delivered == 0:
            await conn.execute(
                """
                UPDATE placements SET payment_reminder_sent_at = $3
                WHERE id = $1 AND payment_reminder_sent_at = $2
                """,
                placement["id"],
                now,
                previous,
            )

    await _for_each(rows, summary, handle)


async def _sweep_guarantees(conn, notifier, summary: SweepSummary, now: datetime, *, limit: int) -> None:
    today: date = now.date()
    warn_until = today + timedelta(days=GUARANTEE_WARNING_DAYS)
    rows = await conn.fetch(
        """
        SELECT
            p.id, p.status, p.job_title, p.guarantee_end_date, p.guarantee_reminder_sent_at,
            c.name AS candidate_name,
            e.company_name,
            eu.email AS employer_email,
            eu.name AS employer_name
        FROM placements p
        JOIN candidates c ON c.id = p.candidate_id
        JOIN employers e ON e.id = p.employer_id
        JOIN users eu ON eu.id = e.user_id
        WHERE p.status IN ('pending', 'confirmed')
          AND (
            (p.guarantee_reminder_sent_at IS NULL
                AND p.guarantee_end_date > $2 AND p.guarantee_end_date <= $1)
            OR (p.status = 'confirmed' AND p.guarantee_end_date <= $2)
          )
        ORDER BY p.guarantee_end_date ASC
        LIMIT $3
        """,
        warn_until,
        today,
        limit,
    )

    async def handle(placement: dict[str, Any]) -> None:
        if placement["guarantee_end_date"] <= today:
            moved = await conn.fetchval(
                """
                UPDATE placements SET status = 'completed', updated_at = NOW()
                WHERE id = $1 AND status = 'confirmed'
                RETURNING id
                """,
                placement["id"],
            )
            if moved is not None:
                summary.transitioned += 1
            return

        claimed = await conn.fetchval(
            """
            UPDATE placements SET guarantee_reminder_sent_at = $2
            WHERE id = $1 AND guarantee_reminder_sent_at IS NULL
            RETURNING id
            """,
            placement["id"],
            now,
        )
        if not claimed:
            return

        notice = intent(
            placement["employer_email"],
            placement["employer_name"],
            TemplateKey.GUARANTEE_ENDING,
            role="employer",
            placement_id=placement["id"],
            job_title=placement["job_title"],
            candidate_name=placement["candidate_name"],
            company_name=placement["company_name"],
            guarantee_end_date=placement["guarantee_end_date"],
            days_remaining=(placement["guarantee_end_date"] - today).days,
        )
        delivered = await _deliver(notifier, [notice], summary, placement["id"])
        if delivered == 0:
            await conn.execute(
                "UPDATE placements SET guarantee_reminder_sent_at = NULL WHERE id = $1 AND guarantee_reminder_sent_at = $2",
                placement["id"],
                now,
            )

    await _for_each(rows, summary, handle)


async def _sweep_introductions(
    conn,
    notifier,
    summary: SweepSummary,
    now: datetime,
    *,
    limit: int,
    admin_email: Optional[str],
) -> None:
    """Expire introductions whose protection period ended; warn the admin a week ahead."""
    rows = await conn.fetch(
        """
        SELECT
            ci.id, ci.status, ci.protection_ends_at, ci.introduced_at,
            c.name AS candidate_name,
            c.email AS candidate_email,
            e.company_name,
            j.title AS job_title
        FROM candidate_introductions ci
        JOIN candidates c ON c.id = ci.candidate_id
        JOIN employers e ON e.id = ci.employer_id
        LEFT JOIN jobs j ON j.id = ci.job_id
        WHERE ci.status = 'introduced'
          AND ci.protection_ends_at IS NOT NULL
          AND (
            ci.protection_ends_at < $1
            OR (ci.protection_warning_sent_at IS NULL AND ci.protection_ends_at <= $2)
          )
        ORDER BY ci.protection_ends_at ASC
        LIMIT $3
        """,
        now,
        now + timedelta(days=INTRODUCTION_WARNING_DAYS),
        limit,
    )

    async def handle(introduction: dict[str, Any]) -> None:
        protection_ends_at = as_aware(introduction["protection_ends_at"])
        if protection_ends_at < now:
            moved = await conn.fetchval(
                """
                UPDATE candidate_introductions SET status = 'expired', updated_at = NOW()
                WHERE id = $1 AND status = 'introduced'
                RETURNING id
                """,
                introduction["id"],
            )
            if moved is not None:
                summary.transitioned += 1
            return

        if not admin_email:
            return
        claimed = await conn.fetchval(
            """
            UPDATE candidate_introductions SET protection_warning_sent_at = $2
            WHERE id = $1 AND protection_warning_sent_at IS NULL AND status = 'introduced'
            RETURNING id
            """,
            introduction["id"],
            now,
        )
        if not claimed:
            return

        notice = intent(
            admin_email,
            None,
            TemplateKey.INTRODUCTION_PROTECTION_ENDING,
            role="admin",
            introduction_id=introduction["id"],
            candidate_name=introduction["candidate_name"],
            candidate_email=introduction["candidate_email"],
            company_name=introduction["company_name"],
            job_title=introduction["job_title"],
            introduced_at=introduction["introduced_at"],
            protection_ends_at=protection_ends_at,
            days_remaining=(protection_ends_at.date() - now.date()).days,
        )
        delivered = await _deliver(notifier, [notice], summary, introduction["id"])
        if delivered == 0:
            await conn.execute(
                """
                UPDATE candidate_introductions SET protection_warning_sent_at = NULL
                WHERE id = $1 AND protection_warning_sent_at = $2
                """,
                introduction["id"],
                now,
            )

    await _for_each(rows, summary, handle)


async def _record_run(conn, summary: SweepSummary) -> None:
    await conn.execute(
        """
        INSERT INTO sweep_runs (kind, started_at, finished_at, scanned, transitioned, notified, errors)
        VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb)
        """,
        summary.kind.value,
        summary.started_at,
        summary.finished_at,
        summary.scanned,
        summary.transitioned,
        summary.notified,
        json.dumps(summary.errors),
    )


async def run_sweep(
    conn: asyncpg.Connection,
    kind: str | SweepKind,
    notifier: NotificationSender,
    *,
    now: Optional[datetime] = None,
    job_max_age_days: int = DEFAULT_JOB_MAX_AGE_DAYS,
    remaining_due_days: int = DEFAULT_REMAINING_DUE_DAYS,
    admin_email: Optional[str] = None,
    limit: int = DEFAULT_SWEEP_LIMIT,
) -> SweepSummary:
    kind = SweepKind(kind)
    now = utcnow(now)
    summary = SweepSummary(kind=kind, started_at=now)

    if kind == SweepKind.OFFERS:
        await _sweep_offers(conn, notifier, summary, now, limit=limit)
    elif kind == SweepKind.JOBS:
        await _sweep_jobs(conn, notifier, summary, now, limit=limit, job_max_age_days=job_max_age_days)
    elif kind in REMINDER_WINDOWS:
        await _sweep_interview_reminders(conn, notifier, summary, now, REMINDER_WINDOWS[kind], limit=limit)
    elif kind == SweepKind.PAYMENT_REMINDERS:
        await _sweep_payment_reminders(
            conn, notifier, summary, now, limit=limit, remaining_due_days=remaining_due_days
        )
    elif kind == SweepKind.INTRODUCTIONS:
        await _sweep_introductions(conn, notifier, summary, now, limit=limit, admin_email=admin_email)
    else:
        await _sweep_guarantees(conn, notifier, summary, now, limit=limit)

    summary.finished_at = datetime.now(timezone.utc)
    try:
        await _record_run(conn, summary)
    except Exception as exc:
        logger.warning("[Expiry Sweep] Failed to record %s run: %s", kind.value, exc)

    logger.info(
        "[Expiry Sweep] %s: scanned=%d transitioned=%d notified=%d errors=%d",
        kind.value,
        summary.scanned,
        summary.transitioned,
        summary.notified,
        len(summary.errors),
    )
    return summary


async def run_all_sweeps(
    conn: asyncpg.Connection,
    notifier: NotificationSender,
    **kwargs: Any,
) -> list[SweepSummary]:
    return [await run_sweep(conn, kind, notifier, **kwargs) for kind in SweepKind]
