"""
Celery tasks for the expiry sweeps.

Scheduled through beat, and run once on worker startup when the
expiry_sweep scheduler is enabled.
"""

import asyncio

from hirepipe.core.services.email import EmailService
from hirepipe.services.expiration_sweeper import SweepKind, run_sweep
from ..celery_app import EXPIRY_SWEEP_TASK_KEY, celery_app
from ..notifications import publish_sweep_complete, publish_sweep_error
from ..utils import get_db_connection, worker_settings


async def _run_expiry_sweeps(kinds: list[str]) -> dict:
    settings = worker_settings()
    conn = await get_db_connection()
    try:
        try:
            scheduler_row = await conn.fetchrow(
                "SELECT enabled, max_per_cycle FROM scheduler_settings WHERE task_key = $1",
                EXPIRY_SWEEP_TASK_KEY,
            )
        except Exception:
            scheduler_row = None

        if not scheduler_row:
            return {"skipped": True, "reason": "scheduler_not_registered"}
        if not scheduler_row["enabled"]:
            print("[Expiry Sweep] Scheduler disabled, skipping.")
            return {"skipped": True, "reason": "scheduler_disabled"}

        limit = scheduler_row["max_per_cycle"] or 500
        notifier = EmailService()
        results = {}
        for kind in kinds:
            summary = await run_sweep(
                conn,
                kind,
                notifier,
                job_max_age_days=settings.job_max_age_days,
                remaining_due_days=settings.remaining_due_days,
                admin_email=settings.admin_email,
                limit=limit,
            )
            results[kind] = summary.to_dict()
        for kind, result in results.items():
            publish_sweep_complete(kind, result)
        return results
    finally:
        await conn.close()


@celery_app.task(bind=True, max_retries=1)
def run_expiry_sweep(self, kind: str) -> dict:
    """Run one sweep kind (offers, jobs, reminders, payments, guarantees, introductions)."""
    try:
        kind = SweepKind(kind).value
    except ValueError:
        print(f"[Expiry Sweep] Unknown sweep kind: {kind}")
        return {"status": "error", "error": f"unknown sweep kind '{kind}'"}

    print(f"[Expiry Sweep] Running {kind}...")
    try:
        result = asyncio.run(_run_expiry_sweeps([kind]))
        print(f"[Expiry Sweep] Completed {kind}: {result}")
        return {"status": "success", **result}
    except Exception as exc:
        print(f"[Expiry Sweep] Failed {kind}: {exc}")
        publish_sweep_error(kind, str(exc))
        raise self.retry(exc=exc, countdown=60)


@celery_app.task(bind=True, max_retries=1)
def run_all_expiry_sweeps(self) -> dict:
    """Run every sweep kind in order."""
    print("[Expiry Sweep] Running all sweeps...")
    try:
        result = asyncio.run(_run_expiry_sweeps([kind.value for kind in SweepKind]))
        print(f"[Expiry Sweep] Completed: {result}")
        return {"status": "success", **result}
    except Exception as exc:
        print(f"[Expiry Sweep] Failed: {exc}")
        publish_sweep_error("all", str(exc))
        raise self.retry(exc=exc, countdown=60)
