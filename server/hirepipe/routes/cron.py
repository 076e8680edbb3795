from fastapi import APIRouter, Depends, HTTPException

from ..config import get_settings
from ..database import get_connection
from ..dependencies import get_notifier, verify_cron_secret
from ..services.expiration_sweeper import SweepKind, run_all_sweeps, run_sweep
from ..services.notifications import NotificationSender

router = APIRouter(dependencies=[Depends(verify_cron_secret)])


@router.post("/expiry-sweep")
async def expiry_sweep_all(notifier: NotificationSender = Depends(get_notifier)):
    settings = get_settings()
    async with get_connection() as conn:
        summaries = await run_all_sweeps(
            conn,
            notifier,
            job_max_age_days=settings.job_max_age_days,
            remaining_due_days=settings.remaining_due_days,
            admin_email=settings.admin_email,
        )
    return {"sweeps": [summary.to_dict() for summary in summaries]}


@router.post("/expiry-sweep/{kind}")
async def expiry_sweep(kind: str, notifier: NotificationSender = Depends(get_notifier)):
    """Run one sweep pass. Invoked by the external scheduler."""
    try:
        sweep_kind = SweepKind(kind)
    except ValueError:
        allowed = ", ".join(k.value for k in SweepKind)
        raise HTTPException(status_code=400, detail=f"Unknown sweep kind '{kind}'. Use one of: {allowed}")

    settings = get_settings()
    async with get_connection() as conn:
        summary = await run_sweep(
            conn,
            sweep_kind,
            notifier,
            job_max_age_days=settings.job_max_age_days,
            remaining_due_days=settings.remaining_due_days,
            admin_email=settings.admin_email,
        )
    return summary.to_dict()
