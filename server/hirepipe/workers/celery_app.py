"""Celery application configuration."""

import os

from celery import Celery
from celery.signals import worker_ready
from dotenv import load_dotenv

# Load environment variables for worker process
load_dotenv()

redis_url = os.getenv("REDIS_URL", "redis://localhost:6379/0")
celery_broker_url = os.getenv("CELERY_BROKER_URL", redis_url)
celery_result_backend = os.getenv("CELERY_RESULT_BACKEND", redis_url)

EXPIRY_SWEEP_TASK_KEY = "expiry_sweep"

celery_app = Celery(
    "hirepipe",
    broker=celery_broker_url,
    backend=celery_result_backend,
    include=[
        "hirepipe.workers.tasks.expiry_sweep",
    ],
)

celery_app.conf.update(
    # Serialization
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",

    # Timezone
    timezone="UTC",
    enable_utc=True,

    # Task execution
    task_track_started=True,
    task_time_limit=600,  # 10 minutes max per task
    task_soft_time_limit=540,

    # Worker settings
    worker_prefetch_multiplier=1,
    task_acks_late=True,

    # Result settings
    result_expires=3600,

    # Retry settings
    task_default_retry_delay=60,
    task_max_retries=3,
)

# Cadence per sweep kind (seconds). The 1h reminder window is +/-5 minutes,
# so that sweep has to run at least every 5 minutes.
celery_app.conf.beat_schedule = {
    "expiry-sweep-offers": {
        "task": "hirepipe.workers.tasks.expiry_sweep.run_expiry_sweep",
        "schedule": 900.0,
        "args": ("offers",),
    },
    "expiry-sweep-jobs": {
        "task": "hirepipe.workers.tasks.expiry_sweep.run_expiry_sweep",
        "schedule": 3600.0,
        "args": ("jobs",),
    },
    "expiry-sweep-interview-reminders-24h": {
        "task": "hirepipe.workers.tasks.expiry_sweep.run_expiry_sweep",
        "schedule": 1800.0,
        "args": ("interview_reminders_24h",),
    },
    "expiry-sweep-interview-reminders-1h": {
        "task": "hirepipe.workers.tasks.expiry_sweep.run_expiry_sweep",
        "schedule": 300.0,
        "args": ("interview_reminders_1h",),
    },
    "expiry-sweep-payment-reminders": {
        "task": "hirepipe.workers.tasks.expiry_sweep.run_expiry_sweep",
        "schedule": 3600.0,
        "args": ("payment_reminders",),
    },
    "expiry-sweep-guarantee-checks": {
        "task": "hirepipe.workers.tasks.expiry_sweep.run_expiry_sweep",
        "schedule": 3600.0,
        "args": ("guarantee_checks",),
    },
    "expiry-sweep-introductions": {
        "task": "hirepipe.workers.tasks.expiry_sweep.run_expiry_sweep",
        "schedule": 86400.0,
        "args": ("introductions",),
    },
}


def _is_scheduler_enabled(task_key: str) -> bool:
    """Check if a scheduler task is enabled in the database.

    Returns False if no row exists or the table doesn't exist.
    """
    import asyncio
    from hirepipe.workers.utils import get_db_connection

    async def _check():
        conn = await get_db_connection()
        try:
            row = await conn.fetchrow(
                "SELECT enabled FROM scheduler_settings WHERE task_key = $1",
                task_key,
            )
            return row["enabled"] if row else False
        except Exception:
            return False
        finally:
            await conn.close()

    return asyncio.run(_check())


@worker_ready.connect
def on_worker_ready(**kwargs):
    """Run every sweep once on worker startup when the scheduler is enabled."""
    from hirepipe.workers.tasks.expiry_sweep import run_all_expiry_sweeps

    if _is_scheduler_enabled(EXPIRY_SWEEP_TASK_KEY):
        run_all_expiry_sweeps.delay()
    else:
        print("[Worker] Expiry sweep scheduler is disabled, skipping.")
