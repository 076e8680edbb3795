"""Redis pub/sub announcements of sweep results for admin dashboards.

Publishing is best effort: a Redis outage is logged and never stops a sweep.
"""

import json
import logging
from typing import Any

import redis

from .utils import worker_settings

logger = logging.getLogger(__name__)

SWEEP_CHANNEL = "admin:sweeps"


def get_redis_client() -> redis.Redis:
    return redis.from_url(worker_settings().redis_url)


def _publish(channel: str, message: dict[str, Any]) -> bool:
    try:
        client = get_redis_client()
        try:
            client.publish(channel, json.dumps(message, default=str))
        finally:
            client.close()
    except redis.RedisError as exc:
        logger.warning("[Expiry Sweep] Could not publish %s on %s: %s", message["type"], channel, exc)
        return False
    return True


def publish_sweep_complete(kind: str, summary: dict[str, Any], channel: str = SWEEP_CHANNEL) -> bool:
    """Announce a finished sweep pass with its summary counts and errors."""
    return _publish(channel, {"type": "sweep_complete", "kind": kind, "summary": summary})


def publish_sweep_error(kind: str, error: str, channel: str = SWEEP_CHANNEL) -> bool:
    return _publish(channel, {"type": "sweep_error", "kind": kind, "error": error})
