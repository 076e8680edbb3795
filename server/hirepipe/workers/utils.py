"""Settings and standalone database connections for sweep workers.

Worker processes run outside the API's connection pool, so each task opens
its own connection and closes it when done.
"""

import asyncpg

from hirepipe.config import Settings, get_settings, load_settings


def worker_settings() -> Settings:
    """Settings for a worker process, read from the environment on first use."""
    try:
        return get_settings()
    except RuntimeError:
        return load_settings()


async def get_db_connection() -> asyncpg.Connection:
    return await asyncpg.connect(worker_settings().database_url)
