"""
arq connection for background jobs.

arq polls its queue in ascending score order, and a job's score is its `_defer_until` time. A job
is scheduled `priority * PRIORITY_SPACING` before the moment it was enqueued. A higher-priority job
therefore runs first unless the lower-priority one has waited longer than the gap between their
backdated times, and jobs of equal priority run oldest first.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from arq import create_pool
from arq.connections import ArqRedis, RedisSettings
from fastapi import Request

from app.core.config import settings

logger = logging.getLogger(__name__)

PRIORITY_SPACING = timedelta(days=30)


def build_redis_settings() -> RedisSettings:
    return RedisSettings(
        host=settings.redis_host,
        port=settings.redis_port,
        database=settings.redis_db,
        conn_timeout=settings.redis_conn_timeout,
        conn_retries=settings.redis_conn_retries,
    )


def queue_position(priority: int, now: Optional[datetime] = None) -> datetime:
    """Scheduled time that places a job of this priority in the queue."""
    now = now or datetime.now(timezone.utc)
    return now - PRIORITY_SPACING * priority


def job_expiry() -> timedelta:
    """How long an undelivered job stays in redis."""
    return timedelta(days=settings.job_expires_days)


async def open_job_queue() -> ArqRedis:
    pool = await create_pool(build_redis_settings())
    logger.info("Job queue connected to redis on %s:%s", settings.redis_host, settings.redis_port)
    return pool


def get_job_queue(request: Request) -> Optional[ArqRedis]:
    """The app's arq pool; None when redis was unreachable at startup."""
    return getattr(request.app.state, "job_queue", None)
