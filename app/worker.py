"""
arq worker for queued batch jobs and imports.

Run with: arq app.worker.WorkerSettings
"""

import logging
from typing import Optional
from uuid import UUID

from app.api.v1.jobs import service as job_service
from app.api.v1.jobs.queue import build_redis_settings
from app.core.config import settings
from app.core.logging import configure_logging
from app.db.session import AsyncSessionLocal, engine

logger = logging.getLogger(__name__)


async def startup(ctx) -> None:
    configure_logging()
    ctx["session_factory"] = AsyncSessionLocal
    logger.info("Job worker started (max %d concurrent job(s))", settings.worker_max_jobs)


async def shutdown(ctx) -> None:
    await engine.dispose()
    logger.info("Job worker stopped")


async def run_batch_job(ctx, job_id: str) -> Optional[str]:
    """Start and execute one persisted job. Returns its final status, or None when it was skipped."""
    async with ctx["session_factory"]() as db:
        job = await job_service.start_job(db, UUID(job_id))
        if job is None:
            return None
        response = await job_service.run_job(db, job)
        return response.status


class WorkerSettings:
    functions = [run_batch_job]
    redis_settings = build_redis_settings()
    on_startup = startup
    on_shutdown = shutdown
    max_jobs = settings.worker_max_jobs
    job_timeout = settings.job_timeout_seconds
    max_tries = settings.job_max_tries
    # Failures are recorded on the job row; a failed job is not retried.
    retry_jobs = False
