"""
Persisted background jobs for batch operations and imports.

The batch_jobs row is the status and result record; arq delivers the job id to a worker
(app.worker). Delivery order is priority first, then age (see queue.queue_position). A job is
started only from PENDING or, when arq redelivers after a worker died mid-run, from RUNNING.
Cancelled and finished jobs are skipped on delivery. Once RUNNING a job cannot be cancelled.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional
from uuid import UUID

from arq.connections import ArqRedis
from fastapi import status
from redis.exceptions import RedisError
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.v1.students import repository
from app.api.v1.students.batch_service import execute_batch
from app.api.v1.students.import_service import import_students
from app.api.v1.students.schemas import BatchRequest
from app.auth.schemas import CurrentUser
from app.core.enums import JOB_PRIORITIES, BatchOperation, JobStatus, JobType
from app.core.exceptions import InvalidTransitionError, NotFoundError, ServiceError
from app.core.models import BatchJob

from .queue import job_expiry, queue_position
from .schemas import JobResponse

logger = logging.getLogger(__name__)

# Name arq registers the worker function under.
RUN_BATCH_JOB = "run_batch_job"

BATCH_JOB_OPERATIONS = {
    JobType.BATCH_PROMOTION: BatchOperation.PROMOTE,
    JobType.BATCH_GRADUATION: BatchOperation.GRADUATE,
    JobType.BATCH_TRANSFER: BatchOperation.TRANSFER,
}


def _to_response(job: BatchJob) -> JobResponse:
    return JobResponse.model_validate(job)


async def enqueue_job(
    db: AsyncSession,
    queue: Optional[ArqRedis],
    job_type: JobType,
    payload: Dict[str, Any],
    actor: CurrentUser,
    priority: Optional[int] = None,
) -> JobResponse:
    """Persist a PENDING job and hand its id to arq. A job that cannot be queued is stored as FAILED."""
    if queue is None:
        raise ServiceError("Job queue is not available", status.HTTP_503_SERVICE_UNAVAILABLE)
    job_type = JobType(job_type)
    job = BatchJob(
        organization_id=actor.organization_id,
        job_type=job_type.value,
        priority=priority if priority is not None else JOB_PRIORITIES[job_type],
        status=JobStatus.PENDING.value,
        payload=payload,
        attempts=0,
        actor_id=actor.id,
        actor_name=actor.name,
        actor_role=actor.role,
        created_at=datetime.utcnow(),
    )
    db.add(job)
    await db.commit()
    job_id = job.id

    try:
        await queue.enqueue_job(
            RUN_BATCH_JOB,
            str(job_id),
            _job_id=str(job_id),
            _defer_until=queue_position(job.priority),
            _expires=job_expiry(),
        )
    except (RedisError, OSError) as exc:
        logger.error("Could not queue job %s: %s", job_id, exc)
        job.status = JobStatus.FAILED.value
        job.error = "Job queue unavailable"
        job.finished_at = datetime.utcnow()
        await db.commit()
        raise ServiceError("Job queue is not available", status.HTTP_503_SERVICE_UNAVAILABLE) from exc

    logger.info("Enqueued %s job %s (priority %d)", job.job_type, job_id, job.priority)
    return _to_response(job)


async def _require_job(db: AsyncSession, organization_id: UUID, job_id: UUID) -> BatchJob:
    result = await db.execute(
        select(BatchJob)
        .where(BatchJob.id == job_id, BatchJob.organization_id == organization_id)
        .execution_options(populate_existing=True)
    )
    job = result.scalar_one_or_none()
    if not job:
        raise NotFoundError("Job not found")
    return job


async def get_job(db: AsyncSession, organization_id: UUID, job_id: UUID) -> JobResponse:
    return _to_response(await _require_job(db, organization_id, job_id))


async def cancel_job(db: AsyncSession, organization_id: UUID, job_id: UUID) -> JobResponse:
    job = await _require_job(db, organization_id, job_id)
    if job.status == JobStatus.RUNNING.value:
        raise InvalidTransitionError("Running jobs cannot be cancelled")
    if job.status != JobStatus.PENDING.value:
        raise InvalidTransitionError("Only pending jobs can be cancelled")
    # Conditional on PENDING: a worker may start the job between the read and this write.
    result = await db.execute(
        update(BatchJob)
        .where(BatchJob.id == job_id, BatchJob.status == JobStatus.PENDING.value)
        .values(status=JobStatus.CANCELLED.value, finished_at=datetime.utcnow())
    )
    await db.commit()
    job = await _require_job(db, organization_id, job_id)
    if not result.rowcount:
        raise InvalidTransitionError("Running jobs cannot be cancelled")
    logger.info("Cancelled job %s", job_id)
    return _to_response(job)


async def start_job(db: AsyncSession, job_id: UUID) -> Optional[BatchJob]:
    """Mark a delivered job RUNNING and return it. None when it was cancelled, finished or removed."""
    result = await db.execute(
        update(BatchJob)
        .where(
            BatchJob.id == job_id,
            BatchJob.status.in_([JobStatus.PENDING.value, JobStatus.RUNNING.value]),
        )
        .values(
            status=JobStatus.RUNNING.value,
            started_at=datetime.utcnow(),
            attempts=BatchJob.attempts + 1,
        )
    )
    await db.commit()
    if not result.rowcount:
        logger.info("Job %s not started: cancelled, finished or unknown", job_id)
        return None
    job = await db.get(BatchJob, job_id, populate_existing=True)
    if job.attempts > 1:
        logger.warning("Job %s redelivered; starting attempt %d", job_id, job.attempts)
    return job


async def _dispatch(db: AsyncSession, job_type: JobType, payload: Dict[str, Any], actor: CurrentUser, job_id: UUID):
    if job_type == JobType.BULK_IMPORT:
        organization = await repository.require_organization(db, actor.organization_id)
        return await import_students(db, payload.get("rows") or [], organization, actor, batch_id=job_id)
    return await execute_batch(
        db, BATCH_JOB_OPERATIONS[job_type], BatchRequest.model_validate(payload), actor, batch_id=job_id
    )


async def run_job(db: AsyncSession, job: BatchJob) -> JobResponse:
    """Execute a started job and persist its result (COMPLETED) or error (FAILED)."""
    job_id = job.id
    organization_id = job.organization_id
    job_type = JobType(job.job_type)
    payload = dict(job.payload or {})
    actor = CurrentUser(
        id=job.actor_id,
        organization_id=organization_id,
        role=job.actor_role or "SYSTEM",
        name=job.actor_name,
    )
    logger.info("Running %s job %s (attempt %d)", job_type.value, job_id, job.attempts)
    try:
        outcome = await _dispatch(db, job_type, payload, actor, job_id)
    except Exception as exc:
        logger.exception("Job %s failed", job_id)
        await db.rollback()
        job = await _require_job(db, organization_id, job_id)
        job.status = JobStatus.FAILED.value
        job.error = getattr(exc, "message", None) or str(exc)
        job.finished_at = datetime.utcnow()
        await db.commit()
        return _to_response(job)

    # Per-item rollbacks inside the run expire the instance; reload before updating.
    job = await _require_job(db, organization_id, job_id)
    job.status = JobStatus.COMPLETED.value
    job.result = outcome.model_dump(mode="json")
    job.finished_at = datetime.utcnow()
    await db.commit()
    logger.info("Job %s completed", job_id)
    return _to_response(job)
