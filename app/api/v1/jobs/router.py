from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.dependencies import get_current_user
from app.auth.rbac import check_permission
from app.auth.schemas import CurrentUser
from app.core.exceptions import ServiceError
from app.db.session import get_db

from .schemas import JobResponse
from . import service

router = APIRouter(prefix="/api/v1/jobs", tags=["jobs"])


@router.get(
    "/{job_id}",
    response_model=JobResponse,
    dependencies=[Depends(check_permission("students", "read"))],
)
async def get_job(
    job_id: UUID,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> JobResponse:
    """Job status; `result` holds the batch or import result once COMPLETED."""
    try:
        return await service.get_job(db, current_user.organization_id, job_id)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.post(
    "/{job_id}/cancel",
    response_model=JobResponse,
    dependencies=[Depends(check_permission("students", "update"))],
)
async def cancel_job(
    job_id: UUID,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> JobResponse:
    """Cancel a PENDING job. RUNNING jobs cannot be cancelled."""
    try:
        return await service.cancel_job(db, current_user.organization_id, job_id)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
