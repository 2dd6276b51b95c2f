from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.dependencies import get_current_user
from app.auth.rbac import check_permission
from app.auth.schemas import CurrentUser
from app.core.exceptions import ServiceError
from app.db.session import get_db

from .schemas import ClearanceResponse, ClearanceUpdate
from . import service

router = APIRouter(prefix="/api/v1/students", tags=["clearance"])


@router.get(
    "/{student_id}/clearance",
    response_model=ClearanceResponse,
    dependencies=[Depends(check_permission("students", "read"))],
)
async def get_clearance(
    student_id: UUID,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> ClearanceResponse:
    try:
        return await service.get_clearance(db, current_user.organization_id, student_id)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.put(
    "/{student_id}/clearance",
    response_model=ClearanceResponse,
    dependencies=[Depends(check_permission("students", "update"))],
)
async def set_clearance(
    student_id: UUID,
    payload: ClearanceUpdate,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> ClearanceResponse:
    """Record library / hostel / medical clearance. Only the flags sent are changed."""
    try:
        return await service.set_clearance(db, current_user.organization_id, student_id, payload, current_user)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
