from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.dependencies import get_current_user
from app.auth.rbac import check_permission
from app.auth.schemas import CurrentUser
from app.core.exceptions import ServiceError
from app.db.session import get_db

from .schemas import TransferRequestCreate, TransferRequestResponse, TransferReview
from . import service

router = APIRouter(prefix="/api/v1/transfers", tags=["transfers"])


@router.post(
    "",
    response_model=TransferRequestResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(check_permission("transfers", "create"))],
)
async def create_transfer_request(
    payload: TransferRequestCreate,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> TransferRequestResponse:
    """Open a transfer request (INITIATED). Only ACTIVE students; one open request per student."""
    try:
        return await service.create_transfer_request(db, current_user.organization_id, payload, current_user)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.get(
    "",
    response_model=List[TransferRequestResponse],
    dependencies=[Depends(check_permission("transfers", "read"))],
)
async def list_transfer_requests(
    status_filter: Optional[str] = Query(None, alias="status", description="INITIATED, APPROVED, REJECTED, COMPLETED, CANCELLED"),
    student_id: Optional[UUID] = Query(None),
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> List[TransferRequestResponse]:
    return await service.list_transfer_requests(
        db, current_user.organization_id, status_filter=status_filter, student_id=student_id
    )


@router.post(
    "/{request_id}/approve",
    response_model=TransferRequestResponse,
    dependencies=[Depends(check_permission("transfers", "update"))],
)
async def approve_transfer_request(
    request_id: UUID,
    payload: TransferReview,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> TransferRequestResponse:
    try:
        return await service.approve_transfer_request(db, current_user.organization_id, request_id, payload, current_user)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.post(
    "/{request_id}/reject",
    response_model=TransferRequestResponse,
    dependencies=[Depends(check_permission("transfers", "update"))],
)
async def reject_transfer_request(
    request_id: UUID,
    payload: TransferReview,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> TransferRequestResponse:
    try:
        return await service.reject_transfer_request(db, current_user.organization_id, request_id, payload, current_user)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.post(
    "/{request_id}/complete",
    response_model=TransferRequestResponse,
    dependencies=[Depends(check_permission("transfers", "update"))],
)
async def complete_transfer_request(
    request_id: UUID,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> TransferRequestResponse:
    """Apply an APPROVED transfer: internal moves grade/section, external marks the student TRANSFERRED."""
    try:
        return await service.complete_transfer_request(db, current_user.organization_id, request_id, current_user)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.post(
    "/{request_id}/cancel",
    response_model=TransferRequestResponse,
    dependencies=[Depends(check_permission("transfers", "update"))],
)
async def cancel_transfer_request(
    request_id: UUID,
    payload: TransferReview,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> TransferRequestResponse:
    try:
        return await service.cancel_transfer_request(db, current_user.organization_id, request_id, payload, current_user)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
