"""
Transfer requests. INITIATED -> APPROVED | REJECTED (review), open -> CANCELLED, APPROVED -> COMPLETED.
At most one open request per student. Completion applies the lifecycle transfer to the student.
"""

import logging
from datetime import datetime
from typing import List, Optional, Tuple
from uuid import UUID

from fastapi import status
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.v1.audit.service import record_audit
from app.api.v1.students import lifecycle, repository
from app.api.v1.students.eligibility import evaluate_transfer
from app.api.v1.students.lifecycle import StudentState, apply_state, state_from_student
from app.auth.schemas import CurrentUser
from app.core.enums import (
    OPEN_TRANSFER_STATUSES,
    AuditAction,
    AuditEntityType,
    AuditOutcome,
    TransferKind,
    TransferStatus,
)
from app.core.exceptions import (
    ConflictError,
    IneligibleError,
    InvalidTransitionError,
    NotFoundError,
    ServiceError,
    SystemFaultError,
)
from app.core.models import Student, TransferRequest

from .schemas import TransferRequestCreate, TransferRequestResponse, TransferReview

logger = logging.getLogger(__name__)


def _to_response(r: TransferRequest) -> TransferRequestResponse:
    return TransferRequestResponse.model_validate(r)


async def _get_request(db: AsyncSession, organization_id: UUID, request_id: UUID) -> TransferRequest:
    result = await db.execute(
        select(TransferRequest)
        .where(TransferRequest.id == request_id, TransferRequest.organization_id == organization_id)
        .execution_options(populate_existing=True)
    )
    req = result.scalar_one_or_none()
    if not req:
        raise NotFoundError("Transfer request not found")
    return req


async def get_open_request(db: AsyncSession, organization_id: UUID, student_id: UUID) -> Optional[TransferRequest]:
    result = await db.execute(
        select(TransferRequest)
        .where(
            TransferRequest.organization_id == organization_id,
            TransferRequest.student_id == student_id,
            TransferRequest.status.in_(OPEN_TRANSFER_STATUSES),
        )
        .order_by(TransferRequest.created_at.desc())
        .limit(1)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_approved_request(db: AsyncSession, organization_id: UUID, student_id: UUID) -> Optional[TransferRequest]:
    req = await get_open_request(db, organization_id, student_id)
    if req and req.status == TransferStatus.APPROVED.value:
        return req
    return None


async def _commit(db: AsyncSession) -> None:
    try:
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        raise repository.translate_store_error(exc) from exc


async def _audit(
    db: AsyncSession,
    organization_id: UUID,
    student_id: UUID,
    actor: CurrentUser,
    action: AuditAction,
    description: str,
    error: Optional[ServiceError] = None,
    old_values: Optional[dict] = None,
    new_values: Optional[dict] = None,
    reason: Optional[str] = None,
) -> None:
    outcome = AuditOutcome.SUCCEEDED
    if error is not None:
        outcome = AuditOutcome.FAILED if isinstance(error, SystemFaultError) else AuditOutcome.REJECTED
        reason = error.message
    await record_audit(
        db,
        organization_id=organization_id,
        entity_id=student_id,
        entity_type=AuditEntityType.STUDENT_TRANSFER,
        action=action,
        actor=actor,
        outcome=outcome,
        old_values=old_values,
        new_values=new_values,
        reason=reason,
        description=description,
    )


# ----- Create / list -----

async def create_transfer_request(
    db: AsyncSession,
    organization_id: UUID,
    payload: TransferRequestCreate,
    actor: CurrentUser,
) -> TransferRequestResponse:
    new_values = payload.model_dump(exclude_none=True)
    try:
        student = await repository.require_student(db, organization_id, payload.student_id)
        eligibility = evaluate_transfer(student)
        if not eligibility.eligible:
            raise IneligibleError(eligibility.reason)
        if payload.kind == TransferKind.EXTERNAL:
            if not payload.to_organization_id:
                raise ServiceError("to_organization_id is required for external transfers", status.HTTP_400_BAD_REQUEST)
            if payload.to_organization_id == organization_id:
                raise ServiceError("External transfer must target another organization", status.HTTP_400_BAD_REQUEST)
        elif not payload.to_grade_code and not payload.to_stream_section:
            raise ServiceError("to_grade_code or to_stream_section is required for internal transfers", status.HTTP_400_BAD_REQUEST)
        if await get_open_request(db, organization_id, payload.student_id):
            raise ConflictError("Student already has an open transfer request")

        req = TransferRequest(
            organization_id=organization_id,
            student_id=payload.student_id,
            kind=payload.kind.value,
            to_organization_id=payload.to_organization_id,
            to_grade_code=payload.to_grade_code,
            to_stream_section=payload.to_stream_section,
            reason=payload.reason,
            status=TransferStatus.INITIATED.value,
            requested_by=actor.id,
        )
        db.add(req)
        await _commit(db)
    except ServiceError as e:
        await db.rollback()
        await _audit(db, organization_id, payload.student_id, actor, AuditAction.CREATE,
                     "Transfer request", error=e, new_values=new_values)
        raise

    response = _to_response(req)
    await _audit(db, organization_id, payload.student_id, actor, AuditAction.CREATE,
                 "Transfer request", new_values=new_values, reason=payload.reason)
    return response


async def list_transfer_requests(
    db: AsyncSession,
    organization_id: UUID,
    status_filter: Optional[str] = None,
    student_id: Optional[UUID] = None,
) -> List[TransferRequestResponse]:
    stmt = select(TransferRequest).where(TransferRequest.organization_id == organization_id)
    if status_filter:
        stmt = stmt.where(TransferRequest.status == status_filter.upper())
    if student_id:
        stmt = stmt.where(TransferRequest.student_id == student_id)
    result = await db.execute(stmt.order_by(TransferRequest.created_at.desc()))
    return [_to_response(r) for r in result.scalars().all()]


# ----- Review -----

async def _change_status(
    db: AsyncSession,
    organization_id: UUID,
    request_id: UUID,
    actor: CurrentUser,
    allowed_from: Tuple[str, ...],
    new_status: TransferStatus,
    rejection_message: str,
    remarks: Optional[str],
) -> TransferRequestResponse:
    req = await _get_request(db, organization_id, request_id)
    student_id = req.student_id
    old_status = req.status
    try:
        if req.status not in allowed_from:
            raise InvalidTransitionError(rejection_message)
        req.status = new_status.value
        if new_status in (TransferStatus.APPROVED, TransferStatus.REJECTED):
            req.reviewed_by = actor.id
            req.reviewed_at = datetime.utcnow()
        if remarks:
            req.remarks = remarks
        await _commit(db)
    except ServiceError as e:
        await db.rollback()
        await _audit(db, organization_id, student_id, actor, AuditAction.UPDATE,
                     f"Transfer request {new_status.value.lower()}", error=e,
                     old_values={"transfer_status": old_status})
        raise

    response = _to_response(req)
    await _audit(db, organization_id, student_id, actor, AuditAction.UPDATE,
                 f"Transfer request {new_status.value.lower()}",
                 old_values={"transfer_status": old_status},
                 new_values={"transfer_status": new_status.value}, reason=remarks)
    return response


async def approve_transfer_request(
    db: AsyncSession, organization_id: UUID, request_id: UUID, payload: TransferReview, actor: CurrentUser
) -> TransferRequestResponse:
    return await _change_status(
        db, organization_id, request_id, actor,
        (TransferStatus.INITIATED.value,), TransferStatus.APPROVED,
        "Only initiated transfers can be approved", payload.remarks,
    )


async def reject_transfer_request(
    db: AsyncSession, organization_id: UUID, request_id: UUID, payload: TransferReview, actor: CurrentUser
) -> TransferRequestResponse:
    return await _change_status(
        db, organization_id, request_id, actor,
        (TransferStatus.INITIATED.value,), TransferStatus.REJECTED,
        "Only initiated transfers can be rejected", payload.remarks,
    )


async def cancel_transfer_request(
    db: AsyncSession, organization_id: UUID, request_id: UUID, payload: TransferReview, actor: CurrentUser
) -> TransferRequestResponse:
    return await _change_status(
        db, organization_id, request_id, actor,
        OPEN_TRANSFER_STATUSES, TransferStatus.CANCELLED,
        "Only open transfers can be cancelled", payload.remarks,
    )


# ----- Completion -----

def apply_approved_request(student: Student, req: TransferRequest, now: datetime) -> StudentState:
    """Run the lifecycle transfer for an approved request and mark the request COMPLETED (uncommitted)."""
    new_state = lifecycle.complete_transfer(
        state_from_student(student),
        evaluate_transfer(student),
        req.status,
        TransferKind(req.kind),
        now,
        to_organization_id=req.to_organization_id,
        to_grade_code=req.to_grade_code,
        to_stream_section=req.to_stream_section,
        reason=req.reason,
    )
    apply_state(student, new_state)
    req.status = TransferStatus.COMPLETED.value
    req.completed_at = now
    return new_state


async def complete_transfer_request(
    db: AsyncSession,
    organization_id: UUID,
    request_id: UUID,
    actor: CurrentUser,
) -> TransferRequestResponse:
    req = await _get_request(db, organization_id, request_id)
    student_id = req.student_id
    student = await repository.require_student(db, organization_id, student_id)
    before = {"status": student.status, "organization_id": student.organization_id,
              "grade_code": student.grade_code, "stream_section": student.stream_section}
    try:
        apply_approved_request(student, req, datetime.utcnow())
        await _commit(db)
    except ServiceError as e:
        await db.rollback()
        await _audit(db, organization_id, student_id, actor, AuditAction.TRANSITION,
                     "Transfer completion", error=e, old_values=before)
        raise

    after = {"status": student.status, "organization_id": student.organization_id,
             "grade_code": student.grade_code, "stream_section": student.stream_section}
    response = _to_response(req)
    logger.info("Transfer request %s completed for student %s", request_id, student_id)
    await _audit(db, organization_id, student_id, actor, AuditAction.TRANSITION,
                 "Transfer completion", old_values=before, new_values=after, reason=req.reason)
    return response
