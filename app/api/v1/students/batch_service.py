"""
Batch promotion / graduation / transfer over a resolved set of students.

The target set is resolved once. Members are processed sequentially, each in its own transaction:
one member's failure never touches another's outcome. A store outage (systemic fault) fails the
current member and every remaining one with the same message, without further store access.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional, Tuple
from uuid import UUID

from fastapi import status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.v1.audit.service import record_audit
from app.api.v1.clearance import service as clearance_service
from app.api.v1.transfers import service as transfer_service
from app.auth.schemas import CurrentUser
from app.core.enums import (
    AuditAction,
    AuditEntityType,
    AuditOutcome,
    BatchOperation,
    BatchScope,
    TransferKind,
    TransferStatus,
)
from app.core.exceptions import (
    ConflictError,
    ConstraintViolationError,
    IneligibleError,
    InvalidTransitionError,
    NotFoundError,
    ServiceError,
    SystemFaultError,
)
from app.core.models import Student

from . import lifecycle, repository
from .eligibility import evaluate_graduation_with_clearance, evaluate_promotion, evaluate_transfer
from .lifecycle import StudentState, apply_state, state_from_student
from .schemas import BatchItemError, BatchOperationResult, BatchRequest
from .service import CLEARANCE_WAIVED_FLAG, lifecycle_snapshot

logger = logging.getLogger(__name__)


@dataclass
class BatchContext:
    operation: BatchOperation
    request: BatchRequest
    actor: CurrentUser
    organization_id: UUID
    batch_id: UUID
    terminal_grade_code: str
    graduation_year: int
    started_at: datetime = field(default_factory=datetime.utcnow)


# (new state, compliance flags)
Decision = Tuple[StudentState, List[str]]
Handler = Callable[[AsyncSession, BatchContext, Student], Awaitable[Decision]]


def error_kind(exc: ServiceError) -> str:
    if isinstance(exc, NotFoundError):
        return "NOT_FOUND"
    if isinstance(exc, IneligibleError):
        return "INELIGIBLE"
    if isinstance(exc, InvalidTransitionError):
        return "INVALID_TRANSITION"
    if isinstance(exc, ConflictError):
        return "CONFLICT"
    if isinstance(exc, ConstraintViolationError):
        return "CONSTRAINT"
    if isinstance(exc, SystemFaultError):
        return "SYSTEM"
    return "ERROR"


# ----- Per-operation decisions -----

async def _decide_promotion(db: AsyncSession, ctx: BatchContext, student: Student) -> Decision:
    target = ctx.request.target_grade_code
    eligibility = evaluate_promotion(student, target, ctx.request.include_repeaters)
    state = lifecycle.promote(
        state_from_student(student),
        eligibility,
        target,
        ctx.request.target_stream_section,
        ctx.actor.id,
        datetime.utcnow(),
        ctx.request.reason,
    )
    return state, []


async def _decide_graduation(db: AsyncSession, ctx: BatchContext, student: Student) -> Decision:
    clearance = await clearance_service.get_clearance_snapshot(db, student.id)
    eligibility = evaluate_graduation_with_clearance(
        student, ctx.terminal_grade_code, ctx.request.clearance_status, clearance
    )
    state = lifecycle.graduate(state_from_student(student), eligibility, ctx.graduation_year)
    return state, [CLEARANCE_WAIVED_FLAG] if eligibility.clearance_waived else []


async def _decide_transfer(db: AsyncSession, ctx: BatchContext, student: Student) -> Decision:
    now = datetime.utcnow()
    if ctx.request.transfer_kind == TransferKind.EXTERNAL:
        req = await transfer_service.get_approved_request(db, ctx.organization_id, student.id)
        if req is None:
            raise IneligibleError("No approved transfer request for this student")
        return transfer_service.apply_approved_request(student, req, now), []

    # Internal class moves are authorised by the batch itself.
    state = lifecycle.complete_transfer(
        state_from_student(student),
        evaluate_transfer(student),
        TransferStatus.APPROVED.value,
        TransferKind.INTERNAL,
        now,
        to_grade_code=ctx.request.target_grade_code,
        to_stream_section=ctx.request.target_stream_section,
        reason=ctx.request.reason,
    )
    return state, []


HANDLERS: Dict[BatchOperation, Handler] = {
    BatchOperation.PROMOTE: _decide_promotion,
    BatchOperation.GRADUATE: _decide_graduation,
    BatchOperation.TRANSFER: _decide_transfer,
}


# ----- Request validation / scope resolution -----

def validate_batch_request(operation: BatchOperation, request: BatchRequest) -> None:
    """Whole-request problems are raised before any member is touched."""
    if request.scope in (BatchScope.GRADE, BatchScope.SECTION) and not request.grade_code:
        raise ServiceError(f"grade_code is required for scope '{request.scope.value}'", status.HTTP_400_BAD_REQUEST)
    if request.scope == BatchScope.SECTION and not request.stream_section:
        raise ServiceError("stream_section is required for scope 'section'", status.HTTP_400_BAD_REQUEST)
    if request.scope == BatchScope.STUDENTS and not request.student_ids:
        raise ServiceError("student_ids is required for scope 'students'", status.HTTP_400_BAD_REQUEST)
    if operation == BatchOperation.PROMOTE and not request.target_grade_code:
        raise ServiceError("target_grade_code is required for promotion", status.HTTP_400_BAD_REQUEST)
    if (
        operation == BatchOperation.TRANSFER
        and request.transfer_kind == TransferKind.INTERNAL
        and not (request.target_grade_code or request.target_stream_section)
    ):
        raise ServiceError(
            "target_grade_code or target_stream_section is required for internal transfer",
            status.HTTP_400_BAD_REQUEST,
        )


async def resolve_targets(db: AsyncSession, organization_id: UUID, request: BatchRequest) -> List[UUID]:
    """Explicit ids keep the caller's order (duplicates included); filters resolve to ACTIVE students."""
    if request.scope == BatchScope.STUDENTS:
        return list(request.student_ids)
    return await repository.list_students_for_scope(
        db, organization_id, request.scope, request.grade_code, request.stream_section
    )


# ----- Member processing -----

async def _rollback(db: AsyncSession) -> None:
    try:
        await db.rollback()
    except SQLAlchemyError:
        logger.exception("Rollback failed")


async def _process_member(
    db: AsyncSession,
    ctx: BatchContext,
    student_id: UUID,
    entity_type: AuditEntityType,
) -> None:
    """Decide, apply and commit one member, then audit the outcome. Raises ServiceError on failure."""
    before: Optional[Dict] = None
    try:
        try:
            student = await repository.require_student(db, ctx.organization_id, student_id)
            before = lifecycle_snapshot(student)
            new_state, flags = await HANDLERS[ctx.operation](db, ctx, student)
            apply_state(student, new_state)
            await db.commit()
        except SQLAlchemyError as exc:
            raise repository.translate_store_error(exc) from exc
        except ServiceError:
            raise
        except Exception as exc:
            logger.exception("Unexpected error processing student %s in batch %s", student_id, ctx.batch_id)
            raise SystemFaultError(f"Unexpected error: {exc}") from exc
    except ServiceError as e:
        await _rollback(db)
        systemic = isinstance(e, SystemFaultError) and e.systemic
        if not systemic:
            await record_audit(
                db,
                organization_id=ctx.organization_id,
                entity_id=student_id,
                entity_type=entity_type,
                action=AuditAction.TRANSITION,
                actor=ctx.actor,
                outcome=AuditOutcome.FAILED if isinstance(e, SystemFaultError) else AuditOutcome.REJECTED,
                old_values=before,
                reason=e.message,
                description=f"Batch {ctx.operation.value.lower()}",
                batch_id=ctx.batch_id,
            )
        raise

    await record_audit(
        db,
        organization_id=ctx.organization_id,
        entity_id=student_id,
        entity_type=entity_type,
        action=AuditAction.TRANSITION,
        actor=ctx.actor,
        old_values=before,
        new_values=lifecycle_snapshot(student),
        reason=ctx.request.reason,
        description=f"Batch {ctx.operation.value.lower()}",
        batch_id=ctx.batch_id,
        compliance_flags=flags or None,
    )


async def execute_batch(
    db: AsyncSession,
    operation: BatchOperation,
    request: BatchRequest,
    actor: CurrentUser,
    batch_id: Optional[UUID] = None,
) -> BatchOperationResult:
    """
    Run one batch operation for the actor's organization. Per-member failures are collected in the
    result, never raised; only whole-request validation errors raise.
    """
    operation = BatchOperation(operation)
    validate_batch_request(operation, request)
    organization_id = actor.organization_id
    organization = await repository.require_organization(db, organization_id)
    ctx = BatchContext(
        operation=operation,
        request=request,
        actor=actor,
        organization_id=organization_id,
        batch_id=batch_id or uuid.uuid4(),
        terminal_grade_code=organization.terminal_grade_code,
        graduation_year=request.graduation_year or datetime.utcnow().year,
    )
    entity_type = (
        AuditEntityType.STUDENT_TRANSFER if operation == BatchOperation.TRANSFER else AuditEntityType.STUDENT_PROFILE
    )
    targets = await resolve_targets(db, organization_id, request)
    logger.info(
        "Batch %s %s started: %d target(s), scope=%s, organization=%s",
        operation.value,
        ctx.batch_id,
        len(targets),
        request.scope.value,
        organization_id,
    )

    succeeded: List[UUID] = []
    errors: List[BatchItemError] = []
    systemic_message: Optional[str] = None
    for student_id in targets:
        if systemic_message is not None:
            errors.append(BatchItemError(id=student_id, message=systemic_message, kind="SYSTEM"))
            continue
        try:
            await _process_member(db, ctx, student_id, entity_type)
            succeeded.append(student_id)
        except ServiceError as e:
            errors.append(BatchItemError(id=student_id, message=e.message, kind=error_kind(e)))
            if isinstance(e, SystemFaultError) and e.systemic:
                systemic_message = e.message
                logger.error(
                    "Batch %s aborted at student %s: %s; failing remaining members",
                    ctx.batch_id,
                    student_id,
                    e.message,
                    exc_info=e,
                )
            else:
                logger.warning("Batch %s: student %s failed: %s", ctx.batch_id, student_id, e.message)

    logger.info(
        "Batch %s %s finished: %d succeeded, %d failed",
        operation.value,
        ctx.batch_id,
        len(succeeded),
        len(errors),
    )
    result = BatchOperationResult(
        batch_id=ctx.batch_id,
        operation=operation.value,
        requested=len(targets),
        processed_count=len(succeeded) + len(errors),
        succeeded_ids=succeeded,
        errors=errors,
    )
    if operation == BatchOperation.PROMOTE:
        result.promoted_count = len(succeeded)
    elif operation == BatchOperation.GRADUATE:
        result.graduated_count = len(succeeded)
    else:
        result.transferred_count = len(succeeded)
    return result
