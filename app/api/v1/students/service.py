"""
Single-record student operations. Errors propagate to the caller (router translates ServiceError);
every mutating attempt, rejected ones included, leaves one audit entry. Reads that disclose a
medical record leave a VIEW entry.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.v1.audit.service import list_audit_trail, record_audit
from app.api.v1.audit.schemas import AuditLogEntry, AuditTrailResponse, redact
from app.api.v1.clearance import service as clearance_service
from app.auth.schemas import CurrentUser
from app.core.enums import AuditAction, AuditEntityType, AuditOutcome
from app.core.exceptions import ConflictError, ServiceError, SystemFaultError
from app.core.models import Student

from . import lifecycle, repository
from .eligibility import evaluate_graduation_with_clearance, evaluate_promotion
from .identifiers import generate_admission_number
from .lifecycle import StudentState, apply_state, state_from_student
from .schemas import (
    DeactivateRequest,
    GraduateRequest,
    PromoteRequest,
    StatusChangeRequest,
    StudentCreate,
    StudentListResponse,
    StudentResponse,
    StudentUpdate,
)

logger = logging.getLogger(__name__)

CLEARANCE_WAIVED_FLAG = "clearance_waived"

PROFILE_FIELDS = (
    "first_name",
    "middle_name",
    "last_name",
    "email",
    "phone",
    "gender",
    "date_of_birth",
    "stream_section",
    "address",
    "medical_info",
    "gpa",
    "total_credits",
    "on_probation",
    "disciplinary_status",
    "outstanding_balance",
    "is_boarding",
)
MEDICAL_FIELDS = ("medical_info",)
DISCIPLINE_FIELDS = ("disciplinary_status", "on_probation")


def _to_response(student: Student) -> StudentResponse:
    return StudentResponse.model_validate(student)


def lifecycle_snapshot(student: Student) -> Dict[str, Any]:
    """Fields a lifecycle transition can change (used as audit before/after values)."""
    return {
        "status": student.status,
        "organization_id": student.organization_id,
        "grade_code": student.grade_code,
        "stream_section": student.stream_section,
        "graduation_year": student.graduation_year,
    }


def _profile_entity_type(fields: List[str]) -> AuditEntityType:
    if any(f in MEDICAL_FIELDS for f in fields):
        return AuditEntityType.STUDENT_MEDICAL_RECORD
    if any(f in DISCIPLINE_FIELDS for f in fields):
        return AuditEntityType.STUDENT_DISCIPLINE
    return AuditEntityType.STUDENT_PROFILE


async def _commit(db: AsyncSession) -> None:
    try:
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        raise repository.translate_store_error(exc) from exc


# ----- Create / read -----

async def create_student(
    db: AsyncSession,
    organization_id: UUID,
    payload: StudentCreate,
    actor: CurrentUser,
) -> StudentResponse:
    """Create an ACTIVE student. Admission number is generated when not supplied."""
    new_values = payload.model_dump(exclude_none=True)
    try:
        organization = await repository.require_organization(db, organization_id)
        if payload.email and await repository.email_exists(db, organization_id, payload.email):
            raise ConflictError("Student with this email already exists in this organization", field="email")
        if payload.admission_number:
            admission_number = payload.admission_number.strip()
            if await repository.admission_number_taken(db, organization_id, admission_number):
                raise ConflictError("Student with this admission number already exists", field="admission_number")
        else:
            admission_number = await generate_admission_number(db, organization)

        data = payload.model_dump(exclude={"admission_number"})
        student = Student(
            organization_id=organization_id,
            admission_number=admission_number,
            status="ACTIVE",
            promotion_history=[],
            transfer_history=[],
            **data,
        )
        await repository.save_student(db, student)
    except ServiceError as e:
        await record_audit(
            db,
            organization_id=organization_id,
            entity_id=None,
            action=AuditAction.CREATE,
            actor=actor,
            outcome=AuditOutcome.FAILED if isinstance(e, SystemFaultError) else AuditOutcome.REJECTED,
            new_values=new_values,
            reason=e.message,
        )
        raise

    logger.info("Student %s created in organization %s", student.admission_number, organization_id)
    response = _to_response(student)
    await record_audit(
        db,
        organization_id=organization_id,
        entity_id=student.id,
        action=AuditAction.CREATE,
        actor=actor,
        new_values=dict(new_values, admission_number=student.admission_number, status=student.status),
        description=f"Student {student.admission_number} created",
    )
    return response


async def _record_medical_views(
    db: AsyncSession, organization_id: UUID, students: List[Student], actor: Optional[CurrentUser]
) -> None:
    """One VIEW entry per returned student whose medical record was disclosed."""
    for student in students:
        if not student.medical_info:
            continue
        await record_audit(
            db,
            organization_id=organization_id,
            entity_id=student.id,
            entity_type=AuditEntityType.STUDENT_MEDICAL_RECORD,
            action=AuditAction.VIEW,
            actor=actor,
            changed_fields=list(MEDICAL_FIELDS),
            description=f"Medical record of {student.admission_number} viewed",
        )


async def get_student(
    db: AsyncSession,
    organization_id: UUID,
    student_id: UUID,
    actor: Optional[CurrentUser] = None,
) -> StudentResponse:
    student = await repository.require_student(db, organization_id, student_id)
    response = _to_response(student)
    await _record_medical_views(db, organization_id, [student], actor)
    return response


async def list_students(
    db: AsyncSession,
    organization_id: UUID,
    actor: Optional[CurrentUser] = None,
    status_filter: Optional[str] = None,
    grade_code: Optional[str] = None,
    stream_section: Optional[str] = None,
    search: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> StudentListResponse:
    students, total = await repository.list_students(
        db,
        organization_id,
        status_filter=status_filter,
        grade_code=grade_code,
        stream_section=stream_section,
        search=search,
        limit=limit,
        offset=offset,
    )
    response = StudentListResponse(total=total, items=[_to_response(s) for s in students])
    await _record_medical_views(db, organization_id, students, actor)
    return response


# ----- Profile update -----

async def update_student(
    db: AsyncSession,
    organization_id: UUID,
    student_id: UUID,
    payload: StudentUpdate,
    actor: CurrentUser,
) -> StudentResponse:
    """Partial profile update; the audit entry carries only the fields sent."""
    changes = payload.model_dump(exclude_unset=True)
    student = await repository.require_student(db, organization_id, student_id)
    old_values = {f: getattr(student, f) for f in changes if f in PROFILE_FIELDS}
    entity_type = _profile_entity_type(list(changes))
    try:
        if changes.get("email") and await repository.email_exists(
            db, organization_id, changes["email"], exclude_student_id=student_id
        ):
            raise ConflictError("Student with this email already exists in this organization", field="email")
        for field, value in changes.items():
            setattr(student, field, value)
        await _commit(db)
    except ServiceError as e:
        await db.rollback()
        await record_audit(
            db,
            organization_id=organization_id,
            entity_id=student_id,
            entity_type=entity_type,
            action=AuditAction.UPDATE,
            actor=actor,
            outcome=AuditOutcome.FAILED if isinstance(e, SystemFaultError) else AuditOutcome.REJECTED,
            old_values=old_values,
            new_values=changes,
            reason=e.message,
        )
        raise

    response = _to_response(student)
    await record_audit(
        db,
        organization_id=organization_id,
        entity_id=student_id,
        entity_type=entity_type,
        action=AuditAction.UPDATE,
        actor=actor,
        old_values=old_values,
        new_values=changes,
    )
    return response


# ----- Lifecycle transitions -----

async def _transition(
    db: AsyncSession,
    organization_id: UUID,
    student_id: UUID,
    actor: CurrentUser,
    decide: Callable[[Student], Any],
    *,
    action: AuditAction = AuditAction.TRANSITION,
    reason: Optional[str] = None,
    description: Optional[str] = None,
) -> StudentResponse:
    """
    Load, decide, persist, audit. `decide` returns the new StudentState or (state, compliance_flags)
    and raises ServiceError to reject; the rejection is audited and re-raised.
    """
    student = await repository.require_student(db, organization_id, student_id)
    before = lifecycle_snapshot(student)
    flags: List[str] = []
    try:
        decision = await decide(student)
        new_state: StudentState
        if isinstance(decision, tuple):
            new_state, flags = decision
        else:
            new_state = decision
        apply_state(student, new_state)
        await _commit(db)
    except ServiceError as e:
        await db.rollback()
        await record_audit(
            db,
            organization_id=organization_id,
            entity_id=student_id,
            action=action,
            actor=actor,
            outcome=AuditOutcome.FAILED if isinstance(e, SystemFaultError) else AuditOutcome.REJECTED,
            old_values=before,
            reason=e.message,
            description=description,
        )
        raise

    response = _to_response(student)
    await record_audit(
        db,
        organization_id=organization_id,
        entity_id=student_id,
        action=action,
        actor=actor,
        old_values=before,
        new_values=lifecycle_snapshot(student),
        reason=reason,
        description=description,
        compliance_flags=flags or None,
    )
    return response


async def graduate_student(
    db: AsyncSession,
    organization_id: UUID,
    student_id: UUID,
    payload: GraduateRequest,
    actor: CurrentUser,
) -> StudentResponse:
    organization = await repository.require_organization(db, organization_id)
    terminal_grade_code = organization.terminal_grade_code
    year = payload.graduation_year or datetime.utcnow().year

    async def decide(student: Student) -> Tuple[StudentState, List[str]]:
        clearance = await clearance_service.get_clearance_snapshot(db, student.id)
        eligibility = evaluate_graduation_with_clearance(
            student, terminal_grade_code, payload.clearance_status, clearance
        )
        state = lifecycle.graduate(state_from_student(student), eligibility, year)
        return state, [CLEARANCE_WAIVED_FLAG] if eligibility.clearance_waived else []

    return await _transition(
        db, organization_id, student_id, actor, decide, reason=payload.reason, description="Graduation"
    )


async def promote_student(
    db: AsyncSession,
    organization_id: UUID,
    student_id: UUID,
    payload: PromoteRequest,
    actor: CurrentUser,
) -> StudentResponse:
    async def decide(student: Student) -> StudentState:
        eligibility = evaluate_promotion(student, payload.target_grade_code, payload.include_repeaters)
        return lifecycle.promote(
            state_from_student(student),
            eligibility,
            payload.target_grade_code,
            payload.target_stream_section,
            actor.id,
            datetime.utcnow(),
            payload.reason,
        )

    return await _transition(
        db, organization_id, student_id, actor, decide, reason=payload.reason, description="Promotion"
    )


async def _simple_transition(
    db: AsyncSession,
    organization_id: UUID,
    student_id: UUID,
    actor: CurrentUser,
    transition: Callable[[StudentState], StudentState],
    reason: Optional[str],
    description: str,
    action: AuditAction = AuditAction.TRANSITION,
) -> StudentResponse:
    async def decide(student: Student) -> StudentState:
        return transition(state_from_student(student))

    return await _transition(
        db, organization_id, student_id, actor, decide, action=action, reason=reason, description=description
    )


async def remove_student(
    db: AsyncSession,
    organization_id: UUID,
    student_id: UUID,
    actor: CurrentUser,
) -> StudentResponse:
    """Soft delete (INACTIVE). Removing an already-inactive student is a no-op."""
    return await _simple_transition(
        db,
        organization_id,
        student_id,
        actor,
        lambda state: lifecycle.deactivate(state, strict=False),
        None,
        "Student removed",
        action=AuditAction.DELETE,
    )


async def deactivate_student(
    db: AsyncSession,
    organization_id: UUID,
    student_id: UUID,
    payload: DeactivateRequest,
    actor: CurrentUser,
) -> StudentResponse:
    """Soft delete with a mandatory reason. Rejects an already-inactive student."""
    return await _simple_transition(
        db,
        organization_id,
        student_id,
        actor,
        lambda state: lifecycle.deactivate(state, strict=True),
        payload.reason,
        "Student deactivated",
        action=AuditAction.DELETE,
    )


async def suspend_student(
    db: AsyncSession, organization_id: UUID, student_id: UUID, payload: StatusChangeRequest, actor: CurrentUser
) -> StudentResponse:
    return await _simple_transition(
        db, organization_id, student_id, actor, lifecycle.suspend, payload.reason, "Student suspended"
    )


async def withdraw_student(
    db: AsyncSession, organization_id: UUID, student_id: UUID, payload: StatusChangeRequest, actor: CurrentUser
) -> StudentResponse:
    return await _simple_transition(
        db, organization_id, student_id, actor, lifecycle.withdraw, payload.reason, "Student withdrawn"
    )


async def reinstate_student(
    db: AsyncSession, organization_id: UUID, student_id: UUID, payload: StatusChangeRequest, actor: CurrentUser
) -> StudentResponse:
    return await _simple_transition(
        db, organization_id, student_id, actor, lifecycle.reinstate, payload.reason, "Student reinstated"
    )


# ----- Audit trail -----

async def get_student_audit_trail(
    db: AsyncSession,
    organization_id: UUID,
    student_id: UUID,
    action: Optional[str] = None,
    is_confidential: Optional[bool] = None,
    show_confidential_values: bool = False,
    limit: int = 50,
    offset: int = 0,
) -> AuditTrailResponse:
    """Newest first. Values of confidential entries are redacted unless show_confidential_values."""
    await repository.require_student(db, organization_id, student_id)
    rows, total = await list_audit_trail(
        db,
        organization_id,
        entity_id=student_id,
        action=action,
        is_confidential=is_confidential,
        limit=limit,
        offset=offset,
    )
    items = [AuditLogEntry.model_validate(r) for r in rows]
    if not show_confidential_values:
        items = [redact(i) for i in items]
    return AuditTrailResponse(total=total, items=items)
