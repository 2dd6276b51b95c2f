"""
Library / hostel / medical clearance per student. Graduation in `cleared` mode reads the snapshot;
no row means nothing has been cleared yet.
"""

from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.v1.audit.service import record_audit
from app.api.v1.students import repository
from app.api.v1.students.eligibility import ClearanceSnapshot, evaluate_additional_clearance
from app.auth.schemas import CurrentUser
from app.core.enums import AuditAction, AuditEntityType
from app.core.models import Student, StudentClearance

from .schemas import ClearanceResponse, ClearanceUpdate

CLEARANCE_FIELDS = ("library_cleared", "hostel_cleared", "medical_cleared")


async def _get_row(db: AsyncSession, student_id: UUID) -> Optional[StudentClearance]:
    result = await db.execute(
        select(StudentClearance)
        .where(StudentClearance.student_id == student_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


def _snapshot(row: Optional[StudentClearance]) -> Optional[ClearanceSnapshot]:
    if row is None:
        return None
    return ClearanceSnapshot(
        library_cleared=bool(row.library_cleared),
        hostel_cleared=bool(row.hostel_cleared),
        medical_cleared=bool(row.medical_cleared),
    )


async def get_clearance_snapshot(db: AsyncSession, student_id: UUID) -> Optional[ClearanceSnapshot]:
    return _snapshot(await _get_row(db, student_id))


def _to_response(student: Student, row: Optional[StudentClearance]) -> ClearanceResponse:
    snapshot = _snapshot(row) or ClearanceSnapshot()
    return ClearanceResponse(
        student_id=student.id,
        library_cleared=snapshot.library_cleared,
        hostel_cleared=snapshot.hostel_cleared,
        medical_cleared=snapshot.medical_cleared,
        hostel_required=bool(student.is_boarding),
        fully_cleared=evaluate_additional_clearance(snapshot, bool(student.is_boarding)).eligible,
        updated_by=row.updated_by if row else None,
        updated_at=row.updated_at if row else None,
    )


async def get_clearance(db: AsyncSession, organization_id: UUID, student_id: UUID) -> ClearanceResponse:
    student = await repository.require_student(db, organization_id, student_id)
    return _to_response(student, await _get_row(db, student_id))


async def set_clearance(
    db: AsyncSession,
    organization_id: UUID,
    student_id: UUID,
    payload: ClearanceUpdate,
    actor: CurrentUser,
) -> ClearanceResponse:
    """Update the given flags (others unchanged); creates the row on first use."""
    student = await repository.require_student(db, organization_id, student_id)
    row = await _get_row(db, student_id)
    if row is None:
        row = StudentClearance(
            student_id=student_id,
            library_cleared=False,
            hostel_cleared=False,
            medical_cleared=False,
        )
        db.add(row)
    old_values = {f: bool(getattr(row, f)) for f in CLEARANCE_FIELDS}
    changes = payload.model_dump(exclude_unset=True, exclude_none=True)
    for field, value in changes.items():
        setattr(row, field, value)
    row.updated_by = actor.id
    row.updated_at = datetime.utcnow()
    try:
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        raise repository.translate_store_error(exc) from exc

    response = _to_response(student, row)
    await record_audit(
        db,
        organization_id=organization_id,
        entity_id=student_id,
        entity_type=AuditEntityType.STUDENT_CLEARANCE,
        action=AuditAction.UPDATE,
        actor=actor,
        old_values=old_values,
        new_values={f: changes[f] for f in CLEARANCE_FIELDS if f in changes},
        description="Clearance updated",
    )
    return response
