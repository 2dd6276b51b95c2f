"""
Persistence for students (the Repository collaborator). All queries are organization-scoped.
Unique violations surface as ConflictError with the offending field; store outages as
SystemFaultError(systemic=True).
"""

from typing import List, Optional, Tuple
from uuid import UUID

from sqlalchemy import func, or_, select
from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.enums import BatchScope, StudentStatus
from app.core.exceptions import ConflictError, ConstraintViolationError, NotFoundError, ServiceError, SystemFaultError
from app.core.models import AdmissionNumberReservation, Organization, Student


def conflict_field(exc: IntegrityError) -> Optional[str]:
    """Best-effort name of the unique column behind an integrity error (postgres constraint name or sqlite message)."""
    text = str(getattr(exc, "orig", exc)).lower()
    if "admission_number" in text:
        return "admission_number"
    if "email" in text:
        return "email"
    return None


UNIQUE_VIOLATION = "23505"


def is_unique_violation(exc: IntegrityError) -> bool:
    orig = getattr(exc, "orig", None)
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if code:
        return code == UNIQUE_VIOLATION
    text = str(orig if orig is not None else exc).lower()
    return "unique" in text or "duplicate key" in text


def translate_store_error(exc: Exception) -> ServiceError:
    """Map SQLAlchemy exceptions onto the service error taxonomy."""
    if isinstance(exc, ServiceError):
        return exc
    if isinstance(exc, IntegrityError) and not is_unique_violation(exc):
        return ConstraintViolationError("Record violates a database constraint (missing or invalid value)")
    if isinstance(exc, IntegrityError):
        field = conflict_field(exc)
        if field == "admission_number":
            return ConflictError("Student with this admission number already exists", field=field)
        if field == "email":
            return ConflictError("Student with this email already exists in this organization", field=field)
        return ConflictError("Duplicate record for this organization (database constraint)")
    if isinstance(exc, (OperationalError, InterfaceError)) or (
        isinstance(exc, DBAPIError) and exc.connection_invalidated
    ):
        return SystemFaultError(f"Record store unavailable: {exc.__class__.__name__}", systemic=True)
    if isinstance(exc, SQLAlchemyError):
        return SystemFaultError(f"Unexpected persistence error: {exc.__class__.__name__}")
    return SystemFaultError(f"Unexpected error: {exc}")


async def get_organization(db: AsyncSession, organization_id: UUID) -> Optional[Organization]:
    return await db.get(Organization, organization_id, populate_existing=True)


async def require_organization(db: AsyncSession, organization_id: UUID) -> Organization:
    org = await get_organization(db, organization_id)
    if not org:
        raise NotFoundError("Organization not found")
    return org


async def get_student(db: AsyncSession, organization_id: UUID, student_id: UUID) -> Optional[Student]:
    # populate_existing: a previous item's rollback may have expired this instance in the identity map.
    result = await db.execute(
        select(Student)
        .where(Student.id == student_id, Student.organization_id == organization_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def require_student(db: AsyncSession, organization_id: UUID, student_id: UUID) -> Student:
    student = await get_student(db, organization_id, student_id)
    if not student:
        raise NotFoundError("Student not found")
    return student


async def list_students_for_scope(
    db: AsyncSession,
    organization_id: UUID,
    scope: BatchScope,
    grade_code: Optional[str] = None,
    stream_section: Optional[str] = None,
) -> List[UUID]:
    """
    Resolve a filter scope to ACTIVE student ids in admission-number order.
    Explicit-id scopes are not resolved here; the caller keeps its own order.
    """
    scope = BatchScope(scope)
    stmt = select(Student.id).where(
        Student.organization_id == organization_id,
        Student.status == StudentStatus.ACTIVE.value,
    )
    if scope == BatchScope.GRADE:
        stmt = stmt.where(Student.grade_code == grade_code)
    elif scope == BatchScope.SECTION:
        stmt = stmt.where(Student.grade_code == grade_code, Student.stream_section == stream_section)
    elif scope != BatchScope.ALL:
        raise ValueError(f"Scope {scope.value} is not a filter scope")
    result = await db.execute(stmt.order_by(Student.admission_number, Student.id))
    return list(result.scalars().all())


async def list_students(
    db: AsyncSession,
    organization_id: UUID,
    status_filter: Optional[str] = None,
    grade_code: Optional[str] = None,
    stream_section: Optional[str] = None,
    search: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> Tuple[List[Student], int]:
    filters = [Student.organization_id == organization_id]
    if status_filter:
        filters.append(Student.status == status_filter.upper())
    if grade_code:
        filters.append(Student.grade_code == grade_code)
    if stream_section:
        filters.append(Student.stream_section == stream_section)
    if search and search.strip():
        term = f"%{search.strip()}%"
        filters.append(
            or_(
                Student.first_name.ilike(term),
                Student.last_name.ilike(term),
                Student.admission_number.ilike(term),
                Student.email.ilike(term),
            )
        )
    total = (await db.execute(select(func.count(Student.id)).where(*filters))).scalar() or 0
    result = await db.execute(
        select(Student)
        .where(*filters)
        .order_by(Student.last_name, Student.first_name, Student.admission_number)
        .limit(limit)
        .offset(offset)
    )
    return list(result.scalars().all()), total


async def email_exists(
    db: AsyncSession,
    organization_id: UUID,
    email: str,
    exclude_student_id: Optional[UUID] = None,
) -> bool:
    if not email or not email.strip():
        return False
    stmt = select(Student.id).where(
        Student.organization_id == organization_id,
        func.lower(Student.email) == email.strip().lower(),
    )
    if exclude_student_id is not None:
        stmt = stmt.where(Student.id != exclude_student_id)
    return (await db.execute(stmt.limit(1))).scalar_one_or_none() is not None


async def admission_number_taken(db: AsyncSession, organization_id: UUID, admission_number: str) -> bool:
    used = await db.execute(
        select(Student.id)
        .where(Student.organization_id == organization_id, Student.admission_number == admission_number)
        .limit(1)
    )
    if used.scalar_one_or_none() is not None:
        return True
    reserved = await db.execute(
        select(AdmissionNumberReservation.id)
        .where(
            AdmissionNumberReservation.organization_id == organization_id,
            AdmissionNumberReservation.admission_number == admission_number,
        )
        .limit(1)
    )
    return reserved.scalar_one_or_none() is not None


async def find_highest_admission_number(db: AsyncSession, organization_id: UUID, prefix: str) -> Optional[str]:
    """
    Identifier with the highest numeric suffix issued under prefix, across students and reservations.
    Identifiers whose suffix is not all digits (manual or legacy numbers) are ignored. None if there is none.
    """
    best: Optional[Tuple[int, str]] = None
    for column, org_column in (
        (Student.admission_number, Student.organization_id),
        (AdmissionNumberReservation.admission_number, AdmissionNumberReservation.organization_id),
    ):
        result = await db.execute(
            select(column).where(org_column == organization_id, column.startswith(prefix, autoescape=True))
        )
        for value in result.scalars():
            suffix = value[len(prefix):]
            if not value.startswith(prefix) or not (suffix.isascii() and suffix.isdigit()):
                continue
            sequence = int(suffix)
            if best is None or sequence > best[0]:
                best = (sequence, value)
    return best[1] if best else None


async def reserve_admission_number(db: AsyncSession, organization_id: UUID, admission_number: str) -> bool:
    """Claim a candidate. False when another writer already holds it (pre-check or unique violation)."""
    if await admission_number_taken(db, organization_id, admission_number):
        return False
    try:
        async with db.begin_nested():
            db.add(AdmissionNumberReservation(organization_id=organization_id, admission_number=admission_number))
    except IntegrityError:
        return False
    return True


async def save_student(db: AsyncSession, student: Student) -> Student:
    """Flush and commit the student. On failure the session is rolled back and a service error raised."""
    db.add(student)
    try:
        await db.flush()
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        raise translate_store_error(exc) from exc
    return student
