"""
Bulk student import from JSON rows or an Excel upload.

Rows are normalised (header variants -> snake_case), validated, de-duplicated within the batch,
then created one by one, each in its own transaction. A row never affects another row's outcome;
every row ends up either in imported_ids or in errors.
"""

import io
import logging
import re
import uuid
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Set, Tuple
from uuid import UUID

from openpyxl import Workbook, load_workbook
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.v1.audit.service import record_audit
from app.auth.schemas import CurrentUser
from app.core.config import settings
from app.core.enums import AuditAction, AuditOutcome
from app.core.exceptions import ConflictError, ServiceError, SystemFaultError
from app.core.models import Organization, Student

from . import repository
from .identifiers import generate_admission_number
from .schemas import ImportResult, ImportRow, ImportRowError

logger = logging.getLogger(__name__)

EXCEL_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

# Common spreadsheet headings that do not normalise to a field name on their own.
HEADER_ALIASES = {
    "firstname": "first_name",
    "lastname": "last_name",
    "surname": "last_name",
    "middlename": "middle_name",
    "email_address": "email",
    "phone_number": "phone",
    "mobile": "phone",
    "dob": "date_of_birth",
    "birth_date": "date_of_birth",
    "admission_no": "admission_number",
    "admission_id": "admission_number",
    "grade": "grade_code",
    "class": "grade_code",
    "section": "stream_section",
    "stream": "stream_section",
    "credits": "total_credits",
    "boarding": "is_boarding",
}


def normalize_header(header: Any) -> str:
    """'FirstName', 'First Name', 'first-name' and 'first_name' all become 'first_name'."""
    text = str(header).strip() if header is not None else ""
    text = re.sub(r"(?<=[a-z0-9])(?=[A-Z])", "_", text)
    text = re.sub(r"[\s\-\.]+", "_", text).lower()
    text = re.sub(r"_+", "_", text).strip("_")
    return HEADER_ALIASES.get(text, text)


def normalize_row(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Normalise keys and drop blank cells so optional fields validate as absent."""
    row: Dict[str, Any] = {}
    for key, value in raw.items():
        if isinstance(value, str):
            value = value.strip() or None
        if value is None:
            continue
        row[normalize_header(key)] = value
    return row


def _describe_validation_error(exc: ValidationError) -> Tuple[Optional[str], str]:
    """(field, message) for the first validation problem."""
    first = exc.errors()[0]
    loc = first.get("loc") or ()
    field = str(loc[0]) if loc else None
    message = f"{field}: {first.get('msg')}" if field else str(first.get("msg"))
    return field, message


def _build_student(organization_id: UUID, row: ImportRow, admission_number: str) -> Student:
    return Student(
        organization_id=organization_id,
        admission_number=admission_number,
        first_name=row.first_name,
        middle_name=row.middle_name,
        last_name=row.last_name,
        email=row.email,
        phone=row.phone,
        gender=row.gender,
        date_of_birth=row.date_of_birth,
        admission_date=row.admission_date or date.today(),
        grade_code=row.grade_code,
        stream_section=row.stream_section,
        gpa=row.gpa,
        total_credits=row.total_credits,
        is_boarding=row.is_boarding,
        status="ACTIVE",
        promotion_history=[],
        transfer_history=[],
    )


async def _create_from_row(db: AsyncSession, organization_id: UUID, row: ImportRow) -> Student:
    """Create one student. An auto-generated number that loses a uniqueness race is regenerated once."""
    organization = await repository.require_organization(db, organization_id)
    if row.email and await repository.email_exists(db, organization_id, row.email):
        raise ConflictError("Student with this email already exists in this organization", field="email")

    generated = not row.admission_number
    if generated:
        admission_number = await generate_admission_number(db, organization)
    else:
        admission_number = row.admission_number.strip()
        if await repository.admission_number_taken(db, organization_id, admission_number):
            raise ConflictError("Student with this admission number already exists", field="admission_number")

    try:
        return await repository.save_student(db, _build_student(organization_id, row, admission_number))
    except ConflictError as exc:
        if not (generated and exc.field == "admission_number"):
            raise
        logger.warning("Admission number %s collided on insert; regenerating once", admission_number)
        organization = await repository.require_organization(db, organization_id)
        admission_number = await generate_admission_number(db, organization)
        return await repository.save_student(db, _build_student(organization_id, row, admission_number))


async def import_students(
    db: AsyncSession,
    rows: List[Dict[str, Any]],
    organization: Organization,
    actor: CurrentUser,
    batch_id: Optional[UUID] = None,
) -> ImportResult:
    """Import rows for the organization. Never raises for row-level problems."""
    organization_id = organization.id
    batch_id = batch_id or uuid.uuid4()
    logger.info("Import %s started: %d row(s), organization=%s", batch_id, len(rows), organization_id)

    imported: List[UUID] = []
    errors: List[ImportRowError] = []
    emails_seen: Set[str] = set()
    numbers_seen: Set[str] = set()
    systemic_message: Optional[str] = None

    for index, raw in enumerate(rows, start=1):
        raw = dict(raw or {})
        if systemic_message is not None:
            errors.append(ImportRowError(row=index, message=systemic_message, data=raw))
            continue

        data = normalize_row(raw)
        try:
            row = ImportRow.model_validate(data)
        except ValidationError as exc:
            field, message = _describe_validation_error(exc)
            errors.append(ImportRowError(row=index, field=field, message=message, data=raw))
            await _audit_row(db, organization_id, actor, batch_id, index, data, None, message, AuditOutcome.REJECTED)
            continue

        email_key = row.email.lower() if row.email else None
        number_key = row.admission_number.strip() if row.admission_number else None
        duplicate: Optional[ImportRowError] = None
        if email_key and email_key in emails_seen:
            duplicate = ImportRowError(row=index, field="email", message="Duplicate email within this import", data=raw)
        elif number_key and number_key in numbers_seen:
            duplicate = ImportRowError(
                row=index, field="admission_number", message="Duplicate admission number within this import", data=raw
            )
        if duplicate:
            errors.append(duplicate)
            await _audit_row(db, organization_id, actor, batch_id, index, data, None, duplicate.message, AuditOutcome.REJECTED)
            continue

        try:
            try:
                student = await _create_from_row(db, organization_id, row)
            except SQLAlchemyError as exc:
                await db.rollback()
                raise repository.translate_store_error(exc) from exc
        except ServiceError as e:
            errors.append(ImportRowError(row=index, field=getattr(e, "field", None), message=e.message, data=raw))
            if isinstance(e, SystemFaultError) and e.systemic:
                systemic_message = e.message
                logger.error("Import %s aborted at row %d: %s", batch_id, index, e.message, exc_info=e)
                continue
            logger.warning("Import %s: row %d failed: %s", batch_id, index, e.message)
            outcome = AuditOutcome.FAILED if isinstance(e, SystemFaultError) else AuditOutcome.REJECTED
            await _audit_row(db, organization_id, actor, batch_id, index, data, None, e.message, outcome)
            continue

        imported.append(student.id)
        # Only rows that were stored claim their email and number within this import.
        if email_key:
            emails_seen.add(email_key)
        if number_key:
            numbers_seen.add(number_key)
        await _audit_row(
            db, organization_id, actor, batch_id, index,
            dict(data, admission_number=student.admission_number), student.id, None, AuditOutcome.SUCCEEDED,
        )

    logger.info("Import %s finished: %d imported, %d failed", batch_id, len(imported), len(errors))
    return ImportResult(
        batch_id=batch_id,
        total=len(rows),
        successful=len(imported),
        failed=len(errors),
        imported_ids=imported,
        errors=errors,
    )


async def _audit_row(
    db: AsyncSession,
    organization_id: UUID,
    actor: CurrentUser,
    batch_id: UUID,
    index: int,
    values: Dict[str, Any],
    student_id: Optional[UUID],
    reason: Optional[str],
    outcome: AuditOutcome,
) -> None:
    await record_audit(
        db,
        organization_id=organization_id,
        entity_id=student_id,
        action=AuditAction.CREATE,
        actor=actor,
        outcome=outcome,
        new_values=values,
        reason=reason,
        description=f"Import row {index}",
        batch_id=batch_id,
    )


# ----- Excel -----

def _cell_value(value: Any) -> Any:
    """Excel cells to import values: whole-number floats lose their '.0', midnight datetimes become dates."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date() if value.time() == datetime.min.time() else value
    if isinstance(value, date) or isinstance(value, bool):
        return value
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (int, float)):
        return str(value)
    return str(value).strip()


def check_import_size(rows: List[Any], max_rows: Optional[int] = None) -> None:
    max_rows = max_rows or settings.import_max_rows
    if len(rows) > max_rows:
        raise ValueError(f"Maximum {max_rows} data rows allowed")


def parse_import_workbook(content: bytes, max_rows: Optional[int] = None) -> List[Dict[str, Any]]:
    """First sheet, first row = headers. Blank rows are skipped. Raises ValueError on invalid files."""
    max_rows = max_rows or settings.import_max_rows
    if not content:
        raise ValueError("File is empty")
    try:
        wb = load_workbook(filename=io.BytesIO(content), read_only=True, data_only=True)
    except Exception as e:
        raise ValueError(f"Invalid Excel file: {e}") from e

    try:
        ws = wb.active
        if ws is None:
            raise ValueError("Excel file has no active sheet")
        rows_iter = ws.iter_rows(values_only=True)
        header_row = next(rows_iter, None)
        if not header_row or all(h is None for h in header_row):
            raise ValueError("Excel file has no header row")
        headers = [str(h).strip() if h is not None else "" for h in header_row]

        rows: List[Dict[str, Any]] = []
        for row in rows_iter:
            if not row or all(c is None or (isinstance(c, str) and not c.strip()) for c in row):
                continue
            if len(rows) >= max_rows:
                raise ValueError(f"Maximum {max_rows} data rows allowed")
            rows.append({h: _cell_value(row[i]) if i < len(row) else None for i, h in enumerate(headers) if h})
        return rows
    finally:
        wb.close()


def build_error_workbook(errors: List[ImportRowError]) -> bytes:
    """Failed rows with their original columns plus row / field / reason."""
    wb = Workbook()
    ws = wb.active
    ws.title = "Import errors"
    if not errors:
        ws.append(["No failed rows"])
    else:
        columns: List[str] = []
        for err in errors:
            for key in err.data:
                if key not in columns:
                    columns.append(key)
        ws.append(["row"] + columns + ["field", "reason"])
        for err in errors:
            values = [err.data.get(c) for c in columns]
            ws.append([err.row] + [_sheet_value(v) for v in values] + [err.field or "", err.message])
    bio = io.BytesIO()
    wb.save(bio)
    return bio.getvalue()


def _sheet_value(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool, date, datetime)):
        return value
    return str(value)
