"""
Audit logging for student mutations and medical-record reads. Call once per mutating attempt,
after the business outcome is committed or rolled back. Never raises: a failed audit write is logged and discarded.
"""

import logging
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.schemas import CurrentUser
from app.core.enums import AuditAction, AuditEntityType, AuditOutcome, AuditSeverity
from app.core.models import StudentAuditLog

logger = logging.getLogger(__name__)


# Substrings (case-insensitive) of field names carrying contact, medical or disciplinary data.
SENSITIVE_FIELD_MARKERS = (
    "medical",
    "emergency_contact",
    "parent_contact",
    "address",
    "phone",
    "email",
    "date_of_birth",
    "blood_group",
    "disciplin",
)

CONFIDENTIAL_ENTITY_TYPES = frozenset(
    {AuditEntityType.STUDENT_MEDICAL_RECORD.value, AuditEntityType.STUDENT_DISCIPLINE.value}
)

_SEVERITY_ORDER = [AuditSeverity.LOW, AuditSeverity.MEDIUM, AuditSeverity.HIGH, AuditSeverity.CRITICAL]


def _max_severity(a: AuditSeverity, b: AuditSeverity) -> AuditSeverity:
    return a if _SEVERITY_ORDER.index(a) >= _SEVERITY_ORDER.index(b) else b


def _jsonable(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_jsonable(v) for v in value]
    return value


def compute_changed_fields(
    old_values: Optional[Dict[str, Any]],
    new_values: Optional[Dict[str, Any]],
) -> List[str]:
    """Keys of new_values whose value differs from old_values. Keys absent from new_values never count."""
    if not new_values:
        return []
    old = _jsonable(old_values or {})
    new = _jsonable(new_values)
    return [key for key, value in new.items() if key not in old or old[key] != value]


def touches_sensitive_fields(fields: Iterable[str]) -> bool:
    return any(marker in field.lower() for field in fields for marker in SENSITIVE_FIELD_MARKERS)


def classify(
    action: AuditAction,
    entity_type: AuditEntityType,
    changed_fields: Sequence[str],
    outcome: AuditOutcome = AuditOutcome.SUCCEEDED,
) -> Tuple[AuditSeverity, bool]:
    """Return (severity, is_confidential) for an audit entry."""
    action = AuditAction(action)
    entity_type = AuditEntityType(entity_type)
    confidential = entity_type.value in CONFIDENTIAL_ENTITY_TYPES or touches_sensitive_fields(changed_fields)

    if action == AuditAction.DELETE:
        severity = AuditSeverity.CRITICAL if confidential else AuditSeverity.HIGH
    elif entity_type == AuditEntityType.STUDENT_MEDICAL_RECORD:
        severity = AuditSeverity.HIGH
    elif confidential:
        severity = AuditSeverity.MEDIUM
    elif action == AuditAction.UPDATE and entity_type == AuditEntityType.STUDENT_PROFILE:
        severity = AuditSeverity.MEDIUM
    else:
        severity = AuditSeverity.LOW

    if AuditOutcome(outcome) == AuditOutcome.FAILED:
        severity = _max_severity(severity, AuditSeverity.HIGH)
    return severity, confidential


async def record_audit(
    db: AsyncSession,
    *,
    organization_id: Optional[UUID],
    entity_id: Optional[UUID],
    action: AuditAction,
    actor: Optional[CurrentUser] = None,
    entity_type: AuditEntityType = AuditEntityType.STUDENT_PROFILE,
    outcome: AuditOutcome = AuditOutcome.SUCCEEDED,
    old_values: Optional[Dict[str, Any]] = None,
    new_values: Optional[Dict[str, Any]] = None,
    changed_fields: Optional[List[str]] = None,
    reason: Optional[str] = None,
    description: Optional[str] = None,
    batch_id: Optional[UUID] = None,
    compliance_flags: Optional[List[str]] = None,
) -> Optional[StudentAuditLog]:
    """Append and commit one audit entry. Returns None (after logging) if the write fails."""
    try:
        if changed_fields is None:
            changed_fields = compute_changed_fields(old_values, new_values)
        severity, confidential = classify(action, entity_type, changed_fields, outcome)
        entry = StudentAuditLog(
            organization_id=organization_id,
            entity_type=AuditEntityType(entity_type).value,
            entity_id=entity_id,
            action=AuditAction(action).value,
            outcome=AuditOutcome(outcome).value,
            reason=reason,
            description=description,
            old_values=_jsonable(old_values) if old_values is not None else None,
            new_values=_jsonable(new_values) if new_values is not None else None,
            changed_fields=list(changed_fields),
            severity=severity.value,
            is_confidential=confidential,
            compliance_flags=list(compliance_flags) if compliance_flags else None,
            batch_id=batch_id,
            actor_id=actor.id if actor else None,
            actor_name=actor.name if actor else None,
            actor_role=actor.role if actor else None,
            timestamp=datetime.utcnow(),
        )
        db.add(entry)
        await db.commit()
        logger.debug("Audit logged: %s %s on %s (%s)", entry.action, entry.outcome, entity_id, entry.severity)
        return entry
    except Exception:
        logger.exception("Failed to record audit entry for %s %s on %s", action, outcome, entity_id)
        try:
            await db.rollback()
        except Exception:
            logger.exception("Rollback after failed audit write also failed")
        return None


async def list_audit_trail(
    db: AsyncSession,
    organization_id: UUID,
    entity_id: Optional[UUID] = None,
    action: Optional[str] = None,
    is_confidential: Optional[bool] = None,
    limit: int = 50,
    offset: int = 0,
) -> Tuple[List[StudentAuditLog], int]:
    """Audit entries for the organization, newest first, optionally for one entity / action."""
    filters = [StudentAuditLog.organization_id == organization_id]
    if entity_id is not None:
        filters.append(StudentAuditLog.entity_id == entity_id)
    if action:
        filters.append(StudentAuditLog.action == action.upper())
    if is_confidential is not None:
        filters.append(StudentAuditLog.is_confidential == is_confidential)
    total = (await db.execute(select(func.count(StudentAuditLog.id)).where(*filters))).scalar() or 0
    result = await db.execute(
        select(StudentAuditLog)
        .where(*filters)
        .order_by(StudentAuditLog.timestamp.desc())
        .limit(limit)
        .offset(offset)
    )
    return list(result.scalars().all()), total
