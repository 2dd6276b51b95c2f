from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel


class AuditLogEntry(BaseModel):
    id: UUID
    entity_type: str
    entity_id: Optional[UUID] = None
    action: str
    outcome: str
    reason: Optional[str] = None
    description: Optional[str] = None
    old_values: Optional[Dict[str, Any]] = None
    new_values: Optional[Dict[str, Any]] = None
    changed_fields: Optional[List[str]] = None
    severity: str
    is_confidential: bool
    compliance_flags: Optional[List[str]] = None
    batch_id: Optional[UUID] = None
    actor_id: Optional[UUID] = None
    actor_name: Optional[str] = None
    actor_role: Optional[str] = None
    timestamp: datetime
    redacted: bool = False

    class Config:
        from_attributes = True


class AuditTrailResponse(BaseModel):
    total: int
    items: List[AuditLogEntry]


def redact(entry: AuditLogEntry) -> AuditLogEntry:
    """Hide the recorded values of a confidential entry; changed field names stay visible."""
    if not entry.is_confidential:
        return entry
    return entry.model_copy(update={"old_values": None, "new_values": None, "redacted": True})
