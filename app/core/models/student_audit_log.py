"""
Audit log for student mutations. One row per mutating attempt, rejected attempts included.
Rows are never updated or deleted by the application.
"""

import uuid
from datetime import datetime

from sqlalchemy import JSON, Boolean, Column, DateTime, String, Text, Uuid

from app.db.session import Base


class StudentAuditLog(Base):
    __tablename__ = "student_audit_logs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id = Column(Uuid, nullable=True, index=True)
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(Uuid, nullable=True, index=True)
    action = Column(String(20), nullable=False)
    outcome = Column(String(20), nullable=False, default="SUCCEEDED")
    reason = Column(Text, nullable=True)
    description = Column(Text, nullable=True)
    old_values = Column(JSON, nullable=True)
    new_values = Column(JSON, nullable=True)
    changed_fields = Column(JSON, nullable=True)
    severity = Column(String(20), nullable=False, default="LOW")
    is_confidential = Column(Boolean, nullable=False, default=False)
    compliance_flags = Column(JSON, nullable=True)
    batch_id = Column(Uuid, nullable=True, index=True)
    actor_id = Column(Uuid, nullable=True)
    actor_name = Column(String(255), nullable=True)
    actor_role = Column(String(50), nullable=True)
    timestamp = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
