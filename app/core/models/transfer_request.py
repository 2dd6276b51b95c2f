"""
Transfer request workflow: INITIATED -> APPROVED | REJECTED; APPROVED -> COMPLETED; open requests may be CANCELLED.
Only completion touches the student (through the lifecycle transition).
"""

import uuid
from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, String, Text, Uuid
from sqlalchemy.orm import relationship

from app.db.session import Base


class TransferRequest(Base):
    __tablename__ = "transfer_requests"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id = Column(Uuid, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True)
    student_id = Column(Uuid, ForeignKey("students.id", ondelete="CASCADE"), nullable=False, index=True)
    kind = Column(String(20), nullable=False)  # INTERNAL | EXTERNAL
    to_organization_id = Column(Uuid, nullable=True)
    to_grade_code = Column(String(20), nullable=True)
    to_stream_section = Column(String(50), nullable=True)
    reason = Column(Text, nullable=True)
    status = Column(String(20), nullable=False, default="INITIATED")
    requested_by = Column(Uuid, nullable=True)
    reviewed_by = Column(Uuid, nullable=True)
    reviewed_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    remarks = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    student = relationship("Student", foreign_keys=[student_id])
