import uuid
from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Uuid

from app.db.session import Base


class StudentClearance(Base):
    """Library / hostel / medical clearance for a student. One row per student; absent row = nothing cleared."""

    __tablename__ = "student_clearances"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    student_id = Column(Uuid, ForeignKey("students.id", ondelete="CASCADE"), nullable=False, unique=True)
    library_cleared = Column(Boolean, nullable=False, default=False)
    hostel_cleared = Column(Boolean, nullable=False, default=False)
    medical_cleared = Column(Boolean, nullable=False, default=False)
    updated_by = Column(Uuid, nullable=True)
    updated_at = Column(DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
