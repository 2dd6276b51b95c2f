"""
Student record and its append-only histories.
STATUS changes only through lifecycle transitions; ADMISSION_NUMBER is immutable once assigned.
"""

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import relationship

from app.db.session import Base


class Student(Base):
    __tablename__ = "students"
    __table_args__ = (
        UniqueConstraint("organization_id", "admission_number", name="uq_students_org_admission_number"),
        UniqueConstraint("organization_id", "email", name="uq_students_org_email"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id = Column(Uuid, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True)
    admission_number = Column(String(50), nullable=False)
    first_name = Column(String(100), nullable=False)
    middle_name = Column(String(100), nullable=True)
    last_name = Column(String(100), nullable=False)
    email = Column(String(255), nullable=True)
    phone = Column(String(50), nullable=True)
    gender = Column(String(20), nullable=True)
    date_of_birth = Column(Date, nullable=True)
    admission_date = Column(Date, nullable=True)
    address = Column(JSON, nullable=True)
    medical_info = Column(JSON, nullable=True)

    status = Column(String(20), nullable=False, default="ACTIVE", index=True)
    grade_code = Column(String(20), nullable=False, index=True)
    stream_section = Column(String(50), nullable=True)
    graduation_year = Column(Integer, nullable=True)

    # Academic metrics / standing / financial snapshot used by eligibility rules.
    gpa = Column(Numeric(4, 2), nullable=True)
    total_credits = Column(Integer, nullable=True)
    on_probation = Column(Boolean, nullable=False, default=False)
    disciplinary_status = Column(String(20), nullable=False, default="CLEAR")
    outstanding_balance = Column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    is_boarding = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    organization = relationship("Organization", foreign_keys=[organization_id])
    promotion_history = relationship(
        "StudentPromotion",
        order_by="StudentPromotion.sequence",
        lazy="selectin",
        cascade="all, delete-orphan",
    )
    transfer_history = relationship(
        "StudentTransfer",
        order_by="StudentTransfer.sequence",
        lazy="selectin",
        cascade="all, delete-orphan",
    )

    @property
    def full_name(self) -> str:
        parts = [self.first_name, self.middle_name, self.last_name]
        return " ".join(p for p in parts if p)


class StudentPromotion(Base):
    """One promotion step. Rows are only ever appended."""

    __tablename__ = "student_promotions"
    __table_args__ = (UniqueConstraint("student_id", "sequence", name="uq_student_promotions_sequence"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    student_id = Column(Uuid, ForeignKey("students.id", ondelete="CASCADE"), nullable=False, index=True)
    sequence = Column(Integer, nullable=False)
    from_grade = Column(String(20), nullable=False)
    to_grade = Column(String(20), nullable=False)
    performed_by = Column(Uuid, nullable=True)
    reason = Column(Text, nullable=True)
    timestamp = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)


class StudentTransfer(Base):
    """One completed transfer (internal class move or move to another organization). Append-only."""

    __tablename__ = "student_transfers"
    __table_args__ = (UniqueConstraint("student_id", "sequence", name="uq_student_transfers_sequence"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    student_id = Column(Uuid, ForeignKey("students.id", ondelete="CASCADE"), nullable=False, index=True)
    sequence = Column(Integer, nullable=False)
    from_organization_id = Column(Uuid, nullable=False)
    to_organization_id = Column(Uuid, nullable=False)
    from_grade = Column(String(20), nullable=True)
    to_grade = Column(String(20), nullable=True)
    kind = Column(String(20), nullable=False)  # INTERNAL | EXTERNAL
    reason = Column(Text, nullable=True)
    timestamp = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)


class AdmissionNumberReservation(Base):
    """
    Claimed admission numbers. Inserting here is how the generator wins a candidate;
    the unique constraint is the single source of truth between concurrent writers.
    """

    __tablename__ = "admission_number_reservations"
    __table_args__ = (
        UniqueConstraint("organization_id", "admission_number", name="uq_admission_number_reservations"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id = Column(Uuid, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True)
    admission_number = Column(String(50), nullable=False)
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
