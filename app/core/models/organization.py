import uuid
from datetime import datetime

from sqlalchemy import Column, DateTime, String, Uuid

from app.core.config import settings
from app.db.session import Base


class Organization(Base):
    """
    Organization (school) owning students.

    - id: Internal primary key. Used for all FKs.
    - organization_code: Public human-readable code (e.g. GHS). Prefix of every admission number
      issued by this organization, so it is never changed once students exist.
    - terminal_grade_code: Grade a student must be in to graduate (e.g. SSS3).
    """

    __tablename__ = "organizations"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_code = Column(String(20), unique=True, nullable=False, index=True)
    organization_name = Column(String(255), nullable=False)
    terminal_grade_code = Column(String(20), nullable=False, default=lambda: settings.default_terminal_grade_code)
    status = Column(String(20), nullable=False, default="ACTIVE")
    created_at = Column(DateTime(timezone=True), default=datetime.utcnow, nullable=False)
