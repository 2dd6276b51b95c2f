from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field

from app.core.enums import TransferKind


class TransferRequestCreate(BaseModel):
    student_id: UUID
    kind: TransferKind = TransferKind.INTERNAL
    to_organization_id: Optional[UUID] = Field(None, description="Required for EXTERNAL transfers")
    to_grade_code: Optional[str] = None
    to_stream_section: Optional[str] = None
    reason: Optional[str] = None


class TransferReview(BaseModel):
    remarks: Optional[str] = None


class TransferRequestResponse(BaseModel):
    id: UUID
    organization_id: UUID
    student_id: UUID
    kind: str
    to_organization_id: Optional[UUID] = None
    to_grade_code: Optional[str] = None
    to_stream_section: Optional[str] = None
    reason: Optional[str] = None
    status: str
    requested_by: Optional[UUID] = None
    reviewed_by: Optional[UUID] = None
    reviewed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    remarks: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True
