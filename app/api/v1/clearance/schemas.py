from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel


class ClearanceUpdate(BaseModel):
    library_cleared: Optional[bool] = None
    hostel_cleared: Optional[bool] = None
    medical_cleared: Optional[bool] = None


class ClearanceResponse(BaseModel):
    student_id: UUID
    library_cleared: bool
    hostel_cleared: bool
    medical_cleared: bool
    hostel_required: bool
    fully_cleared: bool
    updated_by: Optional[UUID] = None
    updated_at: Optional[datetime] = None
