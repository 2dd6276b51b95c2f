from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, EmailStr, Field, field_validator

from app.core.enums import BatchScope, ClearanceMode, TransferKind


# ----- Student records -----

class StudentCreate(BaseModel):
    first_name: str = Field(..., min_length=1)
    middle_name: Optional[str] = None
    last_name: str = Field(..., min_length=1)
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    gender: Optional[str] = None
    date_of_birth: Optional[date] = None
    admission_date: Optional[date] = None
    admission_number: Optional[str] = Field(
        None, description="Leave empty to auto-generate <ORGCODE><YEAR><NNNN>. Immutable once assigned."
    )
    grade_code: str = Field(..., min_length=1, description="Current grade, e.g. JSS1, SSS3")
    stream_section: Optional[str] = None
    address: Optional[Dict[str, Any]] = None
    medical_info: Optional[Dict[str, Any]] = None
    gpa: Optional[Decimal] = Field(None, ge=0, le=5)
    total_credits: Optional[int] = Field(None, ge=0)
    on_probation: bool = False
    disciplinary_status: str = "CLEAR"
    outstanding_balance: Decimal = Decimal("0")
    is_boarding: bool = False


class StudentUpdate(BaseModel):
    """Profile fields only. Status, grade and admission number change through lifecycle endpoints."""

    first_name: Optional[str] = Field(None, min_length=1)
    middle_name: Optional[str] = None
    last_name: Optional[str] = Field(None, min_length=1)
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    gender: Optional[str] = None
    date_of_birth: Optional[date] = None
    stream_section: Optional[str] = None
    address: Optional[Dict[str, Any]] = None
    medical_info: Optional[Dict[str, Any]] = None
    gpa: Optional[Decimal] = Field(None, ge=0, le=5)
    total_credits: Optional[int] = Field(None, ge=0)
    on_probation: Optional[bool] = None
    disciplinary_status: Optional[str] = None
    outstanding_balance: Optional[Decimal] = None
    is_boarding: Optional[bool] = None

    @field_validator(
        "first_name", "last_name", "on_probation", "disciplinary_status", "outstanding_balance", "is_boarding"
    )
    @classmethod
    def reject_null(cls, v: Any) -> Any:
        # Omit a field to leave it unchanged; these columns cannot be cleared.
        if v is None:
            raise ValueError("may be omitted but cannot be null")
        return v


class PromotionHistoryItem(BaseModel):
    from_grade: str
    to_grade: str
    performed_by: Optional[UUID] = None
    reason: Optional[str] = None
    timestamp: datetime

    class Config:
        from_attributes = True


class TransferHistoryItem(BaseModel):
    from_organization_id: UUID
    to_organization_id: UUID
    from_grade: Optional[str] = None
    to_grade: Optional[str] = None
    kind: str
    reason: Optional[str] = None
    timestamp: datetime

    class Config:
        from_attributes = True


class StudentResponse(BaseModel):
    id: UUID
    organization_id: UUID
    admission_number: str
    first_name: str
    middle_name: Optional[str] = None
    last_name: str
    full_name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    gender: Optional[str] = None
    date_of_birth: Optional[date] = None
    admission_date: Optional[date] = None
    status: str
    grade_code: str
    stream_section: Optional[str] = None
    graduation_year: Optional[int] = None
    address: Optional[Dict[str, Any]] = None
    medical_info: Optional[Dict[str, Any]] = None
    gpa: Optional[Decimal] = None
    total_credits: Optional[int] = None
    on_probation: bool
    disciplinary_status: str
    outstanding_balance: Decimal
    is_boarding: bool
    promotion_history: List[PromotionHistoryItem] = []
    transfer_history: List[TransferHistoryItem] = []
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class StudentListResponse(BaseModel):
    total: int
    items: List[StudentResponse]


# ----- Single transitions -----

class DeactivateRequest(BaseModel):
    reason: str = Field(..., min_length=1)


class GraduateRequest(BaseModel):
    graduation_year: Optional[int] = Field(None, description="Defaults to the current year")
    clearance_status: ClearanceMode = ClearanceMode.CLEARED
    reason: Optional[str] = None


class PromoteRequest(BaseModel):
    target_grade_code: str = Field(..., min_length=1)
    target_stream_section: Optional[str] = None
    include_repeaters: bool = False
    reason: Optional[str] = None


class StatusChangeRequest(BaseModel):
    reason: Optional[str] = None


# ----- Batch operations -----

class BatchRequest(BaseModel):
    """
    Target set plus operation flags. scope=grade needs grade_code; scope=section needs grade_code and
    stream_section; scope=students needs student_ids (processed in the given order).
    """

    scope: BatchScope
    grade_code: Optional[str] = None
    stream_section: Optional[str] = None
    student_ids: List[UUID] = []
    target_grade_code: Optional[str] = Field(None, description="Promotion target, or internal transfer target grade")
    target_stream_section: Optional[str] = None
    include_repeaters: bool = False
    clearance_status: ClearanceMode = ClearanceMode.CLEARED
    graduation_year: Optional[int] = None
    transfer_kind: TransferKind = TransferKind.INTERNAL
    reason: Optional[str] = None


class BatchItemError(BaseModel):
    id: Optional[UUID] = None
    row: Optional[int] = None
    message: str
    kind: str = Field(..., description="NOT_FOUND | INELIGIBLE | INVALID_TRANSITION | CONFLICT | SYSTEM")


class BatchOperationResult(BaseModel):
    batch_id: UUID
    operation: str
    requested: int
    processed_count: int
    succeeded_ids: List[UUID] = []
    errors: List[BatchItemError] = []
    promoted_count: Optional[int] = None
    graduated_count: Optional[int] = None
    transferred_count: Optional[int] = None


# ----- Import -----

class ImportRow(BaseModel):
    """One validated import row. Header variants (FirstName, first name) are normalised before validation."""

    first_name: str = Field(..., min_length=1)
    middle_name: Optional[str] = None
    last_name: str = Field(..., min_length=1)
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    gender: Optional[str] = None
    date_of_birth: Optional[date] = None
    admission_date: Optional[date] = None
    admission_number: Optional[str] = None
    grade_code: str = Field(..., min_length=1)
    stream_section: Optional[str] = None
    gpa: Optional[Decimal] = Field(None, ge=0, le=5)
    total_credits: Optional[int] = Field(None, ge=0)
    is_boarding: bool = False


class ImportRequest(BaseModel):
    rows: List[Dict[str, Any]] = Field(..., description="Raw rows keyed by column header")


class ImportRowError(BaseModel):
    row: int = Field(..., description="1-based position in the submitted rows")
    field: Optional[str] = None
    message: str
    data: Dict[str, Any] = {}


class ImportResult(BaseModel):
    batch_id: UUID
    total: int
    successful: int
    failed: int
    imported_ids: List[UUID] = []
    errors: List[ImportRowError] = []
