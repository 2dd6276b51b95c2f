from app.core.models.organization import Organization
from app.core.models.student import (
    AdmissionNumberReservation,
    Student,
    StudentPromotion,
    StudentTransfer,
)
from app.core.models.student_audit_log import StudentAuditLog
from app.core.models.student_clearance import StudentClearance
from app.core.models.transfer_request import TransferRequest
from app.core.models.batch_job import BatchJob

__all__ = [
    "AdmissionNumberReservation",
    "BatchJob",
    "Organization",
    "Student",
    "StudentAuditLog",
    "StudentClearance",
    "StudentPromotion",
    "StudentTransfer",
    "TransferRequest",
]
