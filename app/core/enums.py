from enum import Enum


class StudentStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    GRADUATED = "GRADUATED"
    TRANSFERRED = "TRANSFERRED"
    WITHDRAWN = "WITHDRAWN"
    SUSPENDED = "SUSPENDED"


# No transition leaves these (reinstatement only applies to INACTIVE / SUSPENDED).
TERMINAL_STATUSES = frozenset({StudentStatus.GRADUATED, StudentStatus.TRANSFERRED, StudentStatus.WITHDRAWN})


class DisciplinaryStatus(str, Enum):
    CLEAR = "CLEAR"
    WARNING = "WARNING"
    SUSPENDED = "SUSPENDED"
    EXPELLED = "EXPELLED"


class TransferKind(str, Enum):
    INTERNAL = "INTERNAL"
    EXTERNAL = "EXTERNAL"


class TransferStatus(str, Enum):
    INITIATED = "INITIATED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


OPEN_TRANSFER_STATUSES = (TransferStatus.INITIATED.value, TransferStatus.APPROVED.value)


class AuditAction(str, Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    TRANSITION = "TRANSITION"
    DELETE = "DELETE"
    VIEW = "VIEW"


class AuditOutcome(str, Enum):
    SUCCEEDED = "SUCCEEDED"
    REJECTED = "REJECTED"
    FAILED = "FAILED"


class AuditSeverity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class AuditEntityType(str, Enum):
    STUDENT_PROFILE = "STUDENT_PROFILE"
    STUDENT_MEDICAL_RECORD = "STUDENT_MEDICAL_RECORD"
    STUDENT_DISCIPLINE = "STUDENT_DISCIPLINE"
    STUDENT_TRANSFER = "STUDENT_TRANSFER"
    STUDENT_CLEARANCE = "STUDENT_CLEARANCE"


class BatchOperation(str, Enum):
    PROMOTE = "PROMOTE"
    GRADUATE = "GRADUATE"
    TRANSFER = "TRANSFER"


class BatchScope(str, Enum):
    ALL = "all"
    GRADE = "grade"
    SECTION = "section"
    STUDENTS = "students"


class ClearanceMode(str, Enum):
    CLEARED = "cleared"
    PENDING = "pending"


class JobType(str, Enum):
    BULK_IMPORT = "BULK_IMPORT"
    BATCH_PROMOTION = "BATCH_PROMOTION"
    BATCH_GRADUATION = "BATCH_GRADUATION"
    BATCH_TRANSFER = "BATCH_TRANSFER"


# Operational urgency, not correctness: higher runs first.
JOB_PRIORITIES = {
    JobType.BATCH_GRADUATION: 40,
    JobType.BATCH_PROMOTION: 30,
    JobType.BATCH_TRANSFER: 20,
    JobType.BULK_IMPORT: 10,
}


class JobStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
