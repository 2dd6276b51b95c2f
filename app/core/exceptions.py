from typing import Optional

from fastapi import status


class ServiceError(Exception):
    """Base exception for service layer errors."""

    def __init__(self, message: str, status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class NotFoundError(ServiceError):
    """Target record is absent (or belongs to another organization)."""

    def __init__(self, message: str) -> None:
        super().__init__(message, status.HTTP_404_NOT_FOUND)


class ConflictError(ServiceError):
    """Uniqueness violation, e.g. duplicate admission number or email. `field` names the column when known."""

    def __init__(self, message: str, field: Optional[str] = None) -> None:
        super().__init__(message, status.HTTP_409_CONFLICT)
        self.field = field


class IneligibleError(ServiceError):
    """Eligibility rule rejected the requested transition. Message is the rule's reason, verbatim."""

    def __init__(self, message: str) -> None:
        super().__init__(message, status.HTTP_422_UNPROCESSABLE_ENTITY)


class ConstraintViolationError(ServiceError):
    """Write rejected by a non-unique database constraint (NOT NULL, foreign key, check)."""

    def __init__(self, message: str) -> None:
        super().__init__(message, status.HTTP_400_BAD_REQUEST)


class InvalidTransitionError(ServiceError):
    """State machine guard failed outside eligibility (e.g. graduating a graduated student)."""

    def __init__(self, message: str) -> None:
        super().__init__(message, status.HTTP_400_BAD_REQUEST)


class SystemFaultError(ServiceError):
    """
    Unexpected persistence/infrastructure fault.
    systemic=True means the store itself is unavailable and remaining batch items must fail fast.
    """

    def __init__(self, message: str, systemic: bool = False) -> None:
        super().__init__(message, status.HTTP_500_INTERNAL_SERVER_ERROR)
        self.systemic = systemic
