"""
Eligibility rules gating lifecycle transitions. Pure functions of their inputs: no I/O, no mutation.

Graduation rules run in a fixed order and the first failing rule wins; reasons are user-facing
and returned verbatim in API errors.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, List, Optional

from app.core.enums import ClearanceMode, DisciplinaryStatus, StudentStatus


MINIMUM_GPA = Decimal("2.0")
MINIMUM_CREDITS = 150


@dataclass(frozen=True)
class Eligibility:
    eligible: bool
    reason: Optional[str] = None
    clearance_waived: bool = False

    @classmethod
    def ok(cls, clearance_waived: bool = False) -> "Eligibility":
        return cls(True, None, clearance_waived)

    @classmethod
    def fail(cls, reason: str) -> "Eligibility":
        return cls(False, reason)


@dataclass(frozen=True)
class ClearanceSnapshot:
    """Secondary, non-academic clearance as reported by the clearance records."""

    library_cleared: bool = False
    hostel_cleared: bool = False
    medical_cleared: bool = False


def _status(student: Any) -> str:
    value = student.status
    return value.value if isinstance(value, StudentStatus) else str(value)


def _as_decimal(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    return value if isinstance(value, Decimal) else Decimal(str(value))


def evaluate_graduation(student: Any, terminal_grade_code: str) -> Eligibility:
    """Core graduation rules for a student-like object (grade_code, status, gpa, total_credits, standing, balance)."""
    if student.grade_code != terminal_grade_code:
        return Eligibility.fail(f"Student must be in final grade ({terminal_grade_code}) to graduate")

    if _status(student) != StudentStatus.ACTIVE.value:
        return Eligibility.fail("Only active students can graduate")

    gpa = _as_decimal(student.gpa)
    if gpa is None or gpa < MINIMUM_GPA:
        return Eligibility.fail(f"Student must have minimum GPA of {MINIMUM_GPA}")

    if student.total_credits is None or student.total_credits < MINIMUM_CREDITS:
        return Eligibility.fail(f"Student must have minimum {MINIMUM_CREDITS} credits")

    if student.on_probation:
        return Eligibility.fail("Student on academic probation cannot graduate")

    if (student.disciplinary_status or DisciplinaryStatus.CLEAR.value) != DisciplinaryStatus.CLEAR.value:
        return Eligibility.fail("Student must have clear disciplinary record")

    balance = _as_decimal(student.outstanding_balance)
    if balance is not None and balance > 0:
        return Eligibility.fail("Student must clear all outstanding financial obligations")

    return Eligibility.ok()


def evaluate_additional_clearance(clearance: Optional[ClearanceSnapshot], is_boarding: bool) -> Eligibility:
    """Library and medical always; hostel only for boarders. No clearance data means nothing is cleared."""
    clearance = clearance or ClearanceSnapshot()
    missing: List[str] = []
    if not clearance.library_cleared:
        missing.append("library")
    if is_boarding and not clearance.hostel_cleared:
        missing.append("hostel")
    if not clearance.medical_cleared:
        missing.append("medical")
    if missing:
        return Eligibility.fail(f"Additional clearance requirements not met: {', '.join(missing)}")
    return Eligibility.ok()


def evaluate_graduation_with_clearance(
    student: Any,
    terminal_grade_code: str,
    clearance_mode: ClearanceMode,
    clearance: Optional[ClearanceSnapshot],
) -> Eligibility:
    """
    Core rules, then the clearance gate. Mode `cleared` enforces the gate; mode `pending` skips it
    entirely and marks the result as waived so the caller can flag it for compliance.
    """
    core = evaluate_graduation(student, terminal_grade_code)
    if not core.eligible:
        return core
    if ClearanceMode(clearance_mode) == ClearanceMode.PENDING:
        return Eligibility.ok(clearance_waived=True)
    return evaluate_additional_clearance(clearance, bool(student.is_boarding))


def evaluate_promotion(student: Any, target_grade_code: str, include_repeaters: bool = False) -> Eligibility:
    if _status(student) != StudentStatus.ACTIVE.value:
        return Eligibility.fail("Only active students can be promoted")
    if student.on_probation and not include_repeaters:
        return Eligibility.fail("Student on academic probation is held back as a repeater")
    if student.grade_code == target_grade_code:
        return Eligibility.fail(f"Student is already in grade {target_grade_code}")
    return Eligibility.ok()


def evaluate_transfer(student: Any) -> Eligibility:
    if _status(student) != StudentStatus.ACTIVE.value:
        return Eligibility.fail("Only active students can be transferred")
    return Eligibility.ok()
