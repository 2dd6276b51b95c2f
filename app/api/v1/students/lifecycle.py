"""
Student lifecycle state machine.

Transitions are pure: each takes a frozen StudentState (plus the eligibility verdict where a rule
gates it) and returns a new StudentState, or raises InvalidTransitionError / IneligibleError without
producing any partial state. Persisting the result is the caller's job (apply_state).

    ACTIVE --graduate--> GRADUATED                (eligibility gated, sets graduation_year)
    ACTIVE --promote--> ACTIVE                    (new grade, appends promotion history)
    ACTIVE --complete_transfer--> ACTIVE|TRANSFERRED  (approved request; appends transfer history)
    ACTIVE|SUSPENDED --deactivate--> INACTIVE     (soft delete)
    ACTIVE --suspend--> SUSPENDED
    ACTIVE|INACTIVE|SUSPENDED --withdraw--> WITHDRAWN
    INACTIVE|SUSPENDED --reinstate--> ACTIVE
"""

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Optional, Tuple
from uuid import UUID

from app.core.enums import TERMINAL_STATUSES, StudentStatus, TransferKind, TransferStatus
from app.core.exceptions import IneligibleError, InvalidTransitionError
from app.core.models import StudentPromotion, StudentTransfer

from .eligibility import Eligibility


@dataclass(frozen=True)
class PromotionEntry:
    from_grade: str
    to_grade: str
    performed_by: Optional[UUID]
    timestamp: datetime
    reason: Optional[str] = None


@dataclass(frozen=True)
class TransferEntry:
    from_organization_id: UUID
    to_organization_id: UUID
    from_grade: Optional[str]
    to_grade: Optional[str]
    kind: TransferKind
    timestamp: datetime
    reason: Optional[str] = None


@dataclass(frozen=True)
class StudentState:
    status: StudentStatus
    organization_id: UUID
    grade_code: str
    stream_section: Optional[str] = None
    graduation_year: Optional[int] = None
    promotion_history: Tuple[PromotionEntry, ...] = ()
    transfer_history: Tuple[TransferEntry, ...] = ()


def _label(status: StudentStatus) -> str:
    return status.value.lower()


def _reject_terminal(state: StudentState, verb: str) -> None:
    if state.status in TERMINAL_STATUSES:
        raise InvalidTransitionError(f"Cannot {verb} a {_label(state.status)} student")


def _require_eligible(eligibility: Eligibility) -> None:
    if not eligibility.eligible:
        raise IneligibleError(eligibility.reason or "Student is not eligible for this transition")


def graduate(state: StudentState, eligibility: Eligibility, graduation_year: int) -> StudentState:
    if state.status == StudentStatus.GRADUATED:
        raise InvalidTransitionError("Student is already graduated")
    _reject_terminal(state, "graduate")
    _require_eligible(eligibility)
    # Graduation is not a promotion: history is left untouched.
    return replace(state, status=StudentStatus.GRADUATED, graduation_year=graduation_year)


def promote(
    state: StudentState,
    eligibility: Eligibility,
    target_grade_code: str,
    target_stream_section: Optional[str],
    performed_by: Optional[UUID],
    now: datetime,
    reason: Optional[str] = None,
) -> StudentState:
    _reject_terminal(state, "promote")
    _require_eligible(eligibility)
    entry = PromotionEntry(
        from_grade=state.grade_code,
        to_grade=target_grade_code,
        performed_by=performed_by,
        timestamp=now,
        reason=reason,
    )
    return replace(
        state,
        grade_code=target_grade_code,
        stream_section=target_stream_section or state.stream_section,
        promotion_history=state.promotion_history + (entry,),
    )


def complete_transfer(
    state: StudentState,
    eligibility: Eligibility,
    request_status: str,
    kind: TransferKind,
    now: datetime,
    to_organization_id: Optional[UUID] = None,
    to_grade_code: Optional[str] = None,
    to_stream_section: Optional[str] = None,
    reason: Optional[str] = None,
) -> StudentState:
    """Apply an approved transfer. INTERNAL keeps the student ACTIVE; EXTERNAL marks TRANSFERRED."""
    if request_status != TransferStatus.APPROVED.value:
        raise InvalidTransitionError("Only approved transfers can be completed")
    _reject_terminal(state, "transfer")
    _require_eligible(eligibility)

    kind = TransferKind(kind)
    new_grade = to_grade_code or state.grade_code
    new_section = to_stream_section or state.stream_section
    if kind == TransferKind.INTERNAL and new_grade == state.grade_code and new_section == state.stream_section:
        raise InvalidTransitionError("Student is already in the specified grade and section")

    new_org = to_organization_id if kind == TransferKind.EXTERNAL and to_organization_id else state.organization_id
    entry = TransferEntry(
        from_organization_id=state.organization_id,
        to_organization_id=new_org,
        from_grade=state.grade_code,
        to_grade=new_grade,
        kind=kind,
        timestamp=now,
        reason=reason,
    )
    return replace(
        state,
        status=StudentStatus.TRANSFERRED if kind == TransferKind.EXTERNAL else state.status,
        organization_id=new_org,
        grade_code=new_grade,
        stream_section=new_section,
        transfer_history=state.transfer_history + (entry,),
    )


def deactivate(state: StudentState, strict: bool = False) -> StudentState:
    """
    Soft delete. Already-INACTIVE is a no-op for the plain remove path (strict=False) and rejected
    for the delete-with-reason path (strict=True).
    """
    _reject_terminal(state, "deactivate")
    if state.status == StudentStatus.INACTIVE:
        if strict:
            raise InvalidTransitionError("Student is already inactive")
        return state
    return replace(state, status=StudentStatus.INACTIVE)


def suspend(state: StudentState) -> StudentState:
    if state.status == StudentStatus.SUSPENDED:
        raise InvalidTransitionError("Student is already suspended")
    if state.status != StudentStatus.ACTIVE:
        raise InvalidTransitionError(f"Cannot suspend a {_label(state.status)} student")
    return replace(state, status=StudentStatus.SUSPENDED)


def withdraw(state: StudentState) -> StudentState:
    if state.status == StudentStatus.WITHDRAWN:
        raise InvalidTransitionError("Student is already withdrawn")
    _reject_terminal(state, "withdraw")
    return replace(state, status=StudentStatus.WITHDRAWN)


def reinstate(state: StudentState) -> StudentState:
    if state.status not in (StudentStatus.INACTIVE, StudentStatus.SUSPENDED):
        raise InvalidTransitionError(f"Cannot reinstate a {_label(state.status)} student")
    return replace(state, status=StudentStatus.ACTIVE)


# ----- ORM mapping -----

def state_from_student(student: Any) -> StudentState:
    return StudentState(
        status=StudentStatus(student.status),
        organization_id=student.organization_id,
        grade_code=student.grade_code,
        stream_section=student.stream_section,
        graduation_year=student.graduation_year,
        promotion_history=tuple(
            PromotionEntry(
                from_grade=p.from_grade,
                to_grade=p.to_grade,
                performed_by=p.performed_by,
                timestamp=p.timestamp,
                reason=p.reason,
            )
            for p in student.promotion_history
        ),
        transfer_history=tuple(
            TransferEntry(
                from_organization_id=t.from_organization_id,
                to_organization_id=t.to_organization_id,
                from_grade=t.from_grade,
                to_grade=t.to_grade,
                kind=TransferKind(t.kind),
                timestamp=t.timestamp,
                reason=t.reason,
            )
            for t in student.transfer_history
        ),
    )


def apply_state(student: Any, state: StudentState) -> None:
    """Write a transition result onto the ORM student. Histories may only grow."""
    existing_promotions = len(student.promotion_history)
    existing_transfers = len(student.transfer_history)
    if len(state.promotion_history) < existing_promotions or len(state.transfer_history) < existing_transfers:
        raise ValueError("Student history is append-only")

    student.status = state.status.value
    student.organization_id = state.organization_id
    student.grade_code = state.grade_code
    student.stream_section = state.stream_section
    student.graduation_year = state.graduation_year if state.status == StudentStatus.GRADUATED else None

    for seq, entry in enumerate(state.promotion_history[existing_promotions:], start=existing_promotions + 1):
        student.promotion_history.append(
            StudentPromotion(
                sequence=seq,
                from_grade=entry.from_grade,
                to_grade=entry.to_grade,
                performed_by=entry.performed_by,
                reason=entry.reason,
                timestamp=entry.timestamp,
            )
        )
    for seq, entry in enumerate(state.transfer_history[existing_transfers:], start=existing_transfers + 1):
        student.transfer_history.append(
            StudentTransfer(
                sequence=seq,
                from_organization_id=entry.from_organization_id,
                to_organization_id=entry.to_organization_id,
                from_grade=entry.from_grade,
                to_grade=entry.to_grade,
                kind=entry.kind.value,
                reason=entry.reason,
                timestamp=entry.timestamp,
            )
        )
