"""Lifecycle transitions over plain state objects, and writing results back onto a student."""

import uuid
from datetime import datetime

import pytest

from app.api.v1.students import lifecycle
from app.api.v1.students.eligibility import Eligibility
from app.api.v1.students.lifecycle import StudentState, apply_state, state_from_student
from app.core.enums import StudentStatus, TransferKind, TransferStatus
from app.core.exceptions import IneligibleError, InvalidTransitionError
from app.core.models import Student


ORG = uuid.uuid4()
OTHER_ORG = uuid.uuid4()
NOW = datetime(2024, 7, 1, 9, 0, 0)
APPROVED = TransferStatus.APPROVED.value


def _state(**overrides) -> StudentState:
    values = dict(status=StudentStatus.ACTIVE, organization_id=ORG, grade_code="SSS3", stream_section="A")
    values.update(overrides)
    return StudentState(**values)


def test_graduate_sets_status_and_year() -> None:
    state = lifecycle.graduate(_state(), Eligibility.ok(), 2024)
    assert state.status == StudentStatus.GRADUATED
    assert state.graduation_year == 2024
    assert state.promotion_history == ()


def test_graduating_twice_is_rejected() -> None:
    graduated = lifecycle.graduate(_state(), Eligibility.ok(), 2024)
    with pytest.raises(InvalidTransitionError, match="Student is already graduated"):
        lifecycle.graduate(graduated, Eligibility.ok(), 2025)


def test_ineligible_graduation_carries_reason() -> None:
    with pytest.raises(IneligibleError, match="minimum GPA"):
        lifecycle.graduate(_state(), Eligibility.fail("Student must have minimum GPA of 2.0"), 2024)


def test_promote_appends_history() -> None:
    performer = uuid.uuid4()
    state = lifecycle.promote(_state(grade_code="SSS1"), Eligibility.ok(), "SSS2", "B", performer, NOW, "End of year")
    state = lifecycle.promote(state, Eligibility.ok(), "SSS3", None, performer, NOW)

    assert state.grade_code == "SSS3"
    assert state.stream_section == "B"
    assert [(p.from_grade, p.to_grade) for p in state.promotion_history] == [("SSS1", "SSS2"), ("SSS2", "SSS3")]
    assert state.promotion_history[0].reason == "End of year"


def test_promote_rejects_terminal_states() -> None:
    with pytest.raises(InvalidTransitionError):
        lifecycle.promote(_state(status=StudentStatus.WITHDRAWN), Eligibility.ok(), "SSS3", None, None, NOW)


def test_transfer_requires_approved_request() -> None:
    with pytest.raises(InvalidTransitionError, match="Only approved transfers can be completed"):
        lifecycle.complete_transfer(
            _state(), Eligibility.ok(), TransferStatus.INITIATED.value, TransferKind.INTERNAL, NOW, to_grade_code="SSS2"
        )


def test_internal_transfer_moves_class_and_stays_active() -> None:
    state = lifecycle.complete_transfer(
        _state(), Eligibility.ok(), APPROVED, TransferKind.INTERNAL, NOW, to_stream_section="C"
    )
    assert state.status == StudentStatus.ACTIVE
    assert state.organization_id == ORG
    assert state.stream_section == "C"
    assert state.transfer_history[0].kind == TransferKind.INTERNAL


def test_internal_transfer_to_same_class_is_rejected() -> None:
    with pytest.raises(InvalidTransitionError, match="already in the specified grade and section"):
        lifecycle.complete_transfer(
            _state(), Eligibility.ok(), APPROVED, TransferKind.INTERNAL, NOW, to_grade_code="SSS3", to_stream_section="A"
        )


def test_external_transfer_marks_transferred() -> None:
    state = lifecycle.complete_transfer(
        _state(), Eligibility.ok(), APPROVED, TransferKind.EXTERNAL, NOW, to_organization_id=OTHER_ORG
    )
    assert state.status == StudentStatus.TRANSFERRED
    assert state.organization_id == OTHER_ORG
    entry = state.transfer_history[-1]
    assert (entry.from_organization_id, entry.to_organization_id) == (ORG, OTHER_ORG)


def test_deactivate() -> None:
    inactive = lifecycle.deactivate(_state())
    assert inactive.status == StudentStatus.INACTIVE
    assert lifecycle.deactivate(inactive) == inactive
    with pytest.raises(InvalidTransitionError, match="Student is already inactive"):
        lifecycle.deactivate(inactive, strict=True)
    with pytest.raises(InvalidTransitionError):
        lifecycle.deactivate(_state(status=StudentStatus.GRADUATED))


def test_suspend_withdraw_reinstate() -> None:
    suspended = lifecycle.suspend(_state())
    assert suspended.status == StudentStatus.SUSPENDED
    assert lifecycle.reinstate(suspended).status == StudentStatus.ACTIVE
    assert lifecycle.withdraw(suspended).status == StudentStatus.WITHDRAWN
    with pytest.raises(InvalidTransitionError):
        lifecycle.reinstate(_state())
    with pytest.raises(InvalidTransitionError):
        lifecycle.suspend(_state(status=StudentStatus.TRANSFERRED))


def _student() -> Student:
    return Student(
        id=uuid.uuid4(),
        organization_id=ORG,
        admission_number="GHS20240001",
        first_name="Ada",
        last_name="Obi",
        status="ACTIVE",
        grade_code="SSS1",
        stream_section="A",
        promotion_history=[],
        transfer_history=[],
    )


def test_apply_state_writes_fields_and_new_history_rows() -> None:
    student = _student()
    state = lifecycle.promote(state_from_student(student), Eligibility.ok(), "SSS2", None, None, NOW)
    apply_state(student, state)

    assert student.grade_code == "SSS2"
    assert len(student.promotion_history) == 1
    assert student.promotion_history[0].sequence == 1
    assert student.graduation_year is None

    state = lifecycle.graduate(state_from_student(student), Eligibility.ok(), 2026)
    apply_state(student, state)
    assert student.status == "GRADUATED"
    assert student.graduation_year == 2026
    assert len(student.promotion_history) == 1


def test_apply_state_refuses_to_shrink_history() -> None:
    student = _student()
    apply_state(student, lifecycle.promote(state_from_student(student), Eligibility.ok(), "SSS2", None, None, NOW))
    with pytest.raises(ValueError):
        apply_state(student, _state(grade_code="SSS1"))
