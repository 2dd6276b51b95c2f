"""Batch promotion, graduation and transfer: per-member isolation, audit trail and fail-fast on store outages."""

import uuid
from decimal import Decimal

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.v1.students import repository
from app.api.v1.students.batch_service import execute_batch
from app.api.v1.students.schemas import BatchRequest
from app.core.enums import BatchOperation, BatchScope
from app.core.exceptions import ServiceError
from app.core.models import Student, StudentAuditLog, StudentClearance, TransferRequest


async def _reload(db: AsyncSession, student_id: uuid.UUID) -> Student:
    result = await db.execute(
        select(Student).where(Student.id == student_id).execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def _audit_rows(db: AsyncSession, batch_id: uuid.UUID):
    result = await db.execute(select(StudentAuditLog).where(StudentAuditLog.batch_id == batch_id))
    return list(result.scalars().all())


async def _clear(db: AsyncSession, *student_ids: uuid.UUID) -> None:
    for student_id in student_ids:
        db.add(StudentClearance(student_id=student_id, library_cleared=True, medical_cleared=True))
    await db.commit()


@pytest.mark.asyncio
async def test_promotion_continues_past_a_failing_member(db_session, actor, make_student) -> None:
    students = [await make_student(grade_code="SSS2", on_probation=(n == 2)) for n in range(5)]
    ids = [s.id for s in students]

    result = await execute_batch(
        db_session,
        BatchOperation.PROMOTE,
        BatchRequest(scope=BatchScope.STUDENTS, student_ids=ids, target_grade_code="SSS3"),
        actor,
    )

    assert result.requested == 5
    assert result.processed_count == 5
    assert result.promoted_count == 4
    assert result.succeeded_ids == [ids[0], ids[1], ids[3], ids[4]]
    assert len(result.errors) == 1
    assert result.errors[0].id == ids[2]
    assert result.errors[0].kind == "INELIGIBLE"

    held_back = await _reload(db_session, ids[2])
    assert held_back.grade_code == "SSS2"
    assert held_back.promotion_history == []
    promoted = await _reload(db_session, ids[0])
    assert promoted.grade_code == "SSS3"
    assert [(p.from_grade, p.to_grade) for p in promoted.promotion_history] == [("SSS2", "SSS3")]

    rows = await _audit_rows(db_session, result.batch_id)
    assert len(rows) == 5
    assert sorted(r.outcome for r in rows) == ["REJECTED"] + ["SUCCEEDED"] * 4


@pytest.mark.asyncio
async def test_promotion_includes_repeaters_when_asked(db_session, actor, make_student) -> None:
    repeater = await make_student(grade_code="SSS1", on_probation=True)
    repeater_id = repeater.id

    result = await execute_batch(
        db_session,
        BatchOperation.PROMOTE,
        BatchRequest(scope=BatchScope.GRADE, grade_code="SSS1", target_grade_code="SSS2", include_repeaters=True),
        actor,
    )
    assert result.succeeded_ids == [repeater_id]
    assert (await _reload(db_session, repeater_id)).grade_code == "SSS2"


@pytest.mark.asyncio
async def test_graduation_of_mixed_group(db_session, actor, make_student) -> None:
    eligible = [await make_student() for _ in range(3)]
    low_gpa = await make_student(gpa=Decimal("1.80"))
    wrong_grade = await make_student(grade_code="SSS2")
    eligible_ids = [s.id for s in eligible]
    low_gpa_id, wrong_grade_id = low_gpa.id, wrong_grade.id
    await _clear(db_session, *eligible_ids, low_gpa_id, wrong_grade_id)

    result = await execute_batch(
        db_session,
        BatchOperation.GRADUATE,
        BatchRequest(
            scope=BatchScope.STUDENTS,
            student_ids=eligible_ids + [low_gpa_id, wrong_grade_id],
            graduation_year=2024,
        ),
        actor,
    )

    assert result.graduated_count == 3
    assert result.succeeded_ids == eligible_ids
    errors = {e.id: e.message for e in result.errors}
    assert "minimum GPA" in errors[low_gpa_id]
    assert "final grade" in errors[wrong_grade_id]

    for student_id in eligible_ids:
        student = await _reload(db_session, student_id)
        assert student.status == "GRADUATED"
        assert student.graduation_year == 2024
    assert (await _reload(db_session, low_gpa_id)).status == "ACTIVE"
    assert (await _reload(db_session, wrong_grade_id)).status == "ACTIVE"


@pytest.mark.asyncio
async def test_grade_scope_only_targets_that_grade(db_session, actor, make_student) -> None:
    in_scope = [await make_student() for _ in range(2)]
    other = await make_student(grade_code="SSS2")
    ids = [s.id for s in in_scope]
    await _clear(db_session, *ids, other.id)

    result = await execute_batch(
        db_session,
        BatchOperation.GRADUATE,
        BatchRequest(scope=BatchScope.GRADE, grade_code="SSS3"),
        actor,
    )
    assert result.requested == 2
    assert sorted(result.succeeded_ids) == sorted(ids)
    assert result.errors == []


@pytest.mark.asyncio
async def test_graduating_again_reports_already_graduated(db_session, actor, make_student) -> None:
    student = await make_student()
    student_id = student.id
    await _clear(db_session, student_id)
    request = BatchRequest(scope=BatchScope.STUDENTS, student_ids=[student_id])

    first = await execute_batch(db_session, BatchOperation.GRADUATE, request, actor)
    second = await execute_batch(db_session, BatchOperation.GRADUATE, request, actor)

    assert first.graduated_count == 1
    assert second.graduated_count == 0
    assert second.errors[0].message == "Student is already graduated"
    assert second.errors[0].kind == "INVALID_TRANSITION"


@pytest.mark.asyncio
async def test_pending_clearance_waives_and_flags(db_session, actor, make_student) -> None:
    student = await make_student()
    student_id = student.id

    enforced = await execute_batch(
        db_session,
        BatchOperation.GRADUATE,
        BatchRequest(scope=BatchScope.STUDENTS, student_ids=[student_id], clearance_status="cleared"),
        actor,
    )
    assert enforced.errors[0].message == "Additional clearance requirements not met: library, medical"

    waived = await execute_batch(
        db_session,
        BatchOperation.GRADUATE,
        BatchRequest(scope=BatchScope.STUDENTS, student_ids=[student_id], clearance_status="pending"),
        actor,
    )
    assert waived.succeeded_ids == [student_id]
    rows = await _audit_rows(db_session, waived.batch_id)
    assert len(rows) == 1
    assert rows[0].compliance_flags == ["clearance_waived"]


@pytest.mark.asyncio
async def test_unknown_student_is_reported_not_found(db_session, actor, make_student) -> None:
    student = await make_student(grade_code="SSS1")
    student_id = student.id
    missing = uuid.uuid4()

    result = await execute_batch(
        db_session,
        BatchOperation.PROMOTE,
        BatchRequest(scope=BatchScope.STUDENTS, student_ids=[missing, student_id], target_grade_code="SSS2"),
        actor,
    )
    assert result.succeeded_ids == [student_id]
    assert result.errors[0].id == missing
    assert result.errors[0].kind == "NOT_FOUND"
    assert result.errors[0].message == "Student not found"


@pytest.mark.asyncio
async def test_store_outage_fails_remaining_members(db_session, actor, make_student, monkeypatch) -> None:
    students = [await make_student(grade_code="SSS1") for _ in range(4)]
    ids = [s.id for s in students]
    real_require_student = repository.require_student
    calls = {"n": 0}

    async def flaky_require_student(db, organization_id, student_id):
        calls["n"] += 1
        if calls["n"] >= 2:
            raise OperationalError("SELECT 1", {}, Exception("connection refused"))
        return await real_require_student(db, organization_id, student_id)

    monkeypatch.setattr(repository, "require_student", flaky_require_student)

    result = await execute_batch(
        db_session,
        BatchOperation.PROMOTE,
        BatchRequest(scope=BatchScope.STUDENTS, student_ids=ids, target_grade_code="SSS2"),
        actor,
    )

    assert calls["n"] == 2
    assert result.succeeded_ids == [ids[0]]
    assert [e.id for e in result.errors] == ids[1:]
    assert {e.message for e in result.errors} == {"Record store unavailable: OperationalError"}
    assert {e.kind for e in result.errors} == {"SYSTEM"}
    assert len(await _audit_rows(db_session, result.batch_id)) == 1


@pytest.mark.asyncio
async def test_internal_transfer_moves_section(db_session, actor, make_student) -> None:
    students = [await make_student(stream_section="A") for _ in range(2)]
    staying = await make_student(stream_section="C")
    ids = [s.id for s in students]
    staying_id = staying.id

    result = await execute_batch(
        db_session,
        BatchOperation.TRANSFER,
        BatchRequest(scope=BatchScope.SECTION, grade_code="SSS3", stream_section="A", target_stream_section="B"),
        actor,
    )
    assert result.transferred_count == 2
    for student_id in ids:
        student = await _reload(db_session, student_id)
        assert student.stream_section == "B"
        assert student.status == "ACTIVE"
        assert student.transfer_history[0].kind == "INTERNAL"
    assert (await _reload(db_session, staying_id)).stream_section == "C"

    rows = await _audit_rows(db_session, result.batch_id)
    assert {r.entity_type for r in rows} == {"STUDENT_TRANSFER"}


@pytest.mark.asyncio
async def test_external_transfer_requires_approved_request(
    db_session, actor, make_student, other_organization
) -> None:
    destination_id = other_organization.id
    approved = await make_student()
    unapproved = await make_student()
    approved_id, unapproved_id = approved.id, unapproved.id
    request = TransferRequest(
        organization_id=actor.organization_id,
        student_id=approved_id,
        kind="EXTERNAL",
        to_organization_id=destination_id,
        status="APPROVED",
    )
    db_session.add(request)
    await db_session.commit()
    request_id = request.id

    result = await execute_batch(
        db_session,
        BatchOperation.TRANSFER,
        BatchRequest(scope=BatchScope.STUDENTS, student_ids=[approved_id, unapproved_id], transfer_kind="EXTERNAL"),
        actor,
    )

    assert result.succeeded_ids == [approved_id]
    assert result.errors[0].message == "No approved transfer request for this student"
    moved = await _reload(db_session, approved_id)
    assert moved.status == "TRANSFERRED"
    assert moved.organization_id == destination_id
    stored = (
        await db_session.execute(
            select(TransferRequest).where(TransferRequest.id == request_id).execution_options(populate_existing=True)
        )
    ).scalar_one()
    assert stored.status == "COMPLETED"


@pytest.mark.asyncio
async def test_invalid_request_is_rejected_before_any_member(db_session, actor, make_student) -> None:
    student = await make_student()
    with pytest.raises(ServiceError) as exc_info:
        await execute_batch(
            db_session,
            BatchOperation.PROMOTE,
            BatchRequest(scope=BatchScope.STUDENTS, student_ids=[student.id]),
            actor,
        )
    assert exc_info.value.status_code == 400
    count = (await db_session.execute(select(func.count(StudentAuditLog.id)))).scalar()
    assert count == 0
