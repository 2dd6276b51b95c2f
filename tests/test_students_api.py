import io
import uuid
from decimal import Decimal

import pytest
from httpx import AsyncClient
from openpyxl import Workbook, load_workbook

from app.core.config import settings


STUDENT_PAYLOAD = {
    "first_name": "Ada",
    "last_name": "Obi",
    "email": "ada.obi@example.com",
    "grade_code": "SSS1",
    "stream_section": "A",
    "gpa": "3.10",
    "total_credits": 60,
}


@pytest.mark.asyncio
async def test_requires_authentication(client: AsyncClient, organization) -> None:
    response = await client.get("/api/v1/students")
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_requires_permission(client: AsyncClient, actor, headers_with) -> None:
    headers = headers_with(actor, permissions={"students": {"read": True}})
    response = await client.post("/api/v1/students", json=STUDENT_PAYLOAD, headers=headers)
    assert response.status_code == 403
    assert response.json()["detail"] == "Insufficient permissions"

    response = await client.get("/api/v1/students", headers=headers)
    assert response.status_code == 200


@pytest.mark.asyncio
async def test_student_crud(client: AsyncClient, auth_headers) -> None:
    response = await client.post("/api/v1/students", json=STUDENT_PAYLOAD, headers=auth_headers)
    assert response.status_code == 201
    created = response.json()
    assert created["status"] == "ACTIVE"
    assert created["full_name"] == "Ada Obi"
    assert created["admission_number"].startswith("GHS")
    assert created["admission_number"].endswith("0001")
    student_id = created["id"]

    response = await client.get(f"/api/v1/students/{student_id}", headers=auth_headers)
    assert response.status_code == 200
    assert response.json()["email"] == "ada.obi@example.com"

    response = await client.patch(
        f"/api/v1/students/{student_id}", json={"phone": "+2348031234567"}, headers=auth_headers
    )
    assert response.status_code == 200
    assert response.json()["phone"] == "+2348031234567"

    response = await client.get("/api/v1/students", params={"search": "obi"}, headers=auth_headers)
    assert response.json()["total"] == 1

    response = await client.delete(f"/api/v1/students/{student_id}", headers=auth_headers)
    assert response.status_code == 200
    assert response.json()["status"] == "INACTIVE"

    response = await client.delete(f"/api/v1/students/{student_id}", headers=auth_headers)
    assert response.status_code == 200
    assert response.json()["status"] == "INACTIVE"

    response = await client.post(
        f"/api/v1/students/{student_id}/deactivate", json={"reason": "Left school"}, headers=auth_headers
    )
    assert response.status_code == 400
    assert response.json()["detail"] == "Student is already inactive"

    response = await client.post(f"/api/v1/students/{student_id}/reinstate", json={}, headers=auth_headers)
    assert response.json()["status"] == "ACTIVE"

    response = await client.get(f"/api/v1/students/{student_id}/audit", headers=auth_headers)
    assert response.status_code == 200
    actions = [item["action"] for item in response.json()["items"]]
    assert sorted(actions) == ["CREATE", "DELETE", "DELETE", "DELETE", "TRANSITION", "UPDATE"]


@pytest.mark.asyncio
async def test_duplicate_email_and_admission_number(client: AsyncClient, auth_headers, make_student) -> None:
    existing = await make_student(email="taken@example.com")

    response = await client.post(
        "/api/v1/students", json=dict(STUDENT_PAYLOAD, email="TAKEN@example.com"), headers=auth_headers
    )
    assert response.status_code == 409
    assert response.json()["detail"] == "Student with this email already exists in this organization"

    response = await client.post(
        "/api/v1/students",
        json=dict(STUDENT_PAYLOAD, admission_number=existing.admission_number),
        headers=auth_headers,
    )
    assert response.status_code == 409
    assert response.json()["detail"] == "Student with this admission number already exists"


@pytest.mark.asyncio
async def test_students_are_scoped_to_organization(
    client: AsyncClient, auth_headers, make_student, other_organization
) -> None:
    foreign = await make_student(organization_id=other_organization.id, admission_number="RVA20200001")
    response = await client.get(f"/api/v1/students/{foreign.id}", headers=auth_headers)
    assert response.status_code == 404
    assert response.json()["detail"] == "Student not found"

    response = await client.get(f"/api/v1/students/{uuid.uuid4()}", headers=auth_headers)
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_single_graduation(client: AsyncClient, auth_headers, make_student) -> None:
    eligible = await make_student()
    weak = await make_student(gpa=Decimal("1.50"))

    response = await client.post(
        f"/api/v1/students/{eligible.id}/graduate",
        json={"graduation_year": 2025, "clearance_status": "pending"},
        headers=auth_headers,
    )
    assert response.status_code == 200
    assert response.json()["status"] == "GRADUATED"
    assert response.json()["graduation_year"] == 2025

    response = await client.post(f"/api/v1/students/{eligible.id}/graduate", json={}, headers=auth_headers)
    assert response.status_code == 400
    assert response.json()["detail"] == "Student is already graduated"

    response = await client.post(f"/api/v1/students/{weak.id}/graduate", json={}, headers=auth_headers)
    assert response.status_code == 422
    assert response.json()["detail"] == "Student must have minimum GPA of 2.0"

    response = await client.get(f"/api/v1/students/{eligible.id}/audit", headers=auth_headers)
    flags = [item["compliance_flags"] for item in response.json()["items"]]
    assert ["clearance_waived"] in flags


@pytest.mark.asyncio
async def test_single_promotion(client: AsyncClient, auth_headers, make_student) -> None:
    student = await make_student(grade_code="JSS3")
    response = await client.post(
        f"/api/v1/students/{student.id}/promote",
        json={"target_grade_code": "SSS1", "target_stream_section": "B"},
        headers=auth_headers,
    )
    assert response.status_code == 200
    body = response.json()
    assert (body["grade_code"], body["stream_section"]) == ("SSS1", "B")
    assert body["promotion_history"][0]["from_grade"] == "JSS3"


@pytest.mark.asyncio
async def test_clearance_endpoints(client: AsyncClient, auth_headers, make_student) -> None:
    student = await make_student(is_boarding=True)

    response = await client.get(f"/api/v1/students/{student.id}/clearance", headers=auth_headers)
    assert response.status_code == 200
    assert response.json()["hostel_required"] is True
    assert response.json()["fully_cleared"] is False

    response = await client.put(
        f"/api/v1/students/{student.id}/clearance",
        json={"library_cleared": True, "hostel_cleared": True, "medical_cleared": True},
        headers=auth_headers,
    )
    assert response.status_code == 200
    assert response.json()["fully_cleared"] is True

    response = await client.put(
        f"/api/v1/students/{student.id}/clearance", json={"hostel_cleared": False}, headers=auth_headers
    )
    body = response.json()
    assert (body["library_cleared"], body["hostel_cleared"], body["fully_cleared"]) == (True, False, False)


@pytest.mark.asyncio
async def test_batch_promotion_endpoint(client: AsyncClient, auth_headers, make_student) -> None:
    students = [await make_student(grade_code="JSS1") for _ in range(2)]
    response = await client.post(
        "/api/v1/students/batch/promote",
        json={"scope": "grade", "grade_code": "JSS1", "target_grade_code": "JSS2"},
        headers=auth_headers,
    )
    assert response.status_code == 200
    body = response.json()
    assert body["promoted_count"] == 2
    assert body["errors"] == []
    assert sorted(body["succeeded_ids"]) == sorted(str(s.id) for s in students)


@pytest.mark.asyncio
async def test_batch_request_validation(client: AsyncClient, auth_headers) -> None:
    response = await client.post(
        "/api/v1/students/batch/promote", json={"scope": "grade", "grade_code": "JSS1"}, headers=auth_headers
    )
    assert response.status_code == 400
    assert response.json()["detail"] == "target_grade_code is required for promotion"

    response = await client.post(
        "/api/v1/students/batch/graduate", json={"scope": "section", "grade_code": "SSS3"}, headers=auth_headers
    )
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_background_batch_returns_job(client: AsyncClient, auth_headers, job_queue) -> None:
    response = await client.post(
        "/api/v1/students/batch/graduate",
        params={"background": "true"},
        json={"scope": "all", "clearance_status": "pending"},
        headers=auth_headers,
    )
    assert response.status_code == 202
    job = response.json()
    assert job["status"] == "PENDING"
    assert job["job_type"] == "BATCH_GRADUATION"
    assert job["priority"] == 40
    assert [(c["function"], c["_job_id"]) for c in job_queue.calls] == [("run_batch_job", job["id"])]

    response = await client.get(f"/api/v1/jobs/{job['id']}", headers=auth_headers)
    assert response.status_code == 200

    response = await client.post(f"/api/v1/jobs/{job['id']}/cancel", headers=auth_headers)
    assert response.json()["status"] == "CANCELLED"
    response = await client.post(f"/api/v1/jobs/{job['id']}/cancel", headers=auth_headers)
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_json_import(client: AsyncClient, auth_headers) -> None:
    rows = [
        {"FirstName": "Ada", "LastName": "Obi", "Grade": "JSS1"},
        {"FirstName": "Bola", "Grade": "JSS1"},
    ]
    response = await client.post("/api/v1/students/import", json={"rows": rows}, headers=auth_headers)
    assert response.status_code == 200
    body = response.json()
    assert (body["total"], body["successful"], body["failed"]) == (2, 1, 1)
    assert body["errors"][0]["row"] == 2
    assert body["errors"][0]["field"] == "last_name"

    response = await client.post(
        "/api/v1/students/import", params={"background": "true"}, json={"rows": rows}, headers=auth_headers
    )
    assert response.status_code == 202
    assert response.json()["job_type"] == "BULK_IMPORT"


def _xlsx(rows) -> bytes:
    wb = Workbook()
    ws = wb.active
    for row in rows:
        ws.append(row)
    bio = io.BytesIO()
    wb.save(bio)
    return bio.getvalue()


@pytest.mark.asyncio
async def test_excel_import_with_error_report(client: AsyncClient, auth_headers) -> None:
    content = _xlsx(
        [
            ["First Name", "Last Name", "Email", "Grade"],
            ["Ada", "Obi", "ada@example.com", "JSS1"],
            ["Bola", "Ade", "not-an-email", "JSS1"],
        ]
    )
    response = await client.post(
        "/api/v1/students/import/excel/errors",
        files={"file": ("students.xlsx", content, "application/octet-stream")},
        headers=auth_headers,
    )
    assert response.status_code == 200
    assert response.headers["X-Import-Successful"] == "1"
    assert response.headers["X-Import-Failed"] == "1"

    sheet = load_workbook(io.BytesIO(response.content)).active
    rows = list(sheet.iter_rows(values_only=True))
    assert rows[0][0] == "row"
    assert rows[1][0] == 2
    assert rows[1][-2] == "email"


@pytest.mark.asyncio
async def test_excel_import_rejects_other_files(client: AsyncClient, auth_headers) -> None:
    response = await client.post(
        "/api/v1/students/import/excel",
        files={"file": ("students.csv", b"first_name,last_name\nAda,Obi\n", "text/csv")},
        headers=auth_headers,
    )
    assert response.status_code == 400
    assert response.json()["detail"] == "File must be an Excel file (.xlsx)"


@pytest.mark.asyncio
async def test_confidential_audit_values_need_permission(
    client: AsyncClient, actor, auth_headers, headers_with, make_student
) -> None:
    student = await make_student()
    await client.patch(f"/api/v1/students/{student.id}", json={"phone": "08031234567"}, headers=auth_headers)

    response = await client.get(
        f"/api/v1/students/{student.id}/audit", params={"is_confidential": "true"}, headers=auth_headers
    )
    entry = response.json()["items"][0]
    assert entry["changed_fields"] == ["phone"]
    assert entry["redacted"] is True
    assert entry["new_values"] is None

    privileged = headers_with(actor, permissions={"audit": {"read": True, "read_confidential": True}})
    response = await client.get(f"/api/v1/students/{student.id}/audit", headers=privileged)
    entry = response.json()["items"][0]
    assert entry["redacted"] is False
    assert entry["new_values"] == {"phone": "08031234567"}


@pytest.mark.asyncio
async def test_update_rejects_null_for_required_fields(client: AsyncClient, auth_headers, make_student) -> None:
    student = await make_student()

    for field in ("first_name", "last_name", "on_probation", "outstanding_balance"):
        response = await client.patch(f"/api/v1/students/{student.id}", json={field: None}, headers=auth_headers)
        assert response.status_code == 422, field

    response = await client.patch(
        f"/api/v1/students/{student.id}", json={"middle_name": None, "phone": None}, headers=auth_headers
    )
    assert response.status_code == 200
    assert response.json()["first_name"] == "Ada"


@pytest.mark.asyncio
async def test_reading_a_medical_record_is_audited(client: AsyncClient, actor, auth_headers, make_student) -> None:
    with_record = await make_student(medical_info={"allergies": ["peanuts"]})
    await make_student()

    response = await client.get(f"/api/v1/students/{with_record.id}", headers=auth_headers)
    assert response.status_code == 200
    assert response.json()["medical_info"] == {"allergies": ["peanuts"]}

    response = await client.get(
        f"/api/v1/students/{with_record.id}/audit", params={"action": "VIEW"}, headers=auth_headers
    )
    items = response.json()["items"]
    assert len(items) == 1
    assert items[0]["entity_type"] == "STUDENT_MEDICAL_RECORD"
    assert items[0]["severity"] == "HIGH"
    assert items[0]["is_confidential"] is True
    assert items[0]["actor_id"] == str(actor.id)

    # Listing discloses the record again; students without one leave no entry.
    response = await client.get("/api/v1/students", headers=auth_headers)
    assert response.json()["total"] == 2
    response = await client.get(
        f"/api/v1/students/{with_record.id}/audit", params={"action": "VIEW"}, headers=auth_headers
    )
    assert response.json()["total"] == 2


@pytest.mark.asyncio
async def test_json_import_row_cap(client: AsyncClient, auth_headers, monkeypatch) -> None:
    monkeypatch.setattr(settings, "import_max_rows", 1)
    rows = [
        {"FirstName": "Ada", "LastName": "Obi", "Grade": "JSS1"},
        {"FirstName": "Bola", "LastName": "Ade", "Grade": "JSS1"},
    ]

    for params in ({}, {"background": "true"}):
        response = await client.post("/api/v1/students/import", params=params, json={"rows": rows}, headers=auth_headers)
        assert response.status_code == 400
        assert response.json()["detail"] == "Maximum 1 data rows allowed"

    response = await client.get("/api/v1/students", headers=auth_headers)
    assert response.json()["total"] == 0
