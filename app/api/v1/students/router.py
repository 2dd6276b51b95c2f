from typing import Optional, Union
from uuid import UUID

from arq.connections import ArqRedis
from fastapi import APIRouter, Depends, File, HTTPException, Query, Response, UploadFile, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.v1.audit.schemas import AuditTrailResponse
from app.api.v1.jobs import service as job_service
from app.api.v1.jobs.queue import get_job_queue
from app.api.v1.jobs.schemas import JobResponse
from app.auth.dependencies import get_current_user
from app.auth.rbac import check_permission, has_permission
from app.auth.schemas import CurrentUser
from app.core.enums import BatchOperation, JobType
from app.core.exceptions import ServiceError
from app.db.session import get_db

from .schemas import (
    BatchOperationResult,
    BatchRequest,
    DeactivateRequest,
    GraduateRequest,
    ImportRequest,
    ImportResult,
    PromoteRequest,
    StatusChangeRequest,
    StudentCreate,
    StudentListResponse,
    StudentResponse,
    StudentUpdate,
)
from . import batch_service, import_service, repository, service

router = APIRouter(prefix="/api/v1/students", tags=["students"])

BATCH_JOB_TYPES = {
    BatchOperation.PROMOTE: JobType.BATCH_PROMOTION,
    BatchOperation.GRADUATE: JobType.BATCH_GRADUATION,
    BatchOperation.TRANSFER: JobType.BATCH_TRANSFER,
}


# ----- Batch operations -----

async def _run_batch(
    operation: BatchOperation,
    payload: BatchRequest,
    background: bool,
    db: AsyncSession,
    queue: Optional[ArqRedis],
    current_user: CurrentUser,
) -> Union[BatchOperationResult, JSONResponse]:
    try:
        if background:
            batch_service.validate_batch_request(operation, payload)
            job = await job_service.enqueue_job(
                db, queue, BATCH_JOB_TYPES[operation], payload.model_dump(mode="json"), current_user
            )
            return JSONResponse(status_code=status.HTTP_202_ACCEPTED, content=job.model_dump(mode="json"))
        return await batch_service.execute_batch(db, operation, payload, current_user)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.post(
    "/batch/promote",
    response_model=BatchOperationResult,
    responses={202: {"model": JobResponse}},
    dependencies=[Depends(check_permission("students", "update"))],
)
async def batch_promote(
    payload: BatchRequest,
    background: bool = Query(False, description="Queue as a background job and return 202"),
    db: AsyncSession = Depends(get_db),
    queue: Optional[ArqRedis] = Depends(get_job_queue),
    current_user: CurrentUser = Depends(get_current_user),
):
    """Promote the scoped students to target_grade_code. Repeaters (on probation) are held back unless included."""
    return await _run_batch(BatchOperation.PROMOTE, payload, background, db, queue, current_user)


@router.post(
    "/batch/graduate",
    response_model=BatchOperationResult,
    responses={202: {"model": JobResponse}},
    dependencies=[Depends(check_permission("students", "update"))],
)
async def batch_graduate(
    payload: BatchRequest,
    background: bool = Query(False, description="Queue as a background job and return 202"),
    db: AsyncSession = Depends(get_db),
    queue: Optional[ArqRedis] = Depends(get_job_queue),
    current_user: CurrentUser = Depends(get_current_user),
):
    """
    Graduate the scoped students. clearance_status=cleared enforces library/hostel/medical clearance;
    pending waives it and flags the audit entry.
    """
    return await _run_batch(BatchOperation.GRADUATE, payload, background, db, queue, current_user)


@router.post(
    "/batch/transfer",
    response_model=BatchOperationResult,
    responses={202: {"model": JobResponse}},
    dependencies=[Depends(check_permission("students", "update"))],
)
async def batch_transfer(
    payload: BatchRequest,
    background: bool = Query(False, description="Queue as a background job and return 202"),
    db: AsyncSession = Depends(get_db),
    queue: Optional[ArqRedis] = Depends(get_job_queue),
    current_user: CurrentUser = Depends(get_current_user),
):
    """Internal: move the scoped students to a grade/section. External: complete each student's approved transfer request."""
    return await _run_batch(BatchOperation.TRANSFER, payload, background, db, queue, current_user)


# ----- Import -----

@router.post(
    "/import",
    response_model=ImportResult,
    responses={202: {"model": JobResponse}},
    dependencies=[Depends(check_permission("students", "create"))],
)
async def import_students(
    payload: ImportRequest,
    background: bool = Query(False, description="Queue as a background job and return 202"),
    db: AsyncSession = Depends(get_db),
    queue: Optional[ArqRedis] = Depends(get_job_queue),
    current_user: CurrentUser = Depends(get_current_user),
):
    """Import rows (keys are column headers). Each row succeeds or fails on its own."""
    try:
        import_service.check_import_size(payload.rows)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    try:
        if background:
            job = await job_service.enqueue_job(db, queue, JobType.BULK_IMPORT, {"rows": payload.rows}, current_user)
            return JSONResponse(status_code=status.HTTP_202_ACCEPTED, content=job.model_dump(mode="json"))
        organization = await repository.require_organization(db, current_user.organization_id)
        return await import_service.import_students(db, payload.rows, organization, current_user)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


async def _import_excel(file: UploadFile, db: AsyncSession, current_user: CurrentUser) -> ImportResult:
    if not file.filename or not file.filename.lower().endswith(".xlsx"):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="File must be an Excel file (.xlsx)")
    try:
        rows = import_service.parse_import_workbook(await file.read())
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    if not rows:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Excel file has no data rows")
    try:
        organization = await repository.require_organization(db, current_user.organization_id)
        return await import_service.import_students(db, rows, organization, current_user)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.post(
    "/import/excel",
    response_model=ImportResult,
    dependencies=[Depends(check_permission("students", "create"))],
)
async def import_students_excel(
    file: UploadFile = File(..., description="First sheet; first row = headers (e.g. FirstName, Last Name, grade_code)"),
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> ImportResult:
    return await _import_excel(file, db, current_user)


@router.post(
    "/import/excel/errors",
    dependencies=[Depends(check_permission("students", "create"))],
)
async def import_students_excel_with_error_report(
    file: UploadFile = File(...),
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> Response:
    """Same import as /import/excel, but responds with an Excel file of the failed rows and their reasons."""
    result = await _import_excel(file, db, current_user)
    return Response(
        content=import_service.build_error_workbook(result.errors),
        media_type=import_service.EXCEL_MEDIA_TYPE,
        headers={
            "Content-Disposition": "attachment; filename=students_import_errors.xlsx",
            "X-Import-Successful": str(result.successful),
            "X-Import-Failed": str(result.failed),
        },
    )


# ----- Records -----

@router.post(
    "",
    response_model=StudentResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(check_permission("students", "create"))],
)
async def create_student(
    payload: StudentCreate,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> StudentResponse:
    try:
        return await service.create_student(db, current_user.organization_id, payload, current_user)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.get(
    "",
    response_model=StudentListResponse,
    dependencies=[Depends(check_permission("students", "read"))],
)
async def list_students(
    status_filter: Optional[str] = Query(None, alias="status"),
    grade_code: Optional[str] = Query(None),
    stream_section: Optional[str] = Query(None),
    search: Optional[str] = Query(None, description="Name, admission number or email"),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> StudentListResponse:
    return await service.list_students(
        db,
        current_user.organization_id,
        actor=current_user,
        status_filter=status_filter,
        grade_code=grade_code,
        stream_section=stream_section,
        search=search,
        limit=limit,
        offset=offset,
    )


@router.get(
    "/{student_id}",
    response_model=StudentResponse,
    dependencies=[Depends(check_permission("students", "read"))],
)
async def get_student(
    student_id: UUID,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> StudentResponse:
    try:
        return await service.get_student(db, current_user.organization_id, student_id, actor=current_user)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.patch(
    "/{student_id}",
    response_model=StudentResponse,
    dependencies=[Depends(check_permission("students", "update"))],
)
async def update_student(
    student_id: UUID,
    payload: StudentUpdate,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> StudentResponse:
    try:
        return await service.update_student(db, current_user.organization_id, student_id, payload, current_user)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.delete(
    "/{student_id}",
    response_model=StudentResponse,
    dependencies=[Depends(check_permission("students", "delete"))],
)
async def remove_student(
    student_id: UUID,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> StudentResponse:
    """Soft delete (status INACTIVE). Repeating it is a no-op."""
    try:
        return await service.remove_student(db, current_user.organization_id, student_id, current_user)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.post(
    "/{student_id}/deactivate",
    response_model=StudentResponse,
    dependencies=[Depends(check_permission("students", "delete"))],
)
async def deactivate_student(
    student_id: UUID,
    payload: DeactivateRequest,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> StudentResponse:
    """Soft delete with a reason. Fails if the student is already inactive."""
    try:
        return await service.deactivate_student(db, current_user.organization_id, student_id, payload, current_user)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.post(
    "/{student_id}/graduate",
    response_model=StudentResponse,
    dependencies=[Depends(check_permission("students", "update"))],
)
async def graduate_student(
    student_id: UUID,
    payload: GraduateRequest,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> StudentResponse:
    try:
        return await service.graduate_student(db, current_user.organization_id, student_id, payload, current_user)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.post(
    "/{student_id}/promote",
    response_model=StudentResponse,
    dependencies=[Depends(check_permission("students", "update"))],
)
async def promote_student(
    student_id: UUID,
    payload: PromoteRequest,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> StudentResponse:
    try:
        return await service.promote_student(db, current_user.organization_id, student_id, payload, current_user)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.post(
    "/{student_id}/suspend",
    response_model=StudentResponse,
    dependencies=[Depends(check_permission("students", "update"))],
)
async def suspend_student(
    student_id: UUID,
    payload: StatusChangeRequest,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> StudentResponse:
    try:
        return await service.suspend_student(db, current_user.organization_id, student_id, payload, current_user)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.post(
    "/{student_id}/withdraw",
    response_model=StudentResponse,
    dependencies=[Depends(check_permission("students", "update"))],
)
async def withdraw_student(
    student_id: UUID,
    payload: StatusChangeRequest,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> StudentResponse:
    try:
        return await service.withdraw_student(db, current_user.organization_id, student_id, payload, current_user)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.post(
    "/{student_id}/reinstate",
    response_model=StudentResponse,
    dependencies=[Depends(check_permission("students", "update"))],
)
async def reinstate_student(
    student_id: UUID,
    payload: StatusChangeRequest,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> StudentResponse:
    try:
        return await service.reinstate_student(db, current_user.organization_id, student_id, payload, current_user)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.get(
    "/{student_id}/audit",
    response_model=AuditTrailResponse,
    dependencies=[Depends(check_permission("audit", "read"))],
)
async def get_student_audit_trail(
    student_id: UUID,
    action: Optional[str] = Query(None, description="CREATE, UPDATE, TRANSITION, DELETE, VIEW"),
    is_confidential: Optional[bool] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> AuditTrailResponse:
    """Audit entries for the student. Confidential values need the audit.read_confidential permission."""
    try:
        return await service.get_student_audit_trail(
            db,
            current_user.organization_id,
            student_id,
            action=action,
            is_confidential=is_confidential,
            show_confidential_values=has_permission(current_user, "audit", "read_confidential"),
            limit=limit,
            offset=offset,
        )
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
