"""
Enrollment API routes
"""
from fastapi import APIRouter, Depends, Query, status
from typing import List, Optional
import logging

from ..models import EnrollRequest, EnrollmentResponse, ExecutionLogResponse, SuccessResponse
from ..dependencies import get_engine, require_write, get_org_scope, scoped_org_filter, ensure_in_scope
from ...models.enrollment import EnrollmentStatus


logger = logging.getLogger(__name__)
router = APIRouter()


async def _scoped_enrollment(engine, enrollment_id: str, scope: Optional[str]):
    enrollment = await engine.get_enrollment(enrollment_id)
    ensure_in_scope(enrollment.org_id, scope, "Enrollment", enrollment_id)
    return enrollment


@router.post("/", response_model=SuccessResponse, status_code=status.HTTP_201_CREATED)
async def enroll_client(
    request: EnrollRequest,
    engine = Depends(get_engine),
    current_user = Depends(require_write),
    scope: Optional[str] = Depends(get_org_scope)
) -> SuccessResponse:
    """Manually enroll a client; a duplicate within the prevention window is skipped"""
    workflow = await engine.get_workflow(request.workflow_id)
    ensure_in_scope(workflow.org_id, scope, "Workflow", request.workflow_id)

    enrollment_id = await engine.enroll_client(
        request.workflow_id,
        request.client_id,
        reason=request.reason,
        metadata={**request.metadata, "enrolled_by": current_user["id"]}
    )
    if enrollment_id is None:
        return SuccessResponse(
            success=False,
            message="Client was enrolled recently; enrollment skipped",
            data={"enrollment_id": None}
        )
    return SuccessResponse(
        message=f"Client {request.client_id} enrolled",
        data={"enrollment_id": enrollment_id}
    )


@router.get("/", response_model=List[EnrollmentResponse])
async def list_enrollments(
    org_id: Optional[str] = Query(None),
    workflow_id: Optional[str] = Query(None),
    client_id: Optional[str] = Query(None),
    status_filter: Optional[EnrollmentStatus] = Query(None, alias="status"),
    offset: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=500),
    engine = Depends(get_engine),
    scope: Optional[str] = Depends(get_org_scope)
) -> List[EnrollmentResponse]:
    enrollments = await engine.list_enrollments(
        org_id=scoped_org_filter(org_id, scope), workflow_id=workflow_id, client_id=client_id,
        status=status_filter, offset=offset, limit=limit
    )
    return [EnrollmentResponse.model_validate(e) for e in enrollments]


@router.get("/{enrollment_id}", response_model=EnrollmentResponse)
async def get_enrollment(
    enrollment_id: str,
    engine = Depends(get_engine),
    scope: Optional[str] = Depends(get_org_scope)
) -> EnrollmentResponse:
    return EnrollmentResponse.model_validate(await _scoped_enrollment(engine, enrollment_id, scope))


@router.get("/{enrollment_id}/logs", response_model=List[ExecutionLogResponse])
async def enrollment_logs(
    enrollment_id: str,
    offset: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=1000),
    engine = Depends(get_engine),
    scope: Optional[str] = Depends(get_org_scope)
) -> List[ExecutionLogResponse]:
    await _scoped_enrollment(engine, enrollment_id, scope)
    logs = await engine.list_logs(enrollment_id=enrollment_id, offset=offset, limit=limit)
    return [ExecutionLogResponse.model_validate(log) for log in logs]


@router.post("/{enrollment_id}/cancel", response_model=SuccessResponse)
async def cancel_enrollment(
    enrollment_id: str,
    engine = Depends(get_engine),
    current_user = Depends(require_write),
    scope: Optional[str] = Depends(get_org_scope)
) -> SuccessResponse:
    await _scoped_enrollment(engine, enrollment_id, scope)
    cancelled = await engine.cancel_enrollment(enrollment_id)
    return SuccessResponse(
        success=cancelled,
        message=f"Enrollment {enrollment_id} {'cancelled' if cancelled else 'was already finished'}"
    )
