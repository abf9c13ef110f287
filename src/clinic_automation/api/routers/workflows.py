"""
Workflow management API routes
"""
from fastapi import APIRouter, HTTPException, Depends, Query, status, UploadFile, File, Form
from typing import List, Optional
import logging

from ..models import (
    WorkflowCreateRequest, WorkflowResponse, WorkflowDetailResponse,
    WorkflowStatsResponse, EnrollmentResponse, SuccessResponse
)
from ..dependencies import get_engine, require_write, get_org_scope, scoped_org_filter, ensure_in_scope
from ...exceptions import WorkflowValidationError, WorkflowParseError
from ...models.enrollment import EnrollmentStatus


logger = logging.getLogger(__name__)
router = APIRouter()


def _bad_definition(e: Exception) -> HTTPException:
    errors = getattr(e, "errors", None) or [str(e)]
    return HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail={
            "error": "validation_error",
            "message": str(e),
            "errors": errors
        }
    )


async def _scoped_workflow(engine, workflow_id: str, scope: Optional[str]):
    workflow = await engine.get_workflow(workflow_id)
    ensure_in_scope(workflow.org_id, scope, "Workflow", workflow_id)
    return workflow


@router.post("/", response_model=WorkflowDetailResponse, status_code=status.HTTP_201_CREATED)
async def create_workflow(
    workflow: WorkflowCreateRequest,
    engine = Depends(get_engine),
    current_user = Depends(require_write),
    scope: Optional[str] = Depends(get_org_scope)
) -> WorkflowDetailResponse:
    """Create a workflow from a JSON definition"""
    scoped_org_filter(workflow.org_id, scope)
    definition = workflow.model_dump(exclude_none=True)
    definition["metadata"] = {**workflow.metadata, "created_by": current_user["id"]}

    try:
        created = await engine.create_workflow(definition)
    except (WorkflowValidationError, WorkflowParseError) as e:
        raise _bad_definition(e)

    return WorkflowDetailResponse.from_workflow(created)


@router.post("/upload", response_model=WorkflowDetailResponse, status_code=status.HTTP_201_CREATED)
async def upload_workflow(
    file: UploadFile = File(..., description="YAML or JSON workflow definition"),
    org_id: Optional[str] = Form(None, description="Owning org; overrides the file"),
    engine = Depends(get_engine),
    current_user = Depends(require_write),
    scope: Optional[str] = Depends(get_org_scope)
) -> WorkflowDetailResponse:
    """Create a workflow from an uploaded YAML/JSON file"""
    if not file.filename or not file.filename.lower().endswith((".yaml", ".yml", ".json")):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "error": "invalid_file_type",
                "message": "Only YAML and JSON files are supported"
            }
        )

    org_id = scoped_org_filter(org_id, scope)
    content = (await file.read()).decode("utf-8")
    try:
        workflow = engine.parser.parse_string(content, org_id)
    except (WorkflowValidationError, WorkflowParseError) as e:
        raise _bad_definition(e)

    workflow.metadata = {**workflow.metadata, "created_by": current_user["id"], "source_file": file.filename}
    created = await engine.create_workflow(workflow.to_dict(), workflow.org_id)
    return WorkflowDetailResponse.from_workflow(created)


@router.get("/", response_model=List[WorkflowResponse])
async def list_workflows(
    org_id: Optional[str] = Query(None, description="Filter by org"),
    enabled: Optional[bool] = Query(None, description="Filter by enabled flag"),
    offset: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=100),
    engine = Depends(get_engine),
    scope: Optional[str] = Depends(get_org_scope)
) -> List[WorkflowResponse]:
    workflows = await engine.list_workflows(
        org_id=scoped_org_filter(org_id, scope), enabled=enabled, offset=offset, limit=limit
    )
    return [WorkflowResponse.from_workflow(w) for w in workflows]


@router.get("/{workflow_id}", response_model=WorkflowDetailResponse)
async def get_workflow(
    workflow_id: str,
    engine = Depends(get_engine),
    scope: Optional[str] = Depends(get_org_scope)
) -> WorkflowDetailResponse:
    return WorkflowDetailResponse.from_workflow(await _scoped_workflow(engine, workflow_id, scope))


@router.delete("/{workflow_id}", response_model=SuccessResponse)
async def delete_workflow(
    workflow_id: str,
    engine = Depends(get_engine),
    current_user = Depends(require_write),
    scope: Optional[str] = Depends(get_org_scope)
) -> SuccessResponse:
    await _scoped_workflow(engine, workflow_id, scope)
    await engine.delete_workflow(workflow_id)
    return SuccessResponse(message=f"Workflow {workflow_id} deleted")


@router.post("/{workflow_id}/enable", response_model=WorkflowResponse)
async def enable_workflow(
    workflow_id: str,
    engine = Depends(get_engine),
    current_user = Depends(require_write),
    scope: Optional[str] = Depends(get_org_scope)
) -> WorkflowResponse:
    await _scoped_workflow(engine, workflow_id, scope)
    return WorkflowResponse.from_workflow(await engine.enable_workflow(workflow_id))


@router.post("/{workflow_id}/disable", response_model=WorkflowResponse)
async def disable_workflow(
    workflow_id: str,
    engine = Depends(get_engine),
    current_user = Depends(require_write),
    scope: Optional[str] = Depends(get_org_scope)
) -> WorkflowResponse:
    """Stop new enrollments; in-flight enrollments keep running"""
    await _scoped_workflow(engine, workflow_id, scope)
    return WorkflowResponse.from_workflow(await engine.disable_workflow(workflow_id))


@router.post("/{workflow_id}/pause", response_model=SuccessResponse)
async def pause_workflow(
    workflow_id: str,
    engine = Depends(get_engine),
    current_user = Depends(require_write),
    scope: Optional[str] = Depends(get_org_scope)
) -> SuccessResponse:
    await _scoped_workflow(engine, workflow_id, scope)
    paused = await engine.pause_workflow(workflow_id)
    return SuccessResponse(
        message=f"Workflow {workflow_id} paused",
        data={"enrollments_paused": paused}
    )


@router.post("/{workflow_id}/resume", response_model=SuccessResponse)
async def resume_workflow(
    workflow_id: str,
    engine = Depends(get_engine),
    current_user = Depends(require_write),
    scope: Optional[str] = Depends(get_org_scope)
) -> SuccessResponse:
    await _scoped_workflow(engine, workflow_id, scope)
    resumed = await engine.resume_workflow(workflow_id)
    return SuccessResponse(
        message=f"Workflow {workflow_id} resumed",
        data={"enrollments_resumed": resumed}
    )


@router.get("/{workflow_id}/stats", response_model=WorkflowStatsResponse)
async def workflow_stats(
    workflow_id: str,
    engine = Depends(get_engine),
    scope: Optional[str] = Depends(get_org_scope)
) -> WorkflowStatsResponse:
    await _scoped_workflow(engine, workflow_id, scope)
    return WorkflowStatsResponse(**await engine.workflow_stats(workflow_id))


@router.get("/{workflow_id}/enrollments", response_model=List[EnrollmentResponse])
async def list_workflow_enrollments(
    workflow_id: str,
    status_filter: Optional[EnrollmentStatus] = Query(None, alias="status"),
    offset: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=500),
    engine = Depends(get_engine),
    scope: Optional[str] = Depends(get_org_scope)
) -> List[EnrollmentResponse]:
    await _scoped_workflow(engine, workflow_id, scope)
    enrollments = await engine.list_enrollments(
        workflow_id=workflow_id, status=status_filter, offset=offset, limit=limit
    )
    return [EnrollmentResponse.model_validate(e) for e in enrollments]
