"""
Execution log API routes
"""
from fastapi import APIRouter, Depends, Query
from typing import List, Optional

from ..models import ExecutionLogResponse
from ..dependencies import get_engine, get_org_scope, scoped_org_filter


router = APIRouter()


@router.get("/", response_model=List[ExecutionLogResponse])
async def list_logs(
    org_id: Optional[str] = Query(None),
    workflow_id: Optional[str] = Query(None),
    enrollment_id: Optional[str] = Query(None),
    offset: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=1000),
    engine = Depends(get_engine),
    scope: Optional[str] = Depends(get_org_scope)
) -> List[ExecutionLogResponse]:
    """Execution logs in insertion order; non-admins only see their org"""
    logs = await engine.list_logs(
        org_id=scoped_org_filter(org_id, scope), workflow_id=workflow_id, enrollment_id=enrollment_id,
        offset=offset, limit=limit
    )
    return [ExecutionLogResponse.model_validate(log) for log in logs]
