"""
Scheduled action API routes
"""
from fastapi import APIRouter, Depends, Query, status
from typing import Dict, List, Optional
import logging

from ..models import (
    ScheduledActionResponse, RescheduleRequest, ScheduleMessageRequest, SuccessResponse
)
from ..dependencies import get_engine, require_write, get_org_scope, scoped_org_filter, ensure_in_scope
from ...clock import as_naive_utc
from ...exceptions import NotFoundError
from ...models.scheduling import ActionStatus


logger = logging.getLogger(__name__)
router = APIRouter()


async def _scoped_action(engine, action_id: str, scope: Optional[str]):
    action = await engine.queue.get(action_id)
    if action is None:
        raise NotFoundError("ScheduledAction", action_id)
    ensure_in_scope(action.org_id, scope, "ScheduledAction", action_id)
    return action


@router.get("/", response_model=List[ScheduledActionResponse])
async def list_actions(
    org_id: Optional[str] = Query(None),
    status_filter: Optional[ActionStatus] = Query(None, alias="status"),
    kind: Optional[str] = Query(None),
    enrollment_id: Optional[str] = Query(None),
    offset: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=500),
    engine = Depends(get_engine),
    scope: Optional[str] = Depends(get_org_scope)
) -> List[ScheduledActionResponse]:
    actions = await engine.list_actions(
        org_id=scoped_org_filter(org_id, scope), status=status_filter, kind=kind,
        enrollment_id=enrollment_id, offset=offset, limit=limit
    )
    return [ScheduledActionResponse.model_validate(a) for a in actions]


@router.get("/stats", response_model=Dict[str, int])
async def action_stats(
    org_id: Optional[str] = Query(None),
    engine = Depends(get_engine),
    scope: Optional[str] = Depends(get_org_scope)
) -> Dict[str, int]:
    """Counts per status plus overdue pending actions"""
    return await engine.action_stats(scoped_org_filter(org_id, scope))


@router.post("/messages", response_model=ScheduledActionResponse, status_code=status.HTTP_201_CREATED)
async def schedule_message(
    request: ScheduleMessageRequest,
    engine = Depends(get_engine),
    current_user = Depends(require_write),
    scope: Optional[str] = Depends(get_org_scope)
) -> ScheduledActionResponse:
    action = await engine.schedule_message(
        scoped_org_filter(request.org_id, scope),
        request.client_id,
        request.message,
        as_naive_utc(request.send_at),
        channel=request.channel,
        subject=request.subject
    )
    return ScheduledActionResponse.model_validate(action)


@router.get("/{action_id}", response_model=ScheduledActionResponse)
async def get_action(
    action_id: str,
    engine = Depends(get_engine),
    scope: Optional[str] = Depends(get_org_scope)
) -> ScheduledActionResponse:
    action = await _scoped_action(engine, action_id, scope)
    return ScheduledActionResponse.model_validate(action)


@router.post("/{action_id}/cancel", response_model=SuccessResponse)
async def cancel_action(
    action_id: str,
    engine = Depends(get_engine),
    current_user = Depends(require_write),
    scope: Optional[str] = Depends(get_org_scope)
) -> SuccessResponse:
    await _scoped_action(engine, action_id, scope)
    cancelled = await engine.cancel_action(action_id)
    return SuccessResponse(
        success=cancelled,
        message=f"Action {action_id} {'cancelled' if cancelled else 'is not pending'}"
    )


@router.post("/{action_id}/reschedule", response_model=SuccessResponse)
async def reschedule_action(
    action_id: str,
    request: RescheduleRequest,
    engine = Depends(get_engine),
    current_user = Depends(require_write),
    scope: Optional[str] = Depends(get_org_scope)
) -> SuccessResponse:
    await _scoped_action(engine, action_id, scope)
    scheduled_for = as_naive_utc(request.scheduled_for)
    rescheduled = await engine.reschedule_action(action_id, scheduled_for)
    return SuccessResponse(
        success=rescheduled,
        message=f"Action {action_id} rescheduled for {scheduled_for.isoformat()}",
        data={"scheduled_for": scheduled_for.isoformat()}
    )
