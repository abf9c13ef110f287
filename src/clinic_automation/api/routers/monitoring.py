"""
Monitoring API routes
"""
from fastapi import APIRouter, Depends
from typing import Dict, Any
import logging

from ..models import HealthCheckResponse
from ..dependencies import get_engine, get_scheduler, require_admin, get_org_scope
from ... import __version__
from ...clock import utcnow
from ...exceptions import WorkflowEngineError


logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(engine = Depends(get_engine)) -> HealthCheckResponse:
    """Health check"""
    checks: Dict[str, Any] = {}

    try:
        await engine.workflows.list(limit=1)
        checks["database"] = True
    except WorkflowEngineError as e:
        logger.error(f"Database health check failed: {e}")
        checks["database"] = False

    checks["scheduler"] = engine.scheduler.running

    # a stopped scheduler is reported but does not fail the check
    healthy = checks["database"]
    return HealthCheckResponse(
        status="healthy" if healthy else "unhealthy",
        version=__version__,
        timestamp=utcnow(),
        checks=checks
    )


@router.get("/scheduler")
async def scheduler_stats(
    scheduler = Depends(get_scheduler),
    engine = Depends(get_engine),
    scope = Depends(get_org_scope)
) -> Dict[str, Any]:
    """Scheduler loop state, last tick and queue counts"""
    return {
        **scheduler.stats(),
        "actions": await engine.action_stats(scope),
    }


@router.post("/tick")
async def run_tick(
    engine = Depends(get_engine),
    current_user = Depends(require_admin)
) -> Dict[str, Any]:
    """Run one scheduler tick now; ticks span every org"""
    result = await engine.tick()
    return result.to_dict()


@router.get("/settings")
async def settings(engine = Depends(get_engine)) -> Dict[str, Any]:
    """Effective settings without secrets"""
    return engine.settings.safe_dict()
