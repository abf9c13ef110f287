"""
FastAPI dependencies
"""
from fastapi import Depends, HTTPException, Request, status
from typing import Dict, Any, Optional
import logging

from ..core import WorkflowEngine, SchedulerLoop
from ..exceptions import NotFoundError


logger = logging.getLogger(__name__)


# populated by the application lifespan
app_state: Dict[str, Any] = {}


def get_app_state() -> Dict[str, Any]:
    return app_state


def get_engine() -> WorkflowEngine:
    """Workflow engine instance"""
    engine = get_app_state().get("engine")

    if not engine:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "error": "service_unavailable",
                "message": "Workflow engine not initialized"
            }
        )

    return engine


def get_scheduler(engine: WorkflowEngine = Depends(get_engine)) -> SchedulerLoop:
    return engine.scheduler


def get_current_user(request: Request) -> Dict[str, Any]:
    """User set by the authentication middleware"""
    return getattr(request.state, "user", None) or {
        "id": "anonymous",
        "role": "user",
        "org_id": None,
        "permissions": ["read"]
    }


def require_permission(permission: str):
    """Permission check dependency"""
    def permission_checker(
        current_user: Dict[str, Any] = Depends(get_current_user)
    ) -> Dict[str, Any]:
        user_permissions = current_user.get("permissions", [])

        # admins have every permission
        if current_user.get("role") == "admin" or "*" in user_permissions:
            return current_user

        if permission not in user_permissions:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail={
                    "error": "insufficient_permissions",
                    "message": f"Permission '{permission}' required"
                }
            )

        return current_user

    return permission_checker


require_write = require_permission("write")


def get_org_scope(
    current_user: Dict[str, Any] = Depends(get_current_user)
) -> Optional[str]:
    """
    Org the caller is confined to.

    Admins see every org (None). Other callers must carry an ``org_id``
    claim and only ever see that org's data.
    """
    if current_user.get("role") == "admin":
        return None

    org_id = current_user.get("org_id")
    if not org_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={
                "error": "org_required",
                "message": "Token carries no org_id claim"
            }
        )
    return org_id


def scoped_org_filter(requested: Optional[str], scope: Optional[str]) -> Optional[str]:
    """org_id to query with; a foreign org looks like an unknown one"""
    if scope is None:
        return requested
    if requested is not None and requested != scope:
        raise NotFoundError("Org", requested)
    return scope


def ensure_in_scope(org_id: str, scope: Optional[str], kind: str, identifier: str):
    """Hide entities of other orgs behind a 404"""
    if scope is not None and org_id != scope:
        raise NotFoundError(kind, identifier)


require_admin = require_permission("admin")
