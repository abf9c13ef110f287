"""
FastAPI application
"""
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import logging

from .routers import workflows, enrollments, logs, actions, monitoring
from .middleware import RequestLoggingMiddleware, AuthenticationMiddleware
from .dependencies import app_state
from .. import __version__
from ..config import EngineSettings
from ..core import WorkflowEngine
from ..exceptions import (
    NotFoundError, StateTransitionError, WorkflowValidationError, WorkflowParseError
)
from ..runtime import create_engine


logger = logging.getLogger(__name__)


def _error(status_code: int, error: str, exc: Exception) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"detail": {"error": error, "message": str(exc)}}
    )


def create_app(
    settings: EngineSettings = None,
    engine: WorkflowEngine = None,
    start_scheduler: bool = True
) -> FastAPI:
    """
    Build the admin API.

    Args:
        settings: defaults to ``EngineSettings.from_env()``
        engine: pre-built engine; when omitted one is created against
            ``settings.database_url`` at startup
        start_scheduler: run the scheduler loop while the app is up
    """
    settings = settings or (engine.settings if engine else EngineSettings.from_env())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting Clinic Automation API...")

        db_manager = None
        active_engine = engine
        if active_engine is None:
            active_engine, db_manager = await create_engine(settings)

        if start_scheduler:
            await active_engine.start()

        app_state.update({
            "engine": active_engine,
            "db_manager": db_manager,
            "settings": settings
        })
        logger.info("Clinic Automation API started successfully")

        yield

        logger.info("Shutting down Clinic Automation API...")
        if start_scheduler:
            await active_engine.stop()
        if db_manager is not None:
            await db_manager.close()
        app_state.clear()
        logger.info("Clinic Automation API shut down successfully")

    app = FastAPI(
        title="Clinic Workflow Automation API",
        description="Administration of clinic CRM workflow automations",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json"
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(
        AuthenticationMiddleware,
        secret_key=settings.jwt_secret_key,
        disabled=settings.disable_auth
    )

    app.include_router(workflows.router, prefix="/api/v1/workflows", tags=["workflows"])
    app.include_router(enrollments.router, prefix="/api/v1/enrollments", tags=["enrollments"])
    app.include_router(logs.router, prefix="/api/v1/logs", tags=["logs"])
    app.include_router(actions.router, prefix="/api/v1/actions", tags=["actions"])
    app.include_router(monitoring.router, prefix="/api/v1/monitoring", tags=["monitoring"])

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError):
        return _error(status.HTTP_404_NOT_FOUND, "not_found", exc)

    @app.exception_handler(StateTransitionError)
    async def state_transition_handler(request: Request, exc: StateTransitionError):
        return _error(status.HTTP_409_CONFLICT, "invalid_state", exc)

    @app.exception_handler(WorkflowValidationError)
    @app.exception_handler(WorkflowParseError)
    async def validation_handler(request: Request, exc: Exception):
        return _error(status.HTTP_400_BAD_REQUEST, "validation_error", exc)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled exception: {exc}", exc_info=True)

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "internal_server_error",
                "message": "An unexpected error occurred",
                "request_id": getattr(request.state, "request_id", None)
            }
        )

    @app.get("/", tags=["root"])
    async def root():
        return {
            "name": "Clinic Workflow Automation API",
            "version": __version__,
            "status": "running",
            "docs": "/docs",
            "health": "/api/v1/monitoring/health"
        }

    return app
