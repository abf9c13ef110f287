"""
API middleware
"""
import time
import uuid
import logging
from typing import Callable, Iterable
from fastapi import Request, Response, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
import jwt


logger = logging.getLogger(__name__)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Request logging middleware.

    Every request gets an X-Request-ID; probes on ``quiet_paths`` are
    logged at DEBUG so health checks do not flood the log.
    """

    def __init__(self, app, quiet_paths: Iterable[str] = ("/api/v1/monitoring/health",)):
        super().__init__(app)
        self.quiet_paths = set(quiet_paths)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        level = logging.DEBUG if request.url.path in self.quiet_paths else logging.INFO

        start_time = time.time()
        response = await call_next(request)
        duration = time.time() - start_time

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = f"{duration:.6f}"

        user = getattr(request.state, "user", None) or {}
        logger.log(
            level,
            f"{request.method} {request.url.path} -> {response.status_code} "
            f"[request_id={request_id}] [user={user.get('id', 'anonymous')}] "
            f"[duration={duration:.3f}s]"
        )

        return response


class AuthenticationMiddleware(BaseHTTPMiddleware):
    """Bearer token (HS256 JWT) authentication"""

    EXCLUDE_PATHS = [
        "/",
        "/docs",
        "/redoc",
        "/openapi.json",
        "/api/v1/monitoring/health",
    ]

    def __init__(
        self,
        app,
        secret_key: str,
        disabled: bool = False,
        exclude_paths: Iterable[str] = None
    ):
        super().__init__(app)
        self.secret_key = secret_key
        self.algorithm = "HS256"
        self.disabled = disabled
        self.exclude_paths = set(exclude_paths or self.EXCLUDE_PATHS)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path in self.exclude_paths:
            return await call_next(request)

        # development mode
        if self.disabled:
            request.state.user = {"id": "dev-user", "role": "admin", "org_id": None}
            return await call_next(request)

        authorization = request.headers.get("Authorization")
        if not authorization or not authorization.startswith("Bearer "):
            return JSONResponse(
                status_code=status.HTTP_401_UNAUTHORIZED,
                content={
                    "error": "unauthorized",
                    "message": "Missing or invalid authorization header"
                }
            )

        token = authorization.split(" ", 1)[1]

        try:
            # exp is verified by the decoder when present
            payload = jwt.decode(token, self.secret_key, algorithms=[self.algorithm])
        except jwt.ExpiredSignatureError:
            return JSONResponse(
                status_code=status.HTTP_401_UNAUTHORIZED,
                content={
                    "error": "token_expired",
                    "message": "Token has expired"
                }
            )
        except jwt.InvalidTokenError:
            return JSONResponse(
                status_code=status.HTTP_401_UNAUTHORIZED,
                content={
                    "error": "invalid_token",
                    "message": "Invalid token"
                }
            )

        request.state.user = {
            "id": payload.get("sub"),
            "role": payload.get("role", "user"),
            "org_id": payload.get("org_id"),
            "permissions": payload.get("permissions", [])
        }
        return await call_next(request)
