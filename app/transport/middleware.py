# app/transport/middleware.py
import time
import uuid
from typing import Callable
from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp
from app.infra.logging_config import get_logger, LogContext
from app.transport.security import SecurityHeaders

logger = get_logger(__name__)

GATEWAY_WEBHOOK_SUFFIX = "/webhooks/gateway"


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Add unique request ID to each request for tracing"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log all incoming requests and responses"""

    def __init__(self, app: ASGIApp, enabled: bool = True):
        super().__init__(app)
        self.enabled = enabled

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if not self.enabled:
            return await call_next(request)

        request_id = getattr(request.state, "request_id", "unknown")
        tenant_id = request.path_params.get("tenant_id") if request.path_params else None
        start_time = time.perf_counter()

        log_ctx = LogContext(logger, tenant_id=tenant_id, request_id=request_id)
        log_ctx.debug(f"Request started: {request.method} {request.url.path}")

        try:
            response = await call_next(request)
        except Exception as exc:
            duration_ms = (time.perf_counter() - start_time) * 1000
            log_ctx.error(
                f"Request failed: {request.method} {request.url.path} "
                f"error={exc.__class__.__name__} duration={duration_ms:.2f}ms",
                extra={"error_type": exc.__class__.__name__, "duration_ms": duration_ms},
                exc_info=True
            )
            raise

        duration_ms = (time.perf_counter() - start_time) * 1000
        log_ctx.info(
            f"Request completed: {request.method} {request.url.path} "
            f"status={response.status_code} duration={duration_ms:.2f}ms",
            extra={
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "duration_ms": duration_ms,
            }
        )
        return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        response = await call_next(request)
        return SecurityHeaders.add_security_headers(response)


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Catch and format unhandled exceptions"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        try:
            return await call_next(request)
        except Exception as exc:
            request_id = getattr(request.state, "request_id", "unknown")

            logger.error(
                f"Unhandled exception: {exc.__class__.__name__}: {exc}",
                extra={"request_id": request_id},
                exc_info=True
            )

            # The gateway re-delivers on any non-2xx; make sure it gets one
            if request.url.path.endswith(GATEWAY_WEBHOOK_SUFFIX):
                return JSONResponse(
                    status_code=500,
                    content={"status": "error", "retry": True, "request_id": request_id},
                )

            return JSONResponse(
                status_code=500,
                content={
                    "error": "internal_error",
                    "detail": "Internal server error",
                    "request_id": request_id,
                }
            )
