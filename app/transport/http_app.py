# app/transport/http_app.py
"""
HTTP application for the session relay backend.

Access layers:
1. Gateway webhook: shared internal key (X-Internal-Key)
2. Operator command API: admin bearer token
3. Monitoring: metrics token or internal network
4. No information leakage in production
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from fastapi import FastAPI, HTTPException, Request, Depends
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

from app.config import settings
from app.core.engine.errors import BudgetExhausted, MessageNotRecorded, RelayError
from app.core.engine.event_processor import EventProcessor
from app.core.engine.outbound import OutboundDispatcher
from app.core.engine.use_cases import SessionService
from app.infra.db_async import close_pool, init_pool
from app.infra.health_checks_async import AsyncGatewayHealthCheck, get_async_health_checker
from app.infra.http_client import close_all_sessions
from app.infra.keyed_lock import KeyedLock
from app.infra.logging_config import setup_logging, get_logger
from app.infra.metrics import get_metrics_collector
from app.infra.pg_conversation_store_async import AsyncPostgresConversationStore
from app.infra.pg_session_store_async import AsyncPostgresSessionStore
from app.infra.schema_validator import validate_schema_version
from app.transport.gateway_client import GatewayClient
from app.transport.gateway_webhook import gateway_webhook_handler
from app.transport.middleware import (
    RequestIDMiddleware,
    RequestLoggingMiddleware,
    ErrorHandlingMiddleware,
    SecurityHeadersMiddleware,
)
from app.transport.schemas import (
    QrCodeOut,
    RegisterSessionIn,
    SendMessageIn,
    SendMessageOut,
    SessionOut,
)
from app.transport.security import (
    require_admin_auth,
    require_metrics_auth,
    verify_internal_key,
)

# Initialize logging first
setup_logging(
    level=settings.log_level,
    use_json=settings.is_production
)

logger = get_logger(__name__)


# ============================================================================
# DEPENDENCIES
# ============================================================================

def get_event_processor(request: Request) -> EventProcessor:
    return request.app.state.event_processor


def get_session_service(request: Request) -> SessionService:
    return request.app.state.session_service


def get_outbound_dispatcher(request: Request) -> OutboundDispatcher:
    return request.app.state.outbound


# ============================================================================
# LIFESPAN
# ============================================================================

@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    """Application lifecycle: startup and shutdown"""

    # STARTUP
    logger.info(f"Starting application: env={settings.app_env}")

    await init_pool()
    logger.info("Database pool initialized")

    if settings.is_production:
        missing = settings.validate_required_for_production()
        if missing:
            logger.critical(f"Missing required production settings: {missing}")
            raise RuntimeError(f"Missing production config: {missing}")

        if not settings.admin_token or len(settings.admin_token) < 32:
            logger.critical("ADMIN_TOKEN must be at least 32 characters in production")
            raise RuntimeError("Weak ADMIN_TOKEN")

        if settings.log_level.upper() == "DEBUG":
            logger.critical("LOG_LEVEL=DEBUG is not allowed in production")
            raise RuntimeError("LOG_LEVEL=DEBUG in production")

    # Validate schema version (does NOT run migrations)
    # Migrations should be run separately: python -m app.infra.migrate
    try:
        schema_result = await validate_schema_version()
        logger.info(
            f"Schema validated: {schema_result['current_version']}",
            extra=schema_result
        )
    except Exception:
        logger.critical(
            "Schema validation failed. Run migrations first: python -m app.infra.migrate",
            exc_info=True
        )
        raise

    sessions = AsyncPostgresSessionStore()
    conversations = AsyncPostgresConversationStore()
    gateway = GatewayClient()
    # One lock table for events and commands, so both serialize per session
    locks = KeyedLock()

    fastapi_app.state.event_processor = EventProcessor(
        sessions=sessions, conversations=conversations, locks=locks,
    )
    fastapi_app.state.session_service = SessionService(
        sessions=sessions, gateway=gateway, locks=locks,
    )
    fastapi_app.state.outbound = OutboundDispatcher(
        sessions=sessions, conversations=conversations, gateway=gateway,
    )

    health_checker = get_async_health_checker()
    if not any(check.name == "gateway" for check in health_checker.checks):
        health_checker.add(AsyncGatewayHealthCheck(gateway.health))

    logger.info(
        f"Gateway: {settings.gateway_base_url} "
        f"(timeout={settings.gateway_timeout_seconds}s, qr_ttl={settings.qr_ttl_seconds}s)"
    )
    logger.info("Application startup complete")

    yield

    # SHUTDOWN
    logger.info("Shutting down application")
    await close_all_sessions()
    await close_pool()
    logger.info("Application shutdown complete")


# ============================================================================
# CREATE APP
# ============================================================================

app = FastAPI(
    title="Session Relay",
    description="Multi-tenant messaging session relay backend",
    version="1.0.0",
    lifespan=lifespan,
    # Security: Completely disable docs in production (None, not conditional URL)
    docs_url=None if settings.is_production else "/docs",
    redoc_url=None if settings.is_production else "/redoc",
    openapi_url=None if settings.is_production else "/openapi.json",
)

# The gateway calls server-to-server; CORS only matters for browser operators
if settings.is_production or settings.is_staging:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins if settings.allowed_origins != ["*"] else [],
        allow_credentials=False,
        allow_methods=["GET", "POST"],
        allow_headers=["Content-Type", "Authorization"],
    )
else:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(ErrorHandlingMiddleware)
app.add_middleware(RequestLoggingMiddleware, enabled=settings.enable_request_logging)
app.add_middleware(RequestIDMiddleware)


# ============================================================================
# EXCEPTION HANDLERS
# ============================================================================

@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle HTTP exceptions with appropriate logging"""
    if exc.status_code >= 500:
        logger.error(f"Server error: {exc.detail}", extra={"status_code": exc.status_code})

    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
        headers=exc.headers,
    )


@app.exception_handler(RelayError)
async def relay_error_handler(request: Request, exc: RelayError):
    """Map domain errors onto their HTTP status"""
    if exc.status_code >= 500:
        logger.error(f"{exc.code}: {exc.detail}", extra={"status_code": exc.status_code})
    else:
        logger.info(f"{exc.code}: {exc.detail}", extra={"status_code": exc.status_code})

    headers = None
    if isinstance(exc, BudgetExhausted) and exc.retry_after:
        headers = {"Retry-After": str(exc.retry_after)}

    content = {"error": exc.code, "detail": exc.detail}
    if isinstance(exc, MessageNotRecorded):
        # The gateway already accepted this message
        content["external_message_id"] = exc.external_message_id

    return JSONResponse(status_code=exc.status_code, content=content, headers=headers)


# ============================================================================
# PUBLIC ENDPOINTS (No authentication required)
# ============================================================================

@app.get("/health")
def health():
    """
    Basic health check - PUBLIC endpoint.
    Used by load balancers, monitoring, etc.
    """
    return {"status": "healthy"}


@app.get("/ready")
async def readiness():
    """Readiness probe: critical checks only (database)."""
    health_checker = get_async_health_checker()
    result = await health_checker.run_checks(include_non_critical=False)

    if result["status"] == "unhealthy":
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy"}  # Minimal info
        )

    return {"status": "healthy"}


# ============================================================================
# GATEWAY WEBHOOK (Internal key)
# ============================================================================

@app.post("/t/{tenant_id}/webhooks/gateway", dependencies=[Depends(verify_internal_key)])
async def webhook_gateway(
    tenant_id: str,
    request: Request,
    processor: EventProcessor = Depends(get_event_processor),
):
    """
    Gateway event channel.

    - One event object or a JSON array of events
    - Idempotent: re-delivered events are reported as duplicates
    - 500 when any event failed, so the gateway re-delivers
    """
    return await gateway_webhook_handler(request, tenant_id, processor)


# ============================================================================
# MONITORING ENDPOINTS (Internal network or METRICS_TOKEN)
# ============================================================================

@app.get("/health/detailed", dependencies=[Depends(require_metrics_auth)])
async def detailed_health():
    """
    Detailed health check - INTERNAL/METRICS only.
    Includes gateway reachability and session counts.
    """
    health_checker = get_async_health_checker()
    return await health_checker.run_checks(include_non_critical=True)


@app.get("/metrics", dependencies=[Depends(require_metrics_auth)])
def metrics():
    """Metrics endpoint - INTERNAL/METRICS only."""
    if not settings.enable_metrics:
        raise HTTPException(status_code=404, detail="Not found")
    collector = get_metrics_collector()
    return collector.get_metrics()


# ============================================================================
# OPERATOR COMMAND API (Admin token)
# ============================================================================

@app.post(
    "/t/{tenant_id}/sessions",
    status_code=201,
    response_model=SessionOut,
    dependencies=[Depends(require_admin_auth)],
)
async def register_session(
    tenant_id: str,
    payload: RegisterSessionIn,
    service: SessionService = Depends(get_session_service),
):
    session = await service.register_session(tenant_id, payload.display_name, payload.session_id)
    return SessionOut.from_session(session)


@app.get(
    "/t/{tenant_id}/sessions",
    response_model=list[SessionOut],
    dependencies=[Depends(require_admin_auth)],
)
async def list_sessions(tenant_id: str, service: SessionService = Depends(get_session_service)):
    return [SessionOut.from_session(s) for s in await service.list_sessions(tenant_id)]


@app.get(
    "/t/{tenant_id}/sessions/{session_id}",
    response_model=SessionOut,
    dependencies=[Depends(require_admin_auth)],
)
async def get_session(
    tenant_id: str,
    session_id: str,
    service: SessionService = Depends(get_session_service),
):
    return SessionOut.from_session(await service.get_session(tenant_id, session_id))


@app.post(
    "/t/{tenant_id}/sessions/{session_id}/connect",
    response_model=SessionOut,
    dependencies=[Depends(require_admin_auth)],
)
async def connect_session(
    tenant_id: str,
    session_id: str,
    service: SessionService = Depends(get_session_service),
):
    """Start pairing. The QR code arrives in the response or later via session.qr_updated."""
    return SessionOut.from_session(await service.connect(tenant_id, session_id))


@app.post(
    "/t/{tenant_id}/sessions/{session_id}/disconnect",
    response_model=SessionOut,
    dependencies=[Depends(require_admin_auth)],
)
async def disconnect_session(
    tenant_id: str,
    session_id: str,
    service: SessionService = Depends(get_session_service),
):
    return SessionOut.from_session(await service.disconnect(tenant_id, session_id))


@app.post(
    "/t/{tenant_id}/sessions/{session_id}/refresh",
    response_model=SessionOut,
    dependencies=[Depends(require_admin_auth)],
)
async def refresh_session(
    tenant_id: str,
    session_id: str,
    service: SessionService = Depends(get_session_service),
):
    """Reconcile the stored status with the gateway's view."""
    return SessionOut.from_session(await service.refresh_status(tenant_id, session_id))


@app.get(
    "/t/{tenant_id}/sessions/{session_id}/qr",
    response_model=QrCodeOut,
    dependencies=[Depends(require_admin_auth)],
)
async def get_qr_code(
    tenant_id: str,
    session_id: str,
    service: SessionService = Depends(get_session_service),
):
    session = await service.get_qr_code(tenant_id, session_id)
    return QrCodeOut(session_id=session.id, qr_code=session.qr_code, qr_expires_at=session.qr_expires_at)


@app.post(
    "/t/{tenant_id}/sessions/{session_id}/messages",
    response_model=SendMessageOut,
    dependencies=[Depends(require_admin_auth)],
)
async def send_message(
    tenant_id: str,
    session_id: str,
    payload: SendMessageIn,
    dispatcher: OutboundDispatcher = Depends(get_outbound_dispatcher),
):
    external_id = await dispatcher.send(
        tenant_id,
        session_id,
        payload.to,
        payload.content_type,
        payload.content,
        payload.media_url,
    )
    return SendMessageOut(external_message_id=external_id)


# ============================================================================
# CATCH-ALL (Return 404 for unknown routes)
# ============================================================================

@app.api_route("/{path:path}", methods=["GET", "POST", "PUT", "DELETE", "PATCH"])
async def catch_all(path: str):
    """
    Catch-all route for undefined endpoints.
    Returns generic 404 without revealing information.
    """
    logger.warning(f"404 - Unknown route accessed: {path}")
    raise HTTPException(status_code=404, detail="Not found")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.transport.http_app:app",
        host="0.0.0.0",
        port=8099,
        reload=not settings.is_production,
        log_level=settings.log_level.lower(),
        access_log=not settings.is_production,  # Disable in prod (use middleware logging)
        server_header=False,
        date_header=False,
    )
