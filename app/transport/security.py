# app/transport/security.py
"""
Security utilities for the relay API.

- Operator command API: ``Authorization: Bearer <ADMIN_TOKEN>``
- Gateway webhook:      ``X-Internal-Key: <GATEWAY_WEBHOOK_KEY>``
- Metrics / diagnostics: ``METRICS_TOKEN`` bearer, or internal network

All secret comparisons are constant-time.
"""
import hmac
import ipaddress
from functools import lru_cache

from fastapi import Request, HTTPException, status, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from app.config import settings
from app.infra.logging_config import get_logger
from app.infra.metrics import AppMetrics

logger = get_logger(__name__)

INTERNAL_KEY_HEADER = "X-Internal-Key"

# Security scheme for OpenAPI docs - shows "Authorize" button
bearer_scheme = HTTPBearer(
    scheme_name="Admin Token",
    description="Enter your admin token (without 'Bearer ' prefix)",
    auto_error=False,
)

metrics_bearer_scheme = HTTPBearer(
    scheme_name="Metrics Token",
    description="Enter your metrics token (without 'Bearer ' prefix)",
    auto_error=False,
)


def _unauthorized(detail: str = "Authentication required") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def _token_prefix(token: str) -> str:
    return token[:4] if len(token) >= 4 else "***"


async def require_admin_auth(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
):
    """
    Bearer authentication for the operator command API.

    Usage:
        @router.post("/t/{tenant_id}/sessions", dependencies=[Depends(require_admin_auth)])

    Client example:
        curl -H "Authorization: Bearer $ADMIN_TOKEN" http://host/t/acme/sessions
    """
    if not settings.admin_token:
        logger.critical("ADMIN_TOKEN not configured but admin endpoint accessed")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service unavailable"
        )

    if not credentials:
        logger.warning("Admin endpoint accessed without authorization header", extra={"path": request.url.path})
        raise _unauthorized()

    if not hmac.compare_digest(credentials.credentials, settings.admin_token):
        logger.warning(
            "Invalid admin token attempt",
            extra={"path": request.url.path, "token_prefix": _token_prefix(credentials.credentials)},
        )
        raise _unauthorized("Invalid credentials")


def verify_internal_key(request: Request) -> None:
    """
    Dependency for the gateway webhook: the gateway authenticates with the
    shared internal key in ``X-Internal-Key``.
    """
    expected = settings.gateway_webhook_key
    if not expected:
        logger.critical("GATEWAY_WEBHOOK_KEY not configured but gateway webhook called")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service unavailable"
        )

    provided = request.headers.get(INTERNAL_KEY_HEADER, "")
    if not provided or not hmac.compare_digest(provided.encode(), expected.encode()):
        AppMetrics.webhook_auth_failed()
        logger.warning(
            "Gateway webhook rejected: bad internal key",
            extra={"path": request.url.path, "client_ip": _get_client_ip(request)},
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid internal key"
        )


@lru_cache(maxsize=1)
def _get_internal_networks() -> list[ipaddress.IPv4Network | ipaddress.IPv6Network]:
    """Parse and cache internal network CIDRs from settings."""
    networks = []
    for cidr in settings.internal_networks.split(","):
        cidr = cidr.strip()
        if not cidr:
            continue
        try:
            networks.append(ipaddress.ip_network(cidr, strict=False))
        except ValueError as e:
            logger.warning(f"Invalid CIDR in INTERNAL_NETWORKS: {cidr} - {e}")
    return networks


def _get_client_ip(request: Request) -> str:
    """
    Real client IP. ``X-Forwarded-For`` / ``X-Real-IP`` are honoured only
    with TRUST_PROXY_HEADERS=true (i.e. behind a proxy that sets them).
    """
    client_ip = request.client.host if request.client else "unknown"

    if settings.trust_proxy_headers:
        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for:
            client_ip = forwarded_for.split(",")[0].strip()

        real_ip = request.headers.get("X-Real-IP")
        if real_ip and not forwarded_for:
            client_ip = real_ip.strip()

    return client_ip


def _is_internal_ip(ip_str: str) -> bool:
    try:
        ip = ipaddress.ip_address(ip_str)
    except ValueError:
        logger.warning(f"Invalid IP address format: {ip_str}")
        return False
    return any(ip in network for network in _get_internal_networks())


def require_internal_network(request: Request):
    """Only allow access from INTERNAL_NETWORKS (comma-separated CIDRs)."""
    client_ip = _get_client_ip(request)
    if _is_internal_ip(client_ip):
        return

    logger.warning(
        f"Access denied from non-internal IP: {client_ip}",
        extra={"client_ip": client_ip, "allowed_networks": settings.internal_networks}
    )
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail="Forbidden"
    )


def require_metrics_auth(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(metrics_bearer_scheme),
):
    """
    Dependency for /metrics and /health/detailed.

    1. If METRICS_TOKEN is set: require Bearer token authentication
    2. Otherwise: require internal network access
    """
    if settings.metrics_token:
        if not credentials:
            logger.warning("Metrics endpoint accessed without token")
            raise _unauthorized()

        if not hmac.compare_digest(credentials.credentials, settings.metrics_token):
            logger.warning(
                "Invalid metrics token attempt",
                extra={"token_prefix": _token_prefix(credentials.credentials)}
            )
            raise _unauthorized("Invalid credentials")
        return

    require_internal_network(request)


class SecurityHeaders:
    """OWASP recommended headers for a JSON API."""

    @staticmethod
    def add_security_headers(response):
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"
        response.headers["Permissions-Policy"] = "geolocation=(), microphone=(), camera=()"

        if "Cache-Control" not in response.headers:
            response.headers["Cache-Control"] = "no-store, no-cache, must-revalidate"

        # HSTS (only in production with HTTPS)
        if settings.is_production or settings.is_staging:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains; preload"

        response.headers["Cross-Origin-Opener-Policy"] = "same-origin"

        if "Server" in response.headers:
            del response.headers["Server"]

        return response
