# app/transport/gateway_client.py
"""
Typed client for the messaging gateway's command API.

Endpoints:
    POST /api/sessions                      register a session
    POST /api/sessions/{id}/qr              start pairing (may return a QR right away)
    POST /api/sessions/{id}/disconnect      stop the live connection
    GET  /api/sessions/{id}                 status snapshot
    POST /api/send                          send a message
    GET  /health

Every call carries ``Authorization: Bearer <gateway_api_token>``,
``X-Tenant-ID`` and an ``X-Request-ID`` correlation id, and is bounded by
the gateway session's timeout.

Error classification (decided here, never downstream):
- Connection error / timeout      → GatewayUnavailable
- 5xx / undecodable body          → GatewayUnavailable
- 402, 429, budget/quota code     → BudgetExhausted
- Any other non-2xx               → GatewayRejected

HTTP session lifecycle:
- Uses the shared gateway session from app.infra.http_client.
- Call close_all_sessions() during application shutdown.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable

import aiohttp
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from app.config import settings
from app.core.engine.domain import ContentType, MessageStatus, SessionStatus, new_id, utcnow
from app.core.engine.errors import (
    BudgetExhausted,
    GatewayError,
    GatewayRejected,
    GatewayUnavailable,
)
from app.core.engine.state_machine import GatewaySnapshot
from app.infra.http_client import get_gateway_session
from app.infra.logging_config import get_logger, mask_phone
from app.infra.metrics import AppMetrics

logger = get_logger(__name__)

BUDGET_ERROR_CODES = frozenset({"budget_exhausted", "insufficient_credits", "quota_exceeded"})


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ConnectResult:
    status: SessionStatus
    qr_code: str | None = None
    qr_expires_at: datetime | None = None


@dataclass(frozen=True)
class SendResult:
    external_message_id: str
    status: MessageStatus


# ---------------------------------------------------------------------------
# Wire models
# ---------------------------------------------------------------------------

class _Reply(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class _ConnectReply(_Reply):
    status: str | None = None
    qr_code: str | None = None
    qr_expires_at: datetime | None = None
    expires_in: int | None = None


class _SessionReply(_Reply):
    status: str | None = None
    phone_number: str | None = Field(default=None, validation_alias=AliasChoices("phone_number", "phone"))
    qr_code: str | None = None
    qr_expires_at: datetime | None = None
    error: str | None = Field(default=None, validation_alias=AliasChoices("error", "last_error"))


class _SendReply(_Reply):
    external_message_id: str | None = Field(
        default=None, validation_alias=AliasChoices("external_message_id", "messageId", "message_id", "id"),
    )
    status: str | None = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

async def _safe_response_json(resp: aiohttp.ClientResponse) -> dict | None:
    """Parse JSON from response, returning None if body is not a JSON object."""
    if resp.status == 204:
        return {}
    try:
        data = await resp.json(content_type=None)
    except Exception:
        logger.warning(f"Gateway returned non-JSON body: status={resp.status}")
        return None
    return data if isinstance(data, dict) else None


def _retry_after(value: str | None) -> int | None:
    try:
        return int(value) if value else None
    except ValueError:
        return None


def classify_failure(
    operation: str,
    status: int,
    body: dict | None,
    retry_after: str | None = None,
) -> GatewayError:
    """Map a non-2xx gateway response onto the typed error it stands for."""
    body = body or {}
    error = body.get("error")
    if isinstance(error, dict):
        code = error.get("code")
        message = error.get("message")
    else:
        code = body.get("code") or body.get("error_code")
        message = error or body.get("message")
    code = str(code or "").lower()
    detail = f"HTTP {status}: {message or 'no detail'}"

    if status in (402, 429) or code in BUDGET_ERROR_CODES:
        return BudgetExhausted(operation, detail, http_status=status, retry_after=_retry_after(retry_after))
    if status >= 500:
        return GatewayUnavailable(operation, detail, http_status=status)
    return GatewayRejected(operation, detail, http_status=status)


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class GatewayClient:
    def __init__(
        self,
        base_url: str | None = None,
        api_token: str | None = None,
        *,
        session_factory: Callable[[], aiohttp.ClientSession] = get_gateway_session,
    ) -> None:
        self.base_url = (base_url or settings.gateway_base_url).rstrip("/")
        self.api_token = api_token if api_token is not None else (settings.gateway_api_token or "")
        self._session_factory = session_factory

    def _headers(self, tenant_id: str | None) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.api_token}",
            "Content-Type": "application/json",
            "X-Request-ID": new_id(),
        }
        if tenant_id:
            headers["X-Tenant-ID"] = tenant_id
        return headers

    def _failed(self, exc: GatewayError) -> GatewayError:
        AppMetrics.gateway_error(exc.operation, exc.code)
        log = logger.warning if isinstance(exc, GatewayRejected) else logger.error
        log(f"{exc.detail}", extra={"error_code": exc.code})
        return exc

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        *,
        tenant_id: str | None = None,
        payload: dict | None = None,
        accept: tuple[int, ...] = (),
    ) -> dict:
        url = f"{self.base_url}{path}"
        with AppMetrics.track_gateway_call(operation):
            try:
                session = self._session_factory()
                async with session.request(
                    method, url, json=payload, headers=self._headers(tenant_id),
                ) as resp:
                    body = await _safe_response_json(resp)
                    if 200 <= resp.status < 300 or resp.status in accept:
                        if body is None:
                            raise self._failed(GatewayUnavailable(
                                operation, "undecodable response body", http_status=resp.status,
                            ))
                        return body
                    raise self._failed(classify_failure(
                        operation, resp.status, body, resp.headers.get("Retry-After"),
                    ))
            except GatewayError:
                raise
            except asyncio.TimeoutError as exc:
                raise self._failed(GatewayUnavailable(operation, "timed out")) from exc
            except aiohttp.ClientError as exc:
                raise self._failed(GatewayUnavailable(operation, type(exc).__name__)) from exc

    @staticmethod
    def _parse(operation: str, model: type[_Reply], body: dict) -> Any:
        try:
            return model.model_validate(body)
        except ValidationError as exc:
            AppMetrics.gateway_error(operation, GatewayUnavailable.code)
            raise GatewayUnavailable(operation, f"unexpected response: {exc.error_count()} invalid fields") from exc

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def register_session(self, tenant_id: str, session_id: str, display_name: str) -> None:
        # 409: the gateway already knows the session
        await self._request(
            "register_session",
            "POST",
            "/api/sessions",
            tenant_id=tenant_id,
            payload={"session_id": session_id, "tenant_id": tenant_id, "session_name": display_name},
            accept=(409,),
        )

    async def connect(self, tenant_id: str, session_id: str) -> ConnectResult:
        body = await self._request(
            "connect", "POST", f"/api/sessions/{session_id}/qr", tenant_id=tenant_id,
        )
        reply: _ConnectReply = self._parse("connect", _ConnectReply, body)
        expires_at = reply.qr_expires_at
        if reply.qr_code and expires_at is None and reply.expires_in:
            expires_at = utcnow() + timedelta(seconds=reply.expires_in)
        return ConnectResult(
            status=SessionStatus.from_gateway(reply.status or "waiting_qr"),
            qr_code=reply.qr_code or None,
            qr_expires_at=expires_at,
        )

    async def disconnect(self, tenant_id: str, session_id: str) -> None:
        await self._request(
            "disconnect", "POST", f"/api/sessions/{session_id}/disconnect", tenant_id=tenant_id,
        )

    async def get_session(self, tenant_id: str, session_id: str) -> GatewaySnapshot:
        body = await self._request(
            "get_session", "GET", f"/api/sessions/{session_id}", tenant_id=tenant_id,
        )
        reply: _SessionReply = self._parse("get_session", _SessionReply, body)
        return GatewaySnapshot(
            status=SessionStatus.from_gateway(reply.status),
            phone_number=reply.phone_number or None,
            qr_code=reply.qr_code or None,
            qr_expires_at=reply.qr_expires_at,
            error=reply.error,
        )

    async def send_message(
        self,
        tenant_id: str,
        session_id: str,
        to: str,
        content_type: ContentType,
        content: str,
        media_url: str | None = None,
    ) -> SendResult:
        payload: dict[str, Any] = {
            "session_id": session_id,
            "to": to,
            "type": content_type.value,
            "message": content,
        }
        if media_url:
            payload["media_url"] = media_url

        body = await self._request("send_message", "POST", "/api/send", tenant_id=tenant_id, payload=payload)
        reply: _SendReply = self._parse("send_message", _SendReply, body)
        if not reply.external_message_id:
            AppMetrics.gateway_error("send_message", GatewayUnavailable.code)
            raise GatewayUnavailable("send_message", "response carried no message id")

        status = MessageStatus.QUEUED if (reply.status or "").lower() in ("queued", "pending") else MessageStatus.SENT
        logger.info(
            f"Gateway accepted message: to={mask_phone(to)}, "
            f"external_id={reply.external_message_id[:24]}, status={status.value}",
            extra={"tenant_id": tenant_id, "session_id": session_id},
        )
        return SendResult(reply.external_message_id, status)

    async def health(self) -> bool:
        await self._request("health", "GET", "/health")
        return True
