# app/transport/gateway_webhook.py
"""
Gateway webhook handler.

    POST /t/{tenant_id}/webhooks/gateway
    X-Internal-Key: <GATEWAY_WEBHOOK_KEY>

Body: one event object, or a JSON array of them. Every event gets a result
entry, in input order. The response is 200 unless at least one event
failed on infrastructure; then it is 500 so the gateway re-delivers the
batch (already applied events come back as duplicates).
"""
from __future__ import annotations

import json

from fastapi import Request
from fastapi.responses import JSONResponse

from app.core.engine.event_processor import EventOutcome, EventProcessor
from app.infra.logging_config import get_logger, LogContext
from app.transport.schemas import EventResultOut, WebhookOut

logger = get_logger(__name__)


async def gateway_webhook_handler(
    request: Request,
    tenant_id: str,
    processor: EventProcessor,
) -> JSONResponse:
    request_id = getattr(request.state, "request_id", None)
    log = LogContext(logger, tenant_id=tenant_id, request_id=request_id)

    raw_body = await request.body()
    try:
        payload = json.loads(raw_body or b"null")
    except (UnicodeDecodeError, json.JSONDecodeError):
        log.warning("Gateway webhook body is not JSON")
        return JSONResponse(status_code=400, content={"error": "invalid_json"})

    if isinstance(payload, dict):
        events = [payload]
    elif isinstance(payload, list):
        events = payload
    else:
        log.warning(f"Gateway webhook body has unexpected type: {type(payload).__name__}")
        return JSONResponse(status_code=400, content={"error": "expected an event object or a list of events"})

    results = await processor.apply_batch(tenant_id, events)

    failed = sum(1 for r in results if r.outcome == EventOutcome.FAILED)
    body = WebhookOut(
        status="retry" if failed else "ok",
        results=[EventResultOut(**r.to_dict()) for r in results],
    )
    if failed:
        log.error(f"Gateway webhook: {failed}/{len(results)} events failed, asking for re-delivery")
    else:
        log.debug(f"Gateway webhook: {len(results)} events processed")

    return JSONResponse(status_code=500 if failed else 200, content=body.model_dump())
