from __future__ import annotations

import json
from typing import Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from starlette.concurrency import run_in_threadpool

from services.api.app.db.deps import get_orchestrator
from services.api.app.models.order import WebhookAck
from services.api.app.services.orchestrator import OrderOrchestrator, UnknownProviderError
from services.api.app.services.webhooks import WebhookPayloadError

router = APIRouter()

logger = structlog.get_logger(__name__)


def _raise_webhook_http_error(e: Exception) -> None:
    if isinstance(e, UnknownProviderError):
        raise HTTPException(status_code=404, detail=str(e)) from e

    if isinstance(e, WebhookPayloadError):
        raise HTTPException(status_code=400, detail=str(e)) from e

    raise HTTPException(status_code=500, detail="Internal Server Error") from e


async def _read_json(request: Request, provider: str) -> Any:
    body = await request.body()
    try:
        return json.loads(body)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        logger.warning("Unparseable webhook body", provider=provider, size=len(body))
        raise HTTPException(status_code=400, detail="Webhook body is not valid JSON") from e


@router.post("/v1/webhooks/pos/{provider}", response_model=WebhookAck)
async def pos_webhook(
    provider: str,
    request: Request,
    orchestrator: OrderOrchestrator = Depends(get_orchestrator),
) -> WebhookAck:
    raw = await _read_json(request, provider)
    try:
        # Courier dispatch may run inline, so keep blocking work off the event loop.
        outcome = await run_in_threadpool(orchestrator.apply_pos_webhook, provider, raw)
    except Exception as e:
        _raise_webhook_http_error(e)

    return WebhookAck(outcome=outcome.value)


@router.post("/v1/webhooks/courier/{provider}", response_model=WebhookAck)
async def courier_webhook(
    provider: str,
    request: Request,
    orchestrator: OrderOrchestrator = Depends(get_orchestrator),
) -> WebhookAck:
    raw = await _read_json(request, provider)
    try:
        outcome = await run_in_threadpool(orchestrator.apply_courier_webhook, provider, raw)
    except Exception as e:
        _raise_webhook_http_error(e)

    return WebhookAck(outcome=outcome.value)
