from __future__ import annotations

import time
from collections.abc import Iterator

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse

from packages.shared.schemas.events import OrderEventV1
from packages.shared.schemas.order_v1 import OrderSnapshotV1
from services.api.app.db.deps import get_orchestrator
from services.api.app.models.order import (
    CancelRequest,
    PlaceOrderRequest,
    PlaceOrderResponse,
    StatusUpdateRequest,
    StatusUpdateResponse,
)
from services.api.app.services.notifications import Subscription
from services.api.app.services.order_state import TransitionResult, is_terminal_status
from services.api.app.services.orchestrator import (
    OrderNotFoundError,
    OrderOrchestrator,
    OrderValidationError,
    UnknownProviderError,
)

router = APIRouter()

KEEPALIVE_SECONDS = 15.0


def _raise_orchestrator_http_error(e: Exception) -> None:
    if isinstance(e, OrderNotFoundError):
        raise HTTPException(status_code=404, detail=str(e)) from e

    if isinstance(e, (OrderValidationError, UnknownProviderError)):
        raise HTTPException(status_code=422, detail=str(e)) from e

    raise HTTPException(status_code=500, detail="Internal Server Error") from e


@router.post("/v1/orders", response_model=PlaceOrderResponse)
def place_order(
    payload: PlaceOrderRequest,
    orchestrator: OrderOrchestrator = Depends(get_orchestrator),
) -> PlaceOrderResponse:
    try:
        order = orchestrator.place_order(payload.to_placement())
    except Exception as e:
        _raise_orchestrator_http_error(e)

    return PlaceOrderResponse(order_id=order.id, order=order.to_snapshot())


@router.get("/v1/orders/{order_id}", response_model=OrderSnapshotV1)
def get_order(
    order_id: str,
    orchestrator: OrderOrchestrator = Depends(get_orchestrator),
) -> OrderSnapshotV1:
    try:
        order = orchestrator.get_order(order_id)
    except Exception as e:
        _raise_orchestrator_http_error(e)

    return order.to_snapshot()


@router.get("/v1/orders/{order_id}/events", response_model=list[OrderEventV1])
def list_order_events(
    order_id: str,
    orchestrator: OrderOrchestrator = Depends(get_orchestrator),
) -> list[OrderEventV1]:
    try:
        return orchestrator.list_events(order_id)
    except Exception as e:
        _raise_orchestrator_http_error(e)


@router.post("/v1/orders/{order_id}/status", response_model=StatusUpdateResponse)
def update_order_status(
    order_id: str,
    payload: StatusUpdateRequest,
    orchestrator: OrderOrchestrator = Depends(get_orchestrator),
) -> StatusUpdateResponse:
    try:
        order, result = orchestrator.update_status(order_id, payload.status, note=payload.note)
    except Exception as e:
        _raise_orchestrator_http_error(e)

    return StatusUpdateResponse(result=result.value, order=order.to_snapshot())


@router.post("/v1/orders/{order_id}/cancel", response_model=StatusUpdateResponse)
def cancel_order(
    order_id: str,
    payload: CancelRequest | None = None,
    orchestrator: OrderOrchestrator = Depends(get_orchestrator),
) -> StatusUpdateResponse:
    reason = payload.reason if payload else None
    try:
        order, result = orchestrator.cancel_order(order_id, reason=reason)
    except Exception as e:
        _raise_orchestrator_http_error(e)

    if result == TransitionResult.TERMINAL:
        raise HTTPException(status_code=409, detail=f"Order is already {order.status.value}")

    return StatusUpdateResponse(result=result.value, order=order.to_snapshot())


def _sse_frames(subscription: Subscription, idle_timeout: float) -> Iterator[str]:
    try:
        last_update = time.monotonic()
        while True:
            snapshot = subscription.get(timeout=min(KEEPALIVE_SECONDS, idle_timeout))
            if snapshot is None:
                if time.monotonic() - last_update >= idle_timeout:
                    return
                yield ": keep-alive\n\n"
                continue

            last_update = time.monotonic()
            yield f"event: order\nid: {snapshot.revision}\ndata: {snapshot.model_dump_json()}\n\n"
            if is_terminal_status(snapshot.status, snapshot.fulfillment):
                return
    finally:
        subscription.close()


@router.get("/v1/orders/{order_id}/stream")
def stream_order(
    order_id: str,
    request: Request,
    orchestrator: OrderOrchestrator = Depends(get_orchestrator),
) -> StreamingResponse:
    # Subscribe before reading so no publish falls between the read and the subscription.
    subscription = orchestrator.notifier.subscribe(order_id)
    try:
        order = orchestrator.get_order(order_id)
    except Exception as e:
        subscription.close()
        _raise_orchestrator_http_error(e)

    subscription.offer(order.to_snapshot())
    idle_timeout = request.app.state.runtime.stream_idle_timeout_seconds
    return StreamingResponse(
        _sse_frames(subscription, idle_timeout),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
