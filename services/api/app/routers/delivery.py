from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from services.api.app.db.deps import get_orchestrator
from services.api.app.models.order import QuoteRequest, QuoteResponse
from services.api.app.services.courier_base import CourierAdapterError, CourierRejectedError
from services.api.app.services.orchestrator import OrderOrchestrator, UnknownProviderError

router = APIRouter()


def _raise_courier_http_error(e: Exception) -> None:
    if isinstance(e, UnknownProviderError):
        raise HTTPException(status_code=404, detail=str(e)) from e

    if isinstance(e, CourierRejectedError):
        raise HTTPException(status_code=422, detail=str(e)) from e

    if isinstance(e, CourierAdapterError):
        raise HTTPException(status_code=502, detail=str(e)) from e

    raise HTTPException(status_code=500, detail="Internal Server Error") from e


@router.post("/v1/delivery/quote", response_model=QuoteResponse)
def quote_delivery(
    payload: QuoteRequest,
    orchestrator: OrderOrchestrator = Depends(get_orchestrator),
) -> QuoteResponse:
    try:
        quote = orchestrator.quote_delivery(
            payload.dropoff,
            provider=payload.provider,
            order_value_cents=payload.order_value_cents,
        )
    except Exception as e:
        _raise_courier_http_error(e)

    return QuoteResponse(
        provider=quote.provider,
        fee_cents=quote.fee_cents,
        eta_minutes=quote.eta_minutes,
        quote_id=quote.quote_id,
    )
