"""Shared order event schema (v1).

The backend keeps an append-only event log per order. Clients can consume these events
to render an order timeline.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class OrderEventTypeV1(str, Enum):
    ORDER_PLACED = "ORDER_PLACED"
    STATUS_CHANGED = "STATUS_CHANGED"
    TRANSITION_DISCARDED = "TRANSITION_DISCARDED"
    POS_SUBMITTED = "POS_SUBMITTED"
    POS_SUBMIT_FAILED = "POS_SUBMIT_FAILED"
    POS_NOT_CONNECTED = "POS_NOT_CONNECTED"
    COURIER_REQUESTED = "COURIER_REQUESTED"
    COURIER_REQUEST_FAILED = "COURIER_REQUEST_FAILED"
    COURIER_DISPATCH_EXHAUSTED = "COURIER_DISPATCH_EXHAUSTED"
    WEBHOOK_RECEIVED = "WEBHOOK_RECEIVED"


class OrderEventV1(BaseModel):
    id: str
    order_id: str

    event_type: OrderEventTypeV1
    source: str
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: str
