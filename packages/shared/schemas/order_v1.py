"""Shared order status schema (v1).

Persisted status values and the per-track ordinal tables are part of the public contract.
The storefront status tracker and any other client should render from these tables, never
from the lexical order of the status strings.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class FulfillmentV1(str, Enum):
    PICKUP = "pickup"
    DELIVERY = "delivery"


class OrderStatusV1(str, Enum):
    CREATED = "created"
    ACCEPTED = "accepted"
    IN_KITCHEN = "in_kitchen"
    READY = "ready"
    COURIER_REQUESTED = "courier_requested"
    DRIVER_EN_ROUTE = "driver_en_route"
    PICKED_UP = "picked_up"
    DELIVERED = "delivered"

    REJECTED = "rejected"
    CANCELED = "canceled"
    FAILED = "failed"


# Sentinel returned by adapters for events they cannot classify. Never persisted.
UNKNOWN_STATUS = "unknown"

EXCEPTION_STATUSES: frozenset[OrderStatusV1] = frozenset(
    {OrderStatusV1.REJECTED, OrderStatusV1.CANCELED, OrderStatusV1.FAILED}
)

# New statuses must be inserted here with an explicit ordinal.
PICKUP_TRACK: dict[OrderStatusV1, int] = {
    OrderStatusV1.CREATED: 0,
    OrderStatusV1.ACCEPTED: 10,
    OrderStatusV1.IN_KITCHEN: 20,
    OrderStatusV1.READY: 30,
}

DELIVERY_TRACK: dict[OrderStatusV1, int] = {
    OrderStatusV1.CREATED: 0,
    OrderStatusV1.ACCEPTED: 10,
    OrderStatusV1.IN_KITCHEN: 20,
    OrderStatusV1.READY: 30,
    OrderStatusV1.COURIER_REQUESTED: 40,
    OrderStatusV1.DRIVER_EN_ROUTE: 50,
    OrderStatusV1.PICKED_UP: 60,
    OrderStatusV1.DELIVERED: 70,
}

TRACKS: dict[FulfillmentV1, dict[OrderStatusV1, int]] = {
    FulfillmentV1.PICKUP: PICKUP_TRACK,
    FulfillmentV1.DELIVERY: DELIVERY_TRACK,
}

TRACK_TERMINALS: dict[FulfillmentV1, OrderStatusV1] = {
    FulfillmentV1.PICKUP: OrderStatusV1.READY,
    FulfillmentV1.DELIVERY: OrderStatusV1.DELIVERED,
}


def parse_status(value: Any) -> OrderStatusV1 | None:
    """Return the status for a raw value, or None for anything outside the enum."""

    if isinstance(value, OrderStatusV1):
        return value
    try:
        return OrderStatusV1(str(value).strip().lower())
    except ValueError:
        return None


class CustomerV1(BaseModel):
    name: str
    phone: str
    email: str | None = None


class DeliveryAddressV1(BaseModel):
    line1: str
    line2: str | None = None
    city: str | None = None
    state: str | None = None
    postal_code: str | None = None
    lat: float | None = None
    lng: float | None = None
    instructions: str | None = None


class ModifierV1(BaseModel):
    id: str
    name: str
    price_cents: int = 0


class CartLineV1(BaseModel):
    sku: str
    name: str
    unit_price_cents: int
    quantity: int
    modifiers: list[ModifierV1] = Field(default_factory=list)
    note: str | None = None
    line_total_cents: int


class TotalsV1(BaseModel):
    subtotal_cents: int
    tax_cents: int
    service_fee_cents: int
    delivery_fee_cents: int | None = None
    discount_cents: int | None = None
    tip_cents: int
    grand_total_cents: int


class DriverLocationV1(BaseModel):
    lat: float
    lng: float


class DriverV1(BaseModel):
    """Courier-reported driver details. Tracking data, merged as updates arrive."""

    name: str | None = None
    phone: str | None = None
    location: DriverLocationV1 | None = None


class OrderSnapshotV1(BaseModel):
    """Full current state of an order, as streamed to subscribers.

    Consumers must treat every snapshot as the whole state, never as a diff.
    """

    version: str = "1"

    id: str
    revision: int
    fulfillment: FulfillmentV1
    status: OrderStatusV1

    customer: CustomerV1
    delivery_address: DeliveryAddressV1 | None = None
    items: list[CartLineV1]
    totals: TotalsV1

    pos_provider: str | None = None
    pos_order_id: str | None = None
    pos_sync: str

    courier_provider: str | None = None
    courier_job_id: str | None = None
    courier_tracking_url: str | None = None
    courier_dispatch: str
    driver: DriverV1 | None = None

    timestamps: dict[str, str] = Field(default_factory=dict)
    placed_at: str
    eta: str | None = None
    notes: str | None = None
