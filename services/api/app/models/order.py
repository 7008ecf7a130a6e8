from __future__ import annotations

from decimal import Decimal

from pydantic import BaseModel, Field

from packages.shared.schemas.order_v1 import (
    CustomerV1,
    DeliveryAddressV1,
    FulfillmentV1,
    OrderSnapshotV1,
    OrderStatusV1,
)
from services.api.app.services.orchestrator import PlacementRequest
from services.api.app.services.pricing import CartLine, DiscountSpec, Modifier, TipSpec


class ModifierIn(BaseModel):
    id: str
    name: str
    price_cents: int = Field(0, ge=0)


class CartLineIn(BaseModel):
    sku: str
    name: str
    unit_price_cents: int = Field(..., ge=0)
    quantity: int = Field(..., ge=1)
    modifiers: list[ModifierIn] = Field(default_factory=list)
    note: str | None = None

    def to_cart_line(self) -> CartLine:
        return CartLine(
            sku=self.sku,
            name=self.name,
            unit_price_cents=self.unit_price_cents,
            quantity=self.quantity,
            modifiers=tuple(
                Modifier(id=m.id, name=m.name, price_cents=m.price_cents) for m in self.modifiers
            ),
            note=self.note,
        )


class TipIn(BaseModel):
    percent: Decimal | None = Field(None, ge=0)
    amount_cents: int | None = Field(None, ge=0)


class DiscountIn(BaseModel):
    percent: Decimal | None = Field(None, ge=0, le=100)
    amount_cents: int | None = Field(None, ge=0)
    code: str | None = None


class PlaceOrderRequest(BaseModel):
    fulfillment: FulfillmentV1
    customer: CustomerV1
    items: list[CartLineIn] = Field(..., min_length=1)
    delivery_address: DeliveryAddressV1 | None = None
    distance_miles: Decimal | None = Field(None, ge=0)
    tip: TipIn | None = None
    discount: DiscountIn | None = None
    pos_provider: str | None = None
    courier_provider: str | None = None

    def to_placement(self) -> PlacementRequest:
        return PlacementRequest(
            fulfillment=self.fulfillment,
            customer=self.customer,
            items=tuple(line.to_cart_line() for line in self.items),
            delivery_address=self.delivery_address,
            distance_miles=self.distance_miles,
            tip=TipSpec(percent=self.tip.percent, amount_cents=self.tip.amount_cents)
            if self.tip
            else None,
            discount=DiscountSpec(
                percent=self.discount.percent,
                amount_cents=self.discount.amount_cents,
                code=self.discount.code,
            )
            if self.discount
            else None,
            pos_provider=self.pos_provider,
            courier_provider=self.courier_provider,
        )


class PlaceOrderResponse(BaseModel):
    order_id: str
    order: OrderSnapshotV1


class StatusUpdateRequest(BaseModel):
    status: OrderStatusV1
    note: str | None = None


class CancelRequest(BaseModel):
    reason: str | None = None


class StatusUpdateResponse(BaseModel):
    result: str
    order: OrderSnapshotV1


class QuoteRequest(BaseModel):
    dropoff: DeliveryAddressV1
    provider: str | None = None
    order_value_cents: int | None = Field(None, ge=0)


class QuoteResponse(BaseModel):
    provider: str
    fee_cents: int
    eta_minutes: int
    quote_id: str


class WebhookAck(BaseModel):
    outcome: str
