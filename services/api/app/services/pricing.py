"""Order pricing.

All money is integer cents. Rates are percentages held as ``Decimal`` and every rounding
step is half-up on the cent boundary, so recomputing the same input always yields the
same totals.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING, Any

from packages.shared.schemas.order_v1 import FulfillmentV1

if TYPE_CHECKING:
    from services.api.app.settings import PricingSettings


class PricingError(Exception):
    """Base class for pricing errors."""


class DeliveryOutOfRangeError(PricingError):
    def __init__(self, distance_miles: Decimal, max_distance_miles: Decimal) -> None:
        super().__init__(
            f"Delivery distance {distance_miles} mi is outside the delivery area "
            f"(max {max_distance_miles} mi)"
        )
        self.distance_miles = distance_miles
        self.max_distance_miles = max_distance_miles


@dataclass(frozen=True, slots=True)
class Modifier:
    id: str
    name: str
    price_cents: int = 0


@dataclass(frozen=True, slots=True)
class CartLine:
    sku: str
    name: str
    unit_price_cents: int
    quantity: int
    modifiers: tuple[Modifier, ...] = ()
    note: str | None = None

    @property
    def line_total_cents(self) -> int:
        return (self.unit_price_cents + sum(m.price_cents for m in self.modifiers)) * self.quantity

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["modifiers"] = [asdict(m) for m in self.modifiers]
        data["line_total_cents"] = self.line_total_cents
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CartLine":
        return cls(
            sku=data["sku"],
            name=data["name"],
            unit_price_cents=int(data["unit_price_cents"]),
            quantity=int(data["quantity"]),
            modifiers=tuple(
                Modifier(id=m["id"], name=m["name"], price_cents=int(m.get("price_cents", 0)))
                for m in data.get("modifiers") or []
            ),
            note=data.get("note"),
        )


@dataclass(frozen=True, slots=True)
class TipSpec:
    percent: Decimal | None = None
    amount_cents: int | None = None


@dataclass(frozen=True, slots=True)
class DiscountSpec:
    percent: Decimal | None = None
    amount_cents: int | None = None
    code: str | None = None


@dataclass(frozen=True, slots=True)
class DeliveryFeeTier:
    max_distance_miles: Decimal
    fee_cents: int


@dataclass(frozen=True, slots=True)
class DeliveryFeeSchedule:
    """Lookup table for delivery fees.

    Tiers are matched by distance, first tier whose ``max_distance_miles`` covers the
    distance wins. ``flat_fee_cents`` applies when the caller has no distance, and a
    subtotal at or above ``free_over_subtotal_cents`` waives the fee entirely.
    """

    tiers: tuple[DeliveryFeeTier, ...] = ()
    flat_fee_cents: int = 0
    free_over_subtotal_cents: int | None = None

    def fee_for(self, *, subtotal_cents: int, distance_miles: Decimal | None) -> int:
        threshold = self.free_over_subtotal_cents
        if threshold is not None and subtotal_cents >= threshold:
            return 0

        if distance_miles is None or not self.tiers:
            return self.flat_fee_cents

        ordered = sorted(self.tiers, key=lambda t: t.max_distance_miles)
        for tier in ordered:
            if distance_miles <= tier.max_distance_miles:
                return tier.fee_cents

        raise DeliveryOutOfRangeError(distance_miles, ordered[-1].max_distance_miles)


@dataclass(frozen=True, slots=True)
class Totals:
    subtotal_cents: int = 0
    tax_cents: int = 0
    service_fee_cents: int = 0
    delivery_fee_cents: int | None = None
    discount_cents: int | None = None
    tip_cents: int = 0
    grand_total_cents: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Totals":
        return cls(**data)


def percent_of(base_cents: int, percent: Decimal) -> int:
    """``round(base * percent / 100)`` with half-up rounding to the cent."""

    amount = Decimal(base_cents) * Decimal(percent) / Decimal(100)
    return int(amount.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def _tip_cents(subtotal_cents: int, tip: TipSpec | None) -> int:
    if tip is None:
        return 0
    if tip.amount_cents is not None:
        return tip.amount_cents
    if tip.percent is not None:
        return percent_of(subtotal_cents, tip.percent)
    return 0


def _discount_cents(subtotal_cents: int, discount: DiscountSpec | None) -> int | None:
    if discount is None:
        return None
    if discount.amount_cents is not None:
        amount = discount.amount_cents
    elif discount.percent is not None:
        amount = percent_of(subtotal_cents, discount.percent)
    else:
        return None
    return min(amount, subtotal_cents)


def compute_totals(
    items: list[CartLine] | tuple[CartLine, ...],
    fulfillment: FulfillmentV1,
    *,
    settings: PricingSettings,
    distance_miles: Decimal | None = None,
    tip: TipSpec | None = None,
    discount: DiscountSpec | None = None,
) -> Totals:
    """Compute the totals breakdown for a cart.

    Inputs are assumed validated (non-negative prices, quantity >= 1). An empty cart
    prices to zero rather than raising.
    """

    if not items:
        zero_fee = 0 if fulfillment == FulfillmentV1.DELIVERY else None
        return Totals(delivery_fee_cents=zero_fee)

    subtotal = sum(line.line_total_cents for line in items)
    tax = percent_of(subtotal, settings.tax_rate_percent)
    service_fee = percent_of(subtotal, settings.service_fee_percent)

    delivery_fee: int | None = None
    if fulfillment == FulfillmentV1.DELIVERY:
        delivery_fee = settings.delivery_fees.fee_for(
            subtotal_cents=subtotal, distance_miles=distance_miles
        )

    discount_amount = _discount_cents(subtotal, discount)
    tip_amount = _tip_cents(subtotal, tip)

    grand_total = (
        subtotal + tax + service_fee + (delivery_fee or 0) + tip_amount - (discount_amount or 0)
    )

    return Totals(
        subtotal_cents=subtotal,
        tax_cents=tax,
        service_fee_cents=service_fee,
        delivery_fee_cents=delivery_fee,
        discount_cents=discount_amount,
        tip_cents=tip_amount,
        grand_total_cents=grand_total,
    )
