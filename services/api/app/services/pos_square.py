from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from packages.shared.schemas.order_v1 import UNKNOWN_STATUS, FulfillmentV1, OrderStatusV1
from services.api.app.services.order_state import Order
from services.api.app.services.pos_base import (
    PosSubmitResult,
    PosUnavailableError,
    pos_request,
)
from services.api.app.services.webhooks import AdapterWebhookEvent, as_str, dig
from services.api.app.settings import ProviderConfig

SQUARE_VERSION = "2024-01-18"

# Square reports progress through the order state on ``order.updated`` events.
_STATE_STATUS: dict[str, OrderStatusV1] = {
    "OPEN": OrderStatusV1.ACCEPTED,
    "IN_PROGRESS": OrderStatusV1.IN_KITCHEN,
    "RESERVED": OrderStatusV1.IN_KITCHEN,
    "PREPARED": OrderStatusV1.READY,
    "COMPLETED": OrderStatusV1.READY,
    "CANCELED": OrderStatusV1.CANCELED,
}

_ORDER_EVENTS = {"order.created", "order.updated", "order.fulfillment.updated"}


class SquarePosAdapter:
    """Square Orders API integration.

    Our order id is sent as the Square ``idempotency_key``, so a retried create returns
    the order Square already made instead of a duplicate.
    """

    provider = "square"

    def __init__(self, config: ProviderConfig) -> None:
        self._config = config

    @classmethod
    def from_env(cls) -> "SquarePosAdapter":
        return cls(
            ProviderConfig.from_env("square", default_base_url="https://connect.squareup.com/v2")
        )

    def build_payload(self, order: Order) -> dict[str, Any]:
        recipient = {
            "display_name": order.customer.name,
            "phone_number": order.customer.phone,
            "email_address": order.customer.email,
        }

        fulfillment: dict[str, Any] = {
            "type": order.fulfillment.value.upper(),
            "state": "PROPOSED",
        }
        address = order.delivery_address
        if order.fulfillment == FulfillmentV1.DELIVERY and address is not None:
            fulfillment["delivery_details"] = {
                "recipient": {
                    **recipient,
                    "address": {
                        "address_line_1": address.line1,
                        "address_line_2": address.line2,
                        "locality": address.city,
                        "administrative_district_level_1": address.state,
                        "postal_code": address.postal_code,
                    },
                },
                "schedule_type": "ASAP",
                "note": address.instructions,
            }
        else:
            fulfillment["pickup_details"] = {"recipient": recipient, "schedule_type": "ASAP"}

        return {
            "idempotency_key": order.id,
            "order": {
                "location_id": self._config.account_id,
                "reference_id": order.id,
                "line_items": [
                    {
                        "quantity": str(line.quantity),
                        "catalog_object_id": line.sku,
                        "name": line.name,
                        "base_price_money": {"amount": line.unit_price_cents, "currency": "USD"},
                        "modifiers": [
                            {
                                "catalog_object_id": m.id,
                                "name": m.name,
                                "base_price_money": {"amount": m.price_cents, "currency": "USD"},
                            }
                            for m in line.modifiers
                        ],
                        "note": line.note,
                    }
                    for line in order.items
                ],
                "fulfillments": [fulfillment],
            },
        }

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._config.api_key}",
            "Square-Version": SQUARE_VERSION,
        }

    def create_order(self, order: Order) -> PosSubmitResult:
        if self._config.dry_run:
            return PosSubmitResult(external_order_id=f"SQ-{order.id}")

        data = pos_request(
            self._config,
            "POST",
            "/orders",
            body=self.build_payload(order),
            headers=self._headers(),
        )
        order_id = as_str(dig(data, "order", "id"))
        if order_id is None:
            raise PosUnavailableError(self.provider, f"response missing order.id: {data!r}")
        return PosSubmitResult(external_order_id=order_id)

    def update_order(self, external_order_id: str, patch: dict[str, Any]) -> None:
        if self._config.dry_run:
            return
        pos_request(
            self._config,
            "PUT",
            f"/orders/{external_order_id}",
            body={"idempotency_key": uuid4().hex, "order": patch},
            headers=self._headers(),
        )

    def parse_webhook(self, raw: dict[str, Any]) -> AdapterWebhookEvent:
        if not isinstance(raw, dict):
            return AdapterWebhookEvent.unrecognized(self.provider)

        event = AdapterWebhookEvent(
            provider=self.provider,
            provider_event_type=as_str(raw.get("type")),
            external_id=as_str(dig(raw, "data", "id"))
            or as_str(dig(raw, "data", "object", "order_updated", "order_id")),
            occurred_at=as_str(raw.get("created_at")),
            raw=raw,
        )
        return replace(event, mapped_status=self.map_to_order_status(event))

    def map_to_order_status(self, event: AdapterWebhookEvent) -> OrderStatusV1 | str:
        if (event.provider_event_type or "").lower() not in _ORDER_EVENTS:
            return UNKNOWN_STATUS

        state = as_str(dig(event.raw, "data", "object", "order_updated", "state"))
        if state is None:
            state = as_str(dig(event.raw, "data", "object", "order_fulfillment_updated", "state"))
        if state is not None and state.upper() in _STATE_STATUS:
            return _STATE_STATUS[state.upper()]
        return UNKNOWN_STATUS

    def sample_webhook(self, status: OrderStatusV1, external_id: str) -> dict[str, Any]:
        for state, mapped in _STATE_STATUS.items():
            if mapped == status:
                return {
                    "merchant_id": self._config.account_id or "demo-merchant",
                    "type": "order.updated",
                    "event_id": uuid4().hex,
                    "created_at": datetime.now(timezone.utc).isoformat(),
                    "data": {
                        "type": "order_updated",
                        "id": external_id,
                        "object": {
                            "order_updated": {
                                "order_id": external_id,
                                "state": state,
                            }
                        },
                    },
                }
        raise ValueError(f"Square has no webhook event for status {status.value!r}")
