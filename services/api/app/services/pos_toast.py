from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone
from typing import Any

from packages.shared.schemas.order_v1 import UNKNOWN_STATUS, FulfillmentV1, OrderStatusV1
from services.api.app.services.order_state import Order
from services.api.app.services.pos_base import (
    PosSubmitResult,
    PosUnavailableError,
    pos_request,
)
from services.api.app.services.webhooks import AdapterWebhookEvent, as_str
from services.api.app.settings import ProviderConfig

_EVENT_STATUS: dict[str, OrderStatusV1] = {
    "ORDER_CREATED": OrderStatusV1.ACCEPTED,
    "ORDER_MODIFIED": OrderStatusV1.IN_KITCHEN,
    "ORDER_FIRED": OrderStatusV1.IN_KITCHEN,
    "ORDER_READY": OrderStatusV1.READY,
    "ORDER_COMPLETED": OrderStatusV1.DELIVERED,
    "ORDER_VOIDED": OrderStatusV1.CANCELED,
}


class ToastPosAdapter:
    """Toast Orders API integration.

    In dry-run mode no request leaves the process and the Toast guid is derived from our
    order id, which keeps repeated submissions of the same order idempotent.
    """

    provider = "toast"

    def __init__(self, config: ProviderConfig) -> None:
        self._config = config

    @classmethod
    def from_env(cls) -> "ToastPosAdapter":
        return cls(
            ProviderConfig.from_env("toast", default_base_url="https://api.toasttab.com/orders/v2")
        )

    def build_payload(self, order: Order) -> dict[str, Any]:
        customer = order.customer
        first, _, last = customer.name.partition(" ")
        payload: dict[str, Any] = {
            "externalId": order.id,
            "diningOption": {"behavior": order.fulfillment.value.upper()},
            "checks": [
                {
                    "displayNumber": order.id,
                    "customer": {
                        "firstName": first,
                        "lastName": last,
                        "phone": customer.phone,
                        "email": customer.email,
                    },
                    "selections": [
                        {
                            "itemId": line.sku,
                            "displayName": line.name,
                            "quantity": line.quantity,
                            "price": line.unit_price_cents / 100,
                            "modifiers": [
                                {"modifierId": m.id, "displayName": m.name} for m in line.modifiers
                            ],
                            "specialRequest": line.note,
                        }
                        for line in order.items
                    ],
                    "totalAmount": order.totals.grand_total_cents / 100,
                }
            ],
        }

        address = order.delivery_address
        if order.fulfillment == FulfillmentV1.DELIVERY and address is not None:
            payload["deliveryInfo"] = {
                "address1": address.line1,
                "address2": address.line2,
                "city": address.city,
                "state": address.state,
                "zipCode": address.postal_code,
                "latitude": address.lat,
                "longitude": address.lng,
                "notes": address.instructions,
            }
        return payload

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._config.api_key}",
            "Toast-Restaurant-External-ID": self._config.account_id,
        }

    def create_order(self, order: Order) -> PosSubmitResult:
        if self._config.dry_run:
            return PosSubmitResult(external_order_id=f"TOAST-{order.id}")

        data = pos_request(
            self._config,
            "POST",
            "/orders",
            body=self.build_payload(order),
            headers=self._headers(),
        )
        guid = as_str(data.get("guid"))
        if guid is None:
            raise PosUnavailableError(self.provider, f"response missing guid: {data!r}")
        return PosSubmitResult(external_order_id=guid)

    def update_order(self, external_order_id: str, patch: dict[str, Any]) -> None:
        if self._config.dry_run:
            return
        pos_request(
            self._config,
            "PATCH",
            f"/orders/{external_order_id}",
            body=patch,
            headers=self._headers(),
        )

    def parse_webhook(self, raw: dict[str, Any]) -> AdapterWebhookEvent:
        if not isinstance(raw, dict):
            return AdapterWebhookEvent.unrecognized(self.provider)

        event = AdapterWebhookEvent(
            provider=self.provider,
            provider_event_type=as_str(raw.get("eventType")),
            external_id=as_str(raw.get("guid")) or as_str(raw.get("externalId")),
            occurred_at=as_str(raw.get("timestamp")) or as_str(raw.get("businessDate")),
            raw=raw,
        )
        return replace(event, mapped_status=self.map_to_order_status(event))

    def map_to_order_status(self, event: AdapterWebhookEvent) -> OrderStatusV1 | str:
        event_type = (event.provider_event_type or "").upper()
        if event_type in _EVENT_STATUS:
            return _EVENT_STATUS[event_type]
        return UNKNOWN_STATUS

    def sample_webhook(self, status: OrderStatusV1, external_id: str) -> dict[str, Any]:
        for event_type, mapped in _EVENT_STATUS.items():
            if mapped == status:
                return {
                    "eventType": event_type,
                    "guid": external_id,
                    "restaurantGuid": self._config.account_id or "demo-restaurant",
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                }
        raise ValueError(f"Toast has no webhook event for status {status.value!r}")
