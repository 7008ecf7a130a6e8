from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone
from typing import Any

from packages.shared.schemas.order_v1 import UNKNOWN_STATUS, OrderStatusV1
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
    "ORDER_UPDATED": OrderStatusV1.IN_KITCHEN,
    "ORDER_READY": OrderStatusV1.READY,
    "ORDER_DELETED": OrderStatusV1.CANCELED,
}


def _strip_object_prefix(object_id: str | None) -> str | None:
    # Clover prefixes object ids with their type, e.g. "O:ABC123".
    if object_id and len(object_id) > 2 and object_id[1] == ":":
        return object_id[2:]
    return object_id


class CloverPosAdapter:
    provider = "clover"

    def __init__(self, config: ProviderConfig) -> None:
        self._config = config

    @classmethod
    def from_env(cls) -> "CloverPosAdapter":
        return cls(ProviderConfig.from_env("clover", default_base_url="https://api.clover.com/v3"))

    def build_payload(self, order: Order) -> dict[str, Any]:
        first, _, last = order.customer.name.partition(" ")
        customer: dict[str, Any] = {
            "firstName": first,
            "lastName": last,
            "phoneNumbers": [{"phoneNumber": order.customer.phone}],
        }
        if order.customer.email:
            customer["emailAddresses"] = [{"emailAddress": order.customer.email}]

        return {
            "state": "open",
            "title": order.id,
            "note": f"Online order {order.id}",
            "orderType": {"id": order.fulfillment.value.upper()},
            "customers": [customer],
            "total": order.totals.grand_total_cents,
            "lineItems": [
                {
                    "item": {"id": line.sku},
                    "name": line.name,
                    "price": line.unit_price_cents,
                    "unitQty": line.quantity * 1000,
                    "modifications": [{"modifier": {"id": m.id}} for m in line.modifiers],
                    "note": line.note,
                }
                for line in order.items
            ],
        }

    def _path(self, suffix: str = "") -> str:
        return f"/merchants/{self._config.account_id}/orders{suffix}"

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._config.api_key}"}

    def create_order(self, order: Order) -> PosSubmitResult:
        if self._config.dry_run:
            return PosSubmitResult(external_order_id=f"CLV-{order.id}")

        data = pos_request(
            self._config,
            "POST",
            self._path(),
            body=self.build_payload(order),
            headers=self._headers(),
        )
        object_id = as_str(data.get("id"))
        if object_id is None:
            raise PosUnavailableError(self.provider, f"response missing id: {data!r}")
        return PosSubmitResult(external_order_id=object_id)

    def update_order(self, external_order_id: str, patch: dict[str, Any]) -> None:
        if self._config.dry_run:
            return
        pos_request(
            self._config,
            "POST",
            self._path(f"/{external_order_id}"),
            body=patch,
            headers=self._headers(),
        )

    def parse_webhook(self, raw: dict[str, Any]) -> AdapterWebhookEvent:
        if not isinstance(raw, dict):
            return AdapterWebhookEvent.unrecognized(self.provider)

        event = AdapterWebhookEvent(
            provider=self.provider,
            provider_event_type=as_str(raw.get("type")),
            external_id=_strip_object_prefix(as_str(raw.get("objectId"))),
            occurred_at=as_str(raw.get("ts")),
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
                    "type": event_type,
                    "objectId": f"O:{external_id}",
                    "merchantId": self._config.account_id or "demo-merchant",
                    "ts": str(int(datetime.now(timezone.utc).timestamp() * 1000)),
                }
        raise ValueError(f"Clover has no webhook event for status {status.value!r}")
