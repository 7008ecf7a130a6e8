from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone
from typing import Any

from packages.shared.schemas.order_v1 import (
    UNKNOWN_STATUS,
    DeliveryAddressV1,
    DriverV1,
    OrderStatusV1,
)
from services.api.app.services.courier_base import (
    CourierRejectedError,
    CourierUnavailableError,
    DeliveryJob,
    DeliveryQuote,
    courier_request,
    format_dropoff,
)
from services.api.app.services.order_state import Order
from services.api.app.services.webhooks import AdapterWebhookEvent, as_driver, as_str, dig
from services.api.app.settings import ProviderConfig, RestaurantInfo

_EVENT_STATUS: dict[str, OrderStatusV1] = {
    "delivery.created": OrderStatusV1.COURIER_REQUESTED,
    "delivery.assigned": OrderStatusV1.DRIVER_EN_ROUTE,
    "delivery.picked_up": OrderStatusV1.PICKED_UP,
    "delivery.delivered": OrderStatusV1.DELIVERED,
    "delivery.canceled": OrderStatusV1.CANCELED,
    "delivery.returned": OrderStatusV1.FAILED,
}

# ``event.delivery_status`` payloads carry the state in ``status`` instead.
_STATUS_FIELD: dict[str, OrderStatusV1] = {
    "pending": OrderStatusV1.COURIER_REQUESTED,
    "pickup": OrderStatusV1.DRIVER_EN_ROUTE,
    "pickup_complete": OrderStatusV1.PICKED_UP,
    "dropoff": OrderStatusV1.PICKED_UP,
    "delivered": OrderStatusV1.DELIVERED,
    "canceled": OrderStatusV1.CANCELED,
    "returned": OrderStatusV1.FAILED,
}


def _driver(raw: dict[str, Any]) -> DriverV1 | None:
    courier = raw.get("courier") or dig(raw, "data", "courier")
    if not isinstance(courier, dict):
        return None
    return as_driver(courier.get("name"), courier.get("phone_number"), courier.get("location"))


def _location(lat: float | None, lng: float | None) -> dict[str, float] | None:
    if lat is None or lng is None:
        return None
    return {"lat": lat, "lng": lng}


class UberCourierAdapter:
    provider = "uber"

    def __init__(self, config: ProviderConfig) -> None:
        self._config = config

    @classmethod
    def from_env(cls) -> "UberCourierAdapter":
        return cls(
            ProviderConfig.from_env("uber", default_base_url="https://api.uber.com/v1/customers")
        )

    def _path(self, suffix: str) -> str:
        return f"/{self._config.account_id}{suffix}"

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._config.api_key}"}

    def quote_delivery(
        self,
        pickup: RestaurantInfo,
        dropoff: DeliveryAddressV1,
        *,
        order_value_cents: int | None = None,
    ) -> DeliveryQuote:
        del order_value_cents

        if self._config.dry_run:
            return DeliveryQuote(
                provider=self.provider,
                fee_cents=599,
                eta_minutes=12,
                quote_id=f"UBER-QUOTE-{int(datetime.now(timezone.utc).timestamp())}",
            )

        data = courier_request(
            self._config,
            "POST",
            self._path("/delivery_quotes"),
            body={
                "pickup_address": pickup.address,
                "dropoff_address": format_dropoff(dropoff),
                "pickup_latitude": pickup.lat,
                "pickup_longitude": pickup.lng,
                "dropoff_latitude": dropoff.lat,
                "dropoff_longitude": dropoff.lng,
            },
            headers=self._headers(),
        )
        fee = data.get("fee")
        if not isinstance(fee, int):
            raise CourierUnavailableError(self.provider, f"quote missing fee: {data!r}")
        return DeliveryQuote(
            provider=self.provider,
            fee_cents=fee,
            eta_minutes=int(data.get("duration") or data.get("pickup_eta") or 15),
            quote_id=as_str(data.get("id")) or "",
        )

    def build_payload(self, order: Order, restaurant: RestaurantInfo) -> dict[str, Any]:
        address = order.delivery_address
        if address is None:
            raise CourierRejectedError(self.provider, "Delivery address required")

        return {
            "external_id": order.id,
            "pickup_name": restaurant.name,
            "pickup_phone_number": restaurant.phone,
            "pickup_address": restaurant.address,
            "pickup_location": _location(restaurant.lat, restaurant.lng),
            "pickup_notes": "Restaurant pickup",
            "dropoff_name": order.customer.name,
            "dropoff_phone_number": order.customer.phone,
            "dropoff_address": format_dropoff(address),
            "dropoff_location": _location(address.lat, address.lng),
            "dropoff_notes": address.instructions,
            "manifest_total_value": order.totals.subtotal_cents,
            "manifest_items": [
                {"name": line.name, "quantity": line.quantity, "size": "medium"}
                for line in order.items
            ],
        }

    def request_delivery(self, order: Order, restaurant: RestaurantInfo) -> DeliveryJob:
        payload = self.build_payload(order, restaurant)
        if self._config.dry_run:
            return DeliveryJob(
                job_id=f"UBER-{order.id}",
                tracking_url=f"https://uber.com/track/UBER-{order.id}",
            )

        data = courier_request(
            self._config, "POST", self._path("/deliveries"), body=payload, headers=self._headers()
        )
        job_id = as_str(data.get("id"))
        if job_id is None:
            raise CourierUnavailableError(self.provider, f"response missing delivery id: {data!r}")
        return DeliveryJob(job_id=job_id, tracking_url=as_str(data.get("tracking_url")))

    def update_delivery(self, job_id: str, patch: dict[str, Any]) -> None:
        if self._config.dry_run:
            return
        if patch.get("status") == "canceled":
            courier_request(
                self._config,
                "POST",
                self._path(f"/deliveries/{job_id}/cancel"),
                headers=self._headers(),
            )
            return
        if patch.get("status") == "ready":
            body = {"pickup_ready_dt": patch.get("ready_at")}
        else:
            body = patch
        courier_request(
            self._config,
            "POST",
            self._path(f"/deliveries/{job_id}"),
            body=body,
            headers=self._headers(),
        )

    def parse_webhook(self, raw: dict[str, Any]) -> AdapterWebhookEvent:
        if not isinstance(raw, dict):
            return AdapterWebhookEvent.unrecognized(self.provider)

        event = AdapterWebhookEvent(
            provider=self.provider,
            provider_event_type=as_str(raw.get("event_type")) or as_str(raw.get("kind")),
            external_id=as_str(raw.get("delivery_id")) or as_str(dig(raw, "data", "id")),
            occurred_at=as_str(raw.get("created")),
            driver=_driver(raw),
            raw=raw,
        )
        return replace(event, mapped_status=self.map_to_order_status(event))

    def map_to_order_status(self, event: AdapterWebhookEvent) -> OrderStatusV1 | str:
        event_type = (event.provider_event_type or "").lower()
        if event_type in _EVENT_STATUS:
            return _EVENT_STATUS[event_type]

        if event_type == "event.delivery_status":
            status = (as_str(event.raw.get("status")) or "").lower()
            if status in _STATUS_FIELD:
                return _STATUS_FIELD[status]
        return UNKNOWN_STATUS

    def sample_webhook(self, status: OrderStatusV1, external_id: str) -> dict[str, Any]:
        for event_type, mapped in _EVENT_STATUS.items():
            if mapped == status:
                return {
                    "event_type": event_type,
                    "delivery_id": external_id,
                    "created": datetime.now(timezone.utc).isoformat(),
                    "courier": {
                        "name": "Demo Courier",
                        "phone_number": "+15555550101",
                        "location": {"lat": 41.7508, "lng": -88.1535},
                    },
                }
        raise ValueError(f"Uber has no webhook event for status {status.value!r}")
