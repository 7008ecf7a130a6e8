from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone
from typing import Any

from packages.shared.schemas.order_v1 import UNKNOWN_STATUS, DeliveryAddressV1, OrderStatusV1
from services.api.app.services.courier_base import (
    CourierRejectedError,
    CourierUnavailableError,
    DeliveryJob,
    DeliveryQuote,
    courier_request,
    format_dropoff,
)
from services.api.app.services.order_state import Order
from services.api.app.services.webhooks import AdapterWebhookEvent, as_driver, as_str
from services.api.app.settings import ProviderConfig, RestaurantInfo

_EVENT_STATUS: dict[str, OrderStatusV1] = {
    "delivery_created": OrderStatusV1.COURIER_REQUESTED,
    "dasher_confirmed": OrderStatusV1.DRIVER_EN_ROUTE,
    "dasher_enroute_to_pickup": OrderStatusV1.DRIVER_EN_ROUTE,
    "dasher_picked_up": OrderStatusV1.PICKED_UP,
    "delivery_delivered": OrderStatusV1.DELIVERED,
    "delivery_cancelled": OrderStatusV1.CANCELED,
}


def _is_duplicate(error: CourierRejectedError) -> bool:
    return error.status == 409 or "duplicate_delivery_id" in str(error)


class DoorDashCourierAdapter:
    """DoorDash Drive integration.

    The DoorDash ``external_delivery_id`` is our order id, so a repeated create for the
    same order is rejected by DoorDash as a duplicate rather than dispatching twice; the
    existing delivery is then read back and returned as the job.
    """

    provider = "doordash"

    def __init__(self, config: ProviderConfig) -> None:
        self._config = config

    @classmethod
    def from_env(cls) -> "DoorDashCourierAdapter":
        return cls(
            ProviderConfig.from_env(
                "doordash", default_base_url="https://openapi.doordash.com/drive/v2"
            )
        )

    def _headers(self) -> dict[str, str]:
        # Drive expects a JWT signed with the developer's signing secret; the token is
        # provisioned out of band and supplied as the API key.
        return {"Authorization": f"Bearer {self._config.api_key}"}

    def quote_delivery(
        self,
        pickup: RestaurantInfo,
        dropoff: DeliveryAddressV1,
        *,
        order_value_cents: int | None = None,
    ) -> DeliveryQuote:
        if self._config.dry_run:
            return DeliveryQuote(
                provider=self.provider,
                fee_cents=499,
                eta_minutes=15,
                quote_id=f"DD-QUOTE-{int(datetime.now(timezone.utc).timestamp())}",
            )

        data = courier_request(
            self._config,
            "POST",
            "/quotes",
            body={
                "external_delivery_id": f"QUOTE-{int(datetime.now(timezone.utc).timestamp())}",
                "pickup_address": pickup.address,
                "pickup_business_name": pickup.name,
                "pickup_phone_number": pickup.phone,
                "dropoff_address": format_dropoff(dropoff),
                "order_value": order_value_cents or 0,
            },
            headers=self._headers(),
        )
        fee = data.get("fee")
        if not isinstance(fee, int):
            raise CourierUnavailableError(self.provider, f"quote missing fee: {data!r}")
        return DeliveryQuote(
            provider=self.provider,
            fee_cents=fee,
            eta_minutes=int(data.get("estimated_pickup_time_minutes") or 15),
            quote_id=as_str(data.get("external_delivery_id")) or "",
        )

    def build_payload(self, order: Order, restaurant: RestaurantInfo) -> dict[str, Any]:
        address = order.delivery_address
        if address is None:
            raise CourierRejectedError(self.provider, "Delivery address required")

        ready_at = order.timestamps.get(OrderStatusV1.READY)
        return {
            "external_delivery_id": order.id,
            "pickup_address": restaurant.address,
            "pickup_business_name": restaurant.name,
            "pickup_phone_number": restaurant.phone,
            "pickup_instructions": "Call upon arrival",
            "dropoff_address": format_dropoff(address),
            "dropoff_business_name": order.customer.name,
            "dropoff_phone_number": order.customer.phone,
            "dropoff_instructions": address.instructions,
            "order_value": order.totals.grand_total_cents,
            "pickup_time": ready_at.isoformat() if ready_at else None,
        }

    def request_delivery(self, order: Order, restaurant: RestaurantInfo) -> DeliveryJob:
        payload = self.build_payload(order, restaurant)
        if self._config.dry_run:
            return DeliveryJob(
                job_id=f"DD-{order.id}",
                tracking_url=f"https://doordash.com/track/DD-{order.id}",
            )

        try:
            data = courier_request(
                self._config, "POST", "/deliveries", body=payload, headers=self._headers()
            )
        except CourierRejectedError as e:
            if not _is_duplicate(e):
                raise
            # An earlier attempt went through after we stopped waiting for it.
            data = courier_request(
                self._config, "GET", f"/deliveries/{order.id}", headers=self._headers()
            )
        job_id = as_str(data.get("external_delivery_id"))
        if job_id is None:
            raise CourierUnavailableError(self.provider, f"response missing delivery id: {data!r}")
        return DeliveryJob(job_id=job_id, tracking_url=as_str(data.get("tracking_url")))

    def update_delivery(self, job_id: str, patch: dict[str, Any]) -> None:
        if self._config.dry_run:
            return
        status = patch.get("status")
        if status == "canceled":
            courier_request(
                self._config, "PUT", f"/deliveries/{job_id}/cancel", headers=self._headers()
            )
            return
        if status == "ready":
            courier_request(
                self._config, "POST", f"/deliveries/{job_id}/ready", headers=self._headers()
            )
            return
        courier_request(
            self._config, "PATCH", f"/deliveries/{job_id}", body=patch, headers=self._headers()
        )

    def parse_webhook(self, raw: dict[str, Any]) -> AdapterWebhookEvent:
        if not isinstance(raw, dict):
            return AdapterWebhookEvent.unrecognized(self.provider)

        dasher = raw.get("dasher") if isinstance(raw.get("dasher"), dict) else {}
        event = AdapterWebhookEvent(
            provider=self.provider,
            provider_event_type=as_str(raw.get("event_name")) or as_str(raw.get("event_type")),
            external_id=as_str(raw.get("external_delivery_id")),
            occurred_at=as_str(raw.get("created_at")),
            driver=as_driver(
                dasher.get("name") or raw.get("dasher_name"),
                dasher.get("phone_number") or raw.get("dasher_phone_number_for_customer"),
                dasher.get("location") or raw.get("dasher_location"),
            ),
            raw=raw,
        )
        return replace(event, mapped_status=self.map_to_order_status(event))

    def map_to_order_status(self, event: AdapterWebhookEvent) -> OrderStatusV1 | str:
        event_type = (event.provider_event_type or "").lower()
        if event_type in _EVENT_STATUS:
            return _EVENT_STATUS[event_type]
        return UNKNOWN_STATUS

    def sample_webhook(self, status: OrderStatusV1, external_id: str) -> dict[str, Any]:
        for event_type, mapped in _EVENT_STATUS.items():
            if mapped == status:
                return {
                    "event_type": event_type,
                    "external_delivery_id": external_id,
                    "created_at": datetime.now(timezone.utc).isoformat(),
                    "dasher": {
                        "name": "Demo Dasher",
                        "phone_number": "+15555550100",
                        "location": {"lat": 41.7508, "lng": -88.1535},
                    },
                }
        raise ValueError(f"DoorDash has no webhook event for status {status.value!r}")

