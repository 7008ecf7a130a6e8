from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

from packages.shared.schemas.order_v1 import DeliveryAddressV1, OrderStatusV1
from services.api.app.services.http import ProviderHTTPError, ProviderTransportError, send_json
from services.api.app.services.webhooks import AdapterWebhookEvent

if TYPE_CHECKING:
    from services.api.app.services.order_state import Order
    from services.api.app.settings import ProviderConfig, RestaurantInfo


class CourierAdapterError(Exception):
    """Base class for courier adapter errors."""

    def __init__(self, provider: str, message: str, *, status: int | None = None) -> None:
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.status = status


class CourierRejectedError(CourierAdapterError):
    """The courier service refused the request (bad address, out of area, ...)."""


class CourierUnavailableError(CourierAdapterError):
    """The courier service could not be reached, timed out, or failed on its side."""


@dataclass(frozen=True, slots=True)
class DeliveryQuote:
    provider: str
    fee_cents: int
    eta_minutes: int
    quote_id: str


@dataclass(frozen=True, slots=True)
class DeliveryJob:
    job_id: str
    tracking_url: str | None = None


class CourierAdapter(Protocol):
    provider: str

    def quote_delivery(
        self,
        pickup: RestaurantInfo,
        dropoff: DeliveryAddressV1,
        *,
        order_value_cents: int | None = None,
    ) -> DeliveryQuote: ...

    def request_delivery(self, order: Order, restaurant: RestaurantInfo) -> DeliveryJob: ...

    def update_delivery(self, job_id: str, patch: dict[str, Any]) -> None: ...

    def parse_webhook(self, raw: dict[str, Any]) -> AdapterWebhookEvent: ...

    def map_to_order_status(self, event: AdapterWebhookEvent) -> OrderStatusV1 | str: ...

    def sample_webhook(self, status: OrderStatusV1, external_id: str) -> dict[str, Any]: ...


def format_dropoff(address: DeliveryAddressV1) -> str:
    parts = [address.line1, address.line2, address.city, address.state, address.postal_code]
    return ", ".join(p for p in parts if p)


def courier_request(
    config: ProviderConfig,
    method: str,
    path: str,
    *,
    body: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
) -> dict[str, Any]:
    """Call the courier API, translating transport failures into courier adapter errors."""

    try:
        return send_json(
            method,
            f"{config.base_url}{path}",
            body=body,
            headers=headers,
            timeout=config.timeout_seconds,
        )
    except ProviderHTTPError as e:
        if e.is_client_error:
            raise CourierRejectedError(config.provider, str(e), status=e.status) from e
        raise CourierUnavailableError(config.provider, str(e), status=e.status) from e
    except ProviderTransportError as e:
        raise CourierUnavailableError(config.provider, str(e)) from e
