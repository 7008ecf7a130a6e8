from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

from packages.shared.schemas.order_v1 import OrderStatusV1
from services.api.app.services.http import ProviderHTTPError, ProviderTransportError, send_json
from services.api.app.services.webhooks import AdapterWebhookEvent

if TYPE_CHECKING:
    from services.api.app.services.order_state import Order
    from services.api.app.settings import ProviderConfig


class PosAdapterError(Exception):
    """Base class for POS adapter errors."""

    def __init__(self, provider: str, message: str) -> None:
        super().__init__(f"{provider}: {message}")
        self.provider = provider


class PosRejectedError(PosAdapterError):
    """The POS refused the order. Retrying the same payload will not help."""


class PosUnavailableError(PosAdapterError):
    """The POS could not be reached, timed out, or failed on its side."""


@dataclass(frozen=True, slots=True)
class PosSubmitResult:
    external_order_id: str


class PosAdapter(Protocol):
    provider: str

    def create_order(self, order: Order) -> PosSubmitResult: ...

    def update_order(self, external_order_id: str, patch: dict[str, Any]) -> None: ...

    def parse_webhook(self, raw: dict[str, Any]) -> AdapterWebhookEvent: ...

    def map_to_order_status(self, event: AdapterWebhookEvent) -> OrderStatusV1 | str: ...

    def sample_webhook(self, status: OrderStatusV1, external_id: str) -> dict[str, Any]: ...


def pos_request(
    config: ProviderConfig,
    method: str,
    path: str,
    *,
    body: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
) -> dict[str, Any]:
    """Call the provider API, translating transport failures into POS adapter errors."""

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
            raise PosRejectedError(config.provider, str(e)) from e
        raise PosUnavailableError(config.provider, str(e)) from e
    except ProviderTransportError as e:
        raise PosUnavailableError(config.provider, str(e)) from e
