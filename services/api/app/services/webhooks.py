from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from packages.shared.schemas.order_v1 import (
    UNKNOWN_STATUS,
    DriverLocationV1,
    DriverV1,
    OrderStatusV1,
)


class WebhookPayloadError(Exception):
    """The raw webhook body is not a JSON object and cannot be routed."""


@dataclass(frozen=True, slots=True)
class AdapterWebhookEvent:
    provider: str
    provider_event_type: str | None
    external_id: str | None
    mapped_status: OrderStatusV1 | str = UNKNOWN_STATUS
    occurred_at: str | None = None
    driver: DriverV1 | None = None
    raw: dict[str, Any] = field(default_factory=dict, compare=False)

    @classmethod
    def unrecognized(cls, provider: str) -> "AdapterWebhookEvent":
        return cls(provider=provider, provider_event_type=None, external_id=None)

    @property
    def is_unknown(self) -> bool:
        return not isinstance(self.mapped_status, OrderStatusV1)


def dig(payload: Any, *path: str) -> Any:
    """Walk nested dicts, returning None as soon as a step is missing or not a dict."""

    current = payload
    for key in path:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def as_str(value: Any) -> str | None:
    if value is None or isinstance(value, (dict, list)):
        return None
    text = str(value).strip()
    return text or None


def as_location(value: Any) -> DriverLocationV1 | None:
    if not isinstance(value, dict):
        return None
    try:
        lat = float(value.get("lat", value.get("latitude")))
        lng = float(value.get("lng", value.get("longitude")))
    except (TypeError, ValueError):
        return None
    return DriverLocationV1(lat=lat, lng=lng)


def as_driver(name: Any, phone: Any, location: Any) -> DriverV1 | None:
    """Normalized driver details, or None when the payload carries none."""

    driver = DriverV1(name=as_str(name), phone=as_str(phone), location=as_location(location))
    if driver == DriverV1():
        return None
    return driver
