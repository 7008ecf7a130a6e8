from __future__ import annotations

import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

from services.api.app.services.pricing import DeliveryFeeSchedule, DeliveryFeeTier


def _parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "y", "on"}


def _parse_percent(name: str, default: str) -> Decimal:
    raw = os.getenv(name, default).strip()
    try:
        value = Decimal(raw)
    except InvalidOperation as e:
        raise ValueError(f"{name}={raw!r} is not a number") from e
    if value < 0:
        raise ValueError(f"{name}={raw!r} must not be negative")
    return value


def _parse_optional_int(name: str) -> int | None:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError as e:
        raise ValueError(f"{name}={raw!r} is not an integer") from e


def parse_fee_tiers(raw: str) -> tuple[DeliveryFeeTier, ...]:
    """Parse ``"2:299,5:499,10:799"`` into distance tiers (miles:cents)."""

    tiers: list[DeliveryFeeTier] = []
    for chunk in raw.split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        distance, sep, fee = chunk.partition(":")
        if not sep:
            raise ValueError(f"Bad delivery fee tier {chunk!r}. Expected <miles>:<cents>.")
        try:
            tiers.append(
                DeliveryFeeTier(max_distance_miles=Decimal(distance), fee_cents=int(fee))
            )
        except (InvalidOperation, ValueError) as e:
            raise ValueError(f"Bad delivery fee tier {chunk!r}") from e
    return tuple(tiers)


@dataclass(frozen=True, slots=True)
class PricingSettings:
    tax_rate_percent: Decimal
    service_fee_percent: Decimal
    delivery_fees: DeliveryFeeSchedule

    @classmethod
    def from_env(cls) -> "PricingSettings":
        return cls(
            tax_rate_percent=_parse_percent("COURANT_TAX_RATE_PERCENT", "8.875"),
            service_fee_percent=_parse_percent("COURANT_SERVICE_FEE_PERCENT", "1"),
            delivery_fees=DeliveryFeeSchedule(
                tiers=parse_fee_tiers(
                    os.getenv("COURANT_DELIVERY_FEE_TIERS", "2:299,5:499,10:799")
                ),
                flat_fee_cents=int(os.getenv("COURANT_DELIVERY_FLAT_FEE_CENTS", "499")),
                free_over_subtotal_cents=_parse_optional_int("COURANT_FREE_DELIVERY_OVER_CENTS"),
            ),
        )


@dataclass(frozen=True, slots=True)
class RestaurantInfo:
    name: str
    phone: str
    address: str
    lat: float | None
    lng: float | None

    @classmethod
    def from_env(cls) -> "RestaurantInfo":
        lat = (os.getenv("COURANT_RESTAURANT_LAT") or "").strip()
        lng = (os.getenv("COURANT_RESTAURANT_LNG") or "").strip()
        return cls(
            name=os.getenv("COURANT_RESTAURANT_NAME", "Fresh Market"),
            phone=os.getenv("COURANT_RESTAURANT_PHONE", "+16305551234"),
            address=os.getenv("COURANT_RESTAURANT_ADDRESS", "123 Main St, Naperville, IL 60540"),
            lat=float(lat) if lat else None,
            lng=float(lng) if lng else None,
        )


@dataclass(frozen=True, slots=True)
class ProviderConfig:
    """Credentials and transport settings for one POS or courier provider."""

    provider: str
    base_url: str
    api_key: str
    account_id: str
    dry_run: bool
    timeout_seconds: float

    @classmethod
    def from_env(cls, provider: str, *, default_base_url: str) -> "ProviderConfig":
        prefix = f"COURANT_{provider.upper()}"
        return cls(
            provider=provider,
            base_url=os.getenv(f"{prefix}_API_URL", default_base_url).rstrip("/"),
            api_key=(os.getenv(f"{prefix}_API_KEY") or "").strip(),
            account_id=(os.getenv(f"{prefix}_ACCOUNT_ID") or "").strip(),
            dry_run=_parse_bool(os.getenv(f"{prefix}_DRY_RUN"), default=True),
            timeout_seconds=float(os.getenv("COURANT_HTTP_TIMEOUT_SECONDS", "8")),
        )


@dataclass(frozen=True, slots=True)
class RuntimeSettings:
    default_pos_provider: str
    default_courier_provider: str
    order_store: str
    scheduler: str
    demo_progression: bool
    demo_step_seconds: float
    stream_idle_timeout_seconds: float

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            default_pos_provider=os.getenv("COURANT_DEFAULT_POS", "toast").strip().lower(),
            default_courier_provider=os.getenv("COURANT_DEFAULT_COURIER", "doordash")
            .strip()
            .lower(),
            order_store=os.getenv("COURANT_ORDER_STORE", "sql").strip().lower(),
            scheduler=os.getenv("COURANT_SCHEDULER", "thread").strip().lower(),
            demo_progression=_parse_bool(os.getenv("COURANT_DEMO_PROGRESSION"), default=False),
            demo_step_seconds=float(os.getenv("COURANT_DEMO_STEP_SECONDS", "8")),
            stream_idle_timeout_seconds=float(
                os.getenv("COURANT_STREAM_IDLE_TIMEOUT_SECONDS", "300")
            ),
        )
