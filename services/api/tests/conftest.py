from __future__ import annotations

import threading
import time
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from packages.shared.schemas.order_v1 import CustomerV1, DeliveryAddressV1, FulfillmentV1
from services.api.app.services.courier_base import CourierUnavailableError, DeliveryJob
from services.api.app.services.courier_doordash import DoorDashCourierAdapter
from services.api.app.services.courier_uber import UberCourierAdapter
from services.api.app.services.notifications import NotificationChannel
from services.api.app.services.orchestrator import OrderOrchestrator, PlacementRequest
from services.api.app.services.pos_base import (
    PosRejectedError,
    PosSubmitResult,
    PosUnavailableError,
)
from services.api.app.services.pos_clover import CloverPosAdapter
from services.api.app.services.pos_square import SquarePosAdapter
from services.api.app.services.pos_toast import ToastPosAdapter
from services.api.app.services.pricing import CartLine, DeliveryFeeSchedule, DeliveryFeeTier
from services.api.app.services.scheduler import ManualScheduler
from services.api.app.services.store import InMemoryOrderStore
from services.api.app.settings import PricingSettings, ProviderConfig, RestaurantInfo


def dry_run_config(provider: str) -> ProviderConfig:
    return ProviderConfig(
        provider=provider,
        base_url=f"https://{provider}.invalid",
        api_key="test-key",
        account_id="acct-1",
        dry_run=True,
        timeout_seconds=1.0,
    )


class FlakyToastAdapter(ToastPosAdapter):
    """Dry-run Toast that fails the first ``failures`` submissions."""

    def __init__(self, failures: int = 0, reject: bool = False) -> None:
        super().__init__(dry_run_config("toast"))
        self.failures = failures
        self.reject = reject
        self.error: Exception = PosUnavailableError(self.provider, "connection refused")
        self.calls = 0
        self.updates: list[tuple[str, dict]] = []
        self.update_error: Exception | None = None

    def create_order(self, order) -> PosSubmitResult:
        self.calls += 1
        if self.reject:
            raise PosRejectedError(self.provider, "restaurant is closed")
        if self.failures > 0:
            self.failures -= 1
            raise self.error
        return super().create_order(order)

    def update_order(self, external_order_id: str, patch: dict) -> None:
        self.updates.append((external_order_id, patch))
        if self.update_error is not None:
            raise self.update_error


class CountingDoorDashAdapter(DoorDashCourierAdapter):
    """Dry-run DoorDash that counts delivery requests and can fail or stall them."""

    def __init__(self, failures: int = 0, delay_seconds: float = 0.0) -> None:
        super().__init__(dry_run_config("doordash"))
        self.failures = failures
        self.delay_seconds = delay_seconds
        self.error: Exception = CourierUnavailableError(self.provider, "gateway timeout")
        self._lock = threading.Lock()
        self.requests: list[str] = []
        self.updates: list[tuple[str, dict]] = []
        self.update_error: Exception | None = None

    def request_delivery(self, order, restaurant) -> DeliveryJob:
        with self._lock:
            self.requests.append(order.id)
            fail = self.failures > 0
            if fail:
                self.failures -= 1
        if self.delay_seconds:
            time.sleep(self.delay_seconds)
        if fail:
            raise self.error
        return super().request_delivery(order, restaurant)

    def update_delivery(self, job_id: str, patch: dict) -> None:
        self.updates.append((job_id, patch))
        if self.update_error is not None:
            raise self.update_error


class SteppingClock:
    def __init__(self) -> None:
        self.now = datetime(2026, 3, 14, 18, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        self.now += timedelta(seconds=1)
        return self.now


@pytest.fixture()
def pricing() -> PricingSettings:
    return PricingSettings(
        tax_rate_percent=Decimal("8.875"),
        service_fee_percent=Decimal("1"),
        delivery_fees=DeliveryFeeSchedule(
            tiers=(
                DeliveryFeeTier(max_distance_miles=Decimal("2"), fee_cents=299),
                DeliveryFeeTier(max_distance_miles=Decimal("5"), fee_cents=499),
                DeliveryFeeTier(max_distance_miles=Decimal("10"), fee_cents=799),
            ),
            flat_fee_cents=499,
            free_over_subtotal_cents=None,
        ),
    )


@pytest.fixture()
def restaurant() -> RestaurantInfo:
    return RestaurantInfo(
        name="Fresh Market",
        phone="+16305551234",
        address="123 Main St, Naperville, IL 60540",
        lat=41.7508,
        lng=-88.1535,
    )


@pytest.fixture()
def toast() -> FlakyToastAdapter:
    return FlakyToastAdapter()


@pytest.fixture()
def doordash() -> CountingDoorDashAdapter:
    return CountingDoorDashAdapter()


@pytest.fixture()
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture()
def orchestrator(
    pricing: PricingSettings,
    restaurant: RestaurantInfo,
    toast: FlakyToastAdapter,
    doordash: CountingDoorDashAdapter,
    scheduler: ManualScheduler,
) -> OrderOrchestrator:
    return OrderOrchestrator(
        store=InMemoryOrderStore(),
        pos_adapters={
            "toast": toast,
            "square": SquarePosAdapter(dry_run_config("square")),
            "clover": CloverPosAdapter(dry_run_config("clover")),
        },
        courier_adapters={
            "doordash": doordash,
            "uber": UberCourierAdapter(dry_run_config("uber")),
        },
        notifier=NotificationChannel(),
        pricing=pricing,
        restaurant=restaurant,
        scheduler=scheduler,
        default_pos_provider="toast",
        default_courier_provider="doordash",
        clock=SteppingClock(),
    )


def burger_cart() -> tuple[CartLine, ...]:
    return (
        CartLine(sku="burger", name="Smash Burger", unit_price_cents=1200, quantity=1),
        CartLine(sku="fries", name="Fries", unit_price_cents=400, quantity=2),
    )


def placement(
    fulfillment: FulfillmentV1 = FulfillmentV1.PICKUP, **overrides
) -> PlacementRequest:
    fields = {
        "fulfillment": fulfillment,
        "customer": CustomerV1(name="Ada Lovelace", phone="+15555550123"),
        "items": burger_cart(),
        "delivery_address": (
            DeliveryAddressV1(line1="9 Elm St", city="Naperville", state="IL", postal_code="60540")
            if fulfillment == FulfillmentV1.DELIVERY
            else None
        ),
    }
    fields.update(overrides)
    return PlacementRequest(**fields)
