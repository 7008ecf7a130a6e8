"""Order orchestrator: the single writer of order state.

Every change runs read-evaluate-write-publish under the order's lock. Provider calls
(POS submission, courier dispatch, best-effort updates) always happen outside it. Courier
dispatch additionally holds a per-order dispatch lock so that concurrent ``ready``
triggers produce one outbound request.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

import structlog

from packages.shared.schemas.events import OrderEventTypeV1, OrderEventV1
from packages.shared.schemas.order_v1 import (
    CustomerV1,
    DeliveryAddressV1,
    DriverV1,
    FulfillmentV1,
    OrderStatusV1,
)
from services.api.app.services.courier_base import (
    CourierAdapter,
    CourierAdapterError,
    DeliveryQuote,
)
from services.api.app.services.locks import KeyedLocks
from services.api.app.services.notifications import NotificationChannel
from services.api.app.services.order_state import (
    CourierDispatch,
    Order,
    PosSync,
    TransitionResult,
    utcnow,
)
from services.api.app.services.pos_base import PosAdapter, PosAdapterError, PosRejectedError
from services.api.app.services.pricing import (
    CartLine,
    DeliveryOutOfRangeError,
    DiscountSpec,
    TipSpec,
    compute_totals,
)
from services.api.app.services.scheduler import (
    COURIER_DISPATCH_POLICY,
    POS_SUBMIT_POLICY,
    RetryPolicy,
    TaskScheduler,
)
from services.api.app.services.store import OrderStore
from services.api.app.services.webhooks import AdapterWebhookEvent, WebhookPayloadError
from services.api.app.settings import PricingSettings, RestaurantInfo

logger = structlog.get_logger(__name__)


class OrchestratorError(Exception):
    """Base class for orchestrator errors."""


class OrderValidationError(OrchestratorError):
    """The placement request is invalid. No order was created."""


class OrderNotFoundError(OrchestratorError):
    def __init__(self, order_id: str) -> None:
        super().__init__(f"Order {order_id} not found")
        self.order_id = order_id


class UnknownProviderError(OrchestratorError):
    def __init__(self, kind: str, provider: str) -> None:
        super().__init__(f"Unknown {kind} provider {provider!r}")
        self.kind = kind
        self.provider = provider


class WebhookOutcome(str, Enum):
    APPLIED = "applied"
    STALE = "stale"
    IGNORED = "ignored"
    UNMATCHED = "unmatched"


@dataclass(frozen=True, slots=True)
class PlacementRequest:
    fulfillment: FulfillmentV1
    customer: CustomerV1
    items: tuple[CartLine, ...]
    delivery_address: DeliveryAddressV1 | None = None
    distance_miles: Decimal | None = None
    tip: TipSpec | None = None
    discount: DiscountSpec | None = None
    pos_provider: str | None = None
    courier_provider: str | None = None


def _ref_namespace(kind: str, provider: str) -> str:
    return f"{kind}:{provider}"


class OrderOrchestrator:
    def __init__(
        self,
        *,
        store: OrderStore,
        pos_adapters: dict[str, PosAdapter],
        courier_adapters: dict[str, CourierAdapter],
        notifier: NotificationChannel,
        pricing: PricingSettings,
        restaurant: RestaurantInfo,
        scheduler: TaskScheduler,
        default_pos_provider: str,
        default_courier_provider: str,
        clock: Callable[[], datetime] = utcnow,
        pos_policy: RetryPolicy = POS_SUBMIT_POLICY,
        courier_policy: RetryPolicy = COURIER_DISPATCH_POLICY,
    ) -> None:
        self.store = store
        self.notifier = notifier
        self.scheduler = scheduler
        self.pos_adapters = pos_adapters
        self.courier_adapters = courier_adapters
        self._pricing = pricing
        self._restaurant = restaurant
        self._default_pos = default_pos_provider
        self._default_courier = default_courier_provider
        self._clock = clock
        self._pos_policy = pos_policy
        self._courier_policy = courier_policy
        self._locks = KeyedLocks()
        self._dispatch_locks = KeyedLocks()

    # ---- reads ----

    def get_order(self, order_id: str) -> Order:
        order = self.store.get(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        return order

    def list_events(self, order_id: str) -> list[OrderEventV1]:
        self.get_order(order_id)
        return self.store.list_events(order_id)

    def quote_delivery(
        self,
        dropoff: DeliveryAddressV1,
        *,
        provider: str | None = None,
        order_value_cents: int | None = None,
    ) -> DeliveryQuote:
        name = (provider or self._default_courier).lower()
        adapter = self.courier_adapters.get(name)
        if adapter is None:
            raise UnknownProviderError("courier", name)
        return adapter.quote_delivery(
            self._restaurant, dropoff, order_value_cents=order_value_cents
        )

    # ---- placement ----

    def _validate(self, request: PlacementRequest) -> tuple[str, str | None]:
        if not request.items:
            raise OrderValidationError("Cart is empty")
        for line in request.items:
            if line.quantity < 1:
                raise OrderValidationError(f"Quantity for {line.sku} must be at least 1")
            if line.unit_price_cents < 0 or any(m.price_cents < 0 for m in line.modifiers):
                raise OrderValidationError(f"Price for {line.sku} must not be negative")

        if request.tip is not None:
            if (request.tip.amount_cents or 0) < 0 or (request.tip.percent or 0) < 0:
                raise OrderValidationError("Tip must not be negative")
        if request.discount is not None:
            discount = request.discount
            if (discount.amount_cents or 0) < 0 or (discount.percent or 0) < 0:
                raise OrderValidationError("Discount must not be negative")

        pos_provider = (request.pos_provider or self._default_pos).lower()
        if pos_provider not in self.pos_adapters:
            raise OrderValidationError(f"Unknown POS provider {pos_provider!r}")

        courier_provider: str | None = None
        if request.fulfillment == FulfillmentV1.DELIVERY:
            if request.delivery_address is None:
                raise OrderValidationError("Delivery orders need a delivery address")
            if request.distance_miles is not None and request.distance_miles < 0:
                raise OrderValidationError("Delivery distance must not be negative")
            courier_provider = (request.courier_provider or self._default_courier).lower()
            if courier_provider not in self.courier_adapters:
                raise OrderValidationError(f"Unknown courier provider {courier_provider!r}")

        return pos_provider, courier_provider

    def place_order(self, request: PlacementRequest) -> Order:
        pos_provider, courier_provider = self._validate(request)

        try:
            totals = compute_totals(
                request.items,
                request.fulfillment,
                settings=self._pricing,
                distance_miles=request.distance_miles,
                tip=request.tip,
                discount=request.discount,
            )
        except DeliveryOutOfRangeError as e:
            raise OrderValidationError(str(e)) from e

        order = Order.create(
            fulfillment=request.fulfillment,
            customer=request.customer,
            delivery_address=(
                request.delivery_address
                if request.fulfillment == FulfillmentV1.DELIVERY
                else None
            ),
            items=tuple(request.items),
            totals=totals,
            pos_provider=pos_provider,
            courier_provider=courier_provider,
            now=self._clock(),
        )

        with self._locks.hold(order.id):
            self.store.put(order)
            self.store.append_event(
                order.id,
                OrderEventTypeV1.ORDER_PLACED,
                source="api",
                payload={
                    "fulfillment": order.fulfillment.value,
                    "grand_total_cents": totals.grand_total_cents,
                    "pos_provider": pos_provider,
                    "courier_provider": courier_provider,
                },
            )
            self.notifier.publish(order.to_snapshot())

        logger.info(
            "Order placed",
            order_id=order.id,
            fulfillment=order.fulfillment.value,
            grand_total_cents=totals.grand_total_cents,
            pos_provider=pos_provider,
        )
        self._schedule_pos_submit(order.id, attempt=1)
        return order

    # ---- status changes ----

    def update_status(
        self,
        order_id: str,
        status: OrderStatusV1,
        *,
        note: str | None = None,
        source: str = "staff",
    ) -> tuple[Order, TransitionResult]:
        return self._transition(order_id, status, source=source, note=note)

    def cancel_order(
        self, order_id: str, *, reason: str | None = None
    ) -> tuple[Order, TransitionResult]:
        order, result = self._transition(
            order_id, OrderStatusV1.CANCELED, source="api", note=reason
        )
        if result != TransitionResult.APPLIED:
            return order, result

        if order.pos_provider and order.pos_order_id:
            adapter = self.pos_adapters.get(order.pos_provider)
            if adapter is not None:
                try:
                    adapter.update_order(
                        order.pos_order_id, {"status": "canceled", "reason": reason}
                    )
                except Exception as e:
                    # Best effort: the cancellation already stands on our side.
                    logger.warning(
                        "POS cancel update failed",
                        order_id=order_id,
                        error=str(e),
                        exc_info=not isinstance(e, PosAdapterError),
                    )

        if order.courier_provider and order.courier_job_id:
            self._cancel_courier_job(order.id, order.courier_provider, order.courier_job_id)

        return order, result

    def _transition(
        self,
        order_id: str,
        status: OrderStatusV1,
        *,
        source: str,
        note: str | None = None,
        driver: DriverV1 | None = None,
    ) -> tuple[Order, TransitionResult]:
        with self._locks.hold(order_id):
            order = self.store.get(order_id)
            if order is None:
                raise OrderNotFoundError(order_id)

            previous = order.status
            # Driver details are tracking data: kept even when the status is discarded.
            driver_changed = (
                driver is not None and not order.is_terminal and order.update_driver(driver)
            )
            result = order.apply_status(status, self._clock(), note=note)
            if result != TransitionResult.APPLIED:
                if driver_changed:
                    order.touch()
                    self.store.put(order)
                    self.notifier.publish(order.to_snapshot())
                log = logger.debug if result == TransitionResult.STALE else logger.info
                log(
                    "Status transition discarded",
                    order_id=order_id,
                    current=previous.value,
                    incoming=status.value,
                    reason=result.value,
                    source=source,
                )
                self.store.append_event(
                    order_id,
                    OrderEventTypeV1.TRANSITION_DISCARDED,
                    source=source,
                    payload={"from": previous.value, "to": status.value, "reason": result.value},
                )
                return order, result

            self.store.put(order)
            self.store.append_event(
                order_id,
                OrderEventTypeV1.STATUS_CHANGED,
                source=source,
                payload={"from": previous.value, "to": status.value, "note": note},
            )
            self.notifier.publish(order.to_snapshot())

        logger.info(
            "Order status changed",
            order_id=order_id,
            previous=previous.value,
            status=status.value,
            source=source,
        )
        if order.needs_courier:
            self._dispatch_courier(order_id, attempt=1)
            order = self.get_order(order_id)
        return order, result

    # ---- webhooks ----

    def apply_pos_webhook(self, provider: str, raw: Any) -> WebhookOutcome:
        adapter = self.pos_adapters.get(provider.lower())
        if adapter is None:
            raise UnknownProviderError("pos", provider)
        if not isinstance(raw, dict):
            raise WebhookPayloadError(f"{provider} webhook body must be a JSON object")
        return self._apply_webhook("pos", adapter.parse_webhook(raw))

    def apply_courier_webhook(self, provider: str, raw: Any) -> WebhookOutcome:
        adapter = self.courier_adapters.get(provider.lower())
        if adapter is None:
            raise UnknownProviderError("courier", provider)
        if not isinstance(raw, dict):
            raise WebhookPayloadError(f"{provider} webhook body must be a JSON object")
        return self._apply_webhook("courier", adapter.parse_webhook(raw))

    def _resolve_order_id(self, kind: str, provider: str, external_id: str) -> str | None:
        order_id = self.store.find_by_external_ref(_ref_namespace(kind, provider), external_id)
        if order_id is not None:
            return order_id

        # Providers echo our order id as their external reference.
        candidate = self.store.get(external_id)
        if candidate is None:
            return None
        owner = candidate.pos_provider if kind == "pos" else candidate.courier_provider
        return candidate.id if owner == provider else None

    def _apply_webhook(self, kind: str, event: AdapterWebhookEvent) -> WebhookOutcome:
        source = f"{kind}:{event.provider}"
        order_id = (
            self._resolve_order_id(kind, event.provider, event.external_id)
            if event.external_id
            else None
        )

        if event.is_unknown:
            logger.info(
                "Ignoring webhook with unknown status",
                provider=event.provider,
                event_type=event.provider_event_type,
                order_id=order_id,
            )
            if order_id is not None:
                self.store.append_event(
                    order_id,
                    OrderEventTypeV1.WEBHOOK_RECEIVED,
                    source=source,
                    payload={"event_type": event.provider_event_type, "outcome": "ignored"},
                )
                if event.driver is not None:
                    self._record_driver(order_id, event.driver)
            return WebhookOutcome.IGNORED

        if order_id is None:
            logger.info(
                "Webhook matched no order",
                provider=event.provider,
                event_type=event.provider_event_type,
                external_id=event.external_id,
            )
            return WebhookOutcome.UNMATCHED

        assert isinstance(event.mapped_status, OrderStatusV1)
        try:
            _, result = self._transition(
                order_id, event.mapped_status, source=source, driver=event.driver
            )
        except OrderNotFoundError:
            return WebhookOutcome.UNMATCHED

        if result == TransitionResult.APPLIED:
            return WebhookOutcome.APPLIED
        return WebhookOutcome.STALE

    # ---- POS submission ----

    def _schedule_pos_submit(self, order_id: str, *, attempt: int) -> bool:
        delay = self._pos_policy.delay_before(attempt)
        if delay is None:
            return False
        self.scheduler.call_later(
            delay,
            lambda: self._submit_to_pos(order_id, attempt=attempt),
            name=f"pos-submit-{order_id}-{attempt}",
        )
        return True

    def _submit_to_pos(self, order_id: str, *, attempt: int) -> None:
        order = self.store.get(order_id)
        if order is None or order.is_terminal:
            return
        if order.pos_order_id is not None or order.pos_sync == PosSync.NOT_CONNECTED:
            return

        adapter = self.pos_adapters.get(order.pos_provider or "")
        if adapter is None:
            logger.error("POS adapter missing", order_id=order_id, provider=order.pos_provider)
            self._mark_pos_not_connected(order_id, reason="adapter missing")
            return

        try:
            result = adapter.create_order(order)
        except PosRejectedError as e:
            logger.warning("POS rejected order", order_id=order_id, error=str(e))
            self._mark_pos_not_connected(order_id, reason=str(e))
            return
        except Exception as e:
            # Anything else the adapter raises counts as "unavailable" and is retried.
            logger.warning(
                "POS submission failed",
                order_id=order_id,
                attempt=attempt,
                error=str(e),
                exc_info=not isinstance(e, PosAdapterError),
            )
            self.store.append_event(
                order_id,
                OrderEventTypeV1.POS_SUBMIT_FAILED,
                source=f"pos:{adapter.provider}",
                payload={"attempt": attempt, "error": str(e) or repr(e)},
            )
            if self._schedule_pos_submit(order_id, attempt=attempt + 1):
                return
            if self._mark_pos_not_connected(order_id, reason="retries exhausted"):
                logger.error(
                    "operational_alert",
                    alert="pos_submit_exhausted",
                    order_id=order_id,
                    provider=adapter.provider,
                    attempts=attempt,
                )
            return

        with self._locks.hold(order_id):
            current = self.store.get(order_id)
            if current is None or current.is_terminal:
                logger.info("Discarding POS result for closed order", order_id=order_id)
                return
            if current.pos_order_id is not None:
                return

            current.pos_order_id = result.external_order_id
            current.pos_sync = PosSync.SUBMITTED
            current.touch()
            self.store.put(current)
            self.store.link_external_ref(
                _ref_namespace("pos", adapter.provider), result.external_order_id, order_id
            )
            self.store.append_event(
                order_id,
                OrderEventTypeV1.POS_SUBMITTED,
                source=f"pos:{adapter.provider}",
                payload={"pos_order_id": result.external_order_id, "attempt": attempt},
            )
            self.notifier.publish(current.to_snapshot())

        logger.info(
            "Order submitted to POS",
            order_id=order_id,
            provider=adapter.provider,
            pos_order_id=result.external_order_id,
        )

    def _mark_pos_not_connected(self, order_id: str, *, reason: str) -> bool:
        with self._locks.hold(order_id):
            order = self.store.get(order_id)
            if order is None or order.is_terminal or order.pos_order_id is not None:
                return False
            order.pos_sync = PosSync.NOT_CONNECTED
            order.touch()
            self.store.put(order)
            self.store.append_event(
                order_id,
                OrderEventTypeV1.POS_NOT_CONNECTED,
                source=f"pos:{order.pos_provider}",
                payload={"reason": reason},
            )
            self.notifier.publish(order.to_snapshot())
        return True

    # ---- courier dispatch ----

    def _dispatch_courier(self, order_id: str, *, attempt: int) -> None:
        with self._dispatch_locks.hold(order_id):
            order = self.store.get(order_id)
            if order is None or order.is_terminal or order.courier_job_id is not None:
                return
            if order.fulfillment != FulfillmentV1.DELIVERY:
                return

            adapter = self.courier_adapters.get(order.courier_provider or "")
            if adapter is None:
                logger.error(
                    "Courier adapter missing",
                    order_id=order_id,
                    provider=order.courier_provider,
                )
                return

            try:
                job = adapter.request_delivery(order, self._restaurant)
            except CourierAdapterError as e:
                self._courier_attempt_failed(order_id, adapter.provider, attempt, str(e))
                return
            except Exception as e:
                logger.exception(
                    "Unexpected courier adapter failure", order_id=order_id, attempt=attempt
                )
                self._courier_attempt_failed(order_id, adapter.provider, attempt, repr(e))
                return

            with self._locks.hold(order_id):
                current = self.store.get(order_id)
                closed = current is None or current.is_terminal
                if not closed:
                    current.courier_job_id = job.job_id
                    current.courier_tracking_url = job.tracking_url
                    current.courier_dispatch = CourierDispatch.REQUESTED
                    result = current.apply_status(OrderStatusV1.COURIER_REQUESTED, self._clock())
                    if result != TransitionResult.APPLIED:
                        current.touch()
                    self.store.put(current)
                    self.store.link_external_ref(
                        _ref_namespace("courier", adapter.provider), job.job_id, order_id
                    )
                    self.store.append_event(
                        order_id,
                        OrderEventTypeV1.COURIER_REQUESTED,
                        source=f"courier:{adapter.provider}",
                        payload={
                            "job_id": job.job_id,
                            "tracking_url": job.tracking_url,
                            "attempt": attempt,
                        },
                    )
                    self.notifier.publish(current.to_snapshot())
                    ready_at = current.timestamps.get(OrderStatusV1.READY)

        if closed:
            logger.info("Discarding courier job for closed order", order_id=order_id)
            self._cancel_courier_job(order_id, adapter.provider, job.job_id)
            return

        logger.info(
            "Courier requested",
            order_id=order_id,
            provider=adapter.provider,
            job_id=job.job_id,
            attempt=attempt,
        )
        # Jobs are only requested once the kitchen has marked the order ready.
        self._signal_courier_ready(order_id, adapter, job.job_id, ready_at)

    def _signal_courier_ready(
        self,
        order_id: str,
        adapter: CourierAdapter,
        job_id: str,
        ready_at: datetime | None,
    ) -> None:
        patch = {"status": "ready", "ready_at": ready_at.isoformat() if ready_at else None}
        try:
            adapter.update_delivery(job_id, patch)
        except Exception as e:
            logger.warning(
                "Courier ready signal failed",
                order_id=order_id,
                job_id=job_id,
                error=str(e),
                exc_info=not isinstance(e, CourierAdapterError),
            )

    def _courier_attempt_failed(
        self, order_id: str, provider: str, attempt: int, error: str
    ) -> None:
        logger.warning("Courier request failed", order_id=order_id, attempt=attempt, error=error)
        self.store.append_event(
            order_id,
            OrderEventTypeV1.COURIER_REQUEST_FAILED,
            source=f"courier:{provider}",
            payload={"attempt": attempt, "error": error},
        )

        delay = self._courier_policy.delay_before(attempt + 1)
        if delay is not None:
            self.scheduler.call_later(
                delay,
                lambda: self._dispatch_courier(order_id, attempt=attempt + 1),
                name=f"courier-dispatch-{order_id}-{attempt + 1}",
            )
            return

        # The order keeps its status; staff follow up on the alert.
        with self._locks.hold(order_id):
            order = self.store.get(order_id)
            if order is None or order.is_terminal or order.courier_job_id is not None:
                return
            logger.error(
                "operational_alert",
                alert="courier_dispatch_exhausted",
                order_id=order_id,
                provider=provider,
                attempts=attempt,
            )
            order.courier_dispatch = CourierDispatch.EXHAUSTED
            order.touch()
            self.store.put(order)
            self.store.append_event(
                order_id,
                OrderEventTypeV1.COURIER_DISPATCH_EXHAUSTED,
                source=f"courier:{provider}",
                payload={"attempts": attempt},
            )
            self.notifier.publish(order.to_snapshot())

    def _cancel_courier_job(self, order_id: str, provider: str, job_id: str) -> None:
        adapter = self.courier_adapters.get(provider)
        if adapter is None:
            return
        try:
            adapter.update_delivery(job_id, {"status": "canceled"})
        except Exception as e:
            logger.warning(
                "Courier cancel failed",
                order_id=order_id,
                job_id=job_id,
                error=str(e),
                exc_info=not isinstance(e, CourierAdapterError),
            )

    def _record_driver(self, order_id: str, driver: DriverV1) -> None:
        with self._locks.hold(order_id):
            order = self.store.get(order_id)
            if order is None or order.is_terminal or not order.update_driver(driver):
                return
            order.touch()
            self.store.put(order)
            self.notifier.publish(order.to_snapshot())
