from __future__ import annotations

import http.client
import random
import threading
from decimal import Decimal

import pytest

from conftest import CountingDoorDashAdapter, FlakyToastAdapter, placement
from packages.shared.schemas.events import OrderEventTypeV1
from packages.shared.schemas.order_v1 import FulfillmentV1, OrderStatusV1
from services.api.app.services.courier_base import CourierUnavailableError
from services.api.app.services.order_state import CourierDispatch, PosSync, TransitionResult
from services.api.app.services.orchestrator import (
    OrderNotFoundError,
    OrderOrchestrator,
    OrderValidationError,
    UnknownProviderError,
    WebhookOutcome,
)
from services.api.app.services.pos_base import PosUnavailableError
from services.api.app.services.scheduler import ManualScheduler
from services.api.app.services.webhooks import WebhookPayloadError


def _submit_pos(scheduler: ManualScheduler) -> None:
    scheduler.run_due()


def _to_ready(orchestrator: OrderOrchestrator, order_id: str) -> None:
    for status in (OrderStatusV1.ACCEPTED, OrderStatusV1.IN_KITCHEN, OrderStatusV1.READY):
        orchestrator.update_status(order_id, status)


def test_place_order_returns_created_order_and_publishes(
    orchestrator: OrderOrchestrator,
) -> None:
    published = []
    orchestrator.notifier.add_listener(published.append)

    order = orchestrator.place_order(placement(tip=None))

    assert order.status == OrderStatusV1.CREATED
    assert order.totals.grand_total_cents == 2198
    assert order.pos_provider == "toast"
    assert order.courier_provider is None
    assert [s.id for s in published] == [order.id]
    assert orchestrator.get_order(order.id).revision == 1


def test_pos_submission_runs_in_background(
    orchestrator: OrderOrchestrator, scheduler: ManualScheduler, toast: FlakyToastAdapter
) -> None:
    order = orchestrator.place_order(placement())
    assert toast.calls == 0
    assert orchestrator.get_order(order.id).pos_order_id is None

    _submit_pos(scheduler)

    stored = orchestrator.get_order(order.id)
    assert stored.pos_order_id == f"TOAST-{order.id}"
    assert stored.pos_sync == PosSync.SUBMITTED
    assert stored.revision == 2


def test_pos_network_failure_is_retried_in_background(
    orchestrator: OrderOrchestrator, scheduler: ManualScheduler, toast: FlakyToastAdapter
) -> None:
    toast.failures = 1

    order = orchestrator.place_order(placement())
    _submit_pos(scheduler)

    stored = orchestrator.get_order(order.id)
    assert stored.status == OrderStatusV1.CREATED
    assert stored.pos_order_id is None
    assert scheduler.pending == [f"pos-submit-{order.id}-2"]

    scheduler.run_due(advance_seconds=5)

    stored = orchestrator.get_order(order.id)
    assert stored.pos_order_id == f"TOAST-{order.id}"
    assert toast.calls == 2
    event_types = [e.event_type for e in orchestrator.list_events(order.id)]
    assert OrderEventTypeV1.POS_SUBMIT_FAILED in event_types
    assert event_types[-1] == OrderEventTypeV1.POS_SUBMITTED


def test_pos_retries_are_bounded(
    orchestrator: OrderOrchestrator, scheduler: ManualScheduler, toast: FlakyToastAdapter
) -> None:
    toast.failures = 100

    order = orchestrator.place_order(placement())
    scheduler.run_all()

    stored = orchestrator.get_order(order.id)
    assert toast.calls == 4
    assert stored.pos_sync == PosSync.NOT_CONNECTED
    assert stored.status == OrderStatusV1.CREATED


def test_pos_rejection_is_not_retried(
    orchestrator: OrderOrchestrator, scheduler: ManualScheduler, toast: FlakyToastAdapter
) -> None:
    toast.reject = True

    order = orchestrator.place_order(placement())
    scheduler.run_all()

    assert toast.calls == 1
    assert orchestrator.get_order(order.id).pos_sync == PosSync.NOT_CONNECTED


def test_unexpected_pos_error_is_retried(
    orchestrator: OrderOrchestrator, scheduler: ManualScheduler, toast: FlakyToastAdapter
) -> None:
    toast.failures = 1
    toast.error = http.client.IncompleteRead(b"{", 40)

    order = orchestrator.place_order(placement())
    _submit_pos(scheduler)

    assert orchestrator.get_order(order.id).pos_sync == PosSync.PENDING
    assert scheduler.pending == [f"pos-submit-{order.id}-2"]

    scheduler.run_due(advance_seconds=5)

    stored = orchestrator.get_order(order.id)
    assert stored.pos_sync == PosSync.SUBMITTED
    failed = [
        e
        for e in orchestrator.list_events(order.id)
        if e.event_type == OrderEventTypeV1.POS_SUBMIT_FAILED
    ]
    assert len(failed) == 1


def test_pos_exhaustion_leaves_canceled_order_alone(
    orchestrator: OrderOrchestrator,
    scheduler: ManualScheduler,
    toast: FlakyToastAdapter,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    calls: list[str] = []

    def cancel_during_last_attempt(order):
        calls.append(order.id)
        if len(calls) == 4:
            orchestrator.cancel_order(order.id)
        raise PosUnavailableError("toast", "connection reset")

    monkeypatch.setattr(toast, "create_order", cancel_during_last_attempt)
    order = orchestrator.place_order(placement())
    scheduler.run_all()

    stored = orchestrator.get_order(order.id)
    assert len(calls) == 4
    assert stored.status == OrderStatusV1.CANCELED
    assert stored.pos_sync == PosSync.PENDING
    event_types = [e.event_type for e in orchestrator.list_events(order.id)]
    assert OrderEventTypeV1.POS_NOT_CONNECTED not in event_types


@pytest.mark.parametrize(
    ("overrides", "message"),
    [
        ({"items": ()}, "Cart is empty"),
        ({"pos_provider": "micros"}, "Unknown POS provider"),
    ],
)
def test_invalid_placement_creates_nothing(
    orchestrator: OrderOrchestrator, scheduler: ManualScheduler, overrides: dict, message: str
) -> None:
    with pytest.raises(OrderValidationError, match=message):
        orchestrator.place_order(placement(**overrides))
    assert scheduler.pending == []


def test_delivery_needs_address_and_range(orchestrator: OrderOrchestrator) -> None:
    with pytest.raises(OrderValidationError, match="delivery address"):
        orchestrator.place_order(placement(FulfillmentV1.DELIVERY, delivery_address=None))

    with pytest.raises(OrderValidationError, match="outside the delivery area"):
        orchestrator.place_order(
            placement(FulfillmentV1.DELIVERY, distance_miles=Decimal("25"))
        )


def test_ready_delivery_order_requests_exactly_one_courier(
    orchestrator: OrderOrchestrator, doordash: CountingDoorDashAdapter
) -> None:
    order = orchestrator.place_order(placement(FulfillmentV1.DELIVERY))
    _to_ready(orchestrator, order.id)

    stored = orchestrator.get_order(order.id)
    assert doordash.requests == [order.id]
    assert stored.courier_job_id == f"DD-{order.id}"
    assert stored.courier_dispatch == CourierDispatch.REQUESTED
    assert stored.status == OrderStatusV1.COURIER_REQUESTED

    _, result = orchestrator.update_status(order.id, OrderStatusV1.READY)

    assert result == TransitionResult.STALE
    assert doordash.requests == [order.id]


def test_duplicate_ready_webhooks_dispatch_once(
    orchestrator: OrderOrchestrator, scheduler: ManualScheduler, doordash: CountingDoorDashAdapter
) -> None:
    order = orchestrator.place_order(placement(FulfillmentV1.DELIVERY))
    _submit_pos(scheduler)
    pos_id = orchestrator.get_order(order.id).pos_order_id
    toast = orchestrator.pos_adapters["toast"]

    ready = toast.sample_webhook(OrderStatusV1.READY, pos_id)
    assert orchestrator.apply_pos_webhook("toast", ready) == WebhookOutcome.APPLIED
    assert orchestrator.apply_pos_webhook("toast", ready) == WebhookOutcome.STALE

    assert doordash.requests == [order.id]


def test_concurrent_dispatch_attempts_request_once(
    orchestrator: OrderOrchestrator, scheduler: ManualScheduler
) -> None:
    slow = CountingDoorDashAdapter(failures=1, delay_seconds=0.05)
    orchestrator.courier_adapters["doordash"] = slow

    order = orchestrator.place_order(placement(FulfillmentV1.DELIVERY))
    _to_ready(orchestrator, order.id)
    assert len(slow.requests) == 1  # inline attempt failed, order still ready without a job

    barrier = threading.Barrier(8)

    def trigger() -> None:
        barrier.wait()
        orchestrator._dispatch_courier(order.id, attempt=2)

    threads = [threading.Thread(target=trigger) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    scheduler.run_all()

    stored = orchestrator.get_order(order.id)
    assert len(slow.requests) == 2
    assert stored.courier_job_id == f"DD-{order.id}"


def test_concurrent_webhooks_never_move_status_backwards(
    orchestrator: OrderOrchestrator,
) -> None:
    order = orchestrator.place_order(placement(FulfillmentV1.DELIVERY))
    statuses = [
        OrderStatusV1.ACCEPTED,
        OrderStatusV1.IN_KITCHEN,
        OrderStatusV1.READY,
        OrderStatusV1.DRIVER_EN_ROUTE,
        OrderStatusV1.PICKED_UP,
    ] * 4
    random.Random(7).shuffle(statuses)

    seen: list[int] = []
    lock = threading.Lock()

    def on_snapshot(snapshot) -> None:
        with lock:
            seen.append(snapshot.revision)

    orchestrator.notifier.add_listener(on_snapshot)
    subscription = orchestrator.notifier.subscribe(order.id)

    threads = [
        threading.Thread(target=orchestrator.update_status, args=(order.id, status))
        for status in statuses
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    delivered = subscription.drain()
    subscription.close()

    assert seen == sorted(seen)
    revisions = [s.revision for s in delivered]
    assert revisions == sorted(set(revisions))
    assert orchestrator.get_order(order.id).status == OrderStatusV1.PICKED_UP


def test_courier_failure_retries_then_alerts(
    orchestrator: OrderOrchestrator, scheduler: ManualScheduler
) -> None:
    failing = CountingDoorDashAdapter(failures=100)
    orchestrator.courier_adapters["doordash"] = failing

    order = orchestrator.place_order(placement(FulfillmentV1.DELIVERY))
    _to_ready(orchestrator, order.id)
    assert len(failing.requests) == 1
    assert orchestrator.get_order(order.id).status == OrderStatusV1.READY

    scheduler.run_all()

    stored = orchestrator.get_order(order.id)
    assert len(failing.requests) == 6
    assert stored.status == OrderStatusV1.READY
    assert stored.courier_dispatch == CourierDispatch.EXHAUSTED
    assert stored.courier_job_id is None
    event_types = [e.event_type for e in orchestrator.list_events(order.id)]
    assert OrderEventTypeV1.COURIER_DISPATCH_EXHAUSTED in event_types


def test_courier_retry_recovers(
    orchestrator: OrderOrchestrator, scheduler: ManualScheduler
) -> None:
    flaky = CountingDoorDashAdapter(failures=2)
    orchestrator.courier_adapters["doordash"] = flaky

    order = orchestrator.place_order(placement(FulfillmentV1.DELIVERY))
    _to_ready(orchestrator, order.id)
    scheduler.run_due(advance_seconds=10)
    scheduler.run_due(advance_seconds=20)

    stored = orchestrator.get_order(order.id)
    assert len(flaky.requests) == 3
    assert stored.courier_job_id == f"DD-{order.id}"
    assert stored.status == OrderStatusV1.COURIER_REQUESTED


def test_unexpected_courier_error_is_retried(
    orchestrator: OrderOrchestrator, scheduler: ManualScheduler
) -> None:
    flaky = CountingDoorDashAdapter(failures=1)
    flaky.error = ConnectionResetError("connection reset by peer")
    orchestrator.courier_adapters["doordash"] = flaky

    order = orchestrator.place_order(placement(FulfillmentV1.DELIVERY))
    orchestrator.update_status(order.id, OrderStatusV1.ACCEPTED)
    orchestrator.update_status(order.id, OrderStatusV1.IN_KITCHEN)
    ready, result = orchestrator.update_status(order.id, OrderStatusV1.READY)

    assert result == TransitionResult.APPLIED
    assert ready.status == OrderStatusV1.READY
    assert ready.courier_dispatch == CourierDispatch.PENDING
    assert f"courier-dispatch-{order.id}-2" in scheduler.pending

    scheduler.run_due(advance_seconds=10)

    stored = orchestrator.get_order(order.id)
    assert len(flaky.requests) == 2
    assert stored.courier_job_id == f"DD-{order.id}"
    assert stored.courier_dispatch == CourierDispatch.REQUESTED


def test_courier_exhaustion_leaves_canceled_order_alone(
    orchestrator: OrderOrchestrator,
    scheduler: ManualScheduler,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    failing = CountingDoorDashAdapter()
    orchestrator.courier_adapters["doordash"] = failing
    calls: list[str] = []

    def cancel_during_last_attempt(order, restaurant):
        calls.append(order.id)
        if len(calls) == 6:
            orchestrator.cancel_order(order.id)
        raise CourierUnavailableError("doordash", "gateway timeout")

    monkeypatch.setattr(failing, "request_delivery", cancel_during_last_attempt)
    order = orchestrator.place_order(placement(FulfillmentV1.DELIVERY))
    _to_ready(orchestrator, order.id)
    scheduler.run_all()

    stored = orchestrator.get_order(order.id)
    assert len(calls) == 6
    assert stored.status == OrderStatusV1.CANCELED
    assert stored.courier_dispatch == CourierDispatch.PENDING
    event_types = [e.event_type for e in orchestrator.list_events(order.id)]
    assert OrderEventTypeV1.COURIER_DISPATCH_EXHAUSTED not in event_types


def test_courier_gets_ready_signal_once_job_exists(
    orchestrator: OrderOrchestrator, doordash: CountingDoorDashAdapter
) -> None:
    order = orchestrator.place_order(placement(FulfillmentV1.DELIVERY))
    _to_ready(orchestrator, order.id)

    stored = orchestrator.get_order(order.id)
    ready_at = stored.timestamps[OrderStatusV1.READY]
    assert doordash.updates == [
        (f"DD-{order.id}", {"status": "ready", "ready_at": ready_at.isoformat()})
    ]


def test_failed_ready_signal_keeps_the_job(
    orchestrator: OrderOrchestrator, doordash: CountingDoorDashAdapter
) -> None:
    doordash.update_error = RuntimeError("socket closed")

    order = orchestrator.place_order(placement(FulfillmentV1.DELIVERY))
    _to_ready(orchestrator, order.id)

    stored = orchestrator.get_order(order.id)
    assert len(doordash.updates) == 1
    assert stored.courier_job_id == f"DD-{order.id}"
    assert stored.status == OrderStatusV1.COURIER_REQUESTED


def test_unknown_webhook_event_is_ignored(
    orchestrator: OrderOrchestrator, scheduler: ManualScheduler
) -> None:
    order = orchestrator.place_order(placement())
    _submit_pos(scheduler)
    before = orchestrator.get_order(order.id)

    outcome = orchestrator.apply_pos_webhook(
        "toast", {"eventType": "MENU_UPDATED", "guid": before.pos_order_id}
    )

    after = orchestrator.get_order(order.id)
    assert outcome == WebhookOutcome.IGNORED
    assert after.status == before.status
    assert after.revision == before.revision


def test_webhook_resolution(orchestrator: OrderOrchestrator) -> None:
    order = orchestrator.place_order(placement())

    # Before the POS id is recorded, Toast echoes our id as externalId.
    by_order_id = {"eventType": "ORDER_CREATED", "externalId": order.id}
    assert orchestrator.apply_pos_webhook("toast", by_order_id) == WebhookOutcome.APPLIED

    # Same id on a provider the order does not use.
    square = orchestrator.pos_adapters["square"].sample_webhook(OrderStatusV1.READY, order.id)
    assert orchestrator.apply_pos_webhook("square", square) == WebhookOutcome.UNMATCHED

    missing = {"eventType": "ORDER_READY", "guid": "nope"}
    assert orchestrator.apply_pos_webhook("toast", missing) == WebhookOutcome.UNMATCHED


def test_webhook_rejects_unknown_provider_and_bad_body(orchestrator: OrderOrchestrator) -> None:
    with pytest.raises(UnknownProviderError):
        orchestrator.apply_pos_webhook("micros", {})
    with pytest.raises(UnknownProviderError):
        orchestrator.apply_courier_webhook("postmates", {})
    with pytest.raises(WebhookPayloadError):
        orchestrator.apply_courier_webhook("doordash", ["not", "an", "object"])


def test_courier_webhooks_progress_delivery(orchestrator: OrderOrchestrator) -> None:
    order = orchestrator.place_order(placement(FulfillmentV1.DELIVERY, courier_provider="uber"))
    _to_ready(orchestrator, order.id)
    job_id = orchestrator.get_order(order.id).courier_job_id
    uber = orchestrator.courier_adapters["uber"]

    for status in (
        OrderStatusV1.DRIVER_EN_ROUTE,
        OrderStatusV1.PICKED_UP,
        OrderStatusV1.DELIVERED,
    ):
        outcome = orchestrator.apply_courier_webhook("uber", uber.sample_webhook(status, job_id))
        assert outcome == WebhookOutcome.APPLIED

    stored = orchestrator.get_order(order.id)
    assert stored.status == OrderStatusV1.DELIVERED
    assert stored.is_terminal
    assert set(stored.timestamps) >= {
        OrderStatusV1.CREATED,
        OrderStatusV1.READY,
        OrderStatusV1.COURIER_REQUESTED,
        OrderStatusV1.DELIVERED,
    }


def test_cancel_notifies_providers(
    orchestrator: OrderOrchestrator,
    scheduler: ManualScheduler,
    toast: FlakyToastAdapter,
    doordash: CountingDoorDashAdapter,
) -> None:
    order = orchestrator.place_order(placement(FulfillmentV1.DELIVERY))
    _submit_pos(scheduler)
    _to_ready(orchestrator, order.id)
    ready_at = orchestrator.get_order(order.id).timestamps[OrderStatusV1.READY]

    canceled, result = orchestrator.cancel_order(order.id, reason="customer called")

    assert result == TransitionResult.APPLIED
    assert canceled.status == OrderStatusV1.CANCELED
    assert canceled.notes == "customer called"
    assert toast.updates == [
        (f"TOAST-{order.id}", {"status": "canceled", "reason": "customer called"})
    ]
    assert doordash.updates == [
        (f"DD-{order.id}", {"status": "ready", "ready_at": ready_at.isoformat()}),
        (f"DD-{order.id}", {"status": "canceled"}),
    ]

    _, again = orchestrator.cancel_order(order.id)
    assert again == TransitionResult.TERMINAL


def test_cancel_stands_when_pos_update_blows_up(
    orchestrator: OrderOrchestrator, scheduler: ManualScheduler, toast: FlakyToastAdapter
) -> None:
    toast.update_error = RuntimeError("socket closed")
    order = orchestrator.place_order(placement())
    _submit_pos(scheduler)

    canceled, result = orchestrator.cancel_order(order.id)

    assert result == TransitionResult.APPLIED
    assert canceled.status == OrderStatusV1.CANCELED
    assert len(toast.updates) == 1
    assert orchestrator.get_order(order.id).status == OrderStatusV1.CANCELED


def test_courier_webhooks_record_driver(orchestrator: OrderOrchestrator) -> None:
    order = orchestrator.place_order(placement(FulfillmentV1.DELIVERY))
    _to_ready(orchestrator, order.id)
    doordash = orchestrator.courier_adapters["doordash"]
    published = []
    orchestrator.notifier.add_listener(published.append)

    en_route = doordash.sample_webhook(OrderStatusV1.DRIVER_EN_ROUTE, order.id)
    assert orchestrator.apply_courier_webhook("doordash", en_route) == WebhookOutcome.APPLIED

    stored = orchestrator.get_order(order.id)
    assert stored.driver.name == "Demo Dasher"
    assert stored.driver.phone == "+15555550100"
    assert (stored.driver.location.lat, stored.driver.location.lng) == (41.7508, -88.1535)
    assert published[-1].driver == stored.driver

    # Same status again: discarded as stale, but the new position is kept.
    moved = doordash.sample_webhook(OrderStatusV1.DRIVER_EN_ROUTE, order.id)
    moved["dasher"]["location"] = {"lat": 41.76, "lng": -88.16}
    assert orchestrator.apply_courier_webhook("doordash", moved) != WebhookOutcome.APPLIED

    after = orchestrator.get_order(order.id)
    assert after.status == OrderStatusV1.DRIVER_EN_ROUTE
    assert (after.driver.location.lat, after.driver.location.lng) == (41.76, -88.16)
    assert after.driver.name == "Demo Dasher"
    assert after.revision == stored.revision + 1

    # Location-only events carry no status.
    ping = {
        "event_name": "DASHER_LOCATION_UPDATED",
        "external_delivery_id": order.id,
        "dasher_location": {"lat": 41.77, "lng": -88.17},
    }
    assert orchestrator.apply_courier_webhook("doordash", ping) == WebhookOutcome.IGNORED
    assert orchestrator.get_order(order.id).driver.location.lat == 41.77


def test_driver_updates_skip_closed_orders(orchestrator: OrderOrchestrator) -> None:
    order = orchestrator.place_order(placement(FulfillmentV1.DELIVERY, courier_provider="uber"))
    _to_ready(orchestrator, order.id)
    job_id = orchestrator.get_order(order.id).courier_job_id
    uber = orchestrator.courier_adapters["uber"]
    delivered = uber.sample_webhook(OrderStatusV1.DELIVERED, job_id)
    assert orchestrator.apply_courier_webhook("uber", delivered) == WebhookOutcome.APPLIED
    before = orchestrator.get_order(order.id)
    assert before.driver.name == "Demo Courier"

    late = uber.sample_webhook(OrderStatusV1.PICKED_UP, job_id)
    late["courier"] = {"name": "Someone Else", "location": {"lat": 40.0, "lng": -87.0}}
    assert orchestrator.apply_courier_webhook("uber", late) == WebhookOutcome.STALE

    after = orchestrator.get_order(order.id)
    assert after.driver == before.driver
    assert after.revision == before.revision


def test_pos_result_for_canceled_order_is_discarded(
    orchestrator: OrderOrchestrator, scheduler: ManualScheduler, toast: FlakyToastAdapter
) -> None:
    order = orchestrator.place_order(placement())
    orchestrator.cancel_order(order.id)

    scheduler.run_all()

    assert toast.calls == 0
    assert orchestrator.get_order(order.id).pos_order_id is None


def test_missing_order_raises(orchestrator: OrderOrchestrator) -> None:
    with pytest.raises(OrderNotFoundError):
        orchestrator.get_order("ord_missing")
    with pytest.raises(OrderNotFoundError):
        orchestrator.update_status("ord_missing", OrderStatusV1.READY)
    with pytest.raises(OrderNotFoundError):
        orchestrator.list_events("ord_missing")


def test_quote_delivery_uses_courier_adapter(orchestrator: OrderOrchestrator) -> None:
    order = placement(FulfillmentV1.DELIVERY)
    quote = orchestrator.quote_delivery(order.delivery_address)
    assert quote.provider == "doordash"
    assert quote.fee_cents == 499

    with pytest.raises(UnknownProviderError):
        orchestrator.quote_delivery(order.delivery_address, provider="postmates")
