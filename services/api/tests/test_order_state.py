from datetime import datetime, timedelta, timezone

import pytest

from conftest import burger_cart
from packages.shared.schemas.order_v1 import (
    CustomerV1,
    DriverLocationV1,
    DriverV1,
    FulfillmentV1,
    OrderStatusV1,
)
from services.api.app.services.order_state import (
    Order,
    TransitionResult,
    evaluate_transition,
    new_order_id,
)
from services.api.app.services.pricing import Totals

PLACED_AT = datetime(2026, 3, 14, 18, 0, tzinfo=timezone.utc)


def _order(fulfillment: FulfillmentV1 = FulfillmentV1.PICKUP) -> Order:
    return Order.create(
        fulfillment=fulfillment,
        customer=CustomerV1(name="Ada Lovelace", phone="+15555550123"),
        delivery_address=None,
        items=burger_cart(),
        totals=Totals(subtotal_cents=2000, grand_total_cents=2198),
        pos_provider="toast",
        courier_provider="doordash" if fulfillment == FulfillmentV1.DELIVERY else None,
        now=PLACED_AT,
    )


def test_new_order_starts_created_with_eta() -> None:
    pickup = _order()
    delivery = _order(FulfillmentV1.DELIVERY)

    assert pickup.status == OrderStatusV1.CREATED
    assert pickup.revision == 1
    assert pickup.timestamps == {OrderStatusV1.CREATED: PLACED_AT}
    assert pickup.eta == PLACED_AT + timedelta(minutes=25)
    assert delivery.eta == PLACED_AT + timedelta(minutes=45)


def test_in_kitchen_after_ready_is_discarded() -> None:
    order = _order()
    order.apply_status(OrderStatusV1.READY, PLACED_AT + timedelta(minutes=10))
    revision = order.revision

    result = order.apply_status(OrderStatusV1.IN_KITCHEN, PLACED_AT + timedelta(minutes=11))

    # Ready is terminal for pickup orders.
    assert result == TransitionResult.TERMINAL
    assert order.status == OrderStatusV1.READY
    assert order.revision == revision


def test_out_of_order_update_is_stale() -> None:
    order = _order(FulfillmentV1.DELIVERY)
    order.apply_status(OrderStatusV1.IN_KITCHEN, PLACED_AT + timedelta(minutes=3))

    assert order.apply_status(OrderStatusV1.ACCEPTED, PLACED_AT) == TransitionResult.STALE
    assert order.apply_status(OrderStatusV1.IN_KITCHEN, PLACED_AT) == TransitionResult.STALE
    assert order.status == OrderStatusV1.IN_KITCHEN


def test_applied_transition_stamps_time_and_revises_eta() -> None:
    order = _order(FulfillmentV1.DELIVERY)
    at = PLACED_AT + timedelta(minutes=20)

    result = order.apply_status(OrderStatusV1.PICKED_UP, at, note="left the store")

    assert result == TransitionResult.APPLIED
    assert order.timestamps[OrderStatusV1.PICKED_UP] == at
    assert order.eta == at + timedelta(minutes=12)
    assert order.notes == "left the store"
    assert order.revision == 2


def test_delivered_sets_eta_to_delivery_time() -> None:
    order = _order(FulfillmentV1.DELIVERY)
    at = PLACED_AT + timedelta(minutes=40)
    order.apply_status(OrderStatusV1.DELIVERED, at)
    assert order.eta == at
    assert order.is_terminal


@pytest.mark.parametrize(
    "exception_status",
    [OrderStatusV1.REJECTED, OrderStatusV1.CANCELED, OrderStatusV1.FAILED],
)
def test_exception_states_close_open_orders(exception_status: OrderStatusV1) -> None:
    order = _order(FulfillmentV1.DELIVERY)
    order.apply_status(OrderStatusV1.IN_KITCHEN, PLACED_AT + timedelta(minutes=2))

    assert order.apply_status(exception_status, PLACED_AT + timedelta(minutes=3)) == (
        TransitionResult.APPLIED
    )
    assert order.is_terminal
    assert order.eta is None
    assert order.apply_status(OrderStatusV1.READY, PLACED_AT + timedelta(minutes=4)) == (
        TransitionResult.TERMINAL
    )


def test_courier_statuses_are_off_track_for_pickup() -> None:
    assert (
        evaluate_transition(OrderStatusV1.ACCEPTED, OrderStatusV1.PICKED_UP, FulfillmentV1.PICKUP)
        == TransitionResult.OFF_TRACK
    )


def test_delivery_track_is_strictly_ordered() -> None:
    track = [
        OrderStatusV1.CREATED,
        OrderStatusV1.ACCEPTED,
        OrderStatusV1.IN_KITCHEN,
        OrderStatusV1.READY,
        OrderStatusV1.COURIER_REQUESTED,
        OrderStatusV1.DRIVER_EN_ROUTE,
        OrderStatusV1.PICKED_UP,
        OrderStatusV1.DELIVERED,
    ]
    for i, current in enumerate(track[:-1]):
        for j, incoming in enumerate(track):
            expected = TransitionResult.APPLIED if j > i else TransitionResult.STALE
            assert evaluate_transition(current, incoming, FulfillmentV1.DELIVERY) == expected


def test_snapshot_round_trip_preserves_order() -> None:
    order = _order(FulfillmentV1.DELIVERY)
    order.apply_status(OrderStatusV1.ACCEPTED, PLACED_AT + timedelta(minutes=1))
    order.pos_order_id = "TOAST-abc"
    order.update_driver(DriverV1(name="Sam", location=DriverLocationV1(lat=41.7, lng=-88.1)))

    restored = Order.from_snapshot(order.to_snapshot())

    assert restored == order


def test_driver_reports_merge_into_known_details() -> None:
    order = _order(FulfillmentV1.DELIVERY)

    assert order.update_driver(DriverV1(name="Sam", phone="+15555550199"))
    assert order.update_driver(DriverV1(location=DriverLocationV1(lat=41.7, lng=-88.1)))
    assert not order.update_driver(DriverV1(name="Sam"))

    assert order.driver == DriverV1(
        name="Sam", phone="+15555550199", location=DriverLocationV1(lat=41.7, lng=-88.1)
    )


def test_order_ids_sort_by_creation_time() -> None:
    earlier = new_order_id(PLACED_AT)
    later = new_order_id(PLACED_AT + timedelta(milliseconds=1))
    assert earlier.startswith("ord_")
    assert earlier < later
