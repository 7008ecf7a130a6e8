"""Order aggregate and status state machine.

Progress is decided by the ordinal tables in ``packages.shared.schemas.order_v1``, never by
arrival time: providers deliver webhooks in no particular order, so an update is applied
only when it moves the order strictly forward on its track, or moves a still-open order
into one of the exception states.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from uuid import uuid4

from packages.shared.schemas.order_v1 import (
    EXCEPTION_STATUSES,
    TRACK_TERMINALS,
    TRACKS,
    CustomerV1,
    DeliveryAddressV1,
    DriverV1,
    FulfillmentV1,
    OrderSnapshotV1,
    OrderStatusV1,
)
from services.api.app.services.pricing import CartLine, Totals


class PosSync(str, Enum):
    PENDING = "pending"
    SUBMITTED = "submitted"
    NOT_CONNECTED = "not_connected"


class CourierDispatch(str, Enum):
    NOT_NEEDED = "not_needed"
    PENDING = "pending"
    REQUESTED = "requested"
    EXHAUSTED = "exhausted"


class TransitionResult(str, Enum):
    APPLIED = "applied"
    STALE = "stale"
    TERMINAL = "terminal"
    OFF_TRACK = "off_track"


# Minutes from the moment a status is entered until the order is expected to be ready
# (pickup) or at the customer's door (delivery).
ETA_OFFSETS_MINUTES: dict[FulfillmentV1, dict[OrderStatusV1, int]] = {
    FulfillmentV1.PICKUP: {
        OrderStatusV1.CREATED: 25,
        OrderStatusV1.ACCEPTED: 20,
        OrderStatusV1.IN_KITCHEN: 12,
        OrderStatusV1.READY: 5,
    },
    FulfillmentV1.DELIVERY: {
        OrderStatusV1.CREATED: 45,
        OrderStatusV1.ACCEPTED: 40,
        OrderStatusV1.IN_KITCHEN: 32,
        OrderStatusV1.READY: 25,
        OrderStatusV1.COURIER_REQUESTED: 25,
        OrderStatusV1.DRIVER_EN_ROUTE: 20,
        OrderStatusV1.PICKED_UP: 12,
        OrderStatusV1.DELIVERED: 0,
    },
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_order_id(now: datetime | None = None) -> str:
    """Opaque id that sorts lexicographically by creation time (millisecond prefix)."""

    now = now or utcnow()
    millis = int(now.timestamp() * 1000)
    return f"ord_{millis:012x}{uuid4().hex[:12]}"


def is_terminal_status(status: OrderStatusV1, fulfillment: FulfillmentV1) -> bool:
    return status in EXCEPTION_STATUSES or status == TRACK_TERMINALS[fulfillment]


def evaluate_transition(
    current: OrderStatusV1,
    incoming: OrderStatusV1,
    fulfillment: FulfillmentV1,
) -> TransitionResult:
    if is_terminal_status(current, fulfillment):
        return TransitionResult.TERMINAL

    if incoming in EXCEPTION_STATUSES:
        return TransitionResult.APPLIED

    track = TRACKS[fulfillment]
    if incoming not in track:
        return TransitionResult.OFF_TRACK

    if track[incoming] > track[current]:
        return TransitionResult.APPLIED
    return TransitionResult.STALE


def estimate_eta(
    fulfillment: FulfillmentV1,
    status: OrderStatusV1,
    entered_at: datetime,
) -> datetime | None:
    offset = ETA_OFFSETS_MINUTES[fulfillment].get(status)
    if offset is None:
        return None
    return entered_at + timedelta(minutes=offset)


@dataclass
class Order:
    id: str
    fulfillment: FulfillmentV1
    customer: CustomerV1
    delivery_address: DeliveryAddressV1 | None
    items: tuple[CartLine, ...]
    totals: Totals
    placed_at: datetime

    status: OrderStatusV1 = OrderStatusV1.CREATED

    pos_provider: str | None = None
    pos_order_id: str | None = None
    pos_sync: PosSync = PosSync.PENDING

    courier_provider: str | None = None
    courier_job_id: str | None = None
    courier_tracking_url: str | None = None
    courier_dispatch: CourierDispatch = CourierDispatch.NOT_NEEDED
    driver: DriverV1 | None = None

    timestamps: dict[OrderStatusV1, datetime] = field(default_factory=dict)
    eta: datetime | None = None
    notes: str | None = None
    revision: int = 0

    @classmethod
    def create(
        cls,
        *,
        fulfillment: FulfillmentV1,
        customer: CustomerV1,
        delivery_address: DeliveryAddressV1 | None,
        items: tuple[CartLine, ...],
        totals: Totals,
        pos_provider: str | None,
        courier_provider: str | None,
        now: datetime,
    ) -> "Order":
        order = cls(
            id=new_order_id(now),
            fulfillment=fulfillment,
            customer=customer,
            delivery_address=delivery_address,
            items=items,
            totals=totals,
            placed_at=now,
            pos_provider=pos_provider,
            courier_provider=courier_provider,
            courier_dispatch=(
                CourierDispatch.PENDING
                if fulfillment == FulfillmentV1.DELIVERY
                else CourierDispatch.NOT_NEEDED
            ),
        )
        order.timestamps[OrderStatusV1.CREATED] = now
        order.eta = estimate_eta(fulfillment, OrderStatusV1.CREATED, now)
        order.revision = 1
        return order

    @property
    def is_terminal(self) -> bool:
        return is_terminal_status(self.status, self.fulfillment)

    @property
    def needs_courier(self) -> bool:
        return (
            self.fulfillment == FulfillmentV1.DELIVERY
            and self.status == OrderStatusV1.READY
            and self.courier_job_id is None
        )

    def touch(self) -> None:
        self.revision += 1

    def update_driver(self, reported: DriverV1) -> bool:
        """Merge courier-reported driver details; fields the report leaves out are kept.

        Returns True when anything changed. The caller bumps the revision.
        """

        current = self.driver or DriverV1()
        merged = DriverV1(
            name=reported.name or current.name,
            phone=reported.phone or current.phone,
            location=reported.location or current.location,
        )
        if merged == self.driver:
            return False
        self.driver = merged
        return True

    def apply_status(
        self,
        incoming: OrderStatusV1,
        now: datetime,
        *,
        note: str | None = None,
    ) -> TransitionResult:
        result = evaluate_transition(self.status, incoming, self.fulfillment)
        if result != TransitionResult.APPLIED:
            return result

        self.status = incoming
        self.timestamps[incoming] = now
        self.eta = estimate_eta(self.fulfillment, incoming, now)
        if incoming == OrderStatusV1.DELIVERED:
            self.eta = now
        if note:
            self.notes = note
        self.touch()
        return result

    def to_snapshot(self) -> OrderSnapshotV1:
        return OrderSnapshotV1(
            id=self.id,
            revision=self.revision,
            fulfillment=self.fulfillment,
            status=self.status,
            customer=self.customer,
            delivery_address=self.delivery_address,
            items=[line.to_dict() for line in self.items],
            totals=self.totals.to_dict(),
            pos_provider=self.pos_provider,
            pos_order_id=self.pos_order_id,
            pos_sync=self.pos_sync.value,
            courier_provider=self.courier_provider,
            courier_job_id=self.courier_job_id,
            courier_tracking_url=self.courier_tracking_url,
            courier_dispatch=self.courier_dispatch.value,
            driver=self.driver,
            timestamps={status.value: ts.isoformat() for status, ts in self.timestamps.items()},
            placed_at=self.placed_at.isoformat(),
            eta=self.eta.isoformat() if self.eta else None,
            notes=self.notes,
        )

    @classmethod
    def from_snapshot(cls, snapshot: OrderSnapshotV1) -> "Order":
        return cls(
            id=snapshot.id,
            fulfillment=snapshot.fulfillment,
            customer=snapshot.customer,
            delivery_address=snapshot.delivery_address,
            items=tuple(CartLine.from_dict(line.model_dump()) for line in snapshot.items),
            totals=Totals.from_dict(snapshot.totals.model_dump()),
            placed_at=datetime.fromisoformat(snapshot.placed_at),
            status=snapshot.status,
            pos_provider=snapshot.pos_provider,
            pos_order_id=snapshot.pos_order_id,
            pos_sync=PosSync(snapshot.pos_sync),
            courier_provider=snapshot.courier_provider,
            courier_job_id=snapshot.courier_job_id,
            courier_tracking_url=snapshot.courier_tracking_url,
            courier_dispatch=CourierDispatch(snapshot.courier_dispatch),
            driver=snapshot.driver,
            timestamps={
                OrderStatusV1(status): datetime.fromisoformat(ts)
                for status, ts in snapshot.timestamps.items()
            },
            eta=datetime.fromisoformat(snapshot.eta) if snapshot.eta else None,
            notes=snapshot.notes,
            revision=snapshot.revision,
        )
