from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Any, Protocol
from uuid import uuid4

from sqlalchemy import select

from packages.shared.schemas.events import OrderEventTypeV1, OrderEventV1
from packages.shared.schemas.order_v1 import OrderSnapshotV1
from services.api.app.db.database import session_scope
from services.api.app.db.models import ExternalRef, OrderEventLog, OrderRow
from services.api.app.services.order_state import Order


class OrderStore(Protocol):
    """Key-value order persistence with read-your-writes per key.

    Besides get/put it keeps the external reference index (provider ids → order id) and
    the append-only order event log.
    """

    def get(self, order_id: str) -> Order | None: ...

    def put(self, order: Order) -> None: ...

    def link_external_ref(self, namespace: str, external_id: str, order_id: str) -> None: ...

    def find_by_external_ref(self, namespace: str, external_id: str) -> str | None: ...

    def append_event(
        self,
        order_id: str,
        event_type: OrderEventTypeV1,
        *,
        source: str,
        payload: dict[str, Any] | None = None,
    ) -> None: ...

    def list_events(self, order_id: str) -> list[OrderEventV1]: ...


class InMemoryOrderStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._orders: dict[str, OrderSnapshotV1] = {}
        self._refs: dict[tuple[str, str], str] = {}
        self._events: dict[str, list[OrderEventV1]] = {}

    def get(self, order_id: str) -> Order | None:
        with self._lock:
            snapshot = self._orders.get(order_id)
        return Order.from_snapshot(snapshot) if snapshot is not None else None

    def put(self, order: Order) -> None:
        snapshot = order.to_snapshot()
        with self._lock:
            self._orders[order.id] = snapshot

    def link_external_ref(self, namespace: str, external_id: str, order_id: str) -> None:
        with self._lock:
            self._refs[(namespace, external_id)] = order_id

    def find_by_external_ref(self, namespace: str, external_id: str) -> str | None:
        with self._lock:
            return self._refs.get((namespace, external_id))

    def append_event(
        self,
        order_id: str,
        event_type: OrderEventTypeV1,
        *,
        source: str,
        payload: dict[str, Any] | None = None,
    ) -> None:
        event = OrderEventV1(
            id=uuid4().hex,
            order_id=order_id,
            event_type=event_type,
            source=source,
            payload=payload or {},
            created_at=datetime.now(timezone.utc).isoformat(),
        )
        with self._lock:
            self._events.setdefault(order_id, []).append(event)

    def list_events(self, order_id: str) -> list[OrderEventV1]:
        with self._lock:
            return list(self._events.get(order_id, []))


class SqlOrderStore:
    """SQLAlchemy-backed store. One short session per call."""

    def get(self, order_id: str) -> Order | None:
        with session_scope() as db:
            row = db.get(OrderRow, order_id)
            if row is None:
                return None
            return Order.from_snapshot(OrderSnapshotV1.model_validate(row.snapshot_json))

    def put(self, order: Order) -> None:
        snapshot = order.to_snapshot()
        with session_scope() as db:
            db.merge(
                OrderRow(
                    id=order.id,
                    fulfillment=order.fulfillment.value,
                    status=order.status.value,
                    revision=order.revision,
                    pos_provider=order.pos_provider,
                    pos_order_id=order.pos_order_id,
                    courier_provider=order.courier_provider,
                    courier_job_id=order.courier_job_id,
                    grand_total_cents=order.totals.grand_total_cents,
                    snapshot_json=snapshot.model_dump(mode="json"),
                    placed_at=order.placed_at,
                    updated_at=datetime.now(timezone.utc),
                )
            )

    def link_external_ref(self, namespace: str, external_id: str, order_id: str) -> None:
        with session_scope() as db:
            db.merge(ExternalRef(namespace=namespace, external_id=external_id, order_id=order_id))

    def find_by_external_ref(self, namespace: str, external_id: str) -> str | None:
        with session_scope() as db:
            ref = db.get(ExternalRef, (namespace, external_id))
            return ref.order_id if ref is not None else None

    def append_event(
        self,
        order_id: str,
        event_type: OrderEventTypeV1,
        *,
        source: str,
        payload: dict[str, Any] | None = None,
    ) -> None:
        with session_scope() as db:
            db.add(
                OrderEventLog(
                    id=uuid4().hex,
                    order_id=order_id,
                    event_type=event_type.value,
                    source=source,
                    event_payload_json=payload or {},
                    created_at=datetime.now(timezone.utc),
                )
            )

    def list_events(self, order_id: str) -> list[OrderEventV1]:
        with session_scope() as db:
            rows = db.scalars(
                select(OrderEventLog)
                .where(OrderEventLog.order_id == order_id)
                .order_by(OrderEventLog.seq)
            ).all()
            return [
                OrderEventV1(
                    id=row.id,
                    order_id=row.order_id,
                    event_type=OrderEventTypeV1(row.event_type),
                    source=row.source,
                    payload=row.event_payload_json,
                    created_at=row.created_at.isoformat(),
                )
                for row in rows
            ]


def get_order_store(kind: str) -> OrderStore:
    if kind == "memory":
        return InMemoryOrderStore()
    if kind == "sql":
        return SqlOrderStore()
    raise ValueError(f"Unknown COURANT_ORDER_STORE={kind!r}. Expected sql or memory.")
