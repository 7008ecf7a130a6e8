"""Fan-out of order snapshots to subscribers.

Each subscriber gets full snapshots, at least once, and never one older than a snapshot it
already received: publishes carrying a revision at or below the subscriber's high-water
mark are dropped for that subscriber.
"""

from __future__ import annotations

import queue
import threading
from collections.abc import Callable, Iterator

import structlog

from packages.shared.schemas.order_v1 import OrderSnapshotV1

logger = structlog.get_logger(__name__)

SnapshotListener = Callable[[OrderSnapshotV1], None]


class Subscription:
    def __init__(self, channel: "NotificationChannel", order_id: str) -> None:
        self.order_id = order_id
        self._channel = channel
        self._queue: queue.Queue[OrderSnapshotV1] = queue.Queue()
        self._lock = threading.Lock()
        self._high_water = 0
        self.closed = False

    def offer(self, snapshot: OrderSnapshotV1) -> bool:
        with self._lock:
            if self.closed or snapshot.revision <= self._high_water:
                return False
            self._high_water = snapshot.revision
            self._queue.put(snapshot)
            return True

    def get(self, timeout: float | None = None) -> OrderSnapshotV1 | None:
        """Next snapshot, or None if nothing arrived within ``timeout`` seconds."""

        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> list[OrderSnapshotV1]:
        out: list[OrderSnapshotV1] = []
        while True:
            try:
                out.append(self._queue.get_nowait())
            except queue.Empty:
                return out

    def close(self) -> None:
        with self._lock:
            self.closed = True
        self._channel.unsubscribe(self)

    def __iter__(self) -> Iterator[OrderSnapshotV1]:
        while not self.closed:
            snapshot = self.get(timeout=1.0)
            if snapshot is not None:
                yield snapshot

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


class NotificationChannel:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: dict[str, list[Subscription]] = {}
        self._listeners: list[SnapshotListener] = []

    def subscribe(self, order_id: str) -> Subscription:
        subscription = Subscription(self, order_id)
        with self._lock:
            self._subscribers.setdefault(order_id, []).append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            subs = self._subscribers.get(subscription.order_id)
            if not subs:
                return
            if subscription in subs:
                subs.remove(subscription)
            if not subs:
                del self._subscribers[subscription.order_id]

    def add_listener(self, listener: SnapshotListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def subscriber_count(self, order_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(order_id, []))

    def publish(self, snapshot: OrderSnapshotV1) -> int:
        with self._lock:
            subs = list(self._subscribers.get(snapshot.id, []))
            listeners = list(self._listeners)

        delivered = sum(1 for sub in subs if sub.offer(snapshot))

        for listener in listeners:
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Snapshot listener failed", order_id=snapshot.id)

        logger.debug(
            "Published order snapshot",
            order_id=snapshot.id,
            status=snapshot.status.value,
            revision=snapshot.revision,
            delivered=delivered,
        )
        return delivered
