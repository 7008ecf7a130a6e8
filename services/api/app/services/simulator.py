"""Demo progression clock.

Walks orders through their lifecycle without real providers: each published snapshot
schedules the next synthetic provider webhook, which re-enters the orchestrator through
the same ``apply_*_webhook`` entry points real providers use.
"""

from __future__ import annotations

import threading

import structlog

from packages.shared.schemas.order_v1 import OrderSnapshotV1, OrderStatusV1
from services.api.app.services.orchestrator import OrderOrchestrator

logger = structlog.get_logger(__name__)

# Next status each provider reports after the current one.
_POS_STEPS: dict[OrderStatusV1, OrderStatusV1] = {
    OrderStatusV1.CREATED: OrderStatusV1.ACCEPTED,
    OrderStatusV1.ACCEPTED: OrderStatusV1.IN_KITCHEN,
    OrderStatusV1.IN_KITCHEN: OrderStatusV1.READY,
}
_COURIER_STEPS: dict[OrderStatusV1, OrderStatusV1] = {
    OrderStatusV1.COURIER_REQUESTED: OrderStatusV1.DRIVER_EN_ROUTE,
    OrderStatusV1.DRIVER_EN_ROUTE: OrderStatusV1.PICKED_UP,
    OrderStatusV1.PICKED_UP: OrderStatusV1.DELIVERED,
}


class DemoProgression:
    def __init__(self, orchestrator: OrderOrchestrator, *, step_seconds: float = 8.0) -> None:
        self._orchestrator = orchestrator
        self._step_seconds = step_seconds
        self._lock = threading.Lock()
        self._in_flight: set[tuple[str, OrderStatusV1]] = set()

    def attach(self) -> None:
        self._orchestrator.notifier.add_listener(self.on_snapshot)

    def on_snapshot(self, snapshot: OrderSnapshotV1) -> None:
        # Runs under the order lock: only schedule here, never apply.
        if snapshot.status in _POS_STEPS and snapshot.pos_order_id and snapshot.pos_provider:
            self._schedule(
                "pos",
                snapshot.id,
                snapshot.pos_provider,
                snapshot.pos_order_id,
                _POS_STEPS[snapshot.status],
            )
        elif (
            snapshot.status in _COURIER_STEPS
            and snapshot.courier_job_id
            and snapshot.courier_provider
        ):
            self._schedule(
                "courier",
                snapshot.id,
                snapshot.courier_provider,
                snapshot.courier_job_id,
                _COURIER_STEPS[snapshot.status],
            )

    def _schedule(
        self,
        kind: str,
        order_id: str,
        provider: str,
        external_id: str,
        status: OrderStatusV1,
    ) -> None:
        key = (order_id, status)
        with self._lock:
            if key in self._in_flight:
                return
            self._in_flight.add(key)

        self._orchestrator.scheduler.call_later(
            self._step_seconds,
            lambda: self._emit(kind, order_id, provider, external_id, status),
            name=f"demo-{order_id}-{status.value}",
        )

    def _emit(
        self,
        kind: str,
        order_id: str,
        provider: str,
        external_id: str,
        status: OrderStatusV1,
    ) -> None:
        try:
            if kind == "pos":
                adapter = self._orchestrator.pos_adapters[provider]
                payload = adapter.sample_webhook(status, external_id)
                outcome = self._orchestrator.apply_pos_webhook(provider, payload)
            else:
                courier = self._orchestrator.courier_adapters[provider]
                payload = courier.sample_webhook(status, external_id)
                outcome = self._orchestrator.apply_courier_webhook(provider, payload)
        finally:
            with self._lock:
                self._in_flight.discard((order_id, status))

        logger.debug(
            "Demo webhook emitted",
            order_id=order_id,
            provider=provider,
            status=status.value,
            outcome=outcome.value,
        )
