from __future__ import annotations

from services.api.app.services.courier_factory import get_courier_adapters
from services.api.app.services.notifications import NotificationChannel
from services.api.app.services.orchestrator import OrderOrchestrator
from services.api.app.services.pos_factory import get_pos_adapters
from services.api.app.services.scheduler import ManualScheduler, TaskScheduler, ThreadScheduler
from services.api.app.services.simulator import DemoProgression
from services.api.app.services.store import get_order_store
from services.api.app.settings import PricingSettings, RestaurantInfo, RuntimeSettings


def get_scheduler(kind: str) -> TaskScheduler:
    if kind == "thread":
        return ThreadScheduler()
    if kind == "manual":
        return ManualScheduler()
    raise ValueError(f"Unknown COURANT_SCHEDULER={kind!r}. Expected thread or manual.")


def build_orchestrator(runtime: RuntimeSettings | None = None) -> OrderOrchestrator:
    """Wire the orchestrator and its collaborators from env vars.

    Raises ValueError for unknown store, scheduler or provider settings so a bad deploy
    fails at startup rather than on the first order.
    """

    runtime = runtime or RuntimeSettings.from_env()

    orchestrator = OrderOrchestrator(
        store=get_order_store(runtime.order_store),
        pos_adapters=get_pos_adapters(),
        courier_adapters=get_courier_adapters(),
        notifier=NotificationChannel(),
        pricing=PricingSettings.from_env(),
        restaurant=RestaurantInfo.from_env(),
        scheduler=get_scheduler(runtime.scheduler),
        default_pos_provider=runtime.default_pos_provider,
        default_courier_provider=runtime.default_courier_provider,
    )

    if runtime.demo_progression:
        DemoProgression(orchestrator, step_seconds=runtime.demo_step_seconds).attach()

    return orchestrator
