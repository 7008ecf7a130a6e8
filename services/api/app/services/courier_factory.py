from __future__ import annotations

import os
from collections.abc import Callable

from services.api.app.services.courier_base import CourierAdapter
from services.api.app.services.courier_doordash import DoorDashCourierAdapter
from services.api.app.services.courier_uber import UberCourierAdapter

_COURIER_BUILDERS: dict[str, Callable[[], CourierAdapter]] = {
    "doordash": DoorDashCourierAdapter.from_env,
    "uber": UberCourierAdapter.from_env,
}


def get_courier_adapters() -> dict[str, CourierAdapter]:
    raw = os.getenv("COURANT_COURIER_PROVIDERS", ",".join(_COURIER_BUILDERS))
    registry: dict[str, CourierAdapter] = {}
    for name in (p.strip().lower() for p in raw.split(",")):
        if not name:
            continue
        builder = _COURIER_BUILDERS.get(name)
        if builder is None:
            raise ValueError(
                f"Unknown COURANT_COURIER_PROVIDERS entry {name!r}. Expected doordash or uber."
            )
        registry[name] = builder()
    return registry
