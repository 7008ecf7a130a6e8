from __future__ import annotations

import os
from collections.abc import Callable

from services.api.app.services.pos_base import PosAdapter
from services.api.app.services.pos_clover import CloverPosAdapter
from services.api.app.services.pos_square import SquarePosAdapter
from services.api.app.services.pos_toast import ToastPosAdapter

_POS_BUILDERS: dict[str, Callable[[], PosAdapter]] = {
    "toast": ToastPosAdapter.from_env,
    "square": SquarePosAdapter.from_env,
    "clover": CloverPosAdapter.from_env,
}


def get_pos_adapters() -> dict[str, PosAdapter]:
    """Build the provider-keyed POS registry from env vars.

    COURANT_POS_PROVIDERS lists the enabled providers (default: all of them). Each adapter
    stays in dry-run mode unless COURANT_<PROVIDER>_DRY_RUN=false.
    """

    raw = os.getenv("COURANT_POS_PROVIDERS", ",".join(_POS_BUILDERS))
    registry: dict[str, PosAdapter] = {}
    for name in (p.strip().lower() for p in raw.split(",")):
        if not name:
            continue
        builder = _POS_BUILDERS.get(name)
        if builder is None:
            raise ValueError(
                f"Unknown COURANT_POS_PROVIDERS entry {name!r}. Expected toast, square or clover."
            )
        registry[name] = builder()
    return registry
