from __future__ import annotations

import os
from pathlib import Path

from services.api.app.db.database import get_engine
from services.api.app.db.models import Base


def _auto_create_enabled() -> bool:
    return os.getenv("COURANT_DB_AUTO_CREATE", "true").strip().lower() in {"1", "true", "yes", "y"}


def init_db() -> None:
    if not _auto_create_enabled():
        return

    engine = get_engine()
    url = engine.url
    if url.get_backend_name() == "sqlite" and url.database and url.database != ":memory:":
        Path(url.database).parent.mkdir(parents=True, exist_ok=True)

    Base.metadata.create_all(bind=engine)
