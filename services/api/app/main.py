"""Courant API service entrypoint."""

from fastapi import FastAPI

from services.api.app.db.init_db import init_db
from services.api.app.log import configure_logging
from services.api.app.routers.delivery import router as delivery_router
from services.api.app.routers.order import router as order_router
from services.api.app.routers.webhooks import router as webhooks_router
from services.api.app.services.orchestrator_factory import build_orchestrator
from services.api.app.settings import RuntimeSettings

app = FastAPI(title="Courant API")

app.include_router(order_router)
app.include_router(delivery_router)
app.include_router(webhooks_router)


@app.on_event("startup")
def _startup() -> None:
    configure_logging()
    runtime = RuntimeSettings.from_env()
    if runtime.order_store == "sql":
        init_db()
    app.state.runtime = runtime
    app.state.orchestrator = build_orchestrator(runtime)


@app.on_event("shutdown")
def _shutdown() -> None:
    orchestrator = getattr(app.state, "orchestrator", None)
    if orchestrator is not None:
        orchestrator.scheduler.shutdown()


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}
