from __future__ import annotations

from fastapi import Request

from services.api.app.services.orchestrator import OrderOrchestrator


def get_orchestrator(request: Request) -> OrderOrchestrator:
    # Built once in the startup hook; see services.api.app.main.
    return request.app.state.orchestrator
