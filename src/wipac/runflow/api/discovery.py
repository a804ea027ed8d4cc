# wipac/runflow/api/discovery.py
"""
Root-level health endpoint.
"""
from __future__ import annotations

from fastapi import APIRouter, Request

router = APIRouter()


@router.get("/health")
async def health(request: Request) -> dict:
    services = getattr(request.app.state, "services", None)
    if services is None:
        return {"status": "starting", "scheduler": "not started"}

    counts = await services.engine.count_by_state()
    dispatcher = services.dispatcher
    return {
        "status": "healthy",
        "scheduler": "running" if dispatcher.running else "stopped",
        "in_flight": len(dispatcher.in_flight),
        "queued": len(dispatcher.queued),
        "parked": len(dispatcher.parked),
        "runs": {state.value: n for state, n in counts.items()},
    }
