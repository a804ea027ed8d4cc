# wipac/runflow/api/dependencies.py
"""
FastAPI dependencies for the services wired up in the application lifespan.

Provides:
- ``get_services``: the ``Services`` container stored on ``app.state``.
- ``get_engine``: the transition engine.
- ``get_dispatcher``: the scheduler/dispatcher.
"""
from __future__ import annotations

from dataclasses import dataclass

from fastapi import Depends, HTTPException, Request

from wipac.runflow.workflow.engine import TransitionEngine
from wipac.runflow.workflow.executor import StepExecutor
from wipac.runflow.workflow.scheduler import Dispatcher


@dataclass
class Services:
    engine: TransitionEngine
    executor: StepExecutor
    dispatcher: Dispatcher


def get_services(request: Request) -> Services:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Service is not initialized")
    return services


def get_engine(services: Services = Depends(get_services)) -> TransitionEngine:
    return services.engine


def get_dispatcher(services: Services = Depends(get_services)) -> Dispatcher:
    return services.dispatcher
