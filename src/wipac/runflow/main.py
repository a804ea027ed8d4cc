# wipac/runflow/main.py
"""
Run workflow application factory.

Creates a FastAPI application exposing the run administration API. The
lifespan wires the transition engine, the step executor with its worker
adapters and the dispatcher, and runs the scheduler loop while the app is up.
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass

from fastapi import FastAPI
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from wipac.runflow.api.dependencies import Services
from wipac.runflow.api.discovery import router as discovery_router
from wipac.runflow.api.runs import router as runs_router
from wipac.runflow.contracts.alerts import AlertSink
from wipac.runflow.contracts.workers import WorkerSet
from wipac.runflow.core.alerts import LoggingAlertSink
from wipac.runflow.core.config import settings
from wipac.runflow.core.db import get_sessionmaker
from wipac.runflow.core.logging import configure_logging
from wipac.runflow.workers.loader import load_workers
from wipac.runflow.workflow.engine import TransitionEngine
from wipac.runflow.workflow.executor import StepExecutor
from wipac.runflow.workflow.scheduler import Dispatcher

logger = logging.getLogger(__name__)


@dataclass
class AppWiring:
    """Overrides for the lifespan; anything left ``None`` comes from settings."""

    sessionmaker: async_sessionmaker[AsyncSession] | None = None
    workers: WorkerSet | None = None
    alerts: AlertSink | None = None
    start_scheduler: bool = True


# -- Lifespan ------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build engine, workers, executor and dispatcher; run the scheduler."""
    wiring: AppWiring = app.state.wiring

    alerts = wiring.alerts or LoggingAlertSink()
    sessionmaker = wiring.sessionmaker or get_sessionmaker()

    # 1. Workers
    workers = wiring.workers
    if workers is None:
        try:
            workers = load_workers(settings.workers_config_paths)
        except Exception:
            logger.exception("Failed to load workers")
            raise

    # 2. Engine, executor, dispatcher
    engine = TransitionEngine(sessionmaker, alerts=alerts)
    executor = StepExecutor(engine, workers)
    dispatcher = Dispatcher(engine, executor, alerts=alerts)

    app.state.services = Services(engine=engine, executor=executor, dispatcher=dispatcher)

    # 3. Scheduler loop
    if wiring.start_scheduler:
        dispatcher.start()

    yield

    # Shutdown
    await dispatcher.stop()
    app.state.services = None


# -- Application factory -------------------------------------------------------


def create_app(wiring: AppWiring | None = None) -> FastAPI:
    """Build and wire the run workflow FastAPI application."""
    configure_logging(settings.log_level, json=settings.log_json)
    logger.info("Creating runflow application (env=%s)", settings.app_env)

    app = FastAPI(
        title="WIPAC Run Workflow",
        version="1.0.0",
        description="Run lifecycle tracking and step dispatch",
        lifespan=lifespan,
    )

    app.state.wiring = wiring or AppWiring()
    app.state.services = None

    app.include_router(discovery_router)
    app.include_router(runs_router)

    return app
