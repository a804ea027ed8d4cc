# tests/conftest.py
from __future__ import annotations

import asyncio
from datetime import datetime
from pathlib import Path
from typing import Callable

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool

from wipac.runflow.contracts.run import RunView
from wipac.runflow.contracts.workers import StepFailure, StepOutcome, StepSuccess, WorkerSet
from wipac.runflow.core.alerts import MemoryAlertSink
from wipac.runflow.core.db import Base, build_engine, build_sessionmaker, init_db
from wipac.runflow.main import AppWiring, create_app
from wipac.runflow.store import models  # noqa: F401
from wipac.runflow.workflow.engine import TransitionEngine

URL_TEMPLATE = "https://data.icecube.wisc.edu/{run_number}/{file_number}{location}?sha={checksum}"


class ConcurrencyTracker:
    """Counts external calls in flight across all fake workers."""

    def __init__(self) -> None:
        self.active = 0
        self.max_active = 0

    def enter(self) -> None:
        self.active += 1
        self.max_active = max(self.max_active, self.active)

    def leave(self) -> None:
        self.active -= 1


class _ScriptedWorker:
    """
    Succeeds by default. Per key, ``script`` holds one-shot outcomes (or
    exceptions to raise) and ``failing`` holds a reason that fails every call.
    ``gate`` blocks calls until it is set.
    """

    def __init__(self, name: str, tracker: ConcurrencyTracker) -> None:
        self.name = name
        self.tracker = tracker
        self.calls: list[tuple[int, int]] = []
        self.script: dict[tuple[int, int], list[StepOutcome | Exception]] = {}
        self.failing: dict[tuple[int, int], str] = {}
        self.gate: asyncio.Event | None = None

    def block(self) -> asyncio.Event:
        self.gate = asyncio.Event()
        return self.gate

    def default(self, run: RunView, step_number: int) -> StepOutcome:
        return StepSuccess(
            location=f"/{self.name}/{run.run_number}/step{step_number}",
            checksum=f"{self.name}-{run.run_number}-{step_number}",
            site="NERSC",
        )

    async def _call(self, run: RunView, step_number: int) -> StepOutcome:
        key = (run.run_number, step_number)
        self.calls.append(key)
        self.tracker.enter()
        try:
            if self.gate is not None:
                await self.gate.wait()
            queued = self.script.get(key)
            if queued:
                outcome = queued.pop(0)
                if isinstance(outcome, Exception):
                    raise outcome
                return outcome
            if key in self.failing:
                return StepFailure(reason=self.failing[key])
            return self.default(run, step_number)
        finally:
            self.tracker.leave()


class FakeTransferWorker(_ScriptedWorker):
    def __init__(self, name: str, tracker: ConcurrencyTracker, step_number: int) -> None:
        super().__init__(name, tracker)
        self.step_number = step_number

    async def transfer(self, run: RunView) -> StepOutcome:
        return await self._call(run, self.step_number)


class FakeComputeWorker(_ScriptedWorker):
    async def process(self, run: RunView, step_number: int) -> StepOutcome:
        return await self._call(run, step_number)


class FakeWorkers:
    def __init__(self) -> None:
        self.tracker = ConcurrencyTracker()
        self.tape = FakeTransferWorker("tape", self.tracker, 1)
        self.wipac = FakeTransferWorker("wipac", self.tracker, 2)
        self.compute = FakeComputeWorker("compute", self.tracker)

    def worker_set(self) -> WorkerSet:
        return WorkerSet(tape=self.tape, wipac=self.wipac, compute=self.compute)


async def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    """Yield to the loop until ``predicate`` holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def db_url(tmp_path: Path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'runflow.db'}"


@pytest_asyncio.fixture
async def db_engine(db_url: str) -> AsyncEngine:
    engine = build_engine(db_url)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def sessionmaker(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return build_sessionmaker(db_engine)


@pytest.fixture
def alerts() -> MemoryAlertSink:
    return MemoryAlertSink()


@pytest.fixture
def engine(sessionmaker, alerts: MemoryAlertSink) -> TransitionEngine:
    return TransitionEngine(sessionmaker, alerts=alerts, url_template=URL_TEMPLATE)


@pytest.fixture
def workers() -> FakeWorkers:
    return FakeWorkers()


@pytest.fixture
def start_date() -> datetime:
    return datetime(2023, 12, 1, 8, 30)


@pytest.fixture
def client(tmp_path: Path, workers: FakeWorkers, alerts: MemoryAlertSink):
    """
    API client over a file-backed SQLite database, scheduler loop off.

    The app runs on the TestClient's own event loop, so its engine must not
    pool connections opened elsewhere.
    """
    path = tmp_path / "api.db"
    sync_engine = create_engine(f"sqlite:///{path}")
    Base.metadata.create_all(sync_engine)
    sync_engine.dispose()

    db = build_engine(f"sqlite+aiosqlite:///{path}", poolclass=NullPool)
    wiring = AppWiring(
        sessionmaker=build_sessionmaker(db),
        workers=workers.worker_set(),
        alerts=alerts,
        start_scheduler=False,
    )
    with TestClient(create_app(wiring)) as test_client:
        yield test_client
