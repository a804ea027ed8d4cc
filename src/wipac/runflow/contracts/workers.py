# wipac/runflow/contracts/workers.py
"""Worker contracts: the abstract transfer and compute capabilities.

Workers return a typed outcome. They may also raise ``ExternalFailure`` for
a classified failure; the executor turns that, timeouts and any other
exception into a ``StepFailure``.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Protocol, Union, runtime_checkable

from wipac.runflow.contracts.run import RunView


@dataclass(frozen=True)
class StepSuccess:
    location: str
    checksum: str
    site: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None


@dataclass(frozen=True)
class StepFailure:
    reason: str
    started_at: datetime | None = None
    finished_at: datetime | None = None


StepOutcome = Union[StepSuccess, StepFailure]


@runtime_checkable
class TransferWorker(Protocol):
    """Moves a run's data (tape archive -> processing site, or -> WIPAC)."""

    async def transfer(self, run: RunView) -> StepOutcome: ...


@runtime_checkable
class ComputeWorker(Protocol):
    """Runs processing stage 1 or 2 for a run."""

    async def process(self, run: RunView, step_number: int) -> StepOutcome: ...


@dataclass(frozen=True)
class WorkerSet:
    tape: TransferWorker
    wipac: TransferWorker
    compute: ComputeWorker
