# wipac/runflow/contracts/run.py
"""Read-only snapshots of runs and their processing steps.

The engine hands these out instead of ORM instances so that nothing outside
the engine can mutate persisted rows.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from uuid import UUID

from wipac.runflow.contracts.state import WorkflowState

# Run and file numbers are stored in 32-bit INTEGER columns
MAX_RUN_NUMBER = 2**31 - 1


@dataclass(frozen=True)
class StepView:
    id: UUID
    run_number: int
    step_number: int
    started_date: datetime | None = None
    end_date: datetime | None = None
    site: str | None = None
    checksum: str | None = None
    location: str | None = None

    @property
    def in_flight(self) -> bool:
        return (
            self.started_date is not None
            and self.end_date is None
            and self.checksum is None
            and self.location is None
        )

    @property
    def succeeded(self) -> bool:
        return (
            self.end_date is not None
            and self.checksum is not None
            and self.location is not None
        )

    @property
    def failed(self) -> bool:
        return self.end_date is not None and self.checksum is None and self.location is None


@dataclass(frozen=True)
class RunView:
    run_number: int
    file_number: int
    run_start_date: datetime
    state: WorkflowState
    url: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    steps: tuple[StepView, ...] = field(default_factory=tuple)

    def step(self, step_number: int) -> StepView | None:
        for s in self.steps:
            if s.step_number == step_number:
                return s
        return None
