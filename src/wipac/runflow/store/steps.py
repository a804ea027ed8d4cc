# wipac/runflow/store/steps.py
"""Step Store: access to the ``processing_steps`` table.

One row per (run, step number). Rows are created the first time a step
begins and mutated in place on every later attempt.
"""
from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from wipac.runflow.contracts.workers import StepSuccess
from wipac.runflow.core.utils import utc_now
from wipac.runflow.store.models import ProcessingStep, Run


class StepStore:
    def find(self, run: Run, step_number: int) -> ProcessingStep | None:
        for step in run.steps:
            if step.step_number == step_number:
                return step
        return None

    def begin(self, run: Run, step_number: int, *, started: datetime) -> ProcessingStep:
        """Start (or restart) a step, reusing the existing row if there is one."""
        step = self.find(run, step_number)
        now = utc_now()
        if step is None:
            step = ProcessingStep(
                id=uuid.uuid4(),
                run_number=run.run_number,
                step_number=step_number,
                created_at=now,
            )
            run.steps.append(step)
        step.started_date = started
        step.end_date = None
        step.site = None
        step.checksum = None
        step.location = None
        step.updated_at = now
        return step

    def succeed(self, step: ProcessingStep, outcome: StepSuccess) -> ProcessingStep:
        step.end_date = outcome.finished_at or utc_now()
        step.site = outcome.site
        step.checksum = outcome.checksum
        step.location = outcome.location
        step.updated_at = utc_now()
        return step

    def fail(self, step: ProcessingStep, *, ended: datetime | None = None) -> ProcessingStep:
        step.end_date = ended or utc_now()
        step.checksum = None
        step.location = None
        step.updated_at = utc_now()
        return step

    async def list_for_run(self, session: AsyncSession, run_number: int) -> list[ProcessingStep]:
        result = await session.execute(
            select(ProcessingStep)
            .where(ProcessingStep.run_number == run_number)
            .order_by(ProcessingStep.step_number)
        )
        return list(result.scalars().all())

    async def list_by_site(
        self, session: AsyncSession, site: str, *, limit: int = 100
    ) -> list[ProcessingStep]:
        result = await session.execute(
            select(ProcessingStep)
            .where(ProcessingStep.site == site)
            .order_by(ProcessingStep.run_number, ProcessingStep.step_number)
            .limit(limit)
        )
        return list(result.scalars().all())
