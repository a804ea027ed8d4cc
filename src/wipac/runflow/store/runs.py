# wipac/runflow/store/runs.py
"""Run Store: access to the ``runs`` table.

Every method takes the caller's session, so the caller owns the transaction.
Writes are only issued by the transition engine.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from wipac.runflow.contracts.run import RunView, StepView
from wipac.runflow.contracts.state import WorkflowState
from wipac.runflow.core.errors import RunAlreadyRegistered
from wipac.runflow.core.utils import utc_now
from wipac.runflow.store.models import ProcessingStep, Run

logger = logging.getLogger(__name__)


class RunStore:
    async def get(
        self,
        session: AsyncSession,
        run_number: int,
        *,
        for_update: bool = False,
    ) -> Run | None:
        stmt = select(Run).where(Run.run_number == run_number)
        if for_update:
            # Row lock on backends that have one; always refresh from the DB
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await session.execute(stmt)
        return result.scalars().first()

    async def insert(
        self,
        session: AsyncSession,
        *,
        run_number: int,
        file_number: int,
        run_start_date: datetime,
    ) -> Run:
        if await self.get(session, run_number) is not None:
            raise RunAlreadyRegistered(run_number)
        now = utc_now()
        run = Run(
            run_number=run_number,
            file_number=file_number,
            run_start_date=run_start_date,
            state=WorkflowState.NOT_YET_STARTED,
            url=None,
            created_at=now,
            updated_at=now,
            steps=[],
        )
        session.add(run)
        await session.flush()
        return run

    async def compare_and_set_state(
        self,
        session: AsyncSession,
        run_number: int,
        *,
        expected: WorkflowState,
        new: WorkflowState,
        url: str | None,
    ) -> bool:
        """Move the run to ``new`` only if it is still in ``expected``."""
        result = await session.execute(
            update(Run)
            .where(Run.run_number == run_number, Run.state == expected)
            .values(state=new, url=url, updated_at=utc_now())
        )
        return result.rowcount == 1

    async def list_by_states(
        self,
        session: AsyncSession,
        states: Iterable[WorkflowState],
        *,
        limit: int = 500,
        exclude: Iterable[int] = (),
    ) -> list[Run]:
        """Runs in any of ``states``, oldest ``run_start_date`` first,
        leaving out the run numbers in ``exclude``."""
        stmt = select(Run).where(Run.state.in_(list(states)))
        exclude = list(exclude)
        if exclude:
            stmt = stmt.where(Run.run_number.not_in(exclude))
        stmt = stmt.order_by(Run.run_start_date, Run.run_number).limit(limit)
        result = await session.execute(stmt)
        return list(result.scalars().all())

    async def list(
        self,
        session: AsyncSession,
        *,
        state: WorkflowState | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Run]:
        stmt = select(Run).order_by(Run.run_start_date, Run.run_number)
        if state is not None:
            stmt = stmt.where(Run.state == state)
        result = await session.execute(stmt.limit(limit).offset(offset))
        return list(result.scalars().all())

    async def count_by_state(self, session: AsyncSession) -> dict[WorkflowState, int]:
        result = await session.execute(
            select(Run.state, func.count()).group_by(Run.state)
        )
        return {state: count for state, count in result.all()}

    async def delete(self, session: AsyncSession, run_number: int) -> bool:
        run = await self.get(session, run_number, for_update=True)
        if run is None:
            return False
        await session.delete(run)
        await session.flush()
        logger.info("Deleted run %s with %d step(s)", run_number, len(run.steps))
        return True


def step_to_view(step: ProcessingStep) -> StepView:
    return StepView(
        id=step.id,
        run_number=step.run_number,
        step_number=step.step_number,
        started_date=step.started_date,
        end_date=step.end_date,
        site=step.site,
        checksum=step.checksum,
        location=step.location,
    )


def run_to_view(run: Run) -> RunView:
    return RunView(
        run_number=run.run_number,
        file_number=run.file_number,
        run_start_date=run.run_start_date,
        state=WorkflowState(run.state),
        url=run.url,
        created_at=run.created_at,
        updated_at=run.updated_at,
        steps=tuple(
            step_to_view(s) for s in sorted(run.steps, key=lambda s: s.step_number)
        ),
    )
