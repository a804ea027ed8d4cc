# wipac/runflow/workflow/engine.py
"""
Transition engine: the only writer of run state and processing steps.

Every edge of the workflow is one transaction:

1. lock the run row (``SELECT ... FOR UPDATE`` where supported)
2. check the persisted state is the edge's source, else ``StaleStateConflict``
3. mutate the step row in memory
4. verify the state/step invariants for the target state
5. compare-and-set ``runs.state`` (``UPDATE ... WHERE state = :source``)

Any exception rolls the whole transaction back. An invariant violation also
quarantines the run: this engine refuses to touch it again until restart.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Iterable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from wipac.runflow.contracts.alerts import AlertSink, AlertType, WorkflowAlert
from wipac.runflow.contracts.run import RunView
from wipac.runflow.contracts.state import (
    ERROR_STATES,
    OUTCOME_EDGES,
    STEP_OF_STATE,
    TRANSITIONS,
    Edge,
    WorkflowState,
    next_state,
)
from wipac.runflow.contracts.workers import StepFailure, StepOutcome, StepSuccess
from wipac.runflow.core.alerts import LoggingAlertSink
from wipac.runflow.core.config import settings
from wipac.runflow.core.db import session_scope
from wipac.runflow.core.errors import (
    DataIntegrityFault,
    IllegalTransition,
    RunNotFound,
    StaleStateConflict,
)
from wipac.runflow.core.utils import utc_now
from wipac.runflow.store.models import ProcessingStep, Run
from wipac.runflow.store.runs import RunStore, run_to_view, step_to_view
from wipac.runflow.store.steps import StepStore
from wipac.runflow.workflow.invariants import ensure_consistent

logger = logging.getLogger(__name__)

S = WorkflowState

# Mutates the locked run for the edge and returns the url the run must carry
Mutation = Callable[[Run, WorkflowState, WorkflowState], "str | None"]


class TransitionEngine:
    def __init__(
        self,
        sessionmaker: async_sessionmaker[AsyncSession] | None = None,
        *,
        alerts: AlertSink | None = None,
        url_template: str | None = None,
    ) -> None:
        self._sessionmaker = sessionmaker
        self._alerts = alerts or LoggingAlertSink()
        self._url_template = url_template or settings.artifact_url_template
        self._runs = RunStore()
        self._steps = StepStore()
        self._quarantined: set[int] = set()
        self._last_failure: dict[int, str] = {}

    # -- Reads ----------------------------------------------------------------

    async def find_run(self, run_number: int) -> RunView | None:
        async with session_scope(self._sessionmaker) as session:
            run = await self._runs.get(session, run_number)
            return run_to_view(run) if run is not None else None

    async def get_run(self, run_number: int) -> RunView:
        view = await self.find_run(run_number)
        if view is None:
            raise RunNotFound(run_number)
        return view

    async def list_runs(
        self,
        *,
        state: WorkflowState | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[RunView]:
        async with session_scope(self._sessionmaker) as session:
            runs = await self._runs.list(session, state=state, limit=limit, offset=offset)
            return [run_to_view(r) for r in runs]

    async def list_in_states(
        self,
        states: Iterable[WorkflowState],
        *,
        limit: int = 500,
        exclude: Iterable[int] = (),
    ) -> list[RunView]:
        async with session_scope(self._sessionmaker) as session:
            runs = await self._runs.list_by_states(session, states, limit=limit, exclude=exclude)
            return [run_to_view(r) for r in runs]

    async def count_by_state(self) -> dict[WorkflowState, int]:
        async with session_scope(self._sessionmaker) as session:
            return await self._runs.count_by_state(session)

    @property
    def quarantined(self) -> frozenset[int]:
        return frozenset(self._quarantined)

    def is_quarantined(self, run_number: int) -> bool:
        return run_number in self._quarantined

    def last_failure(self, run_number: int) -> str | None:
        return self._last_failure.get(run_number)

    # -- Registrar / admin ----------------------------------------------------

    async def register_run(
        self, run_number: int, file_number: int, run_start_date: datetime
    ) -> RunView:
        """Insert a new run in ``Not Yet Started``."""
        async with session_scope(self._sessionmaker) as session:
            run = await self._runs.insert(
                session,
                run_number=run_number,
                file_number=file_number,
                run_start_date=run_start_date,
            )
            view = run_to_view(run)
        logger.info(
            "Registered run %s (file %s, started %s)",
            run_number,
            file_number,
            run_start_date.isoformat(),
        )
        return view

    async def delete_run(self, run_number: int) -> bool:
        """Administrative delete; cascades to the run's steps."""
        async with session_scope(self._sessionmaker) as session:
            deleted = await self._runs.delete(session, run_number)
        if deleted:
            self._quarantined.discard(run_number)
            self._last_failure.pop(run_number, None)
        return deleted

    # -- Edges ----------------------------------------------------------------

    async def begin_transfer(self, run_number: int) -> RunView:
        """``Not Yet Started -> Transfer from Tape``; opens the step-1 row."""
        return await self._transition(
            run_number, Edge.DISPATCH_TRANSFER, S.NOT_YET_STARTED, self._begin_step
        )

    async def record_tape_transfer(self, run_number: int, outcome: StepOutcome) -> RunView:
        return await self.apply_outcome(run_number, S.TRANSFER_FROM_TAPE, outcome)

    async def record_step1(self, run_number: int, outcome: StepOutcome) -> RunView:
        return await self.apply_outcome(run_number, S.PROCESS_STEP_1, outcome)

    async def finalize_step1(self, run_number: int) -> RunView:
        """``Finish Step 1 -> Transfer WIPAC``; opens the step-2 row."""
        return await self._transition(
            run_number, Edge.STEP1_FINALIZED, S.FINISH_STEP_1, self._begin_step
        )

    async def record_wipac_transfer(self, run_number: int, outcome: StepOutcome) -> RunView:
        return await self.apply_outcome(run_number, S.TRANSFER_WIPAC, outcome)

    async def record_step2(self, run_number: int, outcome: StepOutcome) -> RunView:
        return await self.apply_outcome(run_number, S.PROCESS_STEP_2, outcome)

    async def complete(self, run_number: int) -> RunView:
        """``Finish Step 2 -> Complete``; publishes the run url."""
        return await self._transition(
            run_number, Edge.FINALIZED, S.FINISH_STEP_2, self._publish_url
        )

    async def retry(self, run_number: int, *, expected: WorkflowState | None = None) -> RunView:
        """Restart the failed stage: ``Step 1 Error -> Transfer from Tape`` or
        ``Step 2 Error -> Transfer WIPAC``. The existing step row is reset."""
        if expected is None:
            current = (await self.get_run(run_number)).state
            if current not in ERROR_STATES:
                raise StaleStateConflict(
                    run_number, f"{S.STEP_1_ERROR.value}|{S.STEP_2_ERROR.value}", current.value
                )
            expected = current
        view = await self._transition(run_number, Edge.RETRY, expected, self._begin_step)
        self._last_failure.pop(run_number, None)
        return view

    # -- Composite operations -------------------------------------------------

    async def apply_outcome(
        self, run_number: int, source: WorkflowState, outcome: StepOutcome
    ) -> RunView:
        """Record the result of the external operation awaited in ``source``."""
        try:
            success_edge, failure_edge = OUTCOME_EDGES[source]
        except KeyError:
            raise IllegalTransition(
                f"State '{source.value}' does not await an external result"
            ) from None

        if isinstance(outcome, StepSuccess):
            return await self._transition(
                run_number,
                success_edge,
                source,
                self._record_success(outcome),
                replay_of=outcome,
            )

        view = await self._transition(
            run_number, failure_edge, source, self._record_failure(outcome)
        )
        self._last_failure[run_number] = outcome.reason
        return view

    async def advance_finished(self, run_number: int) -> RunView:
        """Advance a run sitting in a ``Finish Step N`` state."""
        view = await self.get_run(run_number)
        if view.state is S.FINISH_STEP_1:
            return await self.finalize_step1(run_number)
        if view.state is S.FINISH_STEP_2:
            return await self.complete(run_number)
        raise StaleStateConflict(
            run_number, f"{S.FINISH_STEP_1.value}|{S.FINISH_STEP_2.value}", view.state.value
        )

    # -- Mutations ------------------------------------------------------------

    def _begin_step(self, run: Run, source: WorkflowState, target: WorkflowState) -> None:
        self._steps.begin(run, STEP_OF_STATE[target], started=utc_now())
        return None

    def _record_success(self, outcome: StepSuccess) -> Mutation:
        def mutate(run: Run, source: WorkflowState, target: WorkflowState) -> None:
            step = self._require_step(run, STEP_OF_STATE[source])
            if source in (S.TRANSFER_FROM_TAPE, S.TRANSFER_WIPAC):
                # Transfers stage data for the compute step; the row stays open
                logger.info(
                    "Run %s transfer staged at %s (checksum %s)",
                    run.run_number,
                    outcome.location,
                    outcome.checksum,
                )
            else:
                self._steps.succeed(step, outcome)
            return None

        return mutate

    def _record_failure(self, outcome: StepFailure) -> Mutation:
        def mutate(run: Run, source: WorkflowState, target: WorkflowState) -> None:
            step = self._require_step(run, STEP_OF_STATE[source])
            self._steps.fail(step, ended=outcome.finished_at)
            logger.warning(
                "Run %s failed in '%s': %s", run.run_number, source.value, outcome.reason
            )
            return None

        return mutate

    def _publish_url(self, run: Run, source: WorkflowState, target: WorkflowState) -> str:
        step = self._require_step(run, 2)
        return self._url_template.format(
            run_number=run.run_number,
            file_number=run.file_number,
            location=step.location,
            checksum=step.checksum,
            site=step.site,
        )

    def _require_step(self, run: Run, step_number: int) -> ProcessingStep:
        step = self._steps.find(run, step_number)
        if step is None:
            raise DataIntegrityFault(run.run_number, [f"missing row for step {step_number}"])
        return step

    # -- Core -----------------------------------------------------------------

    async def _transition(
        self,
        run_number: int,
        edge: Edge,
        expected: WorkflowState,
        mutate: Mutation,
        *,
        replay_of: StepSuccess | None = None,
    ) -> RunView:
        target = next_state(expected, edge)

        if run_number in self._quarantined:
            raise DataIntegrityFault(
                run_number, ["run is quarantined after an earlier integrity fault"]
            )

        try:
            async with session_scope(self._sessionmaker) as session:
                run = await self._runs.get(session, run_number, for_update=True)
                if run is None:
                    raise RunNotFound(run_number)

                current = WorkflowState(run.state)
                ensure_consistent(
                    run_number, current, run.url, [step_to_view(s) for s in run.steps]
                )

                if current is not expected:
                    if replay_of is not None and self._is_replay(run, expected, target, replay_of):
                        logger.info(
                            "Run %s: '%s' already applied, ignoring replay",
                            run_number,
                            edge.value,
                        )
                        return run_to_view(run)
                    raise StaleStateConflict(run_number, expected.value, current.value)

                url = mutate(run, current, target)
                ensure_consistent(
                    run_number, target, url, [step_to_view(s) for s in run.steps]
                )

                swapped = await self._runs.compare_and_set_state(
                    session, run_number, expected=current, new=target, url=url
                )
                if not swapped:
                    raise StaleStateConflict(run_number, expected.value, "<changed concurrently>")

                run.state = target
                run.url = url
                view = run_to_view(run)

        except DataIntegrityFault as exc:
            await self._quarantine(exc)
            raise
        except StaleStateConflict as exc:
            logger.warning("Stale transition '%s': %s", edge.value, exc)
            raise

        logger.info(
            "Run %s: %s -> %s",
            run_number,
            expected.value,
            target.value,
            extra={"run_number": run_number, "edge": edge.value},
        )
        return view

    def _is_replay(
        self,
        run: Run,
        source: WorkflowState,
        target: WorkflowState,
        outcome: StepSuccess,
    ) -> bool:
        if WorkflowState(run.state) is not target:
            return False
        if source in (S.TRANSFER_FROM_TAPE, S.TRANSFER_WIPAC):
            # Transfers leave no provenance on the row; state match is all we have
            return True
        step = self._steps.find(run, STEP_OF_STATE[source])
        return (
            step is not None
            and step.checksum == outcome.checksum
            and step.location == outcome.location
            and step.site == outcome.site
        )

    async def _quarantine(self, exc: DataIntegrityFault) -> None:
        self._quarantined.add(exc.run_number)
        logger.error("Run %s quarantined: %s", exc.run_number, exc)
        await self._alerts.emit(
            WorkflowAlert(
                alert_type=AlertType.DATA_INTEGRITY_FAULT,
                run_number=exc.run_number,
                message=str(exc),
                details={"violations": exc.violations},
            )
        )


__all__ = ["TransitionEngine", "TRANSITIONS"]
