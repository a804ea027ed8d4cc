# wipac/runflow/workflow/executor.py
"""
Step executor: performs the external operation a run is waiting on and
hands the typed outcome to the transition engine.

The executor never writes persisted state itself. Worker failures, timeouts
and unexpected exceptions all become ``StepFailure`` so the run lands in the
matching error state instead of being dropped.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import Awaitable

from wipac.runflow.contracts.run import RunView
from wipac.runflow.contracts.state import WorkflowState
from wipac.runflow.contracts.workers import StepFailure, StepOutcome, StepSuccess, WorkerSet
from wipac.runflow.core.config import settings
from wipac.runflow.core.errors import ExternalFailure, IllegalTransition
from wipac.runflow.core.utils import utc_now
from wipac.runflow.workflow.engine import TransitionEngine

logger = logging.getLogger(__name__)

S = WorkflowState


def _non_empty_str(value: object) -> bool:
    return isinstance(value, str) and bool(value)


class StepExecutor:
    """
    Runs the external action matching a run's state:

    - ``Transfer from Tape``: archival transfer worker
    - ``Process Step 1``: compute worker, stage 1
    - ``Transfer WIPAC``: WIPAC transfer worker
    - ``Process Step 2``: compute worker, stage 2
    """

    def __init__(
        self,
        engine: TransitionEngine,
        workers: WorkerSet,
        *,
        timeout: float | None = None,
    ) -> None:
        self._engine = engine
        self._workers = workers
        self._timeout = timeout if timeout is not None else settings.step_timeout_seconds

    @property
    def timeout(self) -> float:
        return self._timeout

    def _call_for(self, run: RunView) -> Awaitable[StepOutcome]:
        if run.state is S.TRANSFER_FROM_TAPE:
            return self._workers.tape.transfer(run)
        if run.state is S.PROCESS_STEP_1:
            return self._workers.compute.process(run, 1)
        if run.state is S.TRANSFER_WIPAC:
            return self._workers.wipac.transfer(run)
        if run.state is S.PROCESS_STEP_2:
            return self._workers.compute.process(run, 2)
        raise IllegalTransition(f"No external operation for state '{run.state.value}'")

    async def perform(self, run: RunView) -> StepOutcome:
        """Run the external call for ``run`` and classify the result."""
        call = self._call_for(run)
        started = utc_now()

        try:
            outcome = await asyncio.wait_for(call, timeout=self._timeout)
        except asyncio.TimeoutError:
            outcome = StepFailure(reason=f"timed out after {self._timeout:g}s")
        except ExternalFailure as exc:
            outcome = StepFailure(reason=exc.reason)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Unclassified worker error for run %s", run.run_number)
            outcome = StepFailure(reason=f"worker error: {type(exc).__name__}: {exc}")

        if not isinstance(outcome, (StepSuccess, StepFailure)):
            outcome = StepFailure(reason=f"worker returned {type(outcome).__name__}")
        elif isinstance(outcome, StepSuccess) and not (
            _non_empty_str(outcome.location) and _non_empty_str(outcome.checksum)
        ):
            outcome = StepFailure(
                reason=f"worker reported success without location/checksum "
                f"(location={outcome.location!r}, checksum={outcome.checksum!r})"
            )

        finished = utc_now()
        outcome = replace(
            outcome,
            started_at=outcome.started_at or started,
            finished_at=outcome.finished_at or finished,
        )

        logger.info(
            "Run %s '%s' finished: %s",
            run.run_number,
            run.state.value,
            "success" if isinstance(outcome, StepSuccess) else f"failure ({outcome.reason})",
        )
        return outcome

    async def execute(self, run: RunView) -> RunView:
        """Perform the step and report its outcome to the engine."""
        outcome = await self.perform(run)
        return await self._engine.apply_outcome(run.run_number, run.state, outcome)
