# wipac/runflow/workflow/scheduler.py
"""
Scheduler / dispatcher for run workflow steps.

The dispatcher scans the run table, and for every run that is not leased,
parked or quarantined:

- dispatchable states are queued for the step executor, oldest
  ``run_start_date`` first, and started while in-flight capacity remains
- ``Finish Step N`` runs are advanced synchronously by the engine
- error-state runs are retried automatically with backoff until their
  retry budget is spent, then parked with a single alert

A run is leased from the moment it is handed to a task until the engine has
recorded the outcome, so at most one external operation is in flight per run.
"""
from __future__ import annotations

import asyncio
import heapq
import logging
from datetime import datetime

from wipac.runflow.contracts.alerts import AlertSink, AlertType, WorkflowAlert
from wipac.runflow.contracts.run import RunView
from wipac.runflow.contracts.state import (
    DISPATCHABLE_STATES,
    ERROR_STATES,
    FINISH_STATES,
    WorkflowState,
)
from wipac.runflow.core.alerts import LoggingAlertSink
from wipac.runflow.core.config import settings
from wipac.runflow.core.errors import (
    DataIntegrityFault,
    RetryBudgetExhausted,
    RunNotFound,
    StaleStateConflict,
    WorkflowError,
)
from wipac.runflow.workflow.engine import TransitionEngine
from wipac.runflow.workflow.executor import StepExecutor
from wipac.runflow.workflow.retry import RetryDecision, RetryPolicy, RetryTracker

logger = logging.getLogger(__name__)

S = WorkflowState

SCANNED_STATES = DISPATCHABLE_STATES | FINISH_STATES | ERROR_STATES


class Dispatcher:
    """
    Example:
        dispatcher = Dispatcher(engine, executor, max_in_flight=4)

        # Background polling loop
        dispatcher.start()
        ...
        await dispatcher.stop()

        # Or drive it by hand
        await dispatcher.scan_once()
        await dispatcher.drain()
    """

    def __init__(
        self,
        engine: TransitionEngine,
        executor: StepExecutor,
        *,
        max_in_flight: int | None = None,
        retries: RetryTracker | None = None,
        alerts: AlertSink | None = None,
        poll_interval: float | None = None,
        scan_batch_size: int | None = None,
    ) -> None:
        self._engine = engine
        self._executor = executor
        self._max_in_flight = max_in_flight or settings.scheduler_max_in_flight
        self._retries = retries or RetryTracker(RetryPolicy.from_settings())
        self._alerts = alerts or LoggingAlertSink()
        self._poll_interval = poll_interval or settings.scheduler_poll_interval_seconds
        self._scan_batch_size = scan_batch_size or settings.scheduler_scan_batch_size

        self._leases: dict[int, asyncio.Task[None]] = {}
        self._pending: list[tuple[datetime, int]] = []
        self._queued: set[int] = set()
        self._parked: set[int] = set()
        self._cancel_requested: set[int] = set()
        self._loop_task: asyncio.Task[None] | None = None
        self._stopping = False

    # -- Introspection --------------------------------------------------------

    @property
    def max_in_flight(self) -> int:
        return self._max_in_flight

    @property
    def in_flight(self) -> frozenset[int]:
        return frozenset(self._leases)

    @property
    def queued(self) -> list[int]:
        """Run numbers waiting for capacity, in dispatch order."""
        return [n for _, n in sorted(self._pending) if n in self._queued]

    @property
    def parked(self) -> frozenset[int]:
        return frozenset(self._parked)

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    def is_leased(self, run_number: int) -> bool:
        return run_number in self._leases

    # -- Loop -----------------------------------------------------------------

    def start(self) -> None:
        if self.running:
            return
        self._stopping = False
        self._loop_task = asyncio.create_task(self._loop(), name="runflow-scheduler")
        logger.info(
            "Scheduler started (poll=%ss, max_in_flight=%d)",
            self._poll_interval,
            self._max_in_flight,
        )

    async def stop(self, *, cancel_in_flight: bool = True) -> None:
        """Stop polling. In-flight steps are cancelled or awaited; a cancelled
        step leaves its run in its current state to be re-dispatched later."""
        self._stopping = True
        if self._loop_task is not None:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None

        self._pending.clear()
        self._queued.clear()

        if cancel_in_flight:
            for task in list(self._leases.values()):
                task.cancel()
        await self.drain()
        logger.info("Scheduler stopped")

    async def _loop(self) -> None:
        while True:
            try:
                await self.scan_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Scheduler scan failed")
            await asyncio.sleep(self._poll_interval)

    async def drain(self) -> None:
        """Wait until no step is in flight (including steps started meanwhile)."""
        while self._leases:
            await asyncio.gather(*list(self._leases.values()), return_exceptions=True)

    # -- Scanning -------------------------------------------------------------

    async def scan_once(self) -> int:
        """One pass over actionable runs. Returns the number of steps started."""
        # Filter skipped runs in the query so the batch holds actionable runs only
        skipped = set(self._leases) | self._parked | self._engine.quarantined
        runs = await self._engine.list_in_states(
            SCANNED_STATES, limit=self._scan_batch_size, exclude=skipped
        )
        for run in runs:
            n = run.run_number
            if n in self._leases or n in self._parked or self._engine.is_quarantined(n):
                continue
            if run.state in FINISH_STATES:
                await self._advance_finished(run)
            elif run.state in ERROR_STATES:
                await self._handle_error(run)
            else:
                self._enqueue(run)
        return self._pump()

    async def _advance_finished(self, run: RunView) -> None:
        try:
            advanced = await self._engine.advance_finished(run.run_number)
        except (StaleStateConflict, DataIntegrityFault, RunNotFound) as exc:
            logger.info("Could not advance run %s: %s", run.run_number, exc)
            return
        if advanced.state is S.COMPLETE:
            self._retries.forget(run.run_number)
        self._enqueue(advanced)

    async def _handle_error(self, run: RunView) -> None:
        n = run.run_number
        decision = self._retries.decide(n, run.state)

        if decision is RetryDecision.RETRY:
            try:
                retried = await self._engine.retry(n, expected=run.state)
            except (StaleStateConflict, DataIntegrityFault, RunNotFound) as exc:
                logger.info("Automatic retry of run %s skipped: %s", n, exc)
                return
            self._retries.record_retry(n)
            logger.info(
                "Run %s retry %d/%d from '%s'",
                n,
                self._retries.attempts(n),
                self._retries.policy.max_attempts,
                run.state.value,
            )
            self._enqueue(retried)

        elif decision is RetryDecision.EXHAUSTED:
            exc = RetryBudgetExhausted(n, run.state.value, self._retries.attempts(n))
            self._parked.add(n)
            await self._alerts.emit(
                WorkflowAlert(
                    alert_type=AlertType.RETRY_BUDGET_EXHAUSTED,
                    run_number=n,
                    message=str(exc),
                    details={
                        "state": run.state.value,
                        "attempts": exc.attempts,
                        "last_failure": self._engine.last_failure(n),
                    },
                )
            )

    # -- Dispatch -------------------------------------------------------------

    async def dispatch(self, run_number: int) -> bool:
        """
        Dispatch one run now.

        Returns True if this call put the run's step in flight. A run that is
        already leased, parked or not dispatchable is rejected; a run that
        has to wait for capacity is queued.
        """
        run = await self._engine.find_run(run_number)
        if run is None or run.state not in DISPATCHABLE_STATES:
            return False
        if run_number in self._leases or run_number in self._parked:
            return False
        if self._engine.is_quarantined(run_number) or self._stopping:
            return False
        if len(self._leases) >= self._max_in_flight:
            self._enqueue(run)
            return False
        self._start(run_number)
        return True

    def _enqueue(self, run: RunView) -> None:
        n = run.run_number
        if run.state not in DISPATCHABLE_STATES or n in self._queued or n in self._leases:
            return
        heapq.heappush(self._pending, (run.run_start_date, n))
        self._queued.add(n)

    def _pump(self) -> int:
        started = 0
        if self._stopping:
            return started
        while self._pending and len(self._leases) < self._max_in_flight:
            _, n = heapq.heappop(self._pending)
            if n not in self._queued:
                continue
            self._queued.discard(n)
            if n in self._leases or n in self._parked:
                continue
            self._start(n)
            started += 1
        return started

    def _start(self, run_number: int) -> None:
        # Claiming and task creation happen without an await in between
        self._queued.discard(run_number)
        self._leases[run_number] = asyncio.create_task(
            self._run_step(run_number), name=f"runflow-run-{run_number}"
        )

    async def _run_step(self, run_number: int) -> None:
        run: RunView | None = None
        try:
            run = await self._engine.get_run(run_number)
            if run.state is S.NOT_YET_STARTED:
                run = await self._engine.begin_transfer(run_number)
            if run.state in DISPATCHABLE_STATES and run_number not in self._cancel_requested:
                run = await self._executor.execute(run)
            if run.state in FINISH_STATES and run_number not in self._cancel_requested:
                run = await self._engine.advance_finished(run_number)
            if run.state is S.COMPLETE:
                self._retries.forget(run_number)
        except StaleStateConflict as exc:
            # Someone else moved the run; the next scan re-reads it
            logger.info("Run %s step dropped: %s", run_number, exc)
            run = None
        except DataIntegrityFault:
            run = None
        except WorkflowError as exc:
            logger.warning("Run %s step aborted: %s", run_number, exc)
            run = None
        except asyncio.CancelledError:
            logger.info("Run %s step cancelled", run_number)
            run = None
            raise
        except Exception:
            logger.exception("Run %s step crashed", run_number)
            run = None
        finally:
            self._leases.pop(run_number, None)
            if run_number in self._cancel_requested:
                self._cancel_requested.discard(run_number)
                self._parked.add(run_number)
                logger.info("Run %s parked after cancellation", run_number)
            elif run is not None:
                self._enqueue(run)
            self._pump()

    # -- Operator actions -----------------------------------------------------

    def cancel(self, run_number: int) -> bool:
        """
        Park a run. Returns True if it was parked immediately, False if a step
        is in flight: that step finishes, its outcome is recorded, and the run
        is parked instead of advanced.
        """
        if run_number in self._leases:
            self._cancel_requested.add(run_number)
            logger.info("Run %s cancellation requested while a step is in flight", run_number)
            return False
        self._queued.discard(run_number)
        self._parked.add(run_number)
        logger.info("Run %s parked", run_number)
        return True

    def resume(self, run_number: int) -> bool:
        """Un-park a run so the next scan picks it up again. A run parked in an
        error state gets a fresh automatic retry budget."""
        self._cancel_requested.discard(run_number)
        if run_number not in self._parked:
            return False
        self._parked.discard(run_number)
        self._retries.forget(run_number)
        logger.info("Run %s resumed", run_number)
        return True

    def forget_run(self, run_number: int) -> None:
        """Drop all scheduling state for a run that no longer exists."""
        self._parked.discard(run_number)
        self._cancel_requested.discard(run_number)
        self._queued.discard(run_number)
        self._retries.forget(run_number)

    async def request_retry(self, run_number: int) -> RunView:
        """Manual retry from an error state; grants a fresh automatic budget."""
        run = await self._engine.retry(run_number)
        self._retries.forget(run_number)
        self._parked.discard(run_number)
        self._enqueue(run)
        self._pump()
        return run
