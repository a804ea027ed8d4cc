# wipac/runflow/workflow/retry.py
"""
Automatic retry bookkeeping for runs parked in an error state.

A run that lands in ``Step 1 Error`` / ``Step 2 Error`` is retried with
exponential backoff (``base * 2^attempt``, capped at ``backoff_max``) until
``max_attempts`` retries of that stage have been spent. After that the run
stays in its error state and the exhaustion is reported exactly once.

Counters are process-local: a restart grants a fresh budget.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from wipac.runflow.contracts.state import WorkflowState
from wipac.runflow.core.config import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff_base: float = 60.0
    backoff_max: float = 3600.0

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_attempts=settings.retry_max_attempts,
            backoff_base=settings.retry_backoff_base_seconds,
            backoff_max=settings.retry_backoff_max_seconds,
        )

    def delay(self, attempt: int) -> float:
        return min(self.backoff_base * (2**attempt), self.backoff_max)


class RetryDecision(str, Enum):
    WAIT = "wait"
    RETRY = "retry"
    EXHAUSTED = "exhausted"  # budget just ran out, alert now
    PARKED = "parked"  # budget ran out earlier, already alerted


@dataclass
class _Entry:
    state: WorkflowState
    attempts: int = 0
    next_attempt_at: float = 0.0
    retry_in_flight: bool = False
    exhausted_reported: bool = False


class RetryTracker:
    def __init__(
        self,
        policy: RetryPolicy,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._policy = policy
        self._clock = clock
        self._entries: dict[int, _Entry] = {}

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    def attempts(self, run_number: int) -> int:
        entry = self._entries.get(run_number)
        return entry.attempts if entry else 0

    def decide(self, run_number: int, state: WorkflowState) -> RetryDecision:
        """Decide what to do with a run currently sitting in ``state``."""
        now = self._clock()
        entry = self._entries.get(run_number)

        if entry is None or entry.state != state:
            entry = _Entry(state=state, next_attempt_at=now + self._policy.delay(0))
            self._entries[run_number] = entry
        elif entry.retry_in_flight:
            # The previous retry failed again
            entry.retry_in_flight = False
            entry.next_attempt_at = now + self._policy.delay(entry.attempts)

        if entry.attempts >= self._policy.max_attempts:
            if entry.exhausted_reported:
                return RetryDecision.PARKED
            entry.exhausted_reported = True
            return RetryDecision.EXHAUSTED

        if now < entry.next_attempt_at:
            return RetryDecision.WAIT
        return RetryDecision.RETRY

    def record_retry(self, run_number: int) -> None:
        entry = self._entries[run_number]
        entry.attempts += 1
        entry.retry_in_flight = True
        logger.debug(
            "Run %s retry %d/%d", run_number, entry.attempts, self._policy.max_attempts
        )

    def forget(self, run_number: int) -> None:
        self._entries.pop(run_number, None)
