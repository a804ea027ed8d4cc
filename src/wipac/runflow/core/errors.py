"""Error taxonomy of the run workflow engine.

``StaleStateConflict`` and ``ExternalFailure`` are recovered locally by the
engine and dispatcher. ``DataIntegrityFault`` is never recovered
automatically: the transaction is rolled back and the run is quarantined.
"""
from __future__ import annotations


class WorkflowError(Exception):
    pass


class RunNotFound(WorkflowError):
    def __init__(self, run_number: int) -> None:
        super().__init__(f"Run {run_number} not found")
        self.run_number = run_number


class RunAlreadyRegistered(WorkflowError):
    def __init__(self, run_number: int) -> None:
        super().__init__(f"Run {run_number} is already registered")
        self.run_number = run_number


class IllegalTransition(WorkflowError):
    """The requested edge is not defined from the given state."""


class StaleStateConflict(WorkflowError):
    """Another actor already moved the run; re-read and retry the whole operation."""

    def __init__(self, run_number: int, expected: str, actual: str) -> None:
        super().__init__(
            f"Run {run_number}: expected state '{expected}', found '{actual}'"
        )
        self.run_number = run_number
        self.expected = expected
        self.actual = actual


class ExternalFailure(WorkflowError):
    """A transfer or compute worker failed or timed out."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class DataIntegrityFault(WorkflowError):
    """A state/step consistency invariant would be violated."""

    def __init__(self, run_number: int, violations: list[str]) -> None:
        super().__init__(
            f"Run {run_number} integrity fault: " + "; ".join(violations)
        )
        self.run_number = run_number
        self.violations = violations


class RetryBudgetExhausted(WorkflowError):
    def __init__(self, run_number: int, state: str, attempts: int) -> None:
        super().__init__(
            f"Run {run_number} exhausted {attempts} automatic retries in '{state}'"
        )
        self.run_number = run_number
        self.state = state
        self.attempts = attempts
