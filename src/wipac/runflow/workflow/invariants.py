# wipac/runflow/workflow/invariants.py
"""
Consistency rules between a run's state and its processing-step rows.

Each state dictates the condition of step 1 and step 2:

    absent     no row
    in_flight  started, no end_date / checksum / location
    failed     end_date set, no checksum / location
    succeeded  end_date, checksum and location all set
"""
from __future__ import annotations

from typing import Sequence

from wipac.runflow.contracts.run import StepView
from wipac.runflow.contracts.state import WorkflowState
from wipac.runflow.core.errors import DataIntegrityFault

S = WorkflowState

ABSENT = "absent"
IN_FLIGHT = "in_flight"
FAILED = "failed"
SUCCEEDED = "succeeded"

EXPECTED_STEPS: dict[WorkflowState, tuple[str, str]] = {
    S.NOT_YET_STARTED: (ABSENT, ABSENT),
    S.TRANSFER_FROM_TAPE: (IN_FLIGHT, ABSENT),
    S.PROCESS_STEP_1: (IN_FLIGHT, ABSENT),
    S.STEP_1_ERROR: (FAILED, ABSENT),
    S.FINISH_STEP_1: (SUCCEEDED, ABSENT),
    S.TRANSFER_WIPAC: (SUCCEEDED, IN_FLIGHT),
    S.PROCESS_STEP_2: (SUCCEEDED, IN_FLIGHT),
    S.STEP_2_ERROR: (SUCCEEDED, FAILED),
    S.FINISH_STEP_2: (SUCCEEDED, SUCCEEDED),
    S.COMPLETE: (SUCCEEDED, SUCCEEDED),
}


def _condition(step: StepView | None) -> str:
    if step is None:
        return ABSENT
    if step.succeeded:
        return SUCCEEDED
    if step.failed:
        return FAILED
    if step.in_flight:
        return IN_FLIGHT
    return "inconsistent"


def find_violations(
    state: WorkflowState,
    url: str | None,
    steps: Sequence[StepView],
) -> list[str]:
    violations: list[str] = []

    by_number: dict[int, StepView] = {}
    for step in steps:
        if step.step_number not in (1, 2):
            violations.append(f"unexpected step_number {step.step_number}")
            continue
        if step.step_number in by_number:
            violations.append(f"duplicate row for step {step.step_number}")
        by_number[step.step_number] = step

    for step_number, expected in zip((1, 2), EXPECTED_STEPS[state]):
        actual = _condition(by_number.get(step_number))
        if actual != expected:
            violations.append(
                f"state '{state.value}' requires step {step_number} {expected}, found {actual}"
            )

    if state is S.COMPLETE and not url:
        violations.append("state 'Complete' requires url")
    if state is not S.COMPLETE and url is not None:
        violations.append(f"url must be unset in state '{state.value}'")

    return violations


def ensure_consistent(
    run_number: int,
    state: WorkflowState,
    url: str | None,
    steps: Sequence[StepView],
) -> None:
    violations = find_violations(state, url, steps)
    if violations:
        raise DataIntegrityFault(run_number, violations)
