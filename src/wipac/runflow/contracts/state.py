# wipac/runflow/contracts/state.py
"""
Workflow states and the transition table.

The ten state values are persisted verbatim in the ``workflow_state`` enum
type, spaces included. Transitions are a closed table keyed by
``(source, edge)``; anything not listed is illegal.
"""
from __future__ import annotations

from enum import Enum

from wipac.runflow.core.errors import IllegalTransition


class WorkflowState(str, Enum):
    NOT_YET_STARTED = "Not Yet Started"
    TRANSFER_FROM_TAPE = "Transfer from Tape"
    PROCESS_STEP_1 = "Process Step 1"
    FINISH_STEP_1 = "Finish Step 1"
    TRANSFER_WIPAC = "Transfer WIPAC"
    PROCESS_STEP_2 = "Process Step 2"
    FINISH_STEP_2 = "Finish Step 2"
    COMPLETE = "Complete"
    STEP_1_ERROR = "Step 1 Error"
    STEP_2_ERROR = "Step 2 Error"

    def __str__(self) -> str:
        return self.value


class Edge(str, Enum):
    DISPATCH_TRANSFER = "dispatch_transfer"
    TRANSFER_SUCCEEDED = "transfer_succeeded"
    TRANSFER_FAILED = "transfer_failed"
    STEP1_SUCCEEDED = "step1_succeeded"
    STEP1_FAILED = "step1_failed"
    STEP1_FINALIZED = "step1_finalized"
    WIPAC_SUCCEEDED = "wipac_succeeded"
    WIPAC_FAILED = "wipac_failed"
    STEP2_SUCCEEDED = "step2_succeeded"
    STEP2_FAILED = "step2_failed"
    FINALIZED = "finalized"
    RETRY = "retry"


S = WorkflowState

TRANSITIONS: dict[tuple[WorkflowState, Edge], WorkflowState] = {
    (S.NOT_YET_STARTED, Edge.DISPATCH_TRANSFER): S.TRANSFER_FROM_TAPE,
    (S.TRANSFER_FROM_TAPE, Edge.TRANSFER_SUCCEEDED): S.PROCESS_STEP_1,
    (S.TRANSFER_FROM_TAPE, Edge.TRANSFER_FAILED): S.STEP_1_ERROR,
    (S.PROCESS_STEP_1, Edge.STEP1_SUCCEEDED): S.FINISH_STEP_1,
    (S.PROCESS_STEP_1, Edge.STEP1_FAILED): S.STEP_1_ERROR,
    (S.FINISH_STEP_1, Edge.STEP1_FINALIZED): S.TRANSFER_WIPAC,
    (S.TRANSFER_WIPAC, Edge.WIPAC_SUCCEEDED): S.PROCESS_STEP_2,
    (S.TRANSFER_WIPAC, Edge.WIPAC_FAILED): S.STEP_2_ERROR,
    (S.PROCESS_STEP_2, Edge.STEP2_SUCCEEDED): S.FINISH_STEP_2,
    (S.PROCESS_STEP_2, Edge.STEP2_FAILED): S.STEP_2_ERROR,
    (S.FINISH_STEP_2, Edge.FINALIZED): S.COMPLETE,
    (S.STEP_1_ERROR, Edge.RETRY): S.TRANSFER_FROM_TAPE,
    (S.STEP_2_ERROR, Edge.RETRY): S.TRANSFER_WIPAC,
}

# Runs awaiting an external operation
DISPATCHABLE_STATES: frozenset[WorkflowState] = frozenset(
    {
        S.NOT_YET_STARTED,
        S.TRANSFER_FROM_TAPE,
        S.PROCESS_STEP_1,
        S.TRANSFER_WIPAC,
        S.PROCESS_STEP_2,
    }
)

# Pure bookkeeping states advanced by the engine itself
FINISH_STATES: frozenset[WorkflowState] = frozenset({S.FINISH_STEP_1, S.FINISH_STEP_2})

ERROR_STATES: frozenset[WorkflowState] = frozenset({S.STEP_1_ERROR, S.STEP_2_ERROR})

TERMINAL_STATES: frozenset[WorkflowState] = frozenset({S.COMPLETE})

# Which processing step a state belongs to
STEP_OF_STATE: dict[WorkflowState, int] = {
    S.TRANSFER_FROM_TAPE: 1,
    S.PROCESS_STEP_1: 1,
    S.FINISH_STEP_1: 1,
    S.STEP_1_ERROR: 1,
    S.TRANSFER_WIPAC: 2,
    S.PROCESS_STEP_2: 2,
    S.FINISH_STEP_2: 2,
    S.STEP_2_ERROR: 2,
}

# (success edge, failure edge) of each state awaiting an external result
OUTCOME_EDGES: dict[WorkflowState, tuple[Edge, Edge]] = {
    S.TRANSFER_FROM_TAPE: (Edge.TRANSFER_SUCCEEDED, Edge.TRANSFER_FAILED),
    S.PROCESS_STEP_1: (Edge.STEP1_SUCCEEDED, Edge.STEP1_FAILED),
    S.TRANSFER_WIPAC: (Edge.WIPAC_SUCCEEDED, Edge.WIPAC_FAILED),
    S.PROCESS_STEP_2: (Edge.STEP2_SUCCEEDED, Edge.STEP2_FAILED),
}


def next_state(state: WorkflowState, edge: Edge) -> WorkflowState:
    try:
        return TRANSITIONS[(state, edge)]
    except KeyError:
        raise IllegalTransition(
            f"Edge '{edge.value}' is not defined from state '{state.value}'"
        ) from None


def source_states(edge: Edge) -> list[WorkflowState]:
    return [src for (src, e) in TRANSITIONS if e == edge]
