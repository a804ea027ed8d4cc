# wipac/runflow/contracts/__init__.py
"""Public contracts shared by the engine, the dispatcher and worker adapters."""

from wipac.runflow.contracts.alerts import AlertSink, AlertType, WorkflowAlert
from wipac.runflow.contracts.run import RunView, StepView
from wipac.runflow.contracts.state import (
    DISPATCHABLE_STATES,
    ERROR_STATES,
    FINISH_STATES,
    TERMINAL_STATES,
    Edge,
    WorkflowState,
)
from wipac.runflow.contracts.workers import (
    ComputeWorker,
    StepFailure,
    StepOutcome,
    StepSuccess,
    TransferWorker,
    WorkerSet,
)

__all__ = [
    "AlertSink",
    "AlertType",
    "WorkflowAlert",
    "RunView",
    "StepView",
    "DISPATCHABLE_STATES",
    "ERROR_STATES",
    "FINISH_STATES",
    "TERMINAL_STATES",
    "Edge",
    "WorkflowState",
    "ComputeWorker",
    "StepFailure",
    "StepOutcome",
    "StepSuccess",
    "TransferWorker",
    "WorkerSet",
]
