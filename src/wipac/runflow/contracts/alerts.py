# wipac/runflow/contracts/alerts.py
"""
Operational alert envelope.

Alerts are raised for conditions that need an operator: a run whose
automatic retries are used up, or a run quarantined after an integrity
fault.
"""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Protocol, runtime_checkable
from uuid import uuid4

from pydantic import BaseModel, Field


class AlertType(str, Enum):
    RETRY_BUDGET_EXHAUSTED = "retry_budget_exhausted"
    DATA_INTEGRITY_FAULT = "data_integrity_fault"


class WorkflowAlert(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    alert_type: AlertType
    run_number: int
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    message: str
    details: dict[str, Any] = Field(default_factory=dict)


@runtime_checkable
class AlertSink(Protocol):
    async def emit(self, alert: WorkflowAlert) -> None: ...
