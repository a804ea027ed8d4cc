# wipac/runflow/core/alerts.py
"""Alert sinks."""
from __future__ import annotations

import logging

from wipac.runflow.contracts.alerts import AlertSink, WorkflowAlert

logger = logging.getLogger(__name__)


class LoggingAlertSink(AlertSink):
    """Reports alerts as ERROR log records carrying the alert fields."""

    async def emit(self, alert: WorkflowAlert) -> None:
        logger.error(
            "ALERT %s run=%s: %s",
            alert.alert_type.value,
            alert.run_number,
            alert.message,
            extra={"alert": alert.model_dump(mode="json")},
        )


class MemoryAlertSink(AlertSink):
    """Keeps alerts in memory; handy for inspection and tests."""

    def __init__(self) -> None:
        self.alerts: list[WorkflowAlert] = []

    async def emit(self, alert: WorkflowAlert) -> None:
        self.alerts.append(alert)
