# wipac/runflow/registrar.py
"""
Run registrar: bulk registration of runs from a legacy ``events.json``.

Each legacy record looks like::

    {"title": "1001", "date": "2023-12-01", "status": "Not Yet Started",
     "url": "", "description": ""}

``title`` is the run number and ``date`` the run start date. Only runs that
have not started yet are registered; a record claiming a later state has no
step provenance to back it and is skipped.
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from wipac.runflow.contracts.run import MAX_RUN_NUMBER
from wipac.runflow.contracts.state import WorkflowState
from wipac.runflow.core.errors import RunAlreadyRegistered
from wipac.runflow.workflow.engine import TransitionEngine

logger = logging.getLogger(__name__)

_RUN_NUMBER = re.compile(r"^[+-]?\d+$")

LEGACY_FILE_NUMBER = 0


@dataclass
class ImportReport:
    imported: int = 0
    skipped: int = 0
    total: int = 0
    reasons: list[str] = field(default_factory=list)

    def skip(self, idx: int, reason: str) -> None:
        self.skipped += 1
        self.reasons.append(f"row {idx}: {reason}")
        logger.info("Skipping row %d: %s", idx, reason)


def _legacy_state(status: Any) -> WorkflowState:
    if not status:
        return WorkflowState.NOT_YET_STARTED
    try:
        return WorkflowState(status)
    except ValueError:
        # Unknown legacy labels were treated as not started
        return WorkflowState.NOT_YET_STARTED


def load_events(path: str | Path) -> list[dict[str, Any]]:
    with Path(path).open("r", encoding="utf-8") as fh:
        data = json.load(fh)
    if not isinstance(data, list):
        raise ValueError(f"{path}: expected a JSON list of event records")
    return data


async def import_events(path: str | Path, engine: TransitionEngine) -> ImportReport:
    """Register every importable record of ``path`` as a new run."""
    events = load_events(path)
    report = ImportReport(total=len(events))
    logger.info("Found %d events to import from %s", len(events), path)

    for idx, event in enumerate(events):
        if not isinstance(event, dict):
            report.skip(idx, "not an object")
            continue

        title = str(event.get("title", ""))
        if not _RUN_NUMBER.match(title):
            report.skip(idx, f"'{title}' is not a valid run number")
            continue
        run_number = int(title)
        if not 0 <= run_number <= MAX_RUN_NUMBER:
            report.skip(idx, f"run number {run_number} is out of range")
            continue

        date = str(event.get("date", ""))
        try:
            run_start_date = datetime.strptime(date, "%Y-%m-%d")
        except ValueError:
            report.skip(idx, f"'{date}' is not a valid date")
            continue

        status = event.get("status")
        state = _legacy_state(status)
        if state is not WorkflowState.NOT_YET_STARTED:
            report.skip(idx, f"run {run_number} has legacy status '{status}'")
            continue

        try:
            await engine.register_run(run_number, LEGACY_FILE_NUMBER, run_start_date)
        except RunAlreadyRegistered:
            report.skip(idx, f"run {run_number} is already registered")
            continue

        report.imported += 1
        if report.imported % 100 == 0:
            logger.info("Imported %d events...", report.imported)

    logger.info(
        "Import complete: imported=%d skipped=%d total=%d",
        report.imported,
        report.skipped,
        report.total,
    )
    return report
