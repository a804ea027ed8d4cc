# wipac/runflow/api/runs.py
"""
Run administration endpoints.

URL structure::

    POST   /runs                    register a run in 'Not Yet Started'
    GET    /runs                    list runs (optional ?state=)
    GET    /runs/{run_number}       run, steps and dispatcher status
    POST   /runs/{run_number}/retry   manual retry from an error state
    POST   /runs/{run_number}/cancel  park the run at the next step boundary
    POST   /runs/{run_number}/resume  un-park the run
    DELETE /runs/{run_number}       administrative delete (cascades to steps)
"""
from __future__ import annotations

import logging
from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from pydantic import BaseModel, Field

from wipac.runflow.contracts.run import MAX_RUN_NUMBER, RunView, StepView
from wipac.runflow.contracts.state import WorkflowState
from wipac.runflow.core.errors import (
    DataIntegrityFault,
    IllegalTransition,
    RunAlreadyRegistered,
    RunNotFound,
    StaleStateConflict,
    WorkflowError,
)
from wipac.runflow.core.utils import as_naive_utc
from wipac.runflow.workflow.engine import TransitionEngine
from wipac.runflow.workflow.scheduler import Dispatcher

from wipac.runflow.api.dependencies import get_dispatcher, get_engine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/runs", tags=["runs"])


# -- Schemas -------------------------------------------------------------------


class RunCreate(BaseModel):
    run_number: int = Field(..., ge=0, le=MAX_RUN_NUMBER)
    file_number: int = Field(default=0, ge=0, le=MAX_RUN_NUMBER)
    run_start_date: datetime


class StepOut(BaseModel):
    id: UUID
    step_number: int
    started_date: datetime | None = None
    end_date: datetime | None = None
    site: str | None = None
    checksum: str | None = None
    location: str | None = None

    @classmethod
    def from_view(cls, step: StepView) -> "StepOut":
        return cls(
            id=step.id,
            step_number=step.step_number,
            started_date=step.started_date,
            end_date=step.end_date,
            site=step.site,
            checksum=step.checksum,
            location=step.location,
        )


class RunOut(BaseModel):
    run_number: int
    file_number: int
    run_start_date: datetime
    state: WorkflowState
    url: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    steps: list[StepOut] = Field(default_factory=list)

    @classmethod
    def from_view(cls, run: RunView) -> "RunOut":
        return cls(
            run_number=run.run_number,
            file_number=run.file_number,
            run_start_date=run.run_start_date,
            state=run.state,
            url=run.url,
            created_at=run.created_at,
            updated_at=run.updated_at,
            steps=[StepOut.from_view(s) for s in run.steps],
        )


class RunDetail(RunOut):
    in_flight: bool = False
    parked: bool = False
    quarantined: bool = False
    last_failure: str | None = None


class ActionResult(BaseModel):
    run_number: int
    action: str
    accepted: bool
    detail: str | None = None


# -- Helpers -------------------------------------------------------------------


def _http_error(exc: WorkflowError) -> HTTPException:
    if isinstance(exc, RunNotFound):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, (RunAlreadyRegistered, StaleStateConflict, IllegalTransition)):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, DataIntegrityFault):
        return HTTPException(status_code=500, detail=str(exc))
    logger.exception("Unhandled workflow error")
    return HTTPException(status_code=500, detail=str(exc))


def _detail(run: RunView, engine: TransitionEngine, dispatcher: Dispatcher) -> RunDetail:
    base = RunOut.from_view(run)
    return RunDetail(
        **base.model_dump(),
        in_flight=dispatcher.is_leased(run.run_number),
        parked=run.run_number in dispatcher.parked,
        quarantined=engine.is_quarantined(run.run_number),
        last_failure=engine.last_failure(run.run_number),
    )


# -- Routes --------------------------------------------------------------------


@router.post("", status_code=201, response_model=RunOut)
async def register_run(
    body: RunCreate,
    engine: TransitionEngine = Depends(get_engine),
) -> RunOut:
    try:
        run = await engine.register_run(
            body.run_number, body.file_number, as_naive_utc(body.run_start_date)
        )
    except WorkflowError as exc:
        raise _http_error(exc)
    return RunOut.from_view(run)


@router.get("", response_model=list[RunOut])
async def list_runs(
    state: WorkflowState | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    engine: TransitionEngine = Depends(get_engine),
) -> list[RunOut]:
    runs = await engine.list_runs(state=state, limit=limit, offset=offset)
    return [RunOut.from_view(r) for r in runs]


@router.get("/{run_number}", response_model=RunDetail)
async def get_run(
    run_number: int,
    engine: TransitionEngine = Depends(get_engine),
    dispatcher: Dispatcher = Depends(get_dispatcher),
) -> RunDetail:
    try:
        run = await engine.get_run(run_number)
    except WorkflowError as exc:
        raise _http_error(exc)
    return _detail(run, engine, dispatcher)


@router.post("/{run_number}/retry", response_model=RunOut)
async def retry_run(
    run_number: int,
    dispatcher: Dispatcher = Depends(get_dispatcher),
) -> RunOut:
    try:
        run = await dispatcher.request_retry(run_number)
    except WorkflowError as exc:
        raise _http_error(exc)
    return RunOut.from_view(run)


@router.post("/{run_number}/cancel", response_model=ActionResult)
async def cancel_run(
    run_number: int,
    engine: TransitionEngine = Depends(get_engine),
    dispatcher: Dispatcher = Depends(get_dispatcher),
) -> ActionResult:
    try:
        await engine.get_run(run_number)
    except WorkflowError as exc:
        raise _http_error(exc)

    parked_now = dispatcher.cancel(run_number)
    return ActionResult(
        run_number=run_number,
        action="cancel",
        accepted=True,
        detail="parked" if parked_now else "parks after the in-flight step",
    )


@router.post("/{run_number}/resume", response_model=ActionResult)
async def resume_run(
    run_number: int,
    engine: TransitionEngine = Depends(get_engine),
    dispatcher: Dispatcher = Depends(get_dispatcher),
) -> ActionResult:
    try:
        await engine.get_run(run_number)
    except WorkflowError as exc:
        raise _http_error(exc)

    resumed = dispatcher.resume(run_number)
    return ActionResult(
        run_number=run_number,
        action="resume",
        accepted=resumed,
        detail=None if resumed else "run was not parked",
    )


@router.delete("/{run_number}", status_code=204)
async def delete_run(
    run_number: int,
    engine: TransitionEngine = Depends(get_engine),
    dispatcher: Dispatcher = Depends(get_dispatcher),
) -> Response:
    if dispatcher.is_leased(run_number):
        raise HTTPException(
            status_code=409, detail=f"Run {run_number} has a step in flight"
        )
    if not await engine.delete_run(run_number):
        raise HTTPException(status_code=404, detail=f"Run {run_number} not found")
    dispatcher.forget_run(run_number)
    return Response(status_code=204)
