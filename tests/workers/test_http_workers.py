# tests/workers/test_http_workers.py
from __future__ import annotations

import json
from datetime import datetime

import httpx
import pytest

from wipac.runflow.contracts.run import RunView
from wipac.runflow.contracts.state import WorkflowState
from wipac.runflow.contracts.workers import ComputeWorker, StepSuccess, TransferWorker
from wipac.runflow.core.errors import ExternalFailure
from wipac.runflow.workers.http import HttpComputeWorker, HttpTransferWorker

RUN = RunView(
    run_number=1001,
    file_number=7,
    run_start_date=datetime(2023, 12, 1, 8, 30),
    state=WorkflowState.TRANSFER_FROM_TAPE,
)


class Recorder:
    """MockTransport handler that records requests and replies with a fixed response."""

    def __init__(self, status_code: int = 200, payload=None) -> None:
        self.status_code = status_code
        self.payload = payload
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json=self.payload)

    @property
    def body(self) -> dict:
        return json.loads(self.requests[-1].content)


def _tape(handler, **kwargs) -> HttpTransferWorker:
    return HttpTransferWorker(
        base_url="http://tape.test/",
        destination="NERSC",
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


def _compute(handler, **kwargs) -> HttpComputeWorker:
    return HttpComputeWorker(
        base_url="http://compute.test",
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


def test_protocol_conformance():
    assert isinstance(_tape(Recorder()), TransferWorker)
    assert isinstance(_compute(Recorder()), ComputeWorker)
    assert not isinstance(_compute(Recorder()), TransferWorker)


class TestTransfer:
    @pytest.mark.asyncio
    async def test_success(self):
        handler = Recorder(
            payload={"status": "ok", "location": "/staging/1001", "checksum": "abc", "site": "NERSC"}
        )

        outcome = await _tape(handler).transfer(RUN)

        assert outcome == StepSuccess(location="/staging/1001", checksum="abc", site="NERSC")
        request = handler.requests[0]
        assert request.method == "POST"
        assert str(request.url) == "http://tape.test/transfer"
        assert handler.body == {
            "run_number": 1001,
            "file_number": 7,
            "run_start_date": "2023-12-01T08:30:00",
            "destination": "NERSC",
        }
        assert "authorization" not in request.headers

    @pytest.mark.asyncio
    async def test_reported_failure(self):
        handler = Recorder(payload={"status": "error", "reason": "tape drive offline"})

        with pytest.raises(ExternalFailure, match="tape drive offline"):
            await _tape(handler).transfer(RUN)

    @pytest.mark.asyncio
    async def test_failure_without_reason(self):
        handler = Recorder(payload={"status": "error"})

        with pytest.raises(ExternalFailure, match="/transfer reported failure"):
            await _tape(handler).transfer(RUN)

    @pytest.mark.asyncio
    async def test_http_error_status(self):
        handler = Recorder(status_code=500, payload={"detail": "boom"})

        with pytest.raises(ExternalFailure, match="/transfer returned HTTP 500"):
            await _tape(handler).transfer(RUN)

    @pytest.mark.asyncio
    async def test_connection_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(ExternalFailure, match="/transfer request failed"):
            await _tape(handler).transfer(RUN)

    @pytest.mark.asyncio
    async def test_missing_field(self):
        handler = Recorder(payload={"status": "ok", "location": "/staging/1001"})

        with pytest.raises(ExternalFailure, match="no usable 'checksum'"):
            await _tape(handler).transfer(RUN)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "payload, match",
        [
            ({"status": "ok", "location": None, "checksum": "abc"}, "no usable 'location'"),
            ({"status": "ok", "location": "", "checksum": "abc"}, "no usable 'location'"),
            ({"status": "ok", "location": "/staging/1001", "checksum": 12}, "no usable 'checksum'"),
            (
                {"status": "ok", "location": "/staging/1001", "checksum": "abc", "site": 3},
                "non-string 'site'",
            ),
        ],
    )
    async def test_unusable_success_fields(self, payload, match):
        handler = Recorder(payload=payload)

        with pytest.raises(ExternalFailure, match=match):
            await _tape(handler).transfer(RUN)

    @pytest.mark.asyncio
    async def test_non_object_body(self):
        handler = Recorder(payload=["ok"])

        with pytest.raises(ExternalFailure, match="non-object"):
            await _tape(handler).transfer(RUN)


class TestCompute:
    @pytest.mark.asyncio
    async def test_process_sends_step_number_and_token(self):
        handler = Recorder(payload={"status": "ok", "location": "/data/1001/step2", "checksum": "sha-2"})

        outcome = await _compute(handler, token="s3cret").process(RUN, 2)

        assert outcome == StepSuccess(location="/data/1001/step2", checksum="sha-2")
        assert str(handler.requests[0].url) == "http://compute.test/process"
        assert handler.body["step_number"] == 2
        assert handler.body["run_number"] == 1001
        assert handler.requests[0].headers["authorization"] == "Bearer s3cret"

    @pytest.mark.asyncio
    async def test_empty_token_sends_no_header(self):
        handler = Recorder(payload={"status": "ok", "location": "/x", "checksum": "y"})

        await _compute(handler, token="").process(RUN, 1)

        assert "authorization" not in handler.requests[0].headers
