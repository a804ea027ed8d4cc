# wipac/runflow/workers/http.py
"""
Thin async HTTP adapters for remote transfer and compute services.

Contract::

    POST {base_url}/transfer
    body: { run_number, file_number, run_start_date, destination }

    POST {base_url}/process
    body: { run_number, file_number, run_start_date, step_number }

    200 { "status": "ok", "location": str, "checksum": str, "site": str? }
    200 { "status": "error", "reason": str }
"""
from __future__ import annotations

import logging
from typing import Any

import httpx

from wipac.runflow.contracts.run import RunView
from wipac.runflow.contracts.workers import ComputeWorker, StepOutcome, StepSuccess, TransferWorker
from wipac.runflow.core.errors import ExternalFailure

logger = logging.getLogger(__name__)


class _HttpWorker:
    def __init__(
        self,
        *,
        base_url: str,
        timeout: float = 30.0,
        token: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base = base_url.rstrip("/")
        self._timeout = timeout
        self._token = token
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        if not self._token:
            return {}
        return {"Authorization": f"Bearer {self._token}"}

    async def _post(self, path: str, body: dict[str, Any]) -> StepOutcome:
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            try:
                resp = await client.post(
                    f"{self._base}{path}", json=body, headers=self._headers()
                )
                resp.raise_for_status()
            except httpx.HTTPStatusError as ex:
                logger.warning(
                    "Request failed status=%s reason=%s",
                    ex.response.status_code,
                    ex.response.text,
                )
                raise ExternalFailure(
                    f"{path} returned HTTP {ex.response.status_code}"
                ) from ex
            except httpx.HTTPError as ex:
                logger.warning("Request to %s%s failed: %s", self._base, path, ex)
                raise ExternalFailure(f"{path} request failed: {ex}") from ex

        return _parse_outcome(path, resp.json())


def _parse_outcome(path: str, data: Any) -> StepOutcome:
    if not isinstance(data, dict):
        raise ExternalFailure(f"{path} returned a non-object body")
    if data.get("status") != "ok":
        raise ExternalFailure(str(data.get("reason") or f"{path} reported failure"))

    for key in ("location", "checksum"):
        value = data.get(key)
        if not isinstance(value, str) or not value:
            raise ExternalFailure(f"{path} response has no usable '{key}' (got {value!r})")
    site = data.get("site")
    if site is not None and not isinstance(site, str):
        raise ExternalFailure(f"{path} response has a non-string 'site' (got {site!r})")

    return StepSuccess(location=data["location"], checksum=data["checksum"], site=site)


def _run_body(run: RunView) -> dict[str, Any]:
    return {
        "run_number": run.run_number,
        "file_number": run.file_number,
        "run_start_date": run.run_start_date.isoformat(),
    }


class HttpTransferWorker(_HttpWorker, TransferWorker):
    def __init__(self, *, destination: str, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._destination = destination

    async def transfer(self, run: RunView) -> StepOutcome:
        return await self._post(
            "/transfer", {**_run_body(run), "destination": self._destination}
        )


class HttpComputeWorker(_HttpWorker, ComputeWorker):
    async def process(self, run: RunView, step_number: int) -> StepOutcome:
        return await self._post("/process", {**_run_body(run), "step_number": step_number})
