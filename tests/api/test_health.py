# tests/api/test_health.py
from __future__ import annotations

from fastapi.testclient import TestClient

from wipac.runflow.main import AppWiring, create_app

from tests.conftest import FakeWorkers


def test_health_before_startup(workers: FakeWorkers) -> None:
    app = create_app(AppWiring(workers=workers.worker_set(), start_scheduler=False))
    client = TestClient(app)

    resp = client.get("/health")

    assert resp.status_code == 200
    assert resp.json() == {"status": "starting", "scheduler": "not started"}


def test_health_reports_counts(client: TestClient) -> None:
    for n in (1, 2):
        client.post("/runs", json={"run_number": n, "run_start_date": "2023-12-01T00:00:00"})
    client.post("/runs/2/cancel")

    resp = client.get("/health")

    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "healthy"
    assert data["scheduler"] == "stopped"
    assert data["in_flight"] == 0
    assert data["queued"] == 0
    assert data["parked"] == 1
    assert data["runs"] == {"Not Yet Started": 2}
