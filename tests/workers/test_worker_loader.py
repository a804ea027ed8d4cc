# tests/workers/test_worker_loader.py
from __future__ import annotations

from pathlib import Path

import pytest

from wipac.runflow.workers.http import HttpComputeWorker, HttpTransferWorker
from wipac.runflow.workers.loader import build_worker, load_workers

SHIPPED_CONFIG = Path(__file__).resolve().parents[2] / "config" / "workers.yaml"

WORKERS_YAML = """\
workers:
  tape:
    class: wipac.runflow.workers.http:HttpTransferWorker
    config:
      base_url: "${TAPE_WORKER_URL:-http://localhost:9001}"
      destination: NERSC
  wipac:
    class: wipac.runflow.workers.http:HttpTransferWorker
    config:
      base_url: http://wipac.test
      destination: WIPAC
  compute:
    class: wipac.runflow.workers.http:HttpComputeWorker
    config:
      base_url: http://compute.test
      timeout: 5.0
"""


def _write(tmp_path: Path, name: str, text: str) -> Path:
    path = tmp_path / name
    path.write_text(text)
    return path


def test_load_workers(tmp_path: Path, monkeypatch):
    monkeypatch.setenv("TAPE_WORKER_URL", "http://tape.icecube:9001/")
    _write(tmp_path, "workers.yaml", WORKERS_YAML)

    workers = load_workers([str(tmp_path / "*.yaml")])

    assert isinstance(workers.tape, HttpTransferWorker)
    assert isinstance(workers.wipac, HttpTransferWorker)
    assert isinstance(workers.compute, HttpComputeWorker)
    assert workers.tape._base == "http://tape.icecube:9001"
    assert workers.wipac._destination == "WIPAC"
    assert workers.compute._timeout == 5.0


def test_later_file_overrides_role(tmp_path: Path):
    _write(tmp_path, "00-workers.yaml", WORKERS_YAML)
    _write(
        tmp_path,
        "10-override.yaml",
        "workers:\n"
        "  wipac:\n"
        "    class: wipac.runflow.workers.http:HttpTransferWorker\n"
        "    config: {base_url: 'http://wipac-2.test', destination: WIPAC-2}\n",
    )

    workers = load_workers([str(tmp_path / "*.yaml")])

    assert workers.wipac._destination == "WIPAC-2"
    assert workers.tape._destination == "NERSC"


def test_missing_role(tmp_path: Path):
    _write(tmp_path, "workers.yaml", WORKERS_YAML.split("  compute:")[0])

    with pytest.raises(ValueError, match=r"Missing worker definitions: \['compute'\]"):
        load_workers([str(tmp_path / "*.yaml")])


def test_unknown_role(tmp_path: Path):
    _write(
        tmp_path,
        "workers.yaml",
        WORKERS_YAML + "  archive:\n    class: wipac.runflow.workers.http:HttpTransferWorker\n",
    )

    with pytest.raises(ValueError, match="unknown worker role 'archive'"):
        load_workers([str(tmp_path / "*.yaml")])


def test_no_files_means_no_workers(tmp_path: Path):
    with pytest.raises(ValueError, match="Missing worker definitions"):
        load_workers([str(tmp_path / "*.yaml")])


class TestBuildWorker:
    def test_requires_class(self):
        with pytest.raises(ValueError, match="has no 'class'"):
            build_worker("tape", {"config": {}})

    def test_rejects_wrong_capability(self):
        with pytest.raises(TypeError, match="does not implement TransferWorker"):
            build_worker(
                "tape",
                {"class": "wipac.runflow.workers.http:HttpComputeWorker", "config": {"base_url": "http://x"}},
            )

    def test_rejects_arbitrary_class(self):
        with pytest.raises(TypeError):
            build_worker("compute", {"class": "builtins:dict", "config": {"base_url": "http://x"}})


def test_shipped_config_loads(monkeypatch):
    for var in ("TAPE_WORKER_URL", "WIPAC_WORKER_URL", "COMPUTE_WORKER_URL", "STAGING_SITE"):
        monkeypatch.delenv(var, raising=False)

    workers = load_workers([str(SHIPPED_CONFIG)])

    assert workers.tape._base == "http://localhost:9001"
    assert workers.tape._destination == "NERSC"
    assert workers.compute._timeout == 60.0
