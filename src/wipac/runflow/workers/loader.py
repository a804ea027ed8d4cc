# wipac/runflow/workers/loader.py
"""
Worker loader – reads config/workers.yaml and builds the executor's WorkerSet.
"""
from __future__ import annotations

import logging
from typing import Any, Iterable

from wipac.runflow.contracts.workers import ComputeWorker, TransferWorker, WorkerSet
from wipac.runflow.core.loader import expand_env, import_attr, load_yaml_documents

logger = logging.getLogger(__name__)

ROLES: dict[str, type] = {
    "tape": TransferWorker,
    "wipac": TransferWorker,
    "compute": ComputeWorker,
}


def build_worker(role: str, spec: dict[str, Any]) -> Any:
    class_path = spec.get("class")
    if not class_path:
        raise ValueError(f"Worker '{role}' has no 'class'")

    cls = import_attr(class_path)
    kwargs = dict(expand_env(spec.get("config") or {}))
    worker = cls(**kwargs)

    expected = ROLES[role]
    if not isinstance(worker, expected):
        raise TypeError(
            f"Worker '{role}' ({class_path}) does not implement {expected.__name__}"
        )
    return worker


def load_workers(patterns: Iterable[str]) -> WorkerSet:
    """Load worker definitions from YAML.

    Expected YAML::

        workers:
          tape:
            class: wipac.runflow.workers.http:HttpTransferWorker
            config:
              base_url: "${TAPE_WORKER_URL:-http://localhost:9001}"
              destination: "${STAGING_SITE:-NERSC}"
          wipac:
            class: wipac.runflow.workers.http:HttpTransferWorker
            config:
              base_url: "${WIPAC_WORKER_URL:-http://localhost:9002}"
              destination: WIPAC
          compute:
            class: wipac.runflow.workers.http:HttpComputeWorker
            config:
              base_url: "${COMPUTE_WORKER_URL:-http://localhost:9003}"

    Later files override earlier ones role by role.
    """
    specs: dict[str, dict[str, Any]] = {}
    for path, data in load_yaml_documents(patterns):
        for role, spec in (data.get("workers") or {}).items():
            if role not in ROLES:
                raise ValueError(
                    f"{path}: unknown worker role '{role}' (expected one of {sorted(ROLES)})"
                )
            logger.debug("Worker '%s' defined in %s", role, path)
            specs[role] = spec or {}

    missing = sorted(set(ROLES) - set(specs))
    if missing:
        raise ValueError(f"Missing worker definitions: {missing}")

    workers = {role: build_worker(role, spec) for role, spec in specs.items()}
    logger.info(
        "Loaded workers: %s",
        {role: type(w).__name__ for role, w in workers.items()},
    )
    return WorkerSet(**workers)
