# wipac/runflow/core/loader.py
"""
YAML configuration documents with ``${VAR:-default}`` expansion and
``module:Attr`` class references.
"""
from __future__ import annotations

import importlib
import logging
import os
import re
from glob import glob
from pathlib import Path
from typing import Any, Iterable

import yaml

logger = logging.getLogger(__name__)

# ${VAR} (required) or ${VAR:-default}
_ENV_REF = re.compile(r"\$\{([^}:]+)(?::-([^}]*))?\}")


def import_attr(path: str) -> Any:
    """Resolve ``'package.module:Attr'`` to the attribute it names."""
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Invalid import path '{path}', expected 'module:attr'")

    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise ImportError(f"Cannot import module '{module_name}' (from '{path}')") from exc

    try:
        return getattr(module, attr)
    except AttributeError:
        raise AttributeError(f"Module '{module_name}' has no attribute '{attr}'") from None


def _env_value(match: re.Match) -> str:
    name, default = match.group(1), match.group(2)
    value = os.environ.get(name)
    if value is not None:
        return value
    if default is not None:
        return default
    raise ValueError(f"Environment variable '{name}' is not set and no default provided")


def expand_env(value: Any) -> Any:
    """Expand environment references in every string of a parsed document."""
    if isinstance(value, str):
        return _ENV_REF.sub(_env_value, value)
    if isinstance(value, dict):
        return {k: expand_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [expand_env(v) for v in value]
    return value


def matching_files(patterns: Iterable[str]) -> list[Path]:
    """Files matched by any glob, deduplicated, in path order."""
    return sorted({Path(m).resolve() for pattern in patterns for m in glob(pattern)})


def load_yaml_documents(patterns: Iterable[str]) -> list[tuple[Path, dict[str, Any]]]:
    """
    Parse every YAML file matched by ``patterns``.

    Empty files count as empty mappings; any other non-mapping document is
    rejected. Later files come later, so callers merging them let later
    files win.
    """
    patterns = list(patterns)
    files = matching_files(patterns)
    if not files:
        logger.warning("No config files found matching patterns: %s", patterns)
        return []

    documents: list[tuple[Path, dict[str, Any]]] = []
    for path in files:
        with path.open("r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh)
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ValueError(f"{path}: expected a mapping, got {type(data).__name__}")
        documents.append((path, data))

    logger.info("Loaded config files: %s", [str(p) for p in files])
    return documents
