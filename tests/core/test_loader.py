# tests/core/test_loader.py
from __future__ import annotations

from pathlib import Path

import pytest

from wipac.runflow.core.loader import expand_env, import_attr, load_yaml_documents, matching_files
from wipac.runflow.workers.http import HttpTransferWorker


class TestImportAttr:
    def test_resolves_worker_class(self):
        assert import_attr("wipac.runflow.workers.http:HttpTransferWorker") is HttpTransferWorker

    @pytest.mark.parametrize(
        "path",
        ["wipac.runflow.workers.http.HttpTransferWorker", ":HttpTransferWorker", "wipac.runflow.workers.http:"],
    )
    def test_rejects_malformed_path(self, path: str):
        with pytest.raises(ValueError, match="expected 'module:attr'"):
            import_attr(path)

    def test_unknown_module(self):
        with pytest.raises(ImportError, match="wipac.runflow.nope"):
            import_attr("wipac.runflow.nope:Worker")

    def test_unknown_attribute(self):
        with pytest.raises(AttributeError, match="NoSuchWorker"):
            import_attr("wipac.runflow.workers.http:NoSuchWorker")


class TestExpandEnv:
    def test_env_value_wins_over_default(self, monkeypatch):
        monkeypatch.setenv("TAPE_WORKER_URL", "http://tape.icecube:9001")
        assert expand_env("${TAPE_WORKER_URL:-http://localhost}") == "http://tape.icecube:9001"

    def test_default_used_when_unset(self, monkeypatch):
        monkeypatch.delenv("STAGING_SITE", raising=False)
        assert expand_env("${STAGING_SITE:-NERSC}") == "NERSC"

    def test_empty_default(self, monkeypatch):
        monkeypatch.delenv("COMPUTE_WORKER_TOKEN", raising=False)
        assert expand_env("${COMPUTE_WORKER_TOKEN:-}") == ""

    def test_missing_without_default_raises(self, monkeypatch):
        monkeypatch.delenv("COMPUTE_WORKER_TOKEN", raising=False)
        with pytest.raises(ValueError, match="not set"):
            expand_env("${COMPUTE_WORKER_TOKEN}")

    def test_walks_nested_structures(self, monkeypatch):
        monkeypatch.setenv("SITE", "WIPAC")
        config = {"workers": {"wipac": {"config": {"destination": "${SITE}", "hops": ["${SITE}", 2]}}}}

        result = expand_env(config)

        assert result["workers"]["wipac"]["config"] == {"destination": "WIPAC", "hops": ["WIPAC", 2]}

    def test_non_strings_pass_through(self):
        assert expand_env(60.0) == 60.0
        assert expand_env(None) is None


class TestLoadYamlDocuments:
    def test_files_load_in_path_order(self, tmp_path: Path):
        (tmp_path / "20-override.yaml").write_text("workers: {tape: {}}\n", encoding="utf-8")
        (tmp_path / "10-base.yaml").write_text("workers: {}\n", encoding="utf-8")

        result = load_yaml_documents([str(tmp_path / "*.yaml")])

        assert [p.name for p, _ in result] == ["10-base.yaml", "20-override.yaml"]
        assert [doc for _, doc in result] == [{"workers": {}}, {"workers": {"tape": {}}}]

    def test_overlapping_globs_load_once(self, tmp_path: Path):
        path = tmp_path / "workers.yaml"
        path.write_text("workers: {}\n", encoding="utf-8")

        assert matching_files([str(path), str(tmp_path / "*.yaml")]) == [path.resolve()]

    def test_no_match_is_empty(self, tmp_path: Path):
        assert load_yaml_documents([str(tmp_path / "missing" / "*.yaml")]) == []

    def test_empty_document_is_empty_mapping(self, tmp_path: Path):
        path = tmp_path / "workers.yaml"
        path.write_text("", encoding="utf-8")

        assert load_yaml_documents([str(path)]) == [(path.resolve(), {})]

    def test_non_mapping_document_rejected(self, tmp_path: Path):
        path = tmp_path / "workers.yaml"
        path.write_text("- tape\n- wipac\n", encoding="utf-8")

        with pytest.raises(ValueError, match="expected a mapping, got list"):
            load_yaml_documents([str(path)])
