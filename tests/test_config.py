from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

from batchwarden.config.logging import JSONFormatter
from batchwarden.config.settings import default_config_paths, load_logging_config, load_runtime_config
from batchwarden.errors import PolicyViolationError

REPO_ROOT = Path(__file__).resolve().parents[1]


def test_shipped_runtime_config_loads() -> None:
    cfg = load_runtime_config(REPO_ROOT / "config" / "runtime.yaml")
    assert cfg.storage.driver == "sqlite"
    assert cfg.storage.sqlite_path == (REPO_ROOT / "state" / "batchwarden.sqlite").resolve()
    assert cfg.manifests_dir == (REPO_ROOT / "manifests").resolve()
    assert cfg.backoff.unit_base_seconds == 10
    assert cfg.backoff.unit_cap_seconds == 360
    assert cfg.disruption.approval_ttl_seconds == 120


def test_shipped_logging_config_is_a_dict_config() -> None:
    cfg = load_logging_config(REPO_ROOT / "config" / "logging.yaml")
    assert cfg["version"] == 1


def test_missing_config_file_fails_closed(tmp_path: Path) -> None:
    with pytest.raises(PolicyViolationError):
        load_runtime_config(tmp_path / "nope.yaml")


def test_non_mapping_root_fails_closed(tmp_path: Path) -> None:
    p = tmp_path / "runtime.yaml"
    p.write_text("- just\n- a list\n", encoding="utf-8")
    with pytest.raises(PolicyViolationError):
        load_runtime_config(p)


def test_unknown_storage_driver_is_rejected(tmp_path: Path) -> None:
    p = tmp_path / "runtime.yaml"
    p.write_text("storage:\n  driver: postgres\n", encoding="utf-8")
    with pytest.raises(PolicyViolationError):
        load_runtime_config(p)


def test_non_positive_tick_is_rejected(tmp_path: Path) -> None:
    p = tmp_path / "runtime.yaml"
    p.write_text("scheduler:\n  tick_seconds: 0\n", encoding="utf-8")
    with pytest.raises(PolicyViolationError):
        load_runtime_config(p)


def test_relative_paths_resolve_against_config_dir(tmp_path: Path) -> None:
    p = tmp_path / "conf" / "runtime.yaml"
    p.parent.mkdir()
    p.write_text("storage:\n  sqlite:\n    path: data/engine.sqlite\n", encoding="utf-8")
    cfg = load_runtime_config(p)
    assert cfg.storage.sqlite_path == (tmp_path / "conf" / "data" / "engine.sqlite").resolve()
    assert cfg.manifests_dir is None


def test_env_overrides_config_paths(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("BATCHWARDEN_RUNTIME_CONFIG", str(tmp_path / "r.yaml"))
    monkeypatch.delenv("BATCHWARDEN_LOGGING_CONFIG", raising=False)
    runtime_path, logging_path = default_config_paths()
    assert runtime_path == tmp_path / "r.yaml"
    assert logging_path.name == "logging.yaml"


def test_json_formatter_lifts_structured_extras() -> None:
    record = logging.LogRecord("batchwarden.test", logging.WARNING, __file__, 1, "unit_failed", None, None)
    record.job_id = "job-1"
    record.tenant = "acme"
    record.reason = "ExitCode(2)"
    payload = json.loads(JSONFormatter().format(record))
    assert payload["msg"] == "unit_failed"
    assert payload["level"] == "WARNING"
    assert payload["job_id"] == "job-1"
    assert payload["tenant"] == "acme"
    assert payload["reason"] == "ExitCode(2)"
    assert "unit_id" not in payload
