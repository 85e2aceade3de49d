"""Configuration loader for the engine.

Missing files, non-mapping roots and out-of-range values raise
PolicyViolationError before the engine is built. Relative paths in
runtime.yaml resolve against the directory that holds it.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from batchwarden.errors import PolicyViolationError


@dataclass(frozen=True)
class ServiceConfig:
    host: str = "0.0.0.0"
    port: int = 8080


@dataclass(frozen=True)
class StorageConfig:
    driver: str = "sqlite"
    sqlite_path: Path = Path("state/batchwarden.sqlite")


@dataclass(frozen=True)
class SchedulerConfig:
    enabled: bool = True
    tick_seconds: float = 1.0
    max_concurrent_launches: int = 8


@dataclass(frozen=True)
class BackoffConfig:
    unit_base_seconds: float = 10.0
    unit_cap_seconds: float = 360.0
    admission_base_seconds: float = 5.0
    admission_cap_seconds: float = 300.0


@dataclass(frozen=True)
class RecurrenceConfig:
    enabled: bool = True
    tick_seconds: float = 10.0


@dataclass(frozen=True)
class DisruptionConfig:
    approval_ttl_seconds: float = 120.0


@dataclass(frozen=True)
class RuntimeConfig:
    service: ServiceConfig = field(default_factory=ServiceConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    backoff: BackoffConfig = field(default_factory=BackoffConfig)
    recurrence: RecurrenceConfig = field(default_factory=RecurrenceConfig)
    disruption: DisruptionConfig = field(default_factory=DisruptionConfig)
    manifests_dir: Path | None = None
    config_dir: Path = field(default_factory=Path.cwd)


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise PolicyViolationError(f"Missing required config file: {path}")
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise PolicyViolationError(f"Invalid YAML root object in config file: {path}")
    return data


def _resolve_path(base_dir: Path, raw: str) -> Path:
    p = Path(raw)
    if p.is_absolute():
        return p
    return (base_dir / p).resolve()


def _positive(value: float, key: str) -> float:
    if value <= 0:
        raise PolicyViolationError(f"Config value must be > 0: {key}={value}")
    return value


def load_runtime_config(runtime_config_path: Path) -> RuntimeConfig:
    cfg_dir = runtime_config_path.parent.resolve()
    raw = _load_yaml(runtime_config_path)

    service_raw = raw.get("service", {})
    storage_raw = raw.get("storage", {})
    scheduler_raw = raw.get("scheduler", {})
    backoff_raw = raw.get("backoff", {})
    recurrence_raw = raw.get("recurrence", {})
    disruption_raw = raw.get("disruption", {})
    manifests_raw = raw.get("manifests", {})

    service = ServiceConfig(
        host=str(service_raw.get("host", "0.0.0.0")),
        port=int(service_raw.get("port", 8080)),
    )

    driver = str(storage_raw.get("driver", "sqlite"))
    if driver != "sqlite":
        raise PolicyViolationError(f"Unsupported storage driver: {driver}")
    sqlite_path = _resolve_path(cfg_dir, str(storage_raw.get("sqlite", {}).get("path", "../state/batchwarden.sqlite")))
    storage = StorageConfig(driver=driver, sqlite_path=sqlite_path)

    scheduler = SchedulerConfig(
        enabled=bool(scheduler_raw.get("enabled", True)),
        tick_seconds=_positive(float(scheduler_raw.get("tick_seconds", 1.0)), "scheduler.tick_seconds"),
        max_concurrent_launches=int(_positive(int(scheduler_raw.get("max_concurrent_launches", 8)), "scheduler.max_concurrent_launches")),
    )

    backoff = BackoffConfig(
        unit_base_seconds=_positive(float(backoff_raw.get("unit_base_seconds", 10.0)), "backoff.unit_base_seconds"),
        unit_cap_seconds=_positive(float(backoff_raw.get("unit_cap_seconds", 360.0)), "backoff.unit_cap_seconds"),
        admission_base_seconds=_positive(float(backoff_raw.get("admission_base_seconds", 5.0)), "backoff.admission_base_seconds"),
        admission_cap_seconds=_positive(float(backoff_raw.get("admission_cap_seconds", 300.0)), "backoff.admission_cap_seconds"),
    )

    recurrence = RecurrenceConfig(
        enabled=bool(recurrence_raw.get("enabled", True)),
        tick_seconds=_positive(float(recurrence_raw.get("tick_seconds", 10.0)), "recurrence.tick_seconds"),
    )

    disruption = DisruptionConfig(
        approval_ttl_seconds=_positive(float(disruption_raw.get("approval_ttl_seconds", 120.0)), "disruption.approval_ttl_seconds"),
    )

    manifests_dir = None
    if manifests_raw.get("dir"):
        manifests_dir = _resolve_path(cfg_dir, str(manifests_raw["dir"]))

    return RuntimeConfig(
        service=service,
        storage=storage,
        scheduler=scheduler,
        backoff=backoff,
        recurrence=recurrence,
        disruption=disruption,
        manifests_dir=manifests_dir,
        config_dir=cfg_dir,
    )


def load_logging_config(logging_config_path: Path) -> dict[str, Any]:
    return _load_yaml(logging_config_path)


def default_config_paths() -> tuple[Path, Path]:
    # Env overrides win; otherwise paths relative to the working directory.
    runtime_path = os.environ.get("BATCHWARDEN_RUNTIME_CONFIG")
    logging_path = os.environ.get("BATCHWARDEN_LOGGING_CONFIG")
    return (
        Path(runtime_path) if runtime_path else Path.cwd() / "config" / "runtime.yaml",
        Path(logging_path) if logging_path else Path.cwd() / "config" / "logging.yaml",
    )
