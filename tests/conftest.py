from __future__ import annotations

import sys
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest

# Ensure `import batchwarden` works when running `pytest` from repo root.
REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))

from batchwarden.config.settings import BackoffConfig, DisruptionConfig, SchedulerConfig  # noqa: E402
from batchwarden.engine import GovernanceEngine  # noqa: E402
from batchwarden.errors import LaunchError  # noqa: E402
from batchwarden.models import ExecutionUnit, UnitPhase  # noqa: E402
from batchwarden.placement.interfaces import PlacementBackend  # noqa: E402
from batchwarden.registry.schema_validator import SchemaValidator  # noqa: E402
from batchwarden.storage.sqlite import SQLiteRecordStore  # noqa: E402

T0 = datetime(2026, 1, 5, 12, 0, 30, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now

    def set(self, when: datetime) -> datetime:
        self.now = when
        return self.now


class FakePlacement(PlacementBackend):
    def __init__(self) -> None:
        self.launched: list[ExecutionUnit] = []
        self.terminated: list[str] = []
        self.fail_launches = False
        self._lock = threading.Lock()

    def launch_unit(self, unit: ExecutionUnit) -> str:
        if self.fail_launches:
            raise LaunchError("no capacity")
        with self._lock:
            self.launched.append(unit)
        return f"handle-{unit.unit_id}"

    def terminate_unit(self, handle: str) -> None:
        with self._lock:
            self.terminated.append(handle)


def job_doc(
    tenant: str = "acme",
    name: str = "batch",
    *,
    completions: int = 1,
    parallelism: int = 1,
    backoff_limit: int = 6,
    deadline: int | None = None,
    requests: dict[str, Any] | None = None,
    limits: dict[str, Any] | None = None,
    labels: dict[str, str] | None = None,
) -> dict[str, Any]:
    spec: dict[str, Any] = {
        "completions": completions,
        "parallelism": parallelism,
        "backoffLimit": backoff_limit,
        "template": {
            "command": ["run-batch", "--shard", "auto"],
            "labels": dict(labels or {}),
            "resources": {"requests": dict(requests or {}), "limits": dict(limits or {})},
        },
    }
    if deadline is not None:
        spec["activeDeadlineSeconds"] = deadline
    return {"kind": "Job", "metadata": {"tenant": tenant, "name": name}, "spec": spec}


def units_in(engine: GovernanceEngine, job_id: str, phase: UnitPhase) -> list[ExecutionUnit]:
    return [u for u in engine.list_units(job_id) if u.phase is phase]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def placement() -> FakePlacement:
    return FakePlacement()


@pytest.fixture
def record_store(tmp_path: Path) -> SQLiteRecordStore:
    return SQLiteRecordStore.open(tmp_path / "state" / "batchwarden.sqlite")


@pytest.fixture
def schema_validator() -> SchemaValidator:
    return SchemaValidator.load_from_dir()


@pytest.fixture
def engine(record_store: SQLiteRecordStore, schema_validator: SchemaValidator, placement: FakePlacement, clock: FakeClock):
    eng = GovernanceEngine(
        record_store=record_store,
        schema_validator=schema_validator,
        placement=placement,
        scheduler_config=SchedulerConfig(max_concurrent_launches=4),
        backoff_config=BackoffConfig(
            unit_base_seconds=10, unit_cap_seconds=60, admission_base_seconds=5, admission_cap_seconds=40
        ),
        disruption_config=DisruptionConfig(approval_ttl_seconds=120),
        clock=clock,
    )
    yield eng
    eng.close()
