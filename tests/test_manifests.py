from __future__ import annotations

from pathlib import Path

import pytest

from batchwarden.config.settings import RuntimeConfig, StorageConfig
from batchwarden.engine import GovernanceEngine
from batchwarden.errors import NotFoundError, PolicyViolationError, SchemaValidationError
from batchwarden.models import UnitPhase
from batchwarden.registry.loader import load_manifests
from batchwarden.registry.schema_validator import SchemaValidator
from batchwarden.storage.sqlite import SQLiteRecordStore

from conftest import FakeClock, FakePlacement, job_doc

REPO_ROOT = Path(__file__).resolve().parents[1]
MANIFESTS = REPO_ROOT / "manifests"


def test_shipped_manifests_load_in_apply_order(schema_validator) -> None:
    kinds = [kind.value for kind, _ in load_manifests(MANIFESTS, schema_validator=schema_validator)]
    assert kinds == ["ResourcePolicy", "DisruptionBudget", "RecurrenceSchedule"]


def test_apply_manifests(engine) -> None:
    applied = engine.apply_manifests(MANIFESTS)
    assert [(a.kind, a.name, a.applied) for a in applied] == [
        ("ResourcePolicy", "analytics", True),
        ("DisruptionBudget", "analytics/nightly-etl", True),
        ("RecurrenceSchedule", "analytics/nightly-etl", True),
    ]
    policy = engine.get_resource_policy("analytics")
    assert policy.quota.max_jobs == 20
    assert policy.limit_range.cpu.default_request == 250

    # Re-applying updates policies but leaves the existing schedule alone.
    again = engine.apply_manifests(MANIFESTS)
    assert [a.applied for a in again] == [True, True, False]
    assert engine.get_resource_policy("analytics").version == 2


def test_unknown_manifest_kind_fails_closed(tmp_path, schema_validator) -> None:
    (tmp_path / "job.yaml").write_text("kind: Job\nmetadata: {tenant: acme}\nspec: {}\n", encoding="utf-8")
    with pytest.raises(PolicyViolationError):
        load_manifests(tmp_path, schema_validator=schema_validator)


def test_invalid_manifest_fails_closed(tmp_path, schema_validator) -> None:
    (tmp_path / "budget.yaml").write_text(
        "kind: DisruptionBudget\nmetadata: {tenant: acme, name: web}\nspec: {minAvailable: 1, maxUnavailable: 1}\n",
        encoding="utf-8",
    )
    with pytest.raises(SchemaValidationError):
        load_manifests(tmp_path, schema_validator=schema_validator)


def test_state_survives_restart(tmp_path) -> None:
    db = tmp_path / "state.sqlite"
    clock = FakeClock()
    cfg = RuntimeConfig(storage=StorageConfig(sqlite_path=db), manifests_dir=MANIFESTS)

    first = GovernanceEngine.from_config(cfg, placement=FakePlacement())
    (schedule,) = first.list_schedules(tenant="analytics")
    running = first.submit_job(job_doc("analytics", "running"))
    done = first.submit_job(job_doc("analytics", "done"))
    first.tick()
    (done_unit,) = first.list_units(done.job_id)
    first.report_unit_outcome(done_unit.unit_id, succeeded=True)
    assert first.get_job_status(running.job_id)["phase"] == "Active"
    first.close()

    second = GovernanceEngine(
        record_store=SQLiteRecordStore.open(db),
        schema_validator=SchemaValidator.load_from_dir(),
        placement=FakePlacement(),
        clock=clock,
    )
    try:
        second.restore()
        assert second.get_resource_policy("analytics").quota.max_units == 40
        assert second.get_budget_status("analytics", "nightly-etl").floor == 0
        restored = second.get_schedule(schedule.schedule_id)
        assert restored.cron == "0 2 * * *"
        assert restored.version == schedule.version

        status = second.get_job_status(running.job_id)
        assert (status["phase"], status["failureReason"], status["active"]) == ("Failed", "EngineRestarted", 0)
        (unit,) = second.list_units(running.job_id)
        assert (unit.phase, unit.reason, unit.terminating) == (UnitPhase.FAILED, "EngineRestarted", False)
        assert second.get_job_status(done.job_id)["phase"] == "Completed"
        assert second.tenant_usage("analytics")["units"] == 0

        # A second restore in the same process leaves reloaded jobs alone.
        version = second.get_job(running.job_id).version
        second.restore()
        assert second.get_job(running.job_id).version == version

        second.remove_job(running.job_id)
        second.remove_job(done.job_id)
        with pytest.raises(NotFoundError):
            second.get_job_status(running.job_id)
    finally:
        second.close()
