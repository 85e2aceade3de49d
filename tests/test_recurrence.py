from __future__ import annotations

from datetime import datetime, timezone

import pytest

from batchwarden.errors import ConcurrentModificationError, ConflictError, ContractViolationError, NotFoundError
from batchwarden.models import ScheduleState, UnitPhase
from batchwarden.recurrence.clock import count_older_triggers, most_recent_trigger, validate_cron

from conftest import units_in


def at(hour: int, minute: int, second: int = 0) -> datetime:
    return datetime(2026, 1, 5, hour, minute, second, tzinfo=timezone.utc)


def schedule_doc(
    name: str = "report",
    *,
    cron: str = "*/5 * * * *",
    policy: str = "Allow",
    starting_deadline: int | None = None,
    successful_limit: int = 3,
    failed_limit: int = 1,
) -> dict:
    spec = {
        "schedule": cron,
        "concurrencyPolicy": policy,
        "successfulJobsHistoryLimit": successful_limit,
        "failedJobsHistoryLimit": failed_limit,
        "jobTemplate": {
            "metadata": {"labels": {"team": "reporting"}},
            "spec": {"completions": 1, "parallelism": 1, "template": {"command": ["make-report"]}},
        },
    }
    if starting_deadline is not None:
        spec["startingDeadlineSeconds"] = starting_deadline
    return {"kind": "RecurrenceSchedule", "metadata": {"tenant": "acme", "name": name}, "spec": spec}


def tenant_event_types(engine) -> list[str]:
    return [e.event_type for e in engine.list_tenant_events("acme")]


def finish(engine, job_id: str, *, succeeded: bool = True) -> None:
    for unit in units_in(engine, job_id, UnitPhase.RUNNING):
        engine.report_unit_outcome(unit.unit_id, succeeded=succeeded)


def test_trigger_helpers() -> None:
    assert most_recent_trigger("*/5 * * * *", at(12, 17, 0)) == at(12, 15)
    assert most_recent_trigger("*/5 * * * *", at(12, 15, 0)) == at(12, 15)
    assert count_older_triggers("*/5 * * * *", at(12, 15), at(12, 0, 30)) == 2
    assert count_older_triggers("* * * * *", at(20, 0), at(12, 0)) == 100


def test_spawns_once_per_trigger(engine, clock) -> None:
    created = engine.create_schedule(schedule_doc())
    assert engine.tick().spawned == []

    clock.set(at(12, 5, 10))
    spawned = engine.tick().spawned
    assert len(spawned) == 1
    job = engine.get_job(spawned[0])
    assert job.schedule_id == created.schedule_id
    assert job.spec.name.startswith("report-")
    assert job.spec.labels == {"team": "reporting"}
    assert engine.get_job_status(job.job_id)["phase"] == "Active"

    clock.advance(30)
    assert engine.tick().spawned == []
    schedule = engine.get_schedule(created.schedule_id)
    assert schedule.last_schedule_time == at(12, 5)
    assert schedule.state is ScheduleState.SPAWNED


def test_forbid_skips_while_previous_run_is_active(engine, clock) -> None:
    created = engine.create_schedule(schedule_doc(policy="Forbid"))
    clock.set(at(12, 5, 10))
    (first,) = engine.tick().spawned

    clock.set(at(12, 10, 10))
    assert engine.tick().spawned == []
    assert "trigger_skipped" in tenant_event_types(engine)
    assert engine.get_schedule(created.schedule_id).active_job_ids == [first]

    finish(engine, first)
    clock.set(at(12, 15, 10))
    (second,) = engine.tick().spawned
    schedule = engine.get_schedule(created.schedule_id)
    assert schedule.active_job_ids == [second]
    assert [h.job_id for h in schedule.history] == [first]


def test_replace_cancels_previous_run(engine, clock, placement) -> None:
    created = engine.create_schedule(schedule_doc(policy="Replace"))
    clock.set(at(12, 5, 10))
    (first,) = engine.tick().spawned

    clock.set(at(12, 10, 10))
    (second,) = engine.tick().spawned
    assert engine.get_job_status(first)["phase"] == "Cancelled"
    assert engine.get_job_status(second)["phase"] == "Active"
    assert "job_replaced" in [e.event_type for e in engine.list_events(first)]
    assert len(placement.terminated) == 1

    schedule = engine.get_schedule(created.schedule_id)
    assert schedule.active_job_ids == [second]


def test_allow_runs_concurrently(engine, clock) -> None:
    created = engine.create_schedule(schedule_doc(policy="Allow"))
    clock.set(at(12, 5, 10))
    (first,) = engine.tick().spawned
    clock.set(at(12, 10, 10))
    (second,) = engine.tick().spawned
    assert engine.get_schedule(created.schedule_id).active_job_ids == [first, second]


def test_outage_spawns_at_most_one_job(engine, clock) -> None:
    engine.create_schedule(schedule_doc())
    clock.set(at(12, 17, 0))
    assert len(engine.tick().spawned) == 1
    discarded = [e for e in engine.list_tenant_events("acme") if e.event_type == "triggers_discarded"]
    assert discarded[0].details["count"] == 2


def test_trigger_outside_starting_deadline_is_missed(engine, clock) -> None:
    created = engine.create_schedule(schedule_doc(starting_deadline=60))
    clock.set(at(12, 17, 0))
    assert engine.tick().spawned == []
    missed = [e for e in engine.list_tenant_events("acme") if e.event_type == "trigger_missed"]
    assert missed[0].details["cause"] == "starting_deadline"
    assert engine.get_schedule(created.schedule_id).state is ScheduleState.IDLE

    clock.set(at(12, 20, 30))
    assert len(engine.tick().spawned) == 1


def test_suspended_schedule_consumes_triggers(engine, clock) -> None:
    created = engine.create_schedule(schedule_doc())
    suspended = engine.suspend_schedule(created.schedule_id, expected_version=created.version)
    assert suspended.suspend is True

    clock.set(at(12, 5, 10))
    assert engine.tick().spawned == []
    missed = [e for e in engine.list_tenant_events("acme") if e.event_type == "trigger_missed"]
    assert missed[0].details["cause"] == "suspended"

    engine.suspend_schedule(created.schedule_id, False)
    assert engine.tick().spawned == []

    clock.set(at(12, 10, 10))
    assert len(engine.tick().spawned) == 1


def test_suspend_with_stale_version(engine) -> None:
    created = engine.create_schedule(schedule_doc())
    engine.suspend_schedule(created.schedule_id)
    with pytest.raises(ConcurrentModificationError):
        engine.suspend_schedule(created.schedule_id, False, expected_version=created.version)


def test_history_is_pruned_oldest_first(engine, clock) -> None:
    engine.create_schedule(schedule_doc(successful_limit=1))
    clock.set(at(12, 5, 10))
    (first,) = engine.tick().spawned
    finish(engine, first)

    clock.set(at(12, 10, 10))
    (second,) = engine.tick().spawned
    finish(engine, second)

    clock.set(at(12, 15, 10))
    engine.tick()
    with pytest.raises(NotFoundError):
        engine.get_job_status(first)
    assert engine.get_job_status(second)["phase"] == "Completed"
    assert "history_pruned" in [e.event_type for e in engine.list_events(first)]


def test_failed_history_limit_zero_removes_failed_runs(engine, clock) -> None:
    engine.create_schedule(schedule_doc(failed_limit=0))
    clock.set(at(12, 5, 10))
    (first,) = engine.tick().spawned
    finish(engine, first, succeeded=False)
    engine.cancel_job(first)

    clock.set(at(12, 10, 10))
    engine.tick()
    with pytest.raises(NotFoundError):
        engine.get_job_status(first)


def test_spawn_rejected_by_job_quota(engine, clock) -> None:
    engine.set_resource_policy("acme", quota={"jobs": 0})
    engine.create_schedule(schedule_doc())
    clock.set(at(12, 5, 10))
    assert engine.tick().spawned == []
    rejected = [e for e in engine.list_tenant_events("acme") if e.event_type == "spawn_rejected"]
    assert rejected[0].details["reason"] == "QuotaExceeded"


def test_invalid_cron_is_refused(engine) -> None:
    with pytest.raises(ContractViolationError) as e:
        engine.create_schedule(schedule_doc(cron="every tuesday"))
    assert e.value.code == "INVALID_SCHEDULE"


@pytest.mark.parametrize("expression", ["*/10 * * * * *", "0 2 * *", "0 0 2 * * * 2030"])
def test_cron_must_have_five_fields(engine, expression) -> None:
    with pytest.raises(ContractViolationError) as e:
        validate_cron(expression)
    assert e.value.code == "INVALID_SCHEDULE"
    with pytest.raises(ContractViolationError):
        engine.create_schedule(schedule_doc(cron=expression))
    assert engine.list_schedules() == []
    validate_cron("*/10 * * * *")


def test_duplicate_schedule_name_conflicts(engine) -> None:
    engine.create_schedule(schedule_doc())
    with pytest.raises(ConflictError):
        engine.create_schedule(schedule_doc())


def test_update_replaces_definition_and_keeps_state(engine, clock) -> None:
    created = engine.create_schedule(schedule_doc())
    clock.set(at(12, 5, 10))
    (first,) = engine.tick().spawned

    updated = engine.update_schedule(
        created.schedule_id,
        schedule_doc(cron="0 * * * *", policy="Forbid"),
        expected_version=engine.get_schedule(created.schedule_id).version,
    )
    assert updated.cron == "0 * * * *"
    assert updated.active_job_ids == [first]
    assert updated.last_schedule_time == at(12, 5)

    clock.set(at(12, 10, 10))
    assert engine.tick().spawned == []
    finish(engine, first)
    clock.set(at(13, 0, 5))
    assert len(engine.tick().spawned) == 1
    assert "schedule_updated" in tenant_event_types(engine)


def test_update_refuses_stale_version_and_renames(engine) -> None:
    created = engine.create_schedule(schedule_doc())
    with pytest.raises(ConcurrentModificationError):
        engine.update_schedule(created.schedule_id, schedule_doc(), expected_version=created.version + 1)
    with pytest.raises(ConflictError):
        engine.update_schedule(created.schedule_id, schedule_doc(name="other"))
    with pytest.raises(ContractViolationError):
        engine.update_schedule(created.schedule_id, schedule_doc(cron="61 * * * *"))


def test_deleted_schedule_stops_firing(engine, clock) -> None:
    created = engine.create_schedule(schedule_doc())
    clock.set(at(12, 5, 10))
    (job_id,) = engine.tick().spawned
    engine.delete_schedule(created.schedule_id)
    with pytest.raises(NotFoundError):
        engine.get_schedule(created.schedule_id)

    clock.set(at(12, 10, 10))
    assert engine.tick().spawned == []
    assert engine.get_job(job_id).schedule_id == created.schedule_id
