from __future__ import annotations

from datetime import datetime, timezone

import pytest

from batchwarden.errors import ConcurrentModificationError, ConflictError, NotFoundError
from batchwarden.models import RecordKind


def test_create_get_update_bumps_version(record_store) -> None:
    v1 = record_store.create(RecordKind.JOB, "job-1", "acme", {"phase": "Pending"})
    assert v1 == 1
    v2 = record_store.update(RecordKind.JOB, "job-1", {"phase": "Active"}, expected_version=1)
    assert v2 == 2
    rec = record_store.get(RecordKind.JOB, "job-1")
    assert rec.version == 2
    assert rec.tenant == "acme"
    assert rec.document == {"phase": "Active"}


def test_stale_version_is_rejected_not_overwritten(record_store) -> None:
    record_store.create(RecordKind.JOB, "job-1", "acme", {"phase": "Pending"})
    record_store.update(RecordKind.JOB, "job-1", {"phase": "Active"}, expected_version=1)
    with pytest.raises(ConcurrentModificationError) as e:
        record_store.update(RecordKind.JOB, "job-1", {"phase": "Cancelled"}, expected_version=1)
    assert e.value.expected == 1
    assert e.value.actual == 2
    assert record_store.get(RecordKind.JOB, "job-1").document == {"phase": "Active"}


def test_duplicate_create_conflicts(record_store) -> None:
    record_store.create(RecordKind.RESOURCE_POLICY, "acme", "acme", {})
    with pytest.raises(ConflictError):
        record_store.create(RecordKind.RESOURCE_POLICY, "acme", "acme", {})


def test_missing_records(record_store) -> None:
    assert record_store.find(RecordKind.JOB, "ghost") is None
    with pytest.raises(NotFoundError):
        record_store.get(RecordKind.JOB, "ghost")
    with pytest.raises(NotFoundError):
        record_store.update(RecordKind.JOB, "ghost", {}, expected_version=1)
    record_store.delete(RecordKind.JOB, "ghost")


def test_list_records_filters_by_kind_and_tenant(record_store) -> None:
    record_store.create(RecordKind.JOB, "job-a", "acme", {})
    record_store.create(RecordKind.JOB, "job-b", "globex", {})
    record_store.create(RecordKind.EXECUTION_UNIT, "unit-a", "acme", {})
    assert [r.record_id for r in record_store.list_records(RecordKind.JOB)] == ["job-a", "job-b"]
    assert [r.record_id for r in record_store.list_records(RecordKind.JOB, tenant="globex")] == ["job-b"]


def test_events_are_append_only_and_ordered(record_store) -> None:
    record_store.record_event(tenant="acme", job_id="job-1", event_type="job_submitted")
    record_store.record_event(tenant="acme", job_id="job-1", event_type="unit_launched", details={"unitId": "u1"})
    record_store.record_event(tenant="globex", job_id=None, event_type="trigger_missed")
    events = record_store.list_events(job_id="job-1")
    assert [e.event_type for e in events] == ["job_submitted", "unit_launched"]
    assert events[1].details == {"unitId": "u1"}
    assert [e.event_type for e in record_store.list_events(tenant="globex")] == ["trigger_missed"]


def test_event_keeps_the_timestamp_it_was_given(record_store) -> None:
    ts = datetime(2026, 1, 5, 12, 0, 30, tzinfo=timezone.utc)
    record_store.record_event(tenant="acme", job_id="job-1", event_type="job_submitted", ts=ts)
    (event,) = record_store.list_events(job_id="job-1")
    assert event.ts == ts
