"""Event/status reporting.

Every externally observable state change is emitted once: persisted to the
append-only event log and logged with structured extras. Collaborators read
events back per job with `list_events`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from batchwarden.models import ExecutionUnit, Job
from batchwarden.storage.interfaces import RecordStore
from batchwarden.utils import format_optional, format_rfc3339, utcnow

logger = logging.getLogger(__name__)

# Events that indicate a problem are logged at WARNING so they surface without DEBUG.
_WARNING_EVENTS = {
    "admission_rejected",
    "unit_failed",
    "job_failed",
    "trigger_missed",
    "trigger_skipped",
    "spawn_rejected",
    "eviction_denied",
    "termination_failed",
}


def job_status(job: Job, units: list[ExecutionUnit]) -> dict[str, Any]:
    """Status view of a job: phase plus counters. `active` counts units not yet terminal."""
    return {
        "jobId": job.job_id,
        "tenant": job.tenant,
        "name": job.spec.name,
        "phase": job.phase.value,
        "succeeded": job.succeeded,
        "failed": job.failed,
        "active": sum(1 for u in units if not u.phase.terminal),
        "terminating": sum(1 for u in units if u.terminating),
        "completions": job.spec.completions,
        "parallelism": job.spec.parallelism,
        "failureReason": job.failure_reason,
        "startTime": format_optional(job.start_time),
        "completionTime": format_optional(job.completion_time),
        "scheduleId": job.schedule_id,
        "version": job.version,
    }


@dataclass(frozen=True)
class Event:
    event_type: str
    tenant: str
    job_id: str | None
    ts: str
    details: dict[str, Any]

    def to_document(self) -> dict[str, Any]:
        return {"type": self.event_type, "tenant": self.tenant, "jobId": self.job_id, "ts": self.ts, "details": self.details}


class EventReporter:
    def __init__(self, *, record_store: RecordStore, clock: Callable[[], datetime] = utcnow):
        self._records = record_store
        self._clock = clock

    def emit(
        self,
        event_type: str,
        *,
        tenant: str,
        job_id: str | None = None,
        unit_id: str | None = None,
        schedule_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        payload = dict(details or {})
        if unit_id is not None:
            payload["unit_id"] = unit_id
        if schedule_id is not None:
            payload["schedule_id"] = schedule_id
        self._records.record_event(tenant=tenant, job_id=job_id, event_type=event_type, details=payload, ts=self._clock())

        level = logging.WARNING if event_type in _WARNING_EVENTS else logging.INFO
        logger.log(
            level,
            event_type,
            extra={"event": event_type, "tenant": tenant, "job_id": job_id, "unit_id": unit_id, "schedule_id": schedule_id},
        )

    def list_events(self, job_id: str) -> list[Event]:
        return [
            Event(event_type=e.event_type, tenant=e.tenant, job_id=e.job_id, ts=format_rfc3339(e.ts), details=e.details)
            for e in self._records.list_events(job_id=job_id)
        ]

    def list_tenant_events(self, tenant: str) -> list[Event]:
        return [
            Event(event_type=e.event_type, tenant=e.tenant, job_id=e.job_id, ts=format_rfc3339(e.ts), details=e.details)
            for e in self._records.list_events(tenant=tenant)
        ]
