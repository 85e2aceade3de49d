"""Run Tracker.

Owns every Job and ExecutionUnit record and is the only writer of job
counters. All mutation of a job (its counters, its phase and its units)
happens under that job's own lock; unrelated jobs never contend.

Unit outcome reports are appended to a per-job inbox before the lock is
taken and drained in order once it is held, so outcomes are applied in
receipt order. Deadline evaluation drains the inbox first: a success that
arrived before the deadline check is honored.

Resources are released back to the tenant usage ledger exactly once per
unit, when the unit becomes terminal and no termination is outstanding.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta

from batchwarden.admission.evaluator import AdmissionEvaluator
from batchwarden.errors import (
    AdmissionError,
    ConcurrentModificationError,
    ConflictError,
    ContractViolationError,
    DeadlineExceededError,
    NotFoundError,
    Reason,
)
from batchwarden.locks import KeyedLocks
from batchwarden.models import JOB_ID_LABEL, ExecutionUnit, Job, JobPhase, RecordKind, ResourceRequirements, UnitPhase
from batchwarden.status.reporter import EventReporter
from batchwarden.storage.interfaces import RecordStore
from batchwarden.tracker.backoff import ExponentialBackoff
from batchwarden.tracker.state_machine import TransitionRequest, apply_transition, is_terminal
from batchwarden.utils import format_rfc3339, new_id

logger = logging.getLogger(__name__)

TERMINATED_REASON = "Terminated"


@dataclass(frozen=True)
class UnitOutcome:
    unit_id: str
    phase: UnitPhase
    now: datetime
    reason: str | None = None


@dataclass
class _JobEntry:
    job: Job
    units: dict[str, ExecutionUnit] = field(default_factory=dict)
    inbox: deque[UnitOutcome] = field(default_factory=deque)
    termination_sent: set[str] = field(default_factory=set)

    def running(self) -> int:
        return sum(1 for u in self.units.values() if not u.phase.terminal)


def check_deadline(job: Job, now: datetime) -> None:
    """Raise DeadlineExceededError once `now - start > activeDeadlineSeconds`.

    Jobs that never started measure from submission.
    """
    if job.spec.active_deadline_seconds is None:
        return
    started = job.start_time or job.created_at
    if now - started > timedelta(seconds=job.spec.active_deadline_seconds):
        raise DeadlineExceededError(job.job_id, job.spec.active_deadline_seconds)


def desired_launch_count(job: Job, running: int) -> int:
    return max(0, min(job.spec.parallelism - running, job.spec.completions - job.succeeded - running))


class RunTracker:
    def __init__(
        self,
        *,
        record_store: RecordStore,
        reporter: EventReporter,
        admission: AdmissionEvaluator,
        unit_backoff: ExponentialBackoff,
        admission_backoff: ExponentialBackoff,
    ):
        self._records = record_store
        self._reporter = reporter
        self._admission = admission
        self._unit_backoff = unit_backoff
        self._admission_backoff = admission_backoff

        self._locks = KeyedLocks()
        self._index_lock = threading.Lock()
        self._jobs: dict[str, _JobEntry] = {}
        self._unit_jobs: dict[str, str] = {}

    # -- lookup ------------------------------------------------------------

    def _entry(self, job_id: str) -> _JobEntry:
        with self._index_lock:
            entry = self._jobs.get(job_id)
        if entry is None:
            raise NotFoundError(RecordKind.JOB.value, job_id)
        return entry

    def _entry_for_unit(self, unit_id: str) -> _JobEntry:
        with self._index_lock:
            job_id = self._unit_jobs.get(unit_id)
        if job_id is None:
            raise NotFoundError(RecordKind.EXECUTION_UNIT.value, unit_id)
        return self._entry(job_id)

    def get(self, job_id: str) -> Job:
        entry = self._entry(job_id)
        with self._locks.hold(job_id):
            return entry.job

    def get_unit(self, unit_id: str) -> ExecutionUnit:
        entry = self._entry_for_unit(unit_id)
        with self._locks.hold(entry.job.job_id):
            return replace(entry.units[unit_id])

    def units_for_job(self, job_id: str) -> list[ExecutionUnit]:
        entry = self._entry(job_id)
        with self._locks.hold(job_id):
            return [replace(u) for u in entry.units.values()]

    def iter_units(self, tenant: str) -> list[ExecutionUnit]:
        """Snapshot of every unit of the tenant's jobs."""
        with self._index_lock:
            entries = [e for e in self._jobs.values() if e.job.tenant == tenant]
        units: list[ExecutionUnit] = []
        for entry in entries:
            with self._locks.hold(entry.job.job_id):
                units.extend(replace(u) for u in entry.units.values())
        return units

    def job_ids(self, *, include_terminal: bool = False) -> list[str]:
        """Job ids in submission order."""
        with self._index_lock:
            entries = list(self._jobs.values())
        entries.sort(key=lambda e: (e.job.created_at, e.job.job_id))
        return [e.job.job_id for e in entries if include_terminal or not is_terminal(e.job.phase)]

    # -- persistence helpers -----------------------------------------------

    def _save_job(self, entry: _JobEntry) -> None:
        job = entry.job
        version = self._records.update(RecordKind.JOB, job.job_id, job.to_document(), expected_version=job.version)
        entry.job = replace(job, version=version)

    def _save_unit(self, unit: ExecutionUnit) -> None:
        unit.version = self._records.update(RecordKind.EXECUTION_UNIT, unit.unit_id, unit.to_document(), expected_version=unit.version)

    # -- registration and launch -------------------------------------------

    def register(self, job: Job) -> Job:
        with self._index_lock:
            if job.job_id in self._jobs:
                raise ConflictError(f"Job already registered: {job.job_id}")
            version = self._records.create(RecordKind.JOB, job.job_id, job.tenant, job.to_document())
            job = replace(job, version=version)
            self._jobs[job.job_id] = _JobEntry(job=job)

        self._reporter.emit(
            "job_submitted",
            tenant=job.tenant,
            job_id=job.job_id,
            schedule_id=job.schedule_id,
            details={
                "name": job.spec.name,
                "completions": job.spec.completions,
                "parallelism": job.spec.parallelism,
                "backoff_limit": job.spec.backoff_limit,
            },
        )
        return job

    def restore(self, job: Job, units: list[ExecutionUnit], *, now: datetime) -> Job:
        """Re-attach a job persisted by a previous process.

        Its units ran under the previous placement backend and cannot be
        followed, so live units are written off and a job that had not finished
        fails with EngineRestarted. No usage is reserved for restored jobs.
        """
        with self._index_lock:
            known = self._jobs.get(job.job_id)
            if known is not None:
                return known.job
            entry = _JobEntry(job=job, units={u.unit_id: u for u in units})
            self._jobs[job.job_id] = entry
            for unit in units:
                self._unit_jobs[unit.unit_id] = job.job_id

        with self._locks.hold(job.job_id):
            for unit in entry.units.values():
                if not unit.holds_resources:
                    continue
                if not unit.phase.terminal:
                    unit.phase = UnitPhase.FAILED
                    unit.finished_at = now
                    unit.reason = Reason.ENGINE_RESTARTED.value
                unit.terminating = False
                self._save_unit(unit)

            if is_terminal(entry.job.phase):
                return entry.job
            entry.job = apply_transition(
                entry.job,
                TransitionRequest(new_phase=JobPhase.FAILED, now=now, failure_reason=Reason.ENGINE_RESTARTED.value),
            )
            self._save_job(entry)

        self._reporter.emit(
            "job_failed",
            tenant=job.tenant,
            job_id=job.job_id,
            schedule_id=job.schedule_id,
            details={"reason": Reason.ENGINE_RESTARTED.value, "succeeded": job.succeeded, "failed": job.failed},
        )
        return entry.job

    def desired_launch_count(self, job_id: str) -> int:
        entry = self._entry(job_id)
        with self._locks.hold(job_id):
            if is_terminal(entry.job.phase):
                return 0
            return desired_launch_count(entry.job, entry.running())

    def launch_budget(self, job_id: str, now: datetime) -> int:
        """How many units the scheduler may try to launch for this job right now."""
        entry = self._entry(job_id)
        with self._locks.hold(job_id):
            self._drain(entry)
            job = entry.job
            if is_terminal(job.phase):
                return 0
            if job.next_launch_at is not None and job.next_launch_at > now:
                return 0
            if job.next_admission_at is not None and job.next_admission_at > now:
                return 0
            return desired_launch_count(job, entry.running())

    def record_launch(self, job_id: str, resolved: ResourceRequirements, *, now: datetime) -> ExecutionUnit:
        """Record an admitted unit. The caller already reserved its resources."""
        entry = self._entry(job_id)
        with self._locks.hold(job_id):
            job = entry.job
            if is_terminal(job.phase):
                raise ConflictError(f"Job {job_id} is {job.phase.value}; no further units may be launched")
            if desired_launch_count(job, entry.running()) <= 0:
                raise ConflictError(f"Job {job_id} has no free launch slot")

            labels = {**job.spec.labels, **job.spec.template.labels, JOB_ID_LABEL: job_id}
            unit = ExecutionUnit(
                unit_id=new_id("unit"),
                job_id=job_id,
                tenant=job.tenant,
                labels=labels,
                resolved=resolved,
                command=job.spec.template.command,
                created_at=now,
            )
            unit.version = self._records.create(RecordKind.EXECUTION_UNIT, unit.unit_id, unit.tenant, unit.to_document())
            entry.units[unit.unit_id] = unit
            with self._index_lock:
                self._unit_jobs[unit.unit_id] = job_id

            job = apply_transition(job, TransitionRequest(new_phase=JobPhase.ACTIVE, now=now))
            entry.job = replace(job, admission_attempts=0, next_admission_at=None)
            self._save_job(entry)

            self._reporter.emit(
                "unit_launched",
                tenant=unit.tenant,
                job_id=job_id,
                unit_id=unit.unit_id,
                details={"resources": resolved.to_document()},
            )
            return replace(unit)

    def mark_running(self, unit_id: str, handle: str, *, now: datetime) -> None:
        entry = self._entry_for_unit(unit_id)
        with self._locks.hold(entry.job.job_id):
            unit = entry.units[unit_id]
            if unit.phase.terminal:
                self._adopt_late_handle(entry, unit, handle)
                return
            unit.handle = handle
            if unit.phase is UnitPhase.PENDING and not unit.terminating:
                unit.phase = UnitPhase.RUNNING
            self._save_unit(unit)
            self._reporter.emit(
                "unit_running",
                tenant=unit.tenant,
                job_id=unit.job_id,
                unit_id=unit_id,
                details={"handle": handle, "terminating": unit.terminating, "ts": format_rfc3339(now)},
            )

    def _adopt_late_handle(self, entry: _JobEntry, unit: ExecutionUnit, handle: str) -> None:
        """The launch of a unit that was already written off came back with a live process.

        Units written off by a termination confirmation had their resources
        released without their process ever exiting. Such a unit is moved back
        to terminating with its usage reserved again, so the scheduler signals it
        and the usage is released once more when it is confirmed gone. Units
        whose own exit was reported only record the handle.
        """
        if unit.handle is not None:
            return
        unit.handle = handle
        if unit.reason == TERMINATED_REASON:
            unit.terminating = True
            self._admission.reclaim(unit.tenant, unit.resolved)
            self._reporter.emit("unit_terminating", tenant=unit.tenant, job_id=unit.job_id, unit_id=unit.unit_id, details={"handle": handle})
        self._save_unit(unit)

    def note_admission_rejected(self, job_id: str, error: AdmissionError, *, now: datetime) -> datetime | None:
        """Gate further launches behind the admission backoff. Returns when the job may retry."""
        entry = self._entry(job_id)
        with self._locks.hold(job_id):
            job = entry.job
            if is_terminal(job.phase):
                return None
            attempts = job.admission_attempts + 1
            retry_at = self._admission_backoff.next_at(now, attempts)
            if job.phase is JobPhase.ACTIVE and entry.running() == 0:
                job = apply_transition(job, TransitionRequest(new_phase=JobPhase.PENDING, now=now))
            entry.job = replace(job, admission_attempts=attempts, next_admission_at=retry_at)
            self._save_job(entry)

        self._reporter.emit(
            "admission_rejected",
            tenant=job.tenant,
            job_id=job_id,
            details={
                "reason": error.reason.value,
                "message": error.message,
                "attempts": attempts,
                "retry_at": format_rfc3339(retry_at),
            },
        )
        return retry_at

    # -- outcomes ------------------------------------------------------------

    def report_outcome(self, unit_id: str, phase: UnitPhase, *, now: datetime, reason: str | None = None) -> None:
        if not phase.terminal:
            raise ContractViolationError(f"Unit outcome must be terminal, got {phase.value}", code="INVALID_OUTCOME")
        entry = self._entry_for_unit(unit_id)
        entry.inbox.append(UnitOutcome(unit_id=unit_id, phase=phase, now=now, reason=reason))
        with self._locks.hold(entry.job.job_id):
            self._drain(entry)

    def _drain(self, entry: _JobEntry) -> None:
        while entry.inbox:
            self._apply_outcome(entry, entry.inbox.popleft())

    def _apply_outcome(self, entry: _JobEntry, outcome: UnitOutcome) -> None:
        unit = entry.units.get(outcome.unit_id)
        if unit is None:
            return
        if unit.phase.terminal and unit.terminating:
            # The exit of a unit that was already written off confirms its termination.
            self._release_unit(entry, unit)
            self._reporter.emit("unit_terminated", tenant=unit.tenant, job_id=unit.job_id, unit_id=unit.unit_id)
            return
        if unit.phase.terminal:
            logger.debug(
                "duplicate_outcome_ignored",
                extra={"event": "duplicate_outcome_ignored", "job_id": unit.job_id, "unit_id": unit.unit_id},
            )
            return

        unit.phase = outcome.phase
        unit.finished_at = outcome.now
        unit.reason = outcome.reason
        self._release_unit(entry, unit)
        self._reporter.emit(
            "unit_succeeded" if outcome.phase is UnitPhase.SUCCEEDED else "unit_failed",
            tenant=unit.tenant,
            job_id=unit.job_id,
            unit_id=unit.unit_id,
            details={"reason": outcome.reason} if outcome.reason else None,
        )

        job = entry.job
        if is_terminal(job.phase):
            # Late reports after a terminal transition only settle accounting.
            return

        if outcome.phase is UnitPhase.SUCCEEDED:
            job = replace(job, succeeded=job.succeeded + 1)
            if job.succeeded >= job.spec.completions:
                entry.job = apply_transition(job, TransitionRequest(new_phase=JobPhase.COMPLETED, now=outcome.now))
                self._save_job(entry)
                self._finish(entry, outcome.now)
                return
            entry.job = replace(job, consecutive_failures=0, next_launch_at=None)
            self._save_job(entry)
            return

        failures = job.consecutive_failures + 1
        job = replace(job, failed=job.failed + 1, consecutive_failures=failures)
        if failures > job.spec.backoff_limit:
            entry.job = apply_transition(
                job,
                TransitionRequest(new_phase=JobPhase.FAILED, now=outcome.now, failure_reason=Reason.BACKOFF_LIMIT_EXCEEDED.value),
            )
            self._save_job(entry)
            self._finish(entry, outcome.now)
            return

        retry_at = self._unit_backoff.next_at(outcome.now, failures)
        entry.job = replace(job, next_launch_at=retry_at)
        self._save_job(entry)
        self._reporter.emit(
            "unit_backoff",
            tenant=job.tenant,
            job_id=job.job_id,
            details={"consecutive_failures": failures, "retry_at": format_rfc3339(retry_at)},
        )

    def _release_unit(self, entry: _JobEntry, unit: ExecutionUnit) -> None:
        """Persist a unit that just became terminal and hand its resources back."""
        unit.terminating = False
        entry.termination_sent.discard(unit.unit_id)
        self._save_unit(unit)
        self._admission.release(unit.tenant, unit.resolved)

    def _finish(self, entry: _JobEntry, now: datetime) -> None:
        """Terminal transition bookkeeping: signal live units and free the job-count slot."""
        job = entry.job
        for unit in entry.units.values():
            if unit.phase.terminal or unit.terminating:
                continue
            unit.terminating = True
            self._save_unit(unit)
            self._reporter.emit("unit_terminating", tenant=unit.tenant, job_id=job.job_id, unit_id=unit.unit_id)

        self._admission.release_job(job.tenant)
        self._reporter.emit(
            f"job_{job.phase.value.lower()}",
            tenant=job.tenant,
            job_id=job.job_id,
            schedule_id=job.schedule_id,
            details={
                "succeeded": job.succeeded,
                "failed": job.failed,
                "reason": job.failure_reason,
                "completion_time": format_rfc3339(now),
            },
        )

    # -- deadlines and cancellation -------------------------------------------

    def evaluate_deadlines(self, now: datetime) -> list[str]:
        """Fail every job past its active deadline. Returns the ids of the jobs failed."""
        failed: list[str] = []
        for job_id in self.job_ids():
            try:
                entry = self._entry(job_id)
            except NotFoundError:
                continue
            with self._locks.hold(job_id):
                # Outcomes received before this point win the tie.
                self._drain(entry)
                if is_terminal(entry.job.phase):
                    continue
                try:
                    check_deadline(entry.job, now)
                except DeadlineExceededError as e:
                    logger.info(
                        "job_deadline_exceeded",
                        extra={"event": "job_deadline_exceeded", "job_id": job_id, "tenant": entry.job.tenant, "reason": e.reason.value},
                    )
                    entry.job = apply_transition(
                        entry.job,
                        TransitionRequest(new_phase=JobPhase.FAILED, now=now, failure_reason=Reason.DEADLINE_EXCEEDED.value),
                    )
                    self._save_job(entry)
                    self._finish(entry, now)
                    failed.append(job_id)
        return failed

    def cancel(self, job_id: str, *, now: datetime, expected_version: int | None = None) -> Job:
        entry = self._entry(job_id)
        with self._locks.hold(job_id):
            self._drain(entry)
            job = entry.job
            if expected_version is not None and expected_version != job.version:
                raise ConcurrentModificationError(RecordKind.JOB.value, job_id, expected=expected_version, actual=job.version)
            if is_terminal(job.phase):
                raise ConflictError(f"Job {job_id} is already {job.phase.value}")
            entry.job = apply_transition(
                job, TransitionRequest(new_phase=JobPhase.CANCELLED, now=now, failure_reason=Reason.CANCELLED.value)
            )
            self._save_job(entry)
            self._finish(entry, now)
            return entry.job

    # -- termination ------------------------------------------------------------

    def units_awaiting_termination(self) -> list[ExecutionUnit]:
        """Terminating units with a known handle that have not been signalled yet."""
        with self._index_lock:
            entries = list(self._jobs.values())
        pending: list[ExecutionUnit] = []
        for entry in entries:
            with self._locks.hold(entry.job.job_id):
                pending.extend(
                    replace(u)
                    for u in entry.units.values()
                    if u.terminating and u.handle is not None and u.unit_id not in entry.termination_sent
                )
        return pending

    def mark_termination_sent(self, unit_id: str) -> None:
        entry = self._entry_for_unit(unit_id)
        with self._locks.hold(entry.job.job_id):
            entry.termination_sent.add(unit_id)

    def confirm_terminated(self, unit_id: str, *, now: datetime) -> None:
        """The placement collaborator confirmed the unit is gone. Idempotent."""
        entry = self._entry_for_unit(unit_id)
        with self._locks.hold(entry.job.job_id):
            unit = entry.units[unit_id]
            if not unit.terminating:
                if unit.phase.terminal:
                    return
                # A live unit of a live job vanished (e.g. after an approved eviction).
                entry.inbox.append(UnitOutcome(unit_id=unit_id, phase=UnitPhase.FAILED, now=now, reason=TERMINATED_REASON))
                self._drain(entry)
                return

            if not unit.phase.terminal:
                unit.phase = UnitPhase.FAILED
                unit.finished_at = now
                unit.reason = TERMINATED_REASON
            self._release_unit(entry, unit)
            self._reporter.emit("unit_terminated", tenant=unit.tenant, job_id=unit.job_id, unit_id=unit_id)

    def remove_job(self, job_id: str) -> None:
        """Forget a terminal job and its units once no unit holds resources."""
        entry = self._entry(job_id)
        with self._locks.hold(job_id):
            job = entry.job
            if not is_terminal(job.phase):
                raise ConflictError(f"Job {job_id} is {job.phase.value}; only terminal jobs can be removed")
            holding = [u.unit_id for u in entry.units.values() if u.holds_resources]
            if holding:
                raise ConflictError(f"Job {job_id} still has terminating units", details={"units": holding})

            for unit_id in entry.units:
                self._records.delete(RecordKind.EXECUTION_UNIT, unit_id)
            self._records.delete(RecordKind.JOB, job_id)
            with self._index_lock:
                self._jobs.pop(job_id, None)
                for unit_id in entry.units:
                    self._unit_jobs.pop(unit_id, None)

        self._locks.discard(job_id)
        self._reporter.emit("job_removed", tenant=job.tenant, job_id=job_id, schedule_id=job.schedule_id)
