"""Recurrence Clock.

Each schedule moves Idle -> Due -> Spawned -> Idle. On every tick the clock
looks for the single most recent cron time after the schedule's last
trigger. Older past-due times are discarded rather than replayed, and the
most recent one is only honored while it is within startingDeadlineSeconds,
so an outage never turns into a burst of spawned jobs.

Spawned jobs go through the normal submission path. Finished jobs are kept
as history and pruned oldest first per outcome class.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable

from croniter import croniter

from batchwarden.background import BackgroundLoop
from batchwarden.config.settings import RecurrenceConfig
from batchwarden.errors import AdmissionError, ConcurrentModificationError, ConflictError, ContractViolationError, NotFoundError
from batchwarden.locks import KeyedLocks
from batchwarden.models import ConcurrencyPolicy, HistoryEntry, Job, JobPhase, JobSpec, RecordKind, RecurrenceSchedule, ScheduleState
from batchwarden.status.reporter import EventReporter
from batchwarden.storage.interfaces import RecordStore
from batchwarden.tracker.run_tracker import RunTracker
from batchwarden.tracker.state_machine import is_terminal
from batchwarden.utils import format_rfc3339, utcnow

logger = logging.getLogger(__name__)

# Counting discarded triggers stops here; the event then reports a lower bound.
MAX_DISCARDED_COUNT = 100


def validate_cron(expression: str) -> None:
    """Accept standard five-field cron only; croniter would also take a seconds field."""
    if len(expression.split()) != 5 or not croniter.is_valid(expression):
        raise ContractViolationError(f"Invalid cron expression: {expression!r}", code="INVALID_SCHEDULE")


def most_recent_trigger(expression: str, now: datetime) -> datetime:
    """Latest cron time <= now."""
    it = croniter(expression, now + timedelta(seconds=1))
    t = it.get_prev(datetime)
    while t > now:
        t = it.get_prev(datetime)
    return t


def count_older_triggers(expression: str, latest: datetime, after: datetime) -> int:
    """Cron times strictly between `after` and `latest`, capped at MAX_DISCARDED_COUNT."""
    it = croniter(expression, latest)
    count = 0
    while count < MAX_DISCARDED_COUNT:
        t = it.get_prev(datetime)
        if t <= after:
            break
        count += 1
    return count


def spawned_job_name(schedule: RecurrenceSchedule, scheduled_time: datetime) -> str:
    return f"{schedule.name}-{int(scheduled_time.timestamp()) // 60}"


class RecurrenceClock:
    def __init__(
        self,
        *,
        config: RecurrenceConfig,
        record_store: RecordStore,
        reporter: EventReporter,
        tracker: RunTracker,
        spawn_job: Callable[[JobSpec, str], Job],
        cancel_job: Callable[[str], object],
        remove_job: Callable[[str], None],
        clock: Callable[[], datetime] = utcnow,
    ):
        self._config = config
        self._records = record_store
        self._reporter = reporter
        self._tracker = tracker
        self._spawn_job = spawn_job
        self._cancel_job = cancel_job
        self._remove_job = remove_job
        self._clock = clock

        self._locks = KeyedLocks()
        self._index_lock = threading.Lock()
        self._schedules: dict[str, RecurrenceSchedule] = {}
        self._loop = BackgroundLoop(name="batchwarden-recurrence", target=self.run_forever)

    # -- schedule records ------------------------------------------------------

    def add_schedule(self, schedule: RecurrenceSchedule) -> RecurrenceSchedule:
        validate_cron(schedule.cron)
        with self._index_lock:
            if schedule.schedule_id in self._schedules:
                raise ConflictError(f"Schedule already exists: {schedule.schedule_id}")
            version = self._records.create(
                RecordKind.RECURRENCE_SCHEDULE, schedule.schedule_id, schedule.tenant, schedule.to_document()
            )
            schedule = replace(schedule, version=version)
            self._schedules[schedule.schedule_id] = schedule

        self._reporter.emit(
            "schedule_created",
            tenant=schedule.tenant,
            schedule_id=schedule.schedule_id,
            details={"name": schedule.name, "cron": schedule.cron, "concurrency_policy": schedule.concurrency_policy.value},
        )
        return self.get_schedule(schedule.schedule_id)

    def restore(self, schedule: RecurrenceSchedule) -> None:
        """Re-attach a persisted schedule after a restart."""
        validate_cron(schedule.cron)
        with self._index_lock:
            self._schedules[schedule.schedule_id] = schedule

    def _entry(self, schedule_id: str) -> RecurrenceSchedule:
        with self._index_lock:
            schedule = self._schedules.get(schedule_id)
        if schedule is None:
            raise NotFoundError(RecordKind.RECURRENCE_SCHEDULE.value, schedule_id)
        return schedule

    def get_schedule(self, schedule_id: str) -> RecurrenceSchedule:
        schedule = self._entry(schedule_id)
        with self._locks.hold(schedule_id):
            return replace(schedule, active_job_ids=list(schedule.active_job_ids), history=list(schedule.history))

    def list_schedules(self, *, tenant: str | None = None) -> list[RecurrenceSchedule]:
        with self._index_lock:
            ids = sorted(sid for sid, s in self._schedules.items() if tenant is None or s.tenant == tenant)
        return [self.get_schedule(sid) for sid in ids]

    def set_suspended(self, schedule_id: str, suspend: bool, *, expected_version: int | None = None) -> RecurrenceSchedule:
        schedule = self._entry(schedule_id)
        with self._locks.hold(schedule_id):
            if expected_version is not None and expected_version != schedule.version:
                raise ConcurrentModificationError(
                    RecordKind.RECURRENCE_SCHEDULE.value, schedule_id, expected=expected_version, actual=schedule.version
                )
            schedule.suspend = suspend
            self._save(schedule)
        self._reporter.emit("schedule_suspended" if suspend else "schedule_resumed", tenant=schedule.tenant, schedule_id=schedule_id)
        return self.get_schedule(schedule_id)

    def update_schedule(
        self, schedule_id: str, definition: RecurrenceSchedule, *, expected_version: int | None = None
    ) -> RecurrenceSchedule:
        """Replace a schedule's definition. Trigger history and active jobs carry over."""
        validate_cron(definition.cron)
        schedule = self._entry(schedule_id)
        if (definition.tenant, definition.name) != (schedule.tenant, schedule.name):
            raise ConflictError(f"Schedule {schedule_id} cannot be renamed or moved to another tenant")
        with self._locks.hold(schedule_id):
            if expected_version is not None and expected_version != schedule.version:
                raise ConcurrentModificationError(
                    RecordKind.RECURRENCE_SCHEDULE.value, schedule_id, expected=expected_version, actual=schedule.version
                )
            schedule.cron = definition.cron
            schedule.job_template = definition.job_template
            schedule.concurrency_policy = definition.concurrency_policy
            schedule.starting_deadline_seconds = definition.starting_deadline_seconds
            schedule.successful_history_limit = definition.successful_history_limit
            schedule.failed_history_limit = definition.failed_history_limit
            schedule.suspend = definition.suspend
            self._save(schedule)
        self._reporter.emit("schedule_updated", tenant=schedule.tenant, schedule_id=schedule_id, details={"cron": schedule.cron})
        return self.get_schedule(schedule_id)

    def remove_schedule(self, schedule_id: str) -> None:
        schedule = self._entry(schedule_id)
        with self._locks.hold(schedule_id):
            self._records.delete(RecordKind.RECURRENCE_SCHEDULE, schedule_id)
            with self._index_lock:
                self._schedules.pop(schedule_id, None)
        self._locks.discard(schedule_id)
        self._reporter.emit("schedule_removed", tenant=schedule.tenant, schedule_id=schedule_id)

    def _save(self, schedule: RecurrenceSchedule) -> None:
        schedule.version = self._records.update(
            RecordKind.RECURRENCE_SCHEDULE, schedule.schedule_id, schedule.to_document(), expected_version=schedule.version
        )

    # -- evaluation ---------------------------------------------------------------

    def tick(self, now: datetime | None = None) -> list[str]:
        """Evaluate every schedule once. Returns the ids of jobs spawned."""
        now = now or self._clock()
        with self._index_lock:
            ids = sorted(self._schedules)
        spawned: list[str] = []
        for schedule_id in ids:
            try:
                schedule = self._entry(schedule_id)
            except NotFoundError:
                continue
            with self._locks.hold(schedule_id):
                job_id = self._evaluate(schedule, now)
            if job_id is not None:
                spawned.append(job_id)
        return spawned

    def _evaluate(self, schedule: RecurrenceSchedule, now: datetime) -> str | None:
        changed = self._refresh_active(schedule, now)
        changed = self._prune_history(schedule) or changed

        base = schedule.last_schedule_time or schedule.created_at
        scheduled = most_recent_trigger(schedule.cron, now)
        if scheduled <= base:
            if changed:
                self._save(schedule)
            return None

        discarded = count_older_triggers(schedule.cron, scheduled, base)
        schedule.last_schedule_time = scheduled
        details = {"scheduled_time": format_rfc3339(scheduled)}

        if schedule.suspend:
            self._reporter.emit("trigger_missed", tenant=schedule.tenant, schedule_id=schedule.schedule_id, details={**details, "cause": "suspended"})
            self._save(schedule)
            return None

        schedule.state = ScheduleState.DUE
        if discarded:
            self._reporter.emit(
                "triggers_discarded", tenant=schedule.tenant, schedule_id=schedule.schedule_id, details={"count": discarded}
            )

        deadline = schedule.starting_deadline_seconds
        if deadline is not None and now - scheduled > timedelta(seconds=deadline):
            self._reporter.emit(
                "trigger_missed", tenant=schedule.tenant, schedule_id=schedule.schedule_id, details={**details, "cause": "starting_deadline"}
            )
            self._settle_state(schedule)
            self._save(schedule)
            return None

        if schedule.active_job_ids:
            if schedule.concurrency_policy is ConcurrencyPolicy.FORBID:
                self._reporter.emit(
                    "trigger_skipped",
                    tenant=schedule.tenant,
                    schedule_id=schedule.schedule_id,
                    details={**details, "active": list(schedule.active_job_ids)},
                )
                self._settle_state(schedule)
                self._save(schedule)
                return None
            if schedule.concurrency_policy is ConcurrencyPolicy.REPLACE:
                self._replace_active(schedule)
                self._refresh_active(schedule, now)

        template = replace(schedule.job_template, name=spawned_job_name(schedule, scheduled))
        try:
            job = self._spawn_job(template, schedule.schedule_id)
        except AdmissionError as e:
            self._reporter.emit(
                "spawn_rejected",
                tenant=schedule.tenant,
                schedule_id=schedule.schedule_id,
                details={**details, "reason": e.reason.value, "message": e.message},
            )
            self._settle_state(schedule)
            self._save(schedule)
            return None

        schedule.active_job_ids.append(job.job_id)
        schedule.state = ScheduleState.SPAWNED
        self._save(schedule)
        self._reporter.emit("job_spawned", tenant=schedule.tenant, job_id=job.job_id, schedule_id=schedule.schedule_id, details=details)
        return job.job_id

    def _settle_state(self, schedule: RecurrenceSchedule) -> None:
        schedule.state = ScheduleState.SPAWNED if schedule.active_job_ids else ScheduleState.IDLE

    def _refresh_active(self, schedule: RecurrenceSchedule, now: datetime) -> bool:
        """Move finished spawned jobs from the active list into history."""
        still_active: list[str] = []
        changed = False
        for job_id in schedule.active_job_ids:
            try:
                job = self._tracker.get(job_id)
            except NotFoundError:
                changed = True
                continue
            if is_terminal(job.phase):
                schedule.history.append(HistoryEntry(job_id=job_id, phase=job.phase, finished_at=job.completion_time or now))
                changed = True
            else:
                still_active.append(job_id)
        schedule.active_job_ids = still_active
        if changed:
            self._settle_state(schedule)
        return changed

    def _prune_history(self, schedule: RecurrenceSchedule) -> bool:
        succeeded = [h for h in schedule.history if h.phase is JobPhase.COMPLETED]
        failed = [h for h in schedule.history if h.phase is not JobPhase.COMPLETED]
        excess: list[HistoryEntry] = []
        for entries, limit in ((succeeded, schedule.successful_history_limit), (failed, schedule.failed_history_limit)):
            entries.sort(key=lambda h: h.finished_at)
            if len(entries) > limit:
                excess.extend(entries[: len(entries) - limit])
        if not excess:
            return False

        removed: set[str] = set()
        for entry in excess:
            try:
                self._remove_job(entry.job_id)
            except NotFoundError:
                pass
            except ConflictError:
                # Units still terminating; retried on a later tick.
                continue
            removed.add(entry.job_id)
            self._reporter.emit(
                "history_pruned", tenant=schedule.tenant, job_id=entry.job_id, schedule_id=schedule.schedule_id, details={"phase": entry.phase.value}
            )
        schedule.history = [h for h in schedule.history if h.job_id not in removed]
        return bool(removed)

    def _replace_active(self, schedule: RecurrenceSchedule) -> None:
        for job_id in list(schedule.active_job_ids):
            try:
                self._cancel_job(job_id)
            except (ConflictError, NotFoundError):
                # Already finished; picked up by the next refresh.
                continue
            self._reporter.emit("job_replaced", tenant=schedule.tenant, job_id=job_id, schedule_id=schedule.schedule_id)

    # -- background loop ------------------------------------------------------------------

    def run_forever(self, stop: threading.Event) -> None:
        if not self._config.enabled:
            logger.info("recurrence_disabled", extra={"event": "recurrence_disabled"})
            return
        logger.info("recurrence_started", extra={"event": "recurrence_started"})
        while not stop.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("recurrence_tick_failed", extra={"event": "recurrence_tick_failed"})
            stop.wait(self._config.tick_seconds)
        logger.info("recurrence_stopped", extra={"event": "recurrence_stopped"})

    def start(self) -> None:
        self._loop.start()

    def stop(self) -> None:
        self._loop.stop()
