"""Worker Scheduler.

One scheduling pass (`tick`) does, in order:
1. feed unit exits observed by the placement backend into the Run Tracker
2. fail jobs past their active deadline
3. send termination signals for terminating units
4. for every live job past its backoff gates, admit and launch up to
   DesiredLaunchCount units

Re-evaluation is timer driven: `run_forever` waits on the stop event between
passes instead of sleeping inside a retry loop. Placement calls are fanned
out over a bounded thread pool so a slow backend never blocks admission or
eviction requests.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from batchwarden.admission.evaluator import AdmissionEvaluator
from batchwarden.background import BackgroundLoop
from batchwarden.config.settings import SchedulerConfig
from batchwarden.errors import AdmissionError, ConflictError, LaunchError, NotFoundError, Reason
from batchwarden.models import ExecutionUnit, UnitPhase
from batchwarden.placement.interfaces import PlacementBackend
from batchwarden.tracker.run_tracker import RunTracker
from batchwarden.utils import utcnow

logger = logging.getLogger(__name__)


@dataclass
class TickReport:
    exits_observed: int = 0
    deadlines_exceeded: list[str] = field(default_factory=list)
    terminations_sent: int = 0
    launched: list[str] = field(default_factory=list)
    launch_failed: list[str] = field(default_factory=list)
    admission_rejected: list[str] = field(default_factory=list)


class WorkerScheduler:
    def __init__(
        self,
        *,
        config: SchedulerConfig,
        tracker: RunTracker,
        admission: AdmissionEvaluator,
        placement: PlacementBackend,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._config = config
        self._tracker = tracker
        self._admission = admission
        self._placement = placement
        self._clock = clock
        self._pool = ThreadPoolExecutor(max_workers=config.max_concurrent_launches, thread_name_prefix="batchwarden-launch")
        self._loop = BackgroundLoop(name="batchwarden-scheduler", target=self.run_forever)

    @property
    def running(self) -> bool:
        return self._loop.running

    def tick(self, now: datetime | None = None) -> TickReport:
        now = now or self._clock()
        report = TickReport()
        report.exits_observed = self._collect_exits(now)
        report.deadlines_exceeded = self._tracker.evaluate_deadlines(now)
        report.terminations_sent = self._dispatch_terminations()
        units = self._admit(now, report)
        self._launch(units, now, report)
        return report

    # -- steps -----------------------------------------------------------------

    def _collect_exits(self, now: datetime) -> int:
        exits = self._placement.poll()
        for ex in exits:
            phase = UnitPhase.SUCCEEDED if ex.succeeded else UnitPhase.FAILED
            try:
                self._tracker.report_outcome(ex.unit_id, phase, now=now, reason=ex.reason)
            except NotFoundError:
                # The job was removed while its process was still exiting.
                logger.info("unit_exit_for_unknown_unit", extra={"event": "unit_exit_for_unknown_unit", "unit_id": ex.unit_id})
        return len(exits)

    def _dispatch_terminations(self) -> int:
        units = self._tracker.units_awaiting_termination()
        if not units:
            return 0
        futures = {self._pool.submit(self._placement.terminate_unit, u.handle): u for u in units}
        sent = 0
        for future in as_completed(futures):
            unit = futures[future]
            try:
                future.result()
            except Exception:
                # Left unmarked, so the signal is retried on the next pass.
                logger.exception(
                    "termination_failed",
                    extra={"event": "termination_failed", "unit_id": unit.unit_id, "job_id": unit.job_id, "tenant": unit.tenant},
                )
                continue
            self._tracker.mark_termination_sent(unit.unit_id)
            sent += 1
        return sent

    def _admit(self, now: datetime, report: TickReport) -> list[ExecutionUnit]:
        admitted: list[ExecutionUnit] = []
        for job_id in self._tracker.job_ids():
            try:
                budget = self._tracker.launch_budget(job_id, now)
            except NotFoundError:
                continue
            for _ in range(budget):
                job = self._tracker.get(job_id)
                try:
                    result = self._admission.admit(job.tenant, job.spec.template.resources)
                except AdmissionError as e:
                    self._tracker.note_admission_rejected(job_id, e, now=now)
                    report.admission_rejected.append(job_id)
                    break
                try:
                    unit = self._tracker.record_launch(job_id, result.resolved, now=now)
                except (ConflictError, NotFoundError):
                    # The job went terminal (or lost its slot) between admission and recording.
                    self._admission.release(job.tenant, result.resolved)
                    break
                admitted.append(unit)
        return admitted

    def _launch(self, units: list[ExecutionUnit], now: datetime, report: TickReport) -> None:
        if not units:
            return
        futures = {self._pool.submit(self._placement.launch_unit, u): u for u in units}
        for future in as_completed(futures):
            unit = futures[future]
            try:
                handle = future.result()
            except LaunchError as e:
                self._launch_failed(unit, now, str(e), report)
                continue
            except Exception as e:
                logger.exception("placement_error", extra={"event": "placement_error", "unit_id": unit.unit_id, "job_id": unit.job_id})
                self._launch_failed(unit, now, str(e), report)
                continue
            self._tracker.mark_running(unit.unit_id, handle, now=now)
            report.launched.append(unit.unit_id)

    def _launch_failed(self, unit: ExecutionUnit, now: datetime, message: str, report: TickReport) -> None:
        logger.warning(
            "unit_launch_failed",
            extra={"event": "unit_launch_failed", "unit_id": unit.unit_id, "job_id": unit.job_id, "tenant": unit.tenant, "reason": message},
        )
        self._tracker.report_outcome(unit.unit_id, UnitPhase.FAILED, now=now, reason=Reason.LAUNCH_FAILED.value)
        report.launch_failed.append(unit.unit_id)

    # -- background loop -------------------------------------------------------------

    def run_forever(self, stop: threading.Event) -> None:
        if not self._config.enabled:
            logger.info("scheduler_disabled", extra={"event": "scheduler_disabled"})
            return
        logger.info("scheduler_started", extra={"event": "scheduler_started"})
        while not stop.is_set():
            try:
                self.tick()
            except Exception:
                # Never let one bad pass kill the loop.
                logger.exception("scheduler_tick_failed", extra={"event": "scheduler_tick_failed"})
            stop.wait(self._config.tick_seconds)
        logger.info("scheduler_stopped", extra={"event": "scheduler_stopped"})

    def start(self) -> None:
        self._loop.start()

    def stop(self) -> None:
        self._loop.stop()

    def close(self) -> None:
        self.stop()
        self._pool.shutdown(wait=True)
