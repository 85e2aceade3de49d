"""Governance engine.

Wires the components together and exposes the engine's external
operations:
- job submission, status, events, cancellation and removal
- tenant resource policies and disruption budgets
- recurrence schedules
- unit outcome / termination callbacks from the placement side
- eviction requests from node-maintenance collaborators

Every submitted document is validated against its canonical schema before
anything else happens. Writes carry optimistic-concurrency versions.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable

from batchwarden.admission.evaluator import AdmissionEvaluator, AdmissionResult
from batchwarden.config.settings import BackoffConfig, DisruptionConfig, RecurrenceConfig, RuntimeConfig, SchedulerConfig
from batchwarden.disruption.guard import BudgetStatus, DisruptionGuard, EvictionDecision
from batchwarden.errors import ConflictError, NotFoundError
from batchwarden.models import (
    DisruptionBudget,
    ExecutionUnit,
    Job,
    JobSpec,
    RecordKind,
    RecurrenceSchedule,
    ResourcePolicy,
    ResourceRequirements,
    UnitPhase,
)
from batchwarden.placement.interfaces import PlacementBackend
from batchwarden.placement.local import LocalProcessPlacement
from batchwarden.policy.store import ResourcePolicyStore
from batchwarden.recurrence.clock import RecurrenceClock
from batchwarden.registry.loader import load_manifests
from batchwarden.registry.schema_validator import SchemaValidator
from batchwarden.scheduler.runner import TickReport, WorkerScheduler
from batchwarden.status.reporter import Event, EventReporter, job_status
from batchwarden.storage.interfaces import RecordStore
from batchwarden.storage.sqlite import SQLiteRecordStore
from batchwarden.tracker.backoff import ExponentialBackoff
from batchwarden.tracker.run_tracker import RunTracker
from batchwarden.tracker.state_machine import is_terminal
from batchwarden.utils import deep_get, new_id, parse_optional, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EngineTick:
    spawned: list[str]
    scheduling: TickReport


@dataclass(frozen=True)
class AppliedManifest:
    kind: str
    name: str
    path: str
    applied: bool


class GovernanceEngine:
    def __init__(
        self,
        *,
        record_store: RecordStore,
        schema_validator: SchemaValidator,
        placement: PlacementBackend,
        scheduler_config: SchedulerConfig | None = None,
        backoff_config: BackoffConfig | None = None,
        recurrence_config: RecurrenceConfig | None = None,
        disruption_config: DisruptionConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        backoff_config = backoff_config or BackoffConfig()
        self._records = record_store
        self._schemas = schema_validator
        self._placement = placement
        self._clock = clock

        self._reporter = EventReporter(record_store=record_store, clock=clock)
        self._policies = ResourcePolicyStore(record_store=record_store)
        self._admission = AdmissionEvaluator(policy_store=self._policies)
        self._tracker = RunTracker(
            record_store=record_store,
            reporter=self._reporter,
            admission=self._admission,
            unit_backoff=ExponentialBackoff(backoff_config.unit_base_seconds, backoff_config.unit_cap_seconds),
            admission_backoff=ExponentialBackoff(backoff_config.admission_base_seconds, backoff_config.admission_cap_seconds),
        )
        self._scheduler = WorkerScheduler(
            config=scheduler_config or SchedulerConfig(),
            tracker=self._tracker,
            admission=self._admission,
            placement=placement,
            clock=clock,
        )
        self._recurrence = RecurrenceClock(
            config=recurrence_config or RecurrenceConfig(),
            record_store=record_store,
            reporter=self._reporter,
            tracker=self._tracker,
            spawn_job=self._spawn_job,
            cancel_job=self._cancel_spawned_job,
            remove_job=self.remove_job,
            clock=clock,
        )
        self._guard = DisruptionGuard(
            config=disruption_config or DisruptionConfig(),
            policy_store=self._policies,
            tracker=self._tracker,
            reporter=self._reporter,
        )

    @classmethod
    def from_config(cls, cfg: RuntimeConfig, *, placement: PlacementBackend | None = None) -> "GovernanceEngine":
        engine = cls(
            record_store=SQLiteRecordStore.open(cfg.storage.sqlite_path),
            schema_validator=SchemaValidator.load_from_dir(),
            placement=placement or LocalProcessPlacement(),
            scheduler_config=cfg.scheduler,
            backoff_config=cfg.backoff,
            recurrence_config=cfg.recurrence,
            disruption_config=cfg.disruption,
        )
        engine.restore()
        if cfg.manifests_dir is not None:
            engine.apply_manifests(cfg.manifests_dir)
        return engine

    # -- lifecycle -------------------------------------------------------------

    def restore(self) -> None:
        """Reload state persisted by a previous process.

        Policies, budgets and schedules resume as they were. Jobs are reloaded
        so they stay reachable; any that had not finished fail with
        EngineRestarted since their units cannot be followed.
        """
        self._policies.reload()
        for record in self._records.list_records(RecordKind.RECURRENCE_SCHEDULE):
            created_at = parse_optional(deep_get(record.document, ["metadata", "createdAt"])) or record.updated_at
            schedule = RecurrenceSchedule.from_document(
                record.document, schedule_id=record.record_id, created_at=created_at, version=record.version
            )
            self._recurrence.restore(schedule)

        units: dict[str, list[ExecutionUnit]] = {}
        for record in self._records.list_records(RecordKind.EXECUTION_UNIT):
            unit = ExecutionUnit.from_document(record.document, version=record.version)
            units.setdefault(unit.job_id, []).append(unit)
        failed = 0
        now = self._clock()
        for record in self._records.list_records(RecordKind.JOB):
            job = Job.from_document(record.document, version=record.version)
            if not is_terminal(job.phase):
                failed += 1
            self._tracker.restore(job, units.pop(job.job_id, []), now=now)
        for job_id, orphans in units.items():
            logger.warning(
                "orphan_units_dropped",
                extra={"event": "orphan_units_dropped", "job_id": job_id, "units": [u.unit_id for u in orphans]},
            )
            for unit in orphans:
                self._records.delete(RecordKind.EXECUTION_UNIT, unit.unit_id)
        logger.info("engine_restored", extra={"event": "engine_restored", "failed_jobs": failed})

    def start(self) -> None:
        self._scheduler.start()
        self._recurrence.start()

    def stop(self) -> None:
        self._recurrence.stop()
        self._scheduler.stop()

    def close(self) -> None:
        self._recurrence.stop()
        self._scheduler.close()
        self._placement.close()

    def tick(self, now: datetime | None = None) -> EngineTick:
        """One recurrence pass followed by one scheduling pass."""
        now = now or self._clock()
        spawned = self._recurrence.tick(now)
        return EngineTick(spawned=spawned, scheduling=self._scheduler.tick(now))

    # -- jobs -------------------------------------------------------------------

    def submit_job(self, doc: dict[str, Any]) -> Job:
        self._schemas.validate(RecordKind.JOB.value, doc)
        return self._submit(JobSpec.from_document(doc))

    def _submit(self, spec: JobSpec, *, schedule_id: str | None = None) -> Job:
        self._admission.validate_template(spec.tenant, spec.template.resources)
        self._admission.admit_job(spec.tenant)
        job = Job(job_id=new_id("job"), spec=spec, created_at=self._clock(), schedule_id=schedule_id)
        try:
            return self._tracker.register(job)
        except Exception:
            self._admission.release_job(spec.tenant)
            raise

    def _spawn_job(self, spec: JobSpec, schedule_id: str) -> Job:
        return self._submit(spec, schedule_id=schedule_id)

    def _cancel_spawned_job(self, job_id: str) -> Job:
        return self._tracker.cancel(job_id, now=self._clock())

    def get_job(self, job_id: str) -> Job:
        return self._tracker.get(job_id)

    def get_job_status(self, job_id: str) -> dict[str, Any]:
        job = self._tracker.get(job_id)
        return job_status(job, self._tracker.units_for_job(job_id))

    def list_units(self, job_id: str) -> list[ExecutionUnit]:
        return self._tracker.units_for_job(job_id)

    def list_events(self, job_id: str) -> list[Event]:
        events = self._reporter.list_events(job_id)
        if not events:
            # Distinguish "no events yet" from "no such job".
            self._tracker.get(job_id)
        return events

    def list_tenant_events(self, tenant: str) -> list[Event]:
        """Every event of a tenant, including schedule and eviction events that belong to no job."""
        return self._reporter.list_tenant_events(tenant)

    def cancel_job(self, job_id: str, *, expected_version: int | None = None) -> dict[str, Any]:
        self._tracker.cancel(job_id, now=self._clock(), expected_version=expected_version)
        return self.get_job_status(job_id)

    def remove_job(self, job_id: str) -> None:
        self._tracker.remove_job(job_id)

    # -- unit callbacks ------------------------------------------------------------

    def report_unit_outcome(self, unit_id: str, *, succeeded: bool, reason: str | None = None) -> ExecutionUnit:
        phase = UnitPhase.SUCCEEDED if succeeded else UnitPhase.FAILED
        self._tracker.report_outcome(unit_id, phase, now=self._clock(), reason=reason)
        return self._tracker.get_unit(unit_id)

    def confirm_unit_terminated(self, unit_id: str) -> ExecutionUnit:
        self._tracker.confirm_terminated(unit_id, now=self._clock())
        return self._tracker.get_unit(unit_id)

    def request_eviction(self, unit_id: str) -> EvictionDecision:
        return self._guard.request_eviction(unit_id, now=self._clock())

    # -- policies -------------------------------------------------------------------

    def set_resource_policy(
        self,
        tenant: str,
        *,
        quota: dict[str, Any] | None = None,
        limit_range: dict[str, Any] | None = None,
        expected_version: int | None = None,
    ) -> ResourcePolicy:
        spec: dict[str, Any] = {}
        if quota is not None:
            spec["quota"] = quota
        if limit_range is not None:
            spec["limitRange"] = limit_range
        doc = {"kind": RecordKind.RESOURCE_POLICY.value, "metadata": {"tenant": tenant}, "spec": spec}
        self._schemas.validate(RecordKind.RESOURCE_POLICY.value, doc)
        parsed = ResourcePolicy.from_document(doc)
        stored = self._admission.set_resource_policy(
            tenant, quota=parsed.quota, limit_range=parsed.limit_range, expected_version=expected_version
        )
        self._reporter.emit("resource_policy_updated", tenant=tenant, details={"version": stored.version})
        return stored

    def get_resource_policy(self, tenant: str) -> ResourcePolicy:
        policy = self._policies.get(tenant)
        if policy is None:
            raise NotFoundError(RecordKind.RESOURCE_POLICY.value, tenant)
        return policy

    def set_disruption_budget(
        self,
        tenant: str,
        name: str,
        *,
        selector: dict[str, str] | None = None,
        min_available: int | str | None = None,
        max_unavailable: int | str | None = None,
        expected_version: int | None = None,
    ) -> DisruptionBudget:
        spec: dict[str, Any] = {"selector": {"matchLabels": dict(selector or {})}}
        if min_available is not None:
            spec["minAvailable"] = min_available
        if max_unavailable is not None:
            spec["maxUnavailable"] = max_unavailable
        doc = {"kind": RecordKind.DISRUPTION_BUDGET.value, "metadata": {"tenant": tenant, "name": name}, "spec": spec}
        self._schemas.validate(RecordKind.DISRUPTION_BUDGET.value, doc)
        stored = self._policies.put_budget(DisruptionBudget.from_document(doc), expected_version=expected_version)
        self._reporter.emit("disruption_budget_updated", tenant=tenant, details={"budget": name, "version": stored.version})
        return stored

    def get_budget_status(self, tenant: str, name: str) -> BudgetStatus:
        return self._guard.budget_status(tenant, name, now=self._clock())

    def delete_disruption_budget(self, tenant: str, name: str) -> None:
        self._policies.delete_budget(tenant, name)
        self._guard.forget_budget(tenant, name)
        self._reporter.emit("disruption_budget_deleted", tenant=tenant, details={"budget": name})

    def dry_run_admission(self, tenant: str, resources: dict[str, Any]) -> AdmissionResult:
        """Resolve and check a unit's resources against the tenant policy without reserving anything."""
        self._schemas.validate("ResourceRequirements", resources)
        return self._admission.admit(tenant, ResourceRequirements.from_document(resources), dry_run=True)

    def tenant_usage(self, tenant: str) -> dict[str, int]:
        return self._admission.usage(tenant).to_document()

    # -- schedules --------------------------------------------------------------------

    def create_schedule(self, doc: dict[str, Any]) -> RecurrenceSchedule:
        self._schemas.validate(RecordKind.RECURRENCE_SCHEDULE.value, doc)
        tenant = str(deep_get(doc, ["metadata", "tenant"]))
        name = str(deep_get(doc, ["metadata", "name"]))
        if self._find_schedule(tenant, name) is not None:
            raise ConflictError(f"Schedule {tenant}/{name} already exists")
        schedule = RecurrenceSchedule.from_document(doc, schedule_id=new_id("sched"), created_at=self._clock())
        return self._recurrence.add_schedule(schedule)

    def _find_schedule(self, tenant: str, name: str) -> RecurrenceSchedule | None:
        for schedule in self._recurrence.list_schedules(tenant=tenant):
            if schedule.name == name:
                return schedule
        return None

    def list_schedules(self, *, tenant: str | None = None) -> list[RecurrenceSchedule]:
        return self._recurrence.list_schedules(tenant=tenant)

    def get_schedule(self, schedule_id: str) -> RecurrenceSchedule:
        return self._recurrence.get_schedule(schedule_id)

    def suspend_schedule(self, schedule_id: str, suspend: bool = True, *, expected_version: int | None = None) -> RecurrenceSchedule:
        return self._recurrence.set_suspended(schedule_id, suspend, expected_version=expected_version)

    def update_schedule(self, schedule_id: str, doc: dict[str, Any], *, expected_version: int | None = None) -> RecurrenceSchedule:
        self._schemas.validate(RecordKind.RECURRENCE_SCHEDULE.value, doc)
        current = self._recurrence.get_schedule(schedule_id)
        definition = RecurrenceSchedule.from_document(doc, schedule_id=schedule_id, created_at=current.created_at)
        return self._recurrence.update_schedule(schedule_id, definition, expected_version=expected_version)

    def delete_schedule(self, schedule_id: str) -> None:
        """Stop a schedule from firing. Jobs it already spawned are left to finish."""
        self._recurrence.remove_schedule(schedule_id)

    # -- manifests ----------------------------------------------------------------------

    def apply_manifests(self, root: Path) -> list[AppliedManifest]:
        """Apply ResourcePolicy, DisruptionBudget and RecurrenceSchedule manifests found under `root`."""
        applied: list[AppliedManifest] = []
        for kind, doc in load_manifests(root, schema_validator=self._schemas):
            data = doc.data
            tenant = str(deep_get(data, ["metadata", "tenant"]))
            spec = data.get("spec") or {}

            if kind is RecordKind.RESOURCE_POLICY:
                self.set_resource_policy(tenant, quota=spec.get("quota"), limit_range=spec.get("limitRange"))
                applied.append(AppliedManifest(kind=kind.value, name=tenant, path=str(doc.path), applied=True))
                continue

            name = str(deep_get(data, ["metadata", "name"]))
            if kind is RecordKind.DISRUPTION_BUDGET:
                self.set_disruption_budget(
                    tenant,
                    name,
                    selector=(spec.get("selector") or {}).get("matchLabels"),
                    min_available=spec.get("minAvailable"),
                    max_unavailable=spec.get("maxUnavailable"),
                )
                applied.append(AppliedManifest(kind=kind.value, name=f"{tenant}/{name}", path=str(doc.path), applied=True))
                continue

            # Schedules keep their trigger history across restarts, so an existing one is left alone.
            exists = self._find_schedule(tenant, name) is not None
            if not exists:
                self.create_schedule(data)
            applied.append(AppliedManifest(kind=kind.value, name=f"{tenant}/{name}", path=str(doc.path), applied=not exists))

        logger.info("manifests_applied", extra={"event": "manifests_applied"})
        return applied
