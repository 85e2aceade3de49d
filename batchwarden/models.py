"""Engine records.

The engine works with a closed set of record kinds (`RecordKind`). Submitted
documents are schema-validated at the boundary and then parsed into these
dataclasses; persisted records round-trip through `to_document` /
`from_document`.

Document shape follows the familiar `kind / metadata / spec` layout, with
camelCase keys in documents and snake_case attributes in Python.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any

from batchwarden.errors import ContractViolationError
from batchwarden.quantity import format_cpu, format_memory, parse_optional_cpu, parse_optional_memory
from batchwarden.utils import format_optional, parse_optional

JOB_ID_LABEL = "batchwarden/job-id"


class RecordKind(str, Enum):
    JOB = "Job"
    EXECUTION_UNIT = "ExecutionUnit"
    RESOURCE_POLICY = "ResourcePolicy"
    DISRUPTION_BUDGET = "DisruptionBudget"
    RECURRENCE_SCHEDULE = "RecurrenceSchedule"


class JobPhase(str, Enum):
    PENDING = "Pending"
    ACTIVE = "Active"
    COMPLETED = "Completed"
    FAILED = "Failed"
    CANCELLED = "Cancelled"


class UnitPhase(str, Enum):
    PENDING = "Pending"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"

    @property
    def terminal(self) -> bool:
        return self in (UnitPhase.SUCCEEDED, UnitPhase.FAILED)


class ConcurrencyPolicy(str, Enum):
    ALLOW = "Allow"
    FORBID = "Forbid"
    REPLACE = "Replace"


class ScheduleState(str, Enum):
    IDLE = "Idle"
    DUE = "Due"
    SPAWNED = "Spawned"


# ---------------------------------------------------------------------------
# Resources
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ResourceList:
    cpu: int | None = None  # millicores
    memory: int | None = None  # bytes

    def get(self, resource: str) -> int | None:
        return getattr(self, resource)

    def with_value(self, resource: str, value: int | None) -> "ResourceList":
        return replace(self, **{resource: value})

    @classmethod
    def from_document(cls, doc: dict[str, Any] | None) -> "ResourceList":
        doc = doc or {}
        return cls(cpu=parse_optional_cpu(doc.get("cpu")), memory=parse_optional_memory(doc.get("memory")))

    def to_document(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        if self.cpu is not None:
            out["cpu"] = format_cpu(self.cpu)
        if self.memory is not None:
            out["memory"] = format_memory(self.memory)
        return out


RESOURCES = ("cpu", "memory")


@dataclass(frozen=True)
class ResourceRequirements:
    requests: ResourceList = field(default_factory=ResourceList)
    limits: ResourceList = field(default_factory=ResourceList)

    @classmethod
    def from_document(cls, doc: dict[str, Any] | None) -> "ResourceRequirements":
        doc = doc or {}
        return cls(requests=ResourceList.from_document(doc.get("requests")), limits=ResourceList.from_document(doc.get("limits")))

    def to_document(self) -> dict[str, Any]:
        return {"requests": self.requests.to_document(), "limits": self.limits.to_document()}


# ---------------------------------------------------------------------------
# Jobs and units
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class UnitTemplate:
    command: tuple[str, ...] = ()
    resources: ResourceRequirements = field(default_factory=ResourceRequirements)
    labels: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_document(cls, doc: dict[str, Any] | None) -> "UnitTemplate":
        doc = doc or {}
        return cls(
            command=tuple(str(c) for c in doc.get("command") or ()),
            resources=ResourceRequirements.from_document(doc.get("resources")),
            labels={str(k): str(v) for k, v in (doc.get("labels") or {}).items()},
        )

    def to_document(self) -> dict[str, Any]:
        return {"command": list(self.command), "resources": self.resources.to_document(), "labels": dict(self.labels)}


@dataclass(frozen=True)
class JobSpec:
    tenant: str
    name: str
    completions: int = 1
    parallelism: int = 1
    backoff_limit: int = 6
    active_deadline_seconds: int | None = None
    template: UnitTemplate = field(default_factory=UnitTemplate)
    labels: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.completions < 1:
            raise ContractViolationError("Job completions must be >= 1", code="INVALID_JOB_SPEC")
        if self.parallelism < 0:
            raise ContractViolationError("Job parallelism must be >= 0", code="INVALID_JOB_SPEC")
        if self.backoff_limit < 0:
            raise ContractViolationError("Job backoffLimit must be >= 0", code="INVALID_JOB_SPEC")
        if self.active_deadline_seconds is not None and self.active_deadline_seconds <= 0:
            raise ContractViolationError("Job activeDeadlineSeconds must be > 0", code="INVALID_JOB_SPEC")

    @classmethod
    def from_document(cls, doc: dict[str, Any]) -> "JobSpec":
        metadata = doc.get("metadata") or {}
        spec = doc.get("spec") or {}
        deadline = spec.get("activeDeadlineSeconds")
        return cls(
            tenant=str(metadata.get("tenant")),
            name=str(metadata.get("name") or "job"),
            completions=int(spec.get("completions", 1)),
            parallelism=int(spec.get("parallelism", 1)),
            backoff_limit=int(spec.get("backoffLimit", 6)),
            active_deadline_seconds=int(deadline) if deadline is not None else None,
            template=UnitTemplate.from_document(spec.get("template")),
            labels={str(k): str(v) for k, v in (metadata.get("labels") or {}).items()},
        )

    def to_document(self) -> dict[str, Any]:
        spec: dict[str, Any] = {
            "completions": self.completions,
            "parallelism": self.parallelism,
            "backoffLimit": self.backoff_limit,
            "template": self.template.to_document(),
        }
        if self.active_deadline_seconds is not None:
            spec["activeDeadlineSeconds"] = self.active_deadline_seconds
        return {
            "kind": RecordKind.JOB.value,
            "metadata": {"tenant": self.tenant, "name": self.name, "labels": dict(self.labels)},
            "spec": spec,
        }


@dataclass
class Job:
    job_id: str
    spec: JobSpec
    created_at: datetime
    phase: JobPhase = JobPhase.PENDING
    succeeded: int = 0
    failed: int = 0
    consecutive_failures: int = 0
    start_time: datetime | None = None
    completion_time: datetime | None = None
    failure_reason: str | None = None
    schedule_id: str | None = None
    next_launch_at: datetime | None = None
    admission_attempts: int = 0
    next_admission_at: datetime | None = None
    version: int = 0

    @property
    def tenant(self) -> str:
        return self.spec.tenant

    def to_document(self) -> dict[str, Any]:
        doc = self.spec.to_document()
        doc["metadata"]["jobId"] = self.job_id
        doc["metadata"]["createdAt"] = format_optional(self.created_at)
        if self.schedule_id:
            doc["metadata"]["scheduleId"] = self.schedule_id
        doc["status"] = {
            "phase": self.phase.value,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "consecutiveFailures": self.consecutive_failures,
            "startTime": format_optional(self.start_time),
            "completionTime": format_optional(self.completion_time),
            "failureReason": self.failure_reason,
            "nextLaunchAt": format_optional(self.next_launch_at),
            "admissionAttempts": self.admission_attempts,
            "nextAdmissionAt": format_optional(self.next_admission_at),
        }
        return doc

    @classmethod
    def from_document(cls, doc: dict[str, Any], *, version: int = 0) -> "Job":
        metadata = doc.get("metadata") or {}
        status = doc.get("status") or {}
        return cls(
            job_id=str(metadata["jobId"]),
            spec=JobSpec.from_document(doc),
            created_at=parse_optional(metadata.get("createdAt")),
            phase=JobPhase(status.get("phase", JobPhase.PENDING.value)),
            succeeded=int(status.get("succeeded", 0)),
            failed=int(status.get("failed", 0)),
            consecutive_failures=int(status.get("consecutiveFailures", 0)),
            start_time=parse_optional(status.get("startTime")),
            completion_time=parse_optional(status.get("completionTime")),
            failure_reason=status.get("failureReason"),
            schedule_id=metadata.get("scheduleId"),
            next_launch_at=parse_optional(status.get("nextLaunchAt")),
            admission_attempts=int(status.get("admissionAttempts", 0)),
            next_admission_at=parse_optional(status.get("nextAdmissionAt")),
            version=version,
        )


@dataclass
class ExecutionUnit:
    unit_id: str
    job_id: str
    tenant: str
    labels: dict[str, str]
    resolved: ResourceRequirements
    command: tuple[str, ...]
    created_at: datetime
    phase: UnitPhase = UnitPhase.PENDING
    terminating: bool = False
    handle: str | None = None
    finished_at: datetime | None = None
    reason: str | None = None
    version: int = 0

    @property
    def healthy(self) -> bool:
        return self.phase is UnitPhase.RUNNING and not self.terminating

    @property
    def holds_resources(self) -> bool:
        """Usage stays reserved until the unit is terminal and no termination is outstanding."""
        return not self.phase.terminal or self.terminating

    def to_document(self) -> dict[str, Any]:
        return {
            "kind": RecordKind.EXECUTION_UNIT.value,
            "metadata": {"unitId": self.unit_id, "jobId": self.job_id, "tenant": self.tenant, "labels": dict(self.labels)},
            "spec": {"command": list(self.command), "resources": self.resolved.to_document()},
            "status": {
                "phase": self.phase.value,
                "terminating": self.terminating,
                "handle": self.handle,
                "createdAt": format_optional(self.created_at),
                "finishedAt": format_optional(self.finished_at),
                "reason": self.reason,
            },
        }

    @classmethod
    def from_document(cls, doc: dict[str, Any], *, version: int = 0) -> "ExecutionUnit":
        metadata = doc.get("metadata") or {}
        spec = doc.get("spec") or {}
        status = doc.get("status") or {}
        return cls(
            unit_id=str(metadata["unitId"]),
            job_id=str(metadata["jobId"]),
            tenant=str(metadata["tenant"]),
            labels={str(k): str(v) for k, v in (metadata.get("labels") or {}).items()},
            resolved=ResourceRequirements.from_document(spec.get("resources")),
            command=tuple(str(c) for c in spec.get("command") or ()),
            created_at=parse_optional(status.get("createdAt")),
            phase=UnitPhase(status.get("phase", UnitPhase.PENDING.value)),
            terminating=bool(status.get("terminating", False)),
            handle=status.get("handle"),
            finished_at=parse_optional(status.get("finishedAt")),
            reason=status.get("reason"),
            version=version,
        )


# ---------------------------------------------------------------------------
# Policies
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Quota:
    requests_cpu: int | None = None
    requests_memory: int | None = None
    limits_cpu: int | None = None
    limits_memory: int | None = None
    max_jobs: int | None = None
    max_units: int | None = None

    @classmethod
    def from_document(cls, doc: dict[str, Any] | None) -> "Quota":
        doc = doc or {}
        jobs = doc.get("jobs")
        units = doc.get("units")
        return cls(
            requests_cpu=parse_optional_cpu(doc.get("requests.cpu")),
            requests_memory=parse_optional_memory(doc.get("requests.memory")),
            limits_cpu=parse_optional_cpu(doc.get("limits.cpu")),
            limits_memory=parse_optional_memory(doc.get("limits.memory")),
            max_jobs=int(jobs) if jobs is not None else None,
            max_units=int(units) if units is not None else None,
        )

    def to_document(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "requests.cpu": format_cpu(self.requests_cpu),
            "requests.memory": format_memory(self.requests_memory),
            "limits.cpu": format_cpu(self.limits_cpu),
            "limits.memory": format_memory(self.limits_memory),
            "jobs": self.max_jobs,
            "units": self.max_units,
        }
        return {k: v for k, v in out.items() if v is not None}


@dataclass(frozen=True)
class ResourceBounds:
    default: int | None = None
    default_request: int | None = None
    min: int | None = None
    max: int | None = None
    max_limit_request_ratio: float | None = None


@dataclass(frozen=True)
class LimitRange:
    cpu: ResourceBounds = field(default_factory=ResourceBounds)
    memory: ResourceBounds = field(default_factory=ResourceBounds)

    def bounds(self, resource: str) -> ResourceBounds:
        return getattr(self, resource)

    @classmethod
    def from_document(cls, doc: dict[str, Any] | None) -> "LimitRange":
        doc = doc or {}

        def _bounds(raw: dict[str, Any] | None, parse) -> ResourceBounds:
            raw = raw or {}
            ratio = raw.get("maxLimitRequestRatio")
            return ResourceBounds(
                default=parse(raw.get("default")),
                default_request=parse(raw.get("defaultRequest")),
                min=parse(raw.get("min")),
                max=parse(raw.get("max")),
                max_limit_request_ratio=float(ratio) if ratio is not None else None,
            )

        return cls(cpu=_bounds(doc.get("cpu"), parse_optional_cpu), memory=_bounds(doc.get("memory"), parse_optional_memory))

    def to_document(self) -> dict[str, Any]:
        def _doc(b: ResourceBounds, fmt) -> dict[str, Any]:
            out = {
                "default": fmt(b.default),
                "defaultRequest": fmt(b.default_request),
                "min": fmt(b.min),
                "max": fmt(b.max),
                "maxLimitRequestRatio": b.max_limit_request_ratio,
            }
            return {k: v for k, v in out.items() if v is not None}

        return {"cpu": _doc(self.cpu, format_cpu), "memory": _doc(self.memory, format_memory)}


@dataclass(frozen=True)
class ResourcePolicy:
    tenant: str
    quota: Quota | None = None
    limit_range: LimitRange | None = None
    version: int = 0

    @classmethod
    def from_document(cls, doc: dict[str, Any], *, version: int = 0) -> "ResourcePolicy":
        metadata = doc.get("metadata") or {}
        spec = doc.get("spec") or {}
        quota = spec.get("quota")
        limit_range = spec.get("limitRange")
        return cls(
            tenant=str(metadata.get("tenant")),
            quota=Quota.from_document(quota) if quota is not None else None,
            limit_range=LimitRange.from_document(limit_range) if limit_range is not None else None,
            version=version,
        )

    def to_document(self) -> dict[str, Any]:
        spec: dict[str, Any] = {}
        if self.quota is not None:
            spec["quota"] = self.quota.to_document()
        if self.limit_range is not None:
            spec["limitRange"] = self.limit_range.to_document()
        return {"kind": RecordKind.RESOURCE_POLICY.value, "metadata": {"tenant": self.tenant}, "spec": spec}


@dataclass(frozen=True)
class IntOrPercent:
    value: int
    percent: bool = False

    @classmethod
    def parse(cls, raw: Any) -> "IntOrPercent":
        if isinstance(raw, bool):
            raise ContractViolationError(f"Invalid int-or-percent value: {raw!r}", code="INVALID_BUDGET")
        if isinstance(raw, int):
            if raw < 0:
                raise ContractViolationError(f"Budget value must be >= 0: {raw}", code="INVALID_BUDGET")
            return cls(value=raw)
        s = str(raw).strip()
        if s.endswith("%"):
            try:
                pct = int(s[:-1])
            except ValueError as e:
                raise ContractViolationError(f"Invalid percentage: {raw!r}", code="INVALID_BUDGET") from e
            if not 0 <= pct <= 100:
                raise ContractViolationError(f"Percentage out of range: {raw!r}", code="INVALID_BUDGET")
            return cls(value=pct, percent=True)
        try:
            return cls.parse(int(s))
        except ValueError as e:
            raise ContractViolationError(f"Invalid int-or-percent value: {raw!r}", code="INVALID_BUDGET") from e

    def resolve(self, total: int, *, round_up: bool) -> int:
        if not self.percent:
            return self.value
        scaled = self.value * total / 100
        return math.ceil(scaled) if round_up else math.floor(scaled)

    def to_document(self) -> Any:
        return f"{self.value}%" if self.percent else self.value


@dataclass(frozen=True)
class DisruptionBudget:
    tenant: str
    name: str
    selector: dict[str, str] = field(default_factory=dict)
    min_available: IntOrPercent | None = None
    max_unavailable: IntOrPercent | None = None
    version: int = 0

    def __post_init__(self) -> None:
        if (self.min_available is None) == (self.max_unavailable is None):
            raise ContractViolationError(
                f"DisruptionBudget {self.name} must declare exactly one of minAvailable or maxUnavailable",
                code="INVALID_BUDGET",
            )

    @property
    def key(self) -> str:
        return f"{self.tenant}/{self.name}"

    @classmethod
    def from_document(cls, doc: dict[str, Any], *, version: int = 0) -> "DisruptionBudget":
        metadata = doc.get("metadata") or {}
        spec = doc.get("spec") or {}
        selector = (spec.get("selector") or {}).get("matchLabels") or {}
        min_available = spec.get("minAvailable")
        max_unavailable = spec.get("maxUnavailable")
        return cls(
            tenant=str(metadata.get("tenant")),
            name=str(metadata.get("name")),
            selector={str(k): str(v) for k, v in selector.items()},
            min_available=IntOrPercent.parse(min_available) if min_available is not None else None,
            max_unavailable=IntOrPercent.parse(max_unavailable) if max_unavailable is not None else None,
            version=version,
        )

    def to_document(self) -> dict[str, Any]:
        spec: dict[str, Any] = {"selector": {"matchLabels": dict(self.selector)}}
        if self.min_available is not None:
            spec["minAvailable"] = self.min_available.to_document()
        if self.max_unavailable is not None:
            spec["maxUnavailable"] = self.max_unavailable.to_document()
        return {"kind": RecordKind.DISRUPTION_BUDGET.value, "metadata": {"tenant": self.tenant, "name": self.name}, "spec": spec}


# ---------------------------------------------------------------------------
# Recurrence
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class HistoryEntry:
    job_id: str
    phase: JobPhase
    finished_at: datetime


@dataclass
class RecurrenceSchedule:
    schedule_id: str
    tenant: str
    name: str
    cron: str
    job_template: JobSpec
    created_at: datetime
    concurrency_policy: ConcurrencyPolicy = ConcurrencyPolicy.ALLOW
    starting_deadline_seconds: int | None = None
    successful_history_limit: int = 3
    failed_history_limit: int = 1
    suspend: bool = False
    state: ScheduleState = ScheduleState.IDLE
    last_schedule_time: datetime | None = None
    active_job_ids: list[str] = field(default_factory=list)
    history: list[HistoryEntry] = field(default_factory=list)
    version: int = 0

    @classmethod
    def from_document(cls, doc: dict[str, Any], *, schedule_id: str, created_at: datetime, version: int = 0) -> "RecurrenceSchedule":
        metadata = doc.get("metadata") or {}
        spec = doc.get("spec") or {}
        status = doc.get("status") or {}
        tenant = str(metadata.get("tenant"))
        template_doc = dict((spec.get("jobTemplate") or {}))
        template_meta = dict(template_doc.get("metadata") or {})
        template_meta["tenant"] = tenant
        template_meta.setdefault("name", str(metadata.get("name")))
        template_doc["metadata"] = template_meta
        deadline = spec.get("startingDeadlineSeconds")
        return cls(
            schedule_id=schedule_id,
            tenant=tenant,
            name=str(metadata.get("name")),
            cron=str(spec.get("schedule")),
            job_template=JobSpec.from_document(template_doc),
            created_at=created_at,
            concurrency_policy=ConcurrencyPolicy(spec.get("concurrencyPolicy", ConcurrencyPolicy.ALLOW.value)),
            starting_deadline_seconds=int(deadline) if deadline is not None else None,
            successful_history_limit=int(spec.get("successfulJobsHistoryLimit", 3)),
            failed_history_limit=int(spec.get("failedJobsHistoryLimit", 1)),
            suspend=bool(spec.get("suspend", False)),
            last_schedule_time=parse_optional(status.get("lastScheduleTime")),
            version=version,
        )

    def to_document(self) -> dict[str, Any]:
        template = self.job_template.to_document()
        spec: dict[str, Any] = {
            "schedule": self.cron,
            "concurrencyPolicy": self.concurrency_policy.value,
            "successfulJobsHistoryLimit": self.successful_history_limit,
            "failedJobsHistoryLimit": self.failed_history_limit,
            "suspend": self.suspend,
            "jobTemplate": {"metadata": template["metadata"], "spec": template["spec"]},
        }
        if self.starting_deadline_seconds is not None:
            spec["startingDeadlineSeconds"] = self.starting_deadline_seconds
        return {
            "kind": RecordKind.RECURRENCE_SCHEDULE.value,
            "metadata": {"tenant": self.tenant, "name": self.name, "scheduleId": self.schedule_id, "createdAt": format_optional(self.created_at)},
            "spec": spec,
            "status": {
                "state": self.state.value,
                "lastScheduleTime": format_optional(self.last_schedule_time),
                "active": list(self.active_job_ids),
                "history": [
                    {"jobId": h.job_id, "phase": h.phase.value, "finishedAt": format_optional(h.finished_at)} for h in self.history
                ],
            },
        }
