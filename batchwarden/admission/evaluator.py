"""Admission evaluation for execution units and jobs.

Admission of a unit is one logical transaction per tenant:
- apply LimitRange defaults to unset values
- enforce LimitRange min/max bounds (and request <= limit)
- enforce the tenant Quota against current usage plus this unit
- reserve the unit's resources in the tenant usage ledger

The whole sequence runs under the tenant's own lock, so two concurrent
admissions for the same tenant can never both pass a check computed against
the same usage snapshot. Different tenants never contend.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from batchwarden.admission.usage import RESOURCE_DIMENSIONS, TenantUsage
from batchwarden.errors import AdmissionError, PolicyConflictError, Reason
from batchwarden.locks import KeyedLocks
from batchwarden.models import RESOURCES, LimitRange, Quota, ResourcePolicy, ResourceRequirements
from batchwarden.policy.store import ResourcePolicyStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AdmissionResult:
    tenant: str
    resolved: ResourceRequirements
    reserved: bool


def apply_limit_range_defaults(requirements: ResourceRequirements, limit_range: LimitRange | None) -> ResourceRequirements:
    """Inject `default` into unset limits and `defaultRequest` into unset requests."""
    if limit_range is None:
        return requirements
    requests = requirements.requests
    limits = requirements.limits
    for resource in RESOURCES:
        bounds = limit_range.bounds(resource)
        if limits.get(resource) is None and bounds.default is not None:
            limits = limits.with_value(resource, bounds.default)
        if requests.get(resource) is None and bounds.default_request is not None:
            requests = requests.with_value(resource, bounds.default_request)
    return ResourceRequirements(requests=requests, limits=limits)


def enforce_limit_range_bounds(resolved: ResourceRequirements, limit_range: LimitRange | None) -> None:
    for resource in RESOURCES:
        request = resolved.requests.get(resource)
        limit = resolved.limits.get(resource)

        if request is not None and limit is not None and request > limit:
            raise AdmissionError(
                Reason.OUT_OF_RANGE,
                f"{resource} request {request} exceeds limit {limit}",
                details={"resource": resource, "request": request, "limit": limit},
            )

        if limit_range is None:
            continue
        bounds = limit_range.bounds(resource)
        for label, value in (("request", request), ("limit", limit)):
            if value is None:
                continue
            if bounds.min is not None and value < bounds.min:
                raise AdmissionError(
                    Reason.OUT_OF_RANGE,
                    f"{resource} {label} {value} is below the minimum {bounds.min}",
                    details={"resource": resource, "field": label, "value": value, "min": bounds.min},
                )
            if bounds.max is not None and value > bounds.max:
                raise AdmissionError(
                    Reason.OUT_OF_RANGE,
                    f"{resource} {label} {value} is above the maximum {bounds.max}",
                    details={"resource": resource, "field": label, "value": value, "max": bounds.max},
                )

        ratio = bounds.max_limit_request_ratio
        if ratio is not None and request and limit is not None and limit / request > ratio:
            raise AdmissionError(
                Reason.OUT_OF_RANGE,
                f"{resource} limit/request ratio {limit / request:.2f} exceeds {ratio}",
                details={"resource": resource, "ratio": limit / request, "max_ratio": ratio},
            )


def enforce_declared(resolved: ResourceRequirements, quota: Quota | None) -> None:
    """A quota-tracked dimension must be declared (directly or via defaults)."""
    if quota is None:
        return
    for dim in RESOURCE_DIMENSIONS:
        if getattr(quota, dim.quota_attr) is not None and dim.extract(resolved) is None:
            raise AdmissionError(
                Reason.MISSING_RESOURCE,
                f"{dim.name} must be specified because the tenant quota tracks it",
                details={"dimension": dim.name},
            )


def enforce_quota(resolved: ResourceRequirements, quota: Quota | None, usage: TenantUsage) -> None:
    if quota is None:
        return
    enforce_declared(resolved, quota)
    for dim in RESOURCE_DIMENSIONS:
        hard = getattr(quota, dim.quota_attr)
        if hard is None:
            continue
        value = dim.extract(resolved)
        used = getattr(usage, dim.usage_attr)
        if used + value > hard:
            raise AdmissionError(
                Reason.QUOTA_EXCEEDED,
                f"{dim.name}: requested {value}, used {used}, limited {hard}",
                details={"dimension": dim.name, "requested": value, "used": used, "hard": hard},
            )
    if quota.max_units is not None and usage.units + 1 > quota.max_units:
        raise AdmissionError(
            Reason.QUOTA_EXCEEDED,
            f"units: used {usage.units}, limited {quota.max_units}",
            details={"dimension": "units", "used": usage.units, "hard": quota.max_units},
        )


class AdmissionEvaluator:
    def __init__(self, *, policy_store: ResourcePolicyStore):
        self._policies = policy_store
        self._locks = KeyedLocks()
        self._usage: dict[str, TenantUsage] = {}

    def usage(self, tenant: str) -> TenantUsage:
        with self._locks.hold(tenant):
            return self._usage.get(tenant, TenantUsage())

    def admit(self, tenant: str, requirements: ResourceRequirements, *, dry_run: bool = False) -> AdmissionResult:
        """Resolve, check and (unless dry_run) reserve one unit. Raises AdmissionError on rejection."""
        with self._locks.hold(tenant):
            policy = self._policies.get(tenant)
            limit_range = policy.limit_range if policy is not None else None
            quota = policy.quota if policy is not None else None

            resolved = apply_limit_range_defaults(requirements, limit_range)
            try:
                enforce_limit_range_bounds(resolved, limit_range)
                usage = self._usage.get(tenant, TenantUsage())
                enforce_quota(resolved, quota, usage)
            except AdmissionError as e:
                logger.info(
                    "unit_admission_rejected",
                    extra={"event": "unit_admission_rejected", "tenant": tenant, "reason": e.reason.value},
                )
                raise

            if not dry_run:
                self._usage[tenant] = usage.add_unit(resolved)
            return AdmissionResult(tenant=tenant, resolved=resolved, reserved=not dry_run)

    def validate_template(self, tenant: str, requirements: ResourceRequirements) -> ResourceRequirements:
        """Usage-independent checks, so a submission that can never be admitted is rejected up front."""
        with self._locks.hold(tenant):
            policy = self._policies.get(tenant)
            limit_range = policy.limit_range if policy is not None else None
            resolved = apply_limit_range_defaults(requirements, limit_range)
            enforce_limit_range_bounds(resolved, limit_range)
            enforce_declared(resolved, policy.quota if policy is not None else None)
            return resolved

    def reclaim(self, tenant: str, resolved: ResourceRequirements) -> None:
        """Count a released unit against usage again. Quota is not checked: the unit is already running."""
        with self._locks.hold(tenant):
            usage = self._usage.get(tenant, TenantUsage())
            self._usage[tenant] = usage.add_unit(resolved)

    def release(self, tenant: str, resolved: ResourceRequirements) -> None:
        with self._locks.hold(tenant):
            usage = self._usage.get(tenant, TenantUsage())
            self._usage[tenant] = usage.add_unit(resolved, sign=-1)

    def admit_job(self, tenant: str) -> None:
        """Reserve a job-count slot; jobs hold it from submission until they are terminal."""
        with self._locks.hold(tenant):
            policy = self._policies.get(tenant)
            usage = self._usage.get(tenant, TenantUsage())
            max_jobs = policy.quota.max_jobs if policy is not None and policy.quota is not None else None
            if max_jobs is not None and usage.jobs + 1 > max_jobs:
                logger.info(
                    "job_admission_rejected",
                    extra={"event": "job_admission_rejected", "tenant": tenant, "reason": Reason.QUOTA_EXCEEDED.value},
                )
                raise AdmissionError(
                    Reason.QUOTA_EXCEEDED,
                    f"jobs: used {usage.jobs}, limited {max_jobs}",
                    details={"dimension": "jobs", "used": usage.jobs, "hard": max_jobs},
                )
            self._usage[tenant] = usage.add_job()

    def release_job(self, tenant: str) -> None:
        with self._locks.hold(tenant):
            usage = self._usage.get(tenant, TenantUsage())
            self._usage[tenant] = usage.add_job(sign=-1)

    def set_resource_policy(
        self,
        tenant: str,
        *,
        quota: Quota | None,
        limit_range: LimitRange | None,
        expected_version: int | None = None,
    ) -> ResourcePolicy:
        """Store a new policy unless already-admitted usage would exceed the new quota."""
        with self._locks.hold(tenant):
            usage = self._usage.get(tenant, TenantUsage())
            if quota is not None:
                over = usage.exceeded_by(quota)
                if over:
                    raise PolicyConflictError(
                        f"New quota for tenant {tenant} is below current usage for: {', '.join(over)}",
                        details={"dimensions": over, "usage": usage.to_document()},
                    )
            return self._policies.put(
                ResourcePolicy(tenant=tenant, quota=quota, limit_range=limit_range),
                expected_version=expected_version,
            )
