"""Per-tenant usage ledger.

Usage is the sum of resolved requests/limits of every admitted unit that still
holds resources, plus object counts. Unset values contribute zero.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Callable

from batchwarden.models import Quota, ResourceRequirements


@dataclass(frozen=True)
class Dimension:
    name: str
    quota_attr: str
    usage_attr: str
    extract: Callable[[ResourceRequirements], int | None]


RESOURCE_DIMENSIONS: tuple[Dimension, ...] = (
    Dimension("requests.cpu", "requests_cpu", "requests_cpu", lambda r: r.requests.cpu),
    Dimension("requests.memory", "requests_memory", "requests_memory", lambda r: r.requests.memory),
    Dimension("limits.cpu", "limits_cpu", "limits_cpu", lambda r: r.limits.cpu),
    Dimension("limits.memory", "limits_memory", "limits_memory", lambda r: r.limits.memory),
)


@dataclass(frozen=True)
class TenantUsage:
    requests_cpu: int = 0
    requests_memory: int = 0
    limits_cpu: int = 0
    limits_memory: int = 0
    units: int = 0
    jobs: int = 0

    def add_unit(self, resolved: ResourceRequirements, sign: int = 1) -> "TenantUsage":
        changes = {d.usage_attr: getattr(self, d.usage_attr) + sign * (d.extract(resolved) or 0) for d in RESOURCE_DIMENSIONS}
        changes["units"] = self.units + sign
        return replace(self, **changes)

    def add_job(self, sign: int = 1) -> "TenantUsage":
        return replace(self, jobs=self.jobs + sign)

    def exceeded_by(self, quota: Quota) -> list[str]:
        """Names of quota dimensions this usage is already over."""
        over = [d.name for d in RESOURCE_DIMENSIONS if _over(getattr(self, d.usage_attr), getattr(quota, d.quota_attr))]
        if _over(self.units, quota.max_units):
            over.append("units")
        if _over(self.jobs, quota.max_jobs):
            over.append("jobs")
        return over

    def to_document(self) -> dict[str, int]:
        return {
            "requests.cpu": self.requests_cpu,
            "requests.memory": self.requests_memory,
            "limits.cpu": self.limits_cpu,
            "limits.memory": self.limits_memory,
            "units": self.units,
            "jobs": self.jobs,
        }


def _over(used: int, hard: int | None) -> bool:
    return hard is not None and used > hard
