"""Resource Policy Store.

Holds per-tenant quota / limit-range declarations and disruption budgets.
This module is pure data plus write-time validation:
- LimitRange bounds must be ordered (min <= defaultRequest <= default <= max).
- Every write carries an optimistic-concurrency version check.

Quota-versus-usage conflicts are checked by the admission evaluator, which
owns the tenant usage counters.
"""

from __future__ import annotations

import logging
from dataclasses import replace

from batchwarden.errors import ConcurrentModificationError, ContractViolationError, NotFoundError
from batchwarden.locks import KeyedLocks
from batchwarden.models import RESOURCES, DisruptionBudget, LimitRange, RecordKind, ResourcePolicy
from batchwarden.storage.interfaces import RecordStore

logger = logging.getLogger(__name__)


def _ordered(lo: int | None, hi: int | None) -> bool:
    return lo is None or hi is None or lo <= hi


def validate_limit_range(limit_range: LimitRange) -> None:
    for resource in RESOURCES:
        b = limit_range.bounds(resource)
        checks = (
            ("min", b.min, "max", b.max),
            ("min", b.min, "default", b.default),
            ("default", b.default, "max", b.max),
            ("min", b.min, "defaultRequest", b.default_request),
            ("defaultRequest", b.default_request, "max", b.max),
            ("defaultRequest", b.default_request, "default", b.default),
        )
        for lo_name, lo, hi_name, hi in checks:
            if not _ordered(lo, hi):
                raise ContractViolationError(
                    f"LimitRange {resource}.{lo_name} ({lo}) must be <= {resource}.{hi_name} ({hi})",
                    code="INVALID_LIMIT_RANGE",
                    details={"resource": resource, "lower": lo_name, "upper": hi_name},
                )
        if b.max_limit_request_ratio is not None and b.max_limit_request_ratio < 1:
            raise ContractViolationError(
                f"LimitRange {resource}.maxLimitRequestRatio must be >= 1",
                code="INVALID_LIMIT_RANGE",
            )


class ResourcePolicyStore:
    def __init__(self, *, record_store: RecordStore):
        self._records = record_store
        self._locks = KeyedLocks()
        self._policies: dict[str, ResourcePolicy] = {}
        self._budgets: dict[str, DisruptionBudget] = {}

    def reload(self) -> None:
        """Rebuild the in-memory view from persisted records."""
        policies = {
            r.record_id: ResourcePolicy.from_document(r.document, version=r.version)
            for r in self._records.list_records(RecordKind.RESOURCE_POLICY)
        }
        budgets = {
            r.record_id: DisruptionBudget.from_document(r.document, version=r.version)
            for r in self._records.list_records(RecordKind.DISRUPTION_BUDGET)
        }
        self._policies = policies
        self._budgets = budgets
        logger.info("policy_store_reloaded", extra={"event": "policy_store_reloaded"})

    # -- resource policies -------------------------------------------------

    def get(self, tenant: str) -> ResourcePolicy | None:
        return self._policies.get(tenant)

    def put(self, policy: ResourcePolicy, *, expected_version: int | None = None) -> ResourcePolicy:
        if policy.limit_range is not None:
            validate_limit_range(policy.limit_range)

        with self._locks.hold(f"policy:{policy.tenant}"):
            current = self._policies.get(policy.tenant)
            current_version = current.version if current is not None else 0
            if expected_version is not None and expected_version != current_version:
                raise ConcurrentModificationError(
                    RecordKind.RESOURCE_POLICY.value, policy.tenant, expected=expected_version, actual=current_version
                )

            doc = policy.to_document()
            if current is None:
                version = self._records.create(RecordKind.RESOURCE_POLICY, policy.tenant, policy.tenant, doc)
            else:
                version = self._records.update(RecordKind.RESOURCE_POLICY, policy.tenant, doc, expected_version=current_version)

            stored = replace(policy, version=version)
            self._policies[policy.tenant] = stored

        logger.info("resource_policy_stored", extra={"event": "resource_policy_stored", "tenant": policy.tenant})
        return stored

    # -- disruption budgets ------------------------------------------------

    def get_budget(self, tenant: str, name: str) -> DisruptionBudget:
        budget = self._budgets.get(f"{tenant}/{name}")
        if budget is None:
            raise NotFoundError(RecordKind.DISRUPTION_BUDGET.value, f"{tenant}/{name}")
        return budget

    def budgets_for_tenant(self, tenant: str) -> list[DisruptionBudget]:
        return sorted((b for b in list(self._budgets.values()) if b.tenant == tenant), key=lambda b: b.name)

    def put_budget(self, budget: DisruptionBudget, *, expected_version: int | None = None) -> DisruptionBudget:
        with self._locks.hold(f"budget:{budget.key}"):
            current = self._budgets.get(budget.key)
            current_version = current.version if current is not None else 0
            if expected_version is not None and expected_version != current_version:
                raise ConcurrentModificationError(
                    RecordKind.DISRUPTION_BUDGET.value, budget.key, expected=expected_version, actual=current_version
                )

            doc = budget.to_document()
            if current is None:
                version = self._records.create(RecordKind.DISRUPTION_BUDGET, budget.key, budget.tenant, doc)
            else:
                version = self._records.update(RecordKind.DISRUPTION_BUDGET, budget.key, doc, expected_version=current_version)

            stored = replace(budget, version=version)
            self._budgets[budget.key] = stored

        logger.info("disruption_budget_stored", extra={"event": "disruption_budget_stored", "tenant": budget.tenant, "budget": budget.name})
        return stored

    def delete_budget(self, tenant: str, name: str) -> None:
        key = f"{tenant}/{name}"
        with self._locks.hold(f"budget:{key}"):
            if self._budgets.pop(key, None) is None:
                raise NotFoundError(RecordKind.DISRUPTION_BUDGET.value, key)
            self._records.delete(RecordKind.DISRUPTION_BUDGET, key)
