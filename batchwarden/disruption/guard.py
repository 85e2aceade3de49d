"""Disruption Guard.

Voluntary evictions are approved only while every disruption budget that
selects the unit keeps its availability floor after the removal:

- membership: non-terminal units of the tenant matching the selector,
  recomputed on every request
- healthy: members that are Running and not terminating
- effective healthy: healthy minus units already approved for eviction that
  are still healthy (approved, not yet removed)

`minAvailable` percentages round up and `maxUnavailable` percentages round
down, which keeps the guard on the conservative side in both cases.

All matching budgets are locked in sorted key order and the approval is
recorded in every one of them before the decision is returned, so two
concurrent requests can never both pass a check against the same count.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from batchwarden.config.settings import DisruptionConfig
from batchwarden.errors import ContractViolationError, Reason
from batchwarden.locks import KeyedLocks
from batchwarden.models import DisruptionBudget, ExecutionUnit
from batchwarden.policy.store import ResourcePolicyStore
from batchwarden.status.reporter import EventReporter
from batchwarden.tracker.run_tracker import RunTracker
from batchwarden.utils import labels_match

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EvictionDecision:
    unit_id: str
    approved: bool
    reason: Reason | None = None
    message: str = ""
    budgets: tuple[str, ...] = ()

    def to_document(self) -> dict[str, Any]:
        return {
            "unitId": self.unit_id,
            "approved": self.approved,
            "reason": self.reason.value if self.reason is not None else None,
            "message": self.message,
            "budgets": list(self.budgets),
        }


@dataclass(frozen=True)
class BudgetStatus:
    budget: str
    members: int
    healthy: int
    approved: int
    floor: int

    @property
    def disruptions_allowed(self) -> int:
        return max(0, self.healthy - self.approved - self.floor)


def availability_floor(budget: DisruptionBudget, members: int) -> int:
    """Minimum number of healthy units the budget requires."""
    if budget.min_available is not None:
        return budget.min_available.resolve(members, round_up=True)
    if budget.max_unavailable is not None:
        return max(0, members - budget.max_unavailable.resolve(members, round_up=False))
    raise ContractViolationError(
        f"DisruptionBudget {budget.key} declares neither minAvailable nor maxUnavailable", code="INVALID_BUDGET"
    )


@dataclass
class _Approvals:
    # unit_id -> expiry
    granted: dict[str, datetime] = field(default_factory=dict)

    def live(self, healthy_ids: set[str], now: datetime) -> dict[str, datetime]:
        """Drop approvals that expired or whose unit already left the healthy set."""
        self.granted = {u: exp for u, exp in self.granted.items() if exp > now and u in healthy_ids}
        return self.granted


class DisruptionGuard:
    def __init__(
        self,
        *,
        config: DisruptionConfig,
        policy_store: ResourcePolicyStore,
        tracker: RunTracker,
        reporter: EventReporter,
    ):
        self._ttl = timedelta(seconds=config.approval_ttl_seconds)
        self._policies = policy_store
        self._tracker = tracker
        self._reporter = reporter
        self._locks = KeyedLocks()
        self._approvals: dict[str, _Approvals] = {}

    def _status(self, budget: DisruptionBudget, units: list[ExecutionUnit], now: datetime) -> tuple[BudgetStatus, dict[str, datetime]]:
        members = [u for u in units if not u.phase.terminal and labels_match(budget.selector, u.labels)]
        healthy_ids = {u.unit_id for u in members if u.healthy}
        approvals = self._approvals.setdefault(budget.key, _Approvals()).live(healthy_ids, now)
        status = BudgetStatus(
            budget=budget.name,
            members=len(members),
            healthy=len(healthy_ids),
            approved=len(approvals),
            floor=availability_floor(budget, len(members)),
        )
        return status, approvals

    def budget_status(self, tenant: str, name: str, *, now: datetime) -> BudgetStatus:
        budget = self._policies.get_budget(tenant, name)
        with self._locks.hold(budget.key):
            status, _ = self._status(budget, self._tracker.iter_units(tenant), now)
            return status

    def forget_budget(self, tenant: str, name: str) -> None:
        key = f"{tenant}/{name}"
        with self._locks.hold(key):
            self._approvals.pop(key, None)
        self._locks.discard(key)

    def request_eviction(self, unit_id: str, *, now: datetime) -> EvictionDecision:
        unit = self._tracker.get_unit(unit_id)
        budgets = [b for b in self._policies.budgets_for_tenant(unit.tenant) if labels_match(b.selector, unit.labels)]
        names = tuple(b.name for b in budgets)

        if not unit.healthy:
            # Removing a unit that is not serving cannot reduce availability.
            decision = EvictionDecision(unit_id=unit_id, approved=True, message="unit is not healthy", budgets=names)
            self._emit(unit, decision)
            return decision

        with self._locks.hold_all(b.key for b in budgets):
            units = self._tracker.iter_units(unit.tenant)
            pending: list[dict[str, datetime]] = []
            for budget in budgets:
                status, approvals = self._status(budget, units, now)
                if unit_id in approvals:
                    # Re-request of an outstanding approval; already counted.
                    continue
                if status.healthy - status.approved - 1 < status.floor:
                    decision = EvictionDecision(
                        unit_id=unit_id,
                        approved=False,
                        reason=Reason.DISRUPTION_BUDGET,
                        message=(
                            f"Cannot evict unit {unit_id}: disruption budget {budget.name} needs {status.floor} healthy "
                            f"units and has {status.healthy - status.approved} available"
                        ),
                        budgets=(budget.name,),
                    )
                    self._emit(unit, decision)
                    return decision
                pending.append(approvals)

            expires_at = now + self._ttl
            for approvals in pending:
                approvals[unit_id] = expires_at

        decision = EvictionDecision(unit_id=unit_id, approved=True, budgets=names)
        self._emit(unit, decision)
        return decision

    def _emit(self, unit: ExecutionUnit, decision: EvictionDecision) -> None:
        self._reporter.emit(
            "eviction_approved" if decision.approved else "eviction_denied",
            tenant=unit.tenant,
            job_id=unit.job_id,
            unit_id=unit.unit_id,
            details={
                "reason": decision.reason.value if decision.reason is not None else None,
                "message": decision.message,
                "budgets": list(decision.budgets),
            },
        )
