from __future__ import annotations

import threading

import pytest

from batchwarden.disruption.guard import availability_floor
from batchwarden.errors import ContractViolationError, NotFoundError, Reason
from batchwarden.models import DisruptionBudget, IntOrPercent, UnitPhase

from conftest import job_doc, units_in


def _web_units(engine, count: int, *, tenant: str = "acme"):
    job = engine.submit_job(job_doc(tenant=tenant, name="web", completions=count, parallelism=count, labels={"app": "web"}))
    engine.tick()
    units = units_in(engine, job.job_id, UnitPhase.RUNNING)
    assert len(units) == count
    return job, units


@pytest.mark.parametrize(
    "min_available,max_unavailable,members,floor",
    [
        (IntOrPercent(2), None, 3, 2),
        (IntOrPercent(50, percent=True), None, 3, 2),
        (IntOrPercent(60, percent=True), None, 5, 3),
        (None, IntOrPercent(30, percent=True), 5, 4),
        (None, IntOrPercent(1), 3, 2),
        (None, IntOrPercent(100, percent=True), 4, 0),
    ],
)
def test_availability_floor_rounds_conservatively(min_available, max_unavailable, members, floor) -> None:
    budget = DisruptionBudget(tenant="acme", name="b", min_available=min_available, max_unavailable=max_unavailable)
    assert availability_floor(budget, members) == floor


def test_availability_floor_requires_a_threshold() -> None:
    budget = DisruptionBudget(tenant="acme", name="b", max_unavailable=IntOrPercent(1))
    # Bypass construction checks to reach a budget with neither threshold.
    object.__setattr__(budget, "max_unavailable", None)
    with pytest.raises(ContractViolationError) as e:
        availability_floor(budget, 3)
    assert e.value.code == "INVALID_BUDGET"


def test_min_available_blocks_second_eviction(engine) -> None:
    engine.set_disruption_budget("acme", "web", selector={"app": "web"}, min_available=2)
    _, (u1, u2, _u3) = _web_units(engine, 3)

    first = engine.request_eviction(u1.unit_id)
    assert first.approved
    assert first.budgets == ("web",)

    second = engine.request_eviction(u2.unit_id)
    assert not second.approved
    assert second.reason is Reason.DISRUPTION_BUDGET

    status = engine.get_budget_status("acme", "web")
    assert (status.members, status.healthy, status.approved, status.floor) == (3, 3, 1, 2)
    assert status.disruptions_allowed == 0


def test_concurrent_requests_cannot_both_pass(engine) -> None:
    engine.set_disruption_budget("acme", "web", selector={"app": "web"}, min_available=2)
    _, units = _web_units(engine, 3)
    barrier = threading.Barrier(2)
    decisions = []
    lock = threading.Lock()

    def worker(unit_id: str) -> None:
        barrier.wait()
        decision = engine.request_eviction(unit_id)
        with lock:
            decisions.append(decision)

    threads = [threading.Thread(target=worker, args=(u.unit_id,)) for u in units[:2]]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(d.approved for d in decisions) == [False, True]


def test_percentage_budgets(engine) -> None:
    engine.set_disruption_budget("acme", "web", selector={"app": "web"}, min_available="60%")
    _, units = _web_units(engine, 5)
    approved = [engine.request_eviction(u.unit_id).approved for u in units]
    assert approved == [True, True, False, False, False]


def test_max_unavailable_budget(engine) -> None:
    engine.set_disruption_budget("acme", "web", selector={"app": "web"}, max_unavailable="30%")
    _, units = _web_units(engine, 5)
    approved = [engine.request_eviction(u.unit_id).approved for u in units]
    assert approved == [True, False, False, False, False]


def test_re_request_is_not_double_counted(engine) -> None:
    engine.set_disruption_budget("acme", "web", selector={"app": "web"}, min_available=1)
    _, (u1, _u2, _u3) = _web_units(engine, 3)
    assert engine.request_eviction(u1.unit_id).approved
    assert engine.request_eviction(u1.unit_id).approved
    assert engine.get_budget_status("acme", "web").approved == 1


def test_approval_expires_after_ttl(engine, clock) -> None:
    engine.set_disruption_budget("acme", "web", selector={"app": "web"}, min_available=2)
    _, (u1, u2, _u3) = _web_units(engine, 3)
    assert engine.request_eviction(u1.unit_id).approved
    assert not engine.request_eviction(u2.unit_id).approved

    clock.advance(121)
    assert engine.request_eviction(u2.unit_id).approved


def test_evicted_unit_is_replaced_before_more_evictions(engine, clock) -> None:
    engine.set_disruption_budget("acme", "web", selector={"app": "web"}, min_available=2)
    job, (u1, u2, _u3) = _web_units(engine, 3)
    assert engine.request_eviction(u1.unit_id).approved

    # The placement side removed the unit; it counts as a failed attempt.
    evicted = engine.confirm_unit_terminated(u1.unit_id)
    assert evicted.phase is UnitPhase.FAILED
    assert evicted.reason == "Terminated"
    assert not engine.request_eviction(u2.unit_id).approved

    clock.advance(10)
    engine.tick()
    assert len(units_in(engine, job.job_id, UnitPhase.RUNNING)) == 3
    assert engine.request_eviction(u2.unit_id).approved


def test_unhealthy_units_are_always_evictable(engine) -> None:
    engine.set_disruption_budget("acme", "web", selector={"app": "web"}, min_available=3)
    job, (u1, _u2, _u3) = _web_units(engine, 3)
    engine.cancel_job(job.job_id)
    decision = engine.request_eviction(u1.unit_id)
    assert decision.approved
    assert decision.message == "unit is not healthy"


def test_units_outside_every_budget_are_evictable(engine) -> None:
    engine.set_disruption_budget("acme", "db", selector={"app": "db"}, min_available=5)
    _, (u1, _u2) = _web_units(engine, 2)
    decision = engine.request_eviction(u1.unit_id)
    assert decision.approved
    assert decision.budgets == ()


def test_budgets_are_tenant_scoped(engine) -> None:
    engine.set_disruption_budget("globex", "web", selector={"app": "web"}, min_available=3)
    _, (u1, _u2, _u3) = _web_units(engine, 3)
    assert engine.request_eviction(u1.unit_id).approved


def test_unknown_budget_and_unit(engine) -> None:
    with pytest.raises(NotFoundError):
        engine.get_budget_status("acme", "missing")
    with pytest.raises(NotFoundError):
        engine.request_eviction("unit-missing")
