from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from batchwarden.api.main import create_app

from conftest import job_doc


@pytest.fixture
def client(engine):
    app = create_app(engine, start_background=False)
    with TestClient(app) as c:
        yield c


def _running_unit_ids(client, job_id: str) -> list[str]:
    units = client.get(f"/jobs/{job_id}/units").json()["units"]
    return [u["metadata"]["unitId"] for u in units if u["status"]["phase"] == "Running"]


def test_health(client) -> None:
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["status"] == "ok"


def test_submit_and_complete_job(client, engine) -> None:
    r = client.post("/jobs", json=job_doc(completions=1))
    assert r.status_code == 200
    job_id = r.json()["jobId"]
    assert r.json()["job"]["phase"] == "Pending"

    engine.tick()
    (unit_id,) = _running_unit_ids(client, job_id)
    r = client.post(f"/units/{unit_id}/outcome", json={"succeeded": True})
    assert r.status_code == 200
    assert r.json()["unit"]["status"]["phase"] == "Succeeded"

    job = client.get(f"/jobs/{job_id}").json()["job"]
    assert job["phase"] == "Completed"
    assert job["succeeded"] == 1

    types = [e["type"] for e in client.get(f"/jobs/{job_id}/events").json()["events"]]
    assert types[0] == "job_submitted"
    assert "job_completed" in types


def test_schema_violation_is_422(client) -> None:
    doc = job_doc()
    doc["spec"]["template"].pop("command")
    r = client.post("/jobs", json=doc)
    assert r.status_code == 422
    body = r.json()
    assert body["error"] == "SCHEMA_VALIDATION_ERROR"
    assert body["violations"][0]["path"] == "/spec/template"


def test_unknown_job_is_404(client) -> None:
    r = client.get("/jobs/job-missing")
    assert r.status_code == 404
    assert r.json()["error"] == "NOT_FOUND"


def test_policy_round_trip_and_admission_rejection(client) -> None:
    r = client.put("/tenants/acme/policy", json={"quota": {"requests.cpu": "1"}, "limitRange": {"cpu": {"max": "1"}}})
    assert r.status_code == 200
    assert r.json()["version"] == 1

    r = client.get("/tenants/acme/policy")
    assert r.json()["policy"]["spec"]["quota"] == {"requests.cpu": "1"}
    assert r.json()["usage"]["requests.cpu"] == 0

    r = client.post("/jobs", json=job_doc(requests={"cpu": "2"}, limits={"cpu": "2"}))
    assert r.status_code == 403
    assert r.json()["reason"] == "OutOfRange"


def test_dry_run_admission(client) -> None:
    client.put("/tenants/acme/policy", json={"limitRange": {"cpu": {"defaultRequest": "100m", "default": "200m"}}})
    r = client.post("/tenants/acme/admission/dry-run", json={"requests": {}, "limits": {}})
    assert r.status_code == 200
    assert r.json() == {"allowed": True, "resolved": {"requests": {"cpu": "100m"}, "limits": {"cpu": "200m"}}}

    client.put("/tenants/acme/policy", json={"quota": {"limits.memory": "1Gi"}})
    r = client.post("/tenants/acme/admission/dry-run", json={"requests": {"cpu": "1"}})
    assert r.status_code == 403
    assert r.json()["reason"] == "MissingResource"


def test_quota_below_usage_is_409(client, engine) -> None:
    client.put("/tenants/acme/policy", json={"quota": {"requests.cpu": "2"}})
    job_id = client.post("/jobs", json=job_doc(requests={"cpu": "1"})).json()["jobId"]
    engine.tick()
    assert _running_unit_ids(client, job_id)

    r = client.put("/tenants/acme/policy", json={"quota": {"requests.cpu": "500m"}})
    assert r.status_code == 409
    assert r.json()["error"] == "POLICY_CONFLICT"


def test_stale_policy_version_is_409(client) -> None:
    client.put("/tenants/acme/policy", json={"quota": {"jobs": 5}})
    r = client.put("/tenants/acme/policy", json={"quota": {"jobs": 6}, "expectedVersion": 7})
    assert r.status_code == 409
    assert r.json()["error"] == "CONCURRENT_MODIFICATION"


def test_eviction_denial_is_429(client, engine) -> None:
    r = client.put("/tenants/acme/budgets/web", json={"selector": {"matchLabels": {"app": "web"}}, "minAvailable": 1})
    assert r.status_code == 200
    job_id = client.post("/jobs", json=job_doc(completions=2, parallelism=2, labels={"app": "web"})).json()["jobId"]
    engine.tick()
    first, second = _running_unit_ids(client, job_id)

    r = client.post(f"/units/{first}/eviction")
    assert r.status_code == 200
    assert r.json()["approved"] is True

    r = client.post(f"/units/{second}/eviction")
    assert r.status_code == 429
    assert r.json()["reason"] == "DisruptionBudget"

    status = client.get("/tenants/acme/budgets/web").json()
    assert status["disruptionsAllowed"] == 0
    assert status["approved"] == 1

    assert client.delete("/tenants/acme/budgets/web").status_code == 200
    assert client.get("/tenants/acme/budgets/web").status_code == 404
    assert client.post(f"/units/{second}/eviction").status_code == 200


def test_cancel_terminate_and_remove(client, engine) -> None:
    job_id = client.post("/jobs", json=job_doc()).json()["jobId"]
    engine.tick()
    (unit_id,) = _running_unit_ids(client, job_id)

    r = client.post(f"/jobs/{job_id}/cancel", json={"expectedVersion": 1})
    assert r.status_code == 409

    r = client.post(f"/jobs/{job_id}/cancel")
    assert r.status_code == 200
    assert r.json()["job"]["phase"] == "Cancelled"
    assert client.post(f"/jobs/{job_id}/cancel").status_code == 409

    assert client.delete(f"/jobs/{job_id}").status_code == 409
    r = client.post(f"/units/{unit_id}/terminated")
    assert r.json()["unit"]["status"]["reason"] == "Terminated"
    assert client.delete(f"/jobs/{job_id}").status_code == 200
    assert client.get(f"/jobs/{job_id}").status_code == 404


def test_outcome_requires_boolean(client, engine) -> None:
    job_id = client.post("/jobs", json=job_doc()).json()["jobId"]
    engine.tick()
    (unit_id,) = _running_unit_ids(client, job_id)
    r = client.post(f"/units/{unit_id}/outcome", json={"succeeded": "yes"})
    assert r.status_code == 400
    assert r.json()["code"] == "INVALID_REQUEST"


def test_schedule_routes(client) -> None:
    doc = {
        "kind": "RecurrenceSchedule",
        "metadata": {"tenant": "acme", "name": "nightly"},
        "spec": {"schedule": "0 2 * * *", "jobTemplate": {"spec": {"template": {"command": ["run"]}}}},
    }
    r = client.post("/schedules", json=doc)
    assert r.status_code == 200
    schedule_id = r.json()["scheduleId"]
    assert client.post("/schedules", json=doc).status_code == 409

    r = client.post(f"/schedules/{schedule_id}/suspend", json={"suspend": True, "expectedVersion": 1})
    assert r.status_code == 200
    assert r.json()["schedule"]["spec"]["suspend"] is True
    assert r.json()["version"] == 2

    listed = client.get("/schedules", params={"tenant": "acme"}).json()["schedules"]
    assert [s["metadata"]["scheduleId"] for s in listed] == [schedule_id]
    assert client.get("/schedules/sched-missing").status_code == 404

    types = [e["type"] for e in client.get("/tenants/acme/events").json()["events"]]
    assert types == ["schedule_created", "schedule_suspended"]

    hourly = {**doc, "spec": {**doc["spec"], "schedule": "0 * * * *"}}
    assert client.put(f"/schedules/{schedule_id}", params={"expectedVersion": 1}, json=hourly).status_code == 409
    r = client.put(f"/schedules/{schedule_id}", params={"expectedVersion": 2}, json=hourly)
    assert r.status_code == 200
    assert r.json()["schedule"]["spec"]["schedule"] == "0 * * * *"
    assert r.json()["version"] == 3

    bad = dict(doc, metadata={"tenant": "acme", "name": "broken"}, spec={**doc["spec"], "schedule": "not a cron"})
    r = client.post("/schedules", json=bad)
    assert r.status_code == 400
    assert r.json()["code"] == "INVALID_SCHEDULE"

    assert client.delete(f"/schedules/{schedule_id}").status_code == 200
    assert client.get(f"/schedules/{schedule_id}").status_code == 404
    assert client.get("/schedules").json()["schedules"] == []
