"""FastAPI surface for the batchwarden engine."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Body, FastAPI, Query
from fastapi.responses import JSONResponse

from batchwarden import __version__
from batchwarden.config.logging import apply_logging_config
from batchwarden.config.settings import default_config_paths, load_logging_config, load_runtime_config
from batchwarden.engine import GovernanceEngine
from batchwarden.errors import (
    AdmissionError,
    ConcurrentModificationError,
    ConflictError,
    ContractViolationError,
    NotFoundError,
    PolicyConflictError,
    PolicyViolationError,
    SchemaValidationError,
)
from batchwarden.models import ExecutionUnit

logger = logging.getLogger(__name__)

# Starlette picks the handler of the closest class in the exception MRO.
ERROR_STATUS: dict[type[Exception], int] = {
    SchemaValidationError: 422,
    AdmissionError: 403,
    PolicyViolationError: 403,
    PolicyConflictError: 409,
    ConflictError: 409,
    ContractViolationError: 400,
    NotFoundError: 404,
}


def _as_dict(v: Any, field: str) -> dict[str, Any]:
    if v is None:
        return {}
    if not isinstance(v, dict):
        raise ContractViolationError(f"Expected object for {field}", code="INVALID_REQUEST")
    return v


def _optional_int(v: Any, field: str) -> int | None:
    if v is None:
        return None
    if isinstance(v, bool) or not isinstance(v, int):
        raise ContractViolationError(f"Expected integer for {field}", code="INVALID_REQUEST")
    return v


def _error_payload(err: Exception) -> dict[str, Any]:
    if isinstance(err, SchemaValidationError):
        return {
            "error": "SCHEMA_VALIDATION_ERROR",
            "kind": err.kind,
            "violations": [{"path": v.path, "message": v.message} for v in err.violations],
        }
    if isinstance(err, AdmissionError):
        return {"error": "ADMISSION_REJECTED", "reason": err.reason.value, "message": err.message, "details": err.details}
    if isinstance(err, PolicyConflictError):
        return {"error": "POLICY_CONFLICT", "reason": err.reason.value, "message": str(err), "details": err.details}
    if isinstance(err, ContractViolationError):
        return {"error": "CONTRACT_VIOLATION", "code": err.code, "message": str(err), "details": err.details}
    if isinstance(err, PolicyViolationError):
        return {"error": "POLICY_VIOLATION", "message": str(err), "details": err.details}
    if isinstance(err, ConcurrentModificationError):
        return {"error": "CONCURRENT_MODIFICATION", "reason": err.reason.value, "message": str(err), "details": err.details}
    if isinstance(err, ConflictError):
        return {"error": "CONFLICT", "message": str(err), "details": err.details}
    if isinstance(err, NotFoundError):
        return {"error": "NOT_FOUND", "resource_type": err.resource_type, "resource_id": err.resource_id}
    return {"error": "INTERNAL", "message": str(err)}


def _build_engine() -> GovernanceEngine:
    runtime_path, logging_path = default_config_paths()
    runtime = load_runtime_config(runtime_path)
    apply_logging_config(load_logging_config(logging_path))
    return GovernanceEngine.from_config(runtime)


def _unit_payload(unit: ExecutionUnit) -> dict[str, Any]:
    doc = unit.to_document()
    doc["version"] = unit.version
    return doc


def create_app(engine: GovernanceEngine | None = None, *, start_background: bool = True) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):  # noqa: ANN202
        owned = False
        if getattr(app.state, "engine", None) is None:
            # Fail closed at startup if config, schemas or storage cannot be loaded.
            app.state.engine = _build_engine()
            owned = True
        if start_background:
            app.state.engine.start()
        logger.info("runtime_started", extra={"event": "runtime_started"})
        try:
            yield
        finally:
            if owned:
                app.state.engine.close()
            elif start_background:
                app.state.engine.stop()
            logger.info("runtime_stopped", extra={"event": "runtime_stopped"})

    app = FastAPI(title="batchwarden", version=__version__, lifespan=lifespan)
    app.state.engine = engine

    def _engine() -> GovernanceEngine:
        return app.state.engine

    def _respond_with(status_code: int):
        def handler(_req, exc: Exception) -> JSONResponse:
            return JSONResponse(status_code=status_code, content=_error_payload(exc))

        return handler

    for exc_type, status_code in ERROR_STATUS.items():
        app.add_exception_handler(exc_type, _respond_with(status_code))

    @app.exception_handler(Exception)
    def _unhandled_handler(_req, exc: Exception):
        logger.exception("unhandled_error", extra={"event": "unhandled_error"})
        return JSONResponse(status_code=500, content=_error_payload(exc))

    @app.get("/health")
    def health() -> dict[str, Any]:
        return {"status": "ok", "version": __version__}

    # -- jobs ---------------------------------------------------------------------

    @app.post("/jobs")
    def submit_job(job: dict[str, Any] = Body(...)) -> dict[str, Any]:
        submitted = _engine().submit_job(job)
        return {"jobId": submitted.job_id, "job": _engine().get_job_status(submitted.job_id)}

    @app.get("/jobs/{job_id}")
    def get_job(job_id: str) -> dict[str, Any]:
        return {"job": _engine().get_job_status(job_id)}

    @app.get("/jobs/{job_id}/units")
    def list_units(job_id: str) -> dict[str, Any]:
        return {"units": [_unit_payload(u) for u in _engine().list_units(job_id)]}

    @app.get("/jobs/{job_id}/events")
    def list_events(job_id: str) -> dict[str, Any]:
        return {"events": [e.to_document() for e in _engine().list_events(job_id)]}

    @app.post("/jobs/{job_id}/cancel")
    def cancel_job(job_id: str, body: dict[str, Any] | None = Body(None)) -> dict[str, Any]:
        expected = _optional_int(_as_dict(body, "body").get("expectedVersion"), "expectedVersion")
        return {"job": _engine().cancel_job(job_id, expected_version=expected)}

    @app.delete("/jobs/{job_id}")
    def remove_job(job_id: str) -> dict[str, Any]:
        _engine().remove_job(job_id)
        return {"removed": job_id}

    # -- tenants ------------------------------------------------------------------

    @app.put("/tenants/{tenant}/policy")
    def set_policy(tenant: str, body: dict[str, Any] = Body(...)) -> dict[str, Any]:
        policy = _engine().set_resource_policy(
            tenant,
            quota=body.get("quota"),
            limit_range=body.get("limitRange"),
            expected_version=_optional_int(body.get("expectedVersion"), "expectedVersion"),
        )
        return {"policy": policy.to_document(), "version": policy.version}

    @app.get("/tenants/{tenant}/policy")
    def get_policy(tenant: str) -> dict[str, Any]:
        policy = _engine().get_resource_policy(tenant)
        return {"policy": policy.to_document(), "version": policy.version, "usage": _engine().tenant_usage(tenant)}

    @app.put("/tenants/{tenant}/budgets/{name}")
    def set_budget(tenant: str, name: str, body: dict[str, Any] = Body(...)) -> dict[str, Any]:
        selector = _as_dict(body.get("selector"), "selector")
        budget = _engine().set_disruption_budget(
            tenant,
            name,
            selector=_as_dict(selector.get("matchLabels"), "selector.matchLabels"),
            min_available=body.get("minAvailable"),
            max_unavailable=body.get("maxUnavailable"),
            expected_version=_optional_int(body.get("expectedVersion"), "expectedVersion"),
        )
        return {"budget": budget.to_document(), "version": budget.version}

    @app.get("/tenants/{tenant}/budgets/{name}")
    def get_budget(tenant: str, name: str) -> dict[str, Any]:
        status = _engine().get_budget_status(tenant, name)
        return {
            "budget": status.budget,
            "members": status.members,
            "healthy": status.healthy,
            "approved": status.approved,
            "floor": status.floor,
            "disruptionsAllowed": status.disruptions_allowed,
        }

    @app.delete("/tenants/{tenant}/budgets/{name}")
    def delete_budget(tenant: str, name: str) -> dict[str, Any]:
        _engine().delete_disruption_budget(tenant, name)
        return {"removed": f"{tenant}/{name}"}

    @app.post("/tenants/{tenant}/admission/dry-run")
    def dry_run_admission(tenant: str, resources: dict[str, Any] = Body(...)) -> dict[str, Any]:
        result = _engine().dry_run_admission(tenant, resources)
        return {"allowed": True, "resolved": result.resolved.to_document()}

    @app.get("/tenants/{tenant}/events")
    def list_tenant_events(tenant: str) -> dict[str, Any]:
        return {"events": [e.to_document() for e in _engine().list_tenant_events(tenant)]}

    # -- schedules ----------------------------------------------------------------

    @app.post("/schedules")
    def create_schedule(schedule: dict[str, Any] = Body(...)) -> dict[str, Any]:
        created = _engine().create_schedule(schedule)
        return {"scheduleId": created.schedule_id, "schedule": created.to_document(), "version": created.version}

    @app.get("/schedules")
    def list_schedules(tenant: str | None = None) -> dict[str, Any]:
        return {"schedules": [s.to_document() for s in _engine().list_schedules(tenant=tenant)]}

    @app.get("/schedules/{schedule_id}")
    def get_schedule(schedule_id: str) -> dict[str, Any]:
        schedule = _engine().get_schedule(schedule_id)
        return {"schedule": schedule.to_document(), "version": schedule.version}

    @app.put("/schedules/{schedule_id}")
    def update_schedule(
        schedule_id: str,
        schedule: dict[str, Any] = Body(...),
        expected_version: int | None = Query(None, alias="expectedVersion"),
    ) -> dict[str, Any]:
        updated = _engine().update_schedule(schedule_id, schedule, expected_version=expected_version)
        return {"schedule": updated.to_document(), "version": updated.version}

    @app.delete("/schedules/{schedule_id}")
    def delete_schedule(schedule_id: str) -> dict[str, Any]:
        _engine().delete_schedule(schedule_id)
        return {"removed": schedule_id}

    @app.post("/schedules/{schedule_id}/suspend")
    def suspend_schedule(schedule_id: str, body: dict[str, Any] | None = Body(None)) -> dict[str, Any]:
        body = _as_dict(body, "body")
        suspend = body.get("suspend", True)
        if not isinstance(suspend, bool):
            raise ContractViolationError("Expected boolean for suspend", code="INVALID_REQUEST")
        schedule = _engine().suspend_schedule(
            schedule_id, suspend, expected_version=_optional_int(body.get("expectedVersion"), "expectedVersion")
        )
        return {"schedule": schedule.to_document(), "version": schedule.version}

    # -- units --------------------------------------------------------------------

    @app.post("/units/{unit_id}/eviction")
    def request_eviction(unit_id: str) -> JSONResponse:
        decision = _engine().request_eviction(unit_id)
        # Denials use 429 so callers retry, like the Kubernetes eviction API.
        return JSONResponse(status_code=200 if decision.approved else 429, content=decision.to_document())

    @app.post("/units/{unit_id}/outcome")
    def report_outcome(unit_id: str, body: dict[str, Any] = Body(...)) -> dict[str, Any]:
        succeeded = body.get("succeeded")
        if not isinstance(succeeded, bool):
            raise ContractViolationError("Expected boolean for succeeded", code="INVALID_REQUEST")
        reason = body.get("reason")
        unit = _engine().report_unit_outcome(unit_id, succeeded=succeeded, reason=str(reason) if reason is not None else None)
        return {"unit": _unit_payload(unit)}

    @app.post("/units/{unit_id}/terminated")
    def confirm_terminated(unit_id: str) -> dict[str, Any]:
        return {"unit": _unit_payload(_engine().confirm_unit_terminated(unit_id))}

    return app


app = create_app()
