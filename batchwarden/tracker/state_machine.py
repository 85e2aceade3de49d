"""Job lifecycle state machine.

Canonical lifecycle:
Pending -> Active -> Completed | Failed | Cancelled

Notes:
- Active -> Pending happens when no unit of the job can currently be admitted.
- Pending may go straight to Failed (deadline) or Cancelled.
- Terminal phases are absorbing; counters stop changing once a job is terminal.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime

from batchwarden.errors import ConflictError, ContractViolationError
from batchwarden.models import Job, JobPhase

_TERMINAL_PHASES = {JobPhase.COMPLETED, JobPhase.FAILED, JobPhase.CANCELLED}

# Allowed transitions excluding no-op transitions.
_ALLOWED: dict[JobPhase, set[JobPhase]] = {
    JobPhase.PENDING: {JobPhase.ACTIVE, JobPhase.FAILED, JobPhase.CANCELLED},
    JobPhase.ACTIVE: {JobPhase.PENDING, JobPhase.COMPLETED, JobPhase.FAILED, JobPhase.CANCELLED},
    JobPhase.COMPLETED: set(),
    JobPhase.FAILED: set(),
    JobPhase.CANCELLED: set(),
}


@dataclass(frozen=True)
class TransitionRequest:
    new_phase: JobPhase
    now: datetime
    failure_reason: str | None = None


def is_terminal(phase: JobPhase) -> bool:
    return phase in _TERMINAL_PHASES


def apply_transition(job: Job, req: TransitionRequest) -> Job:
    """Return a copy of `job` in `req.new_phase`."""
    current = job.phase
    new_phase = req.new_phase

    if new_phase is current:
        return job

    if is_terminal(current):
        raise ConflictError(f"Job {job.job_id} is terminal; cannot transition from {current.value} to {new_phase.value}")

    if new_phase not in _ALLOWED[current]:
        raise ConflictError(f"Invalid job phase transition: {current.value} -> {new_phase.value}")

    changes: dict = {"phase": new_phase}

    if new_phase is JobPhase.ACTIVE and job.start_time is None:
        changes["start_time"] = req.now

    if is_terminal(new_phase):
        changes["completion_time"] = req.now
        changes["next_launch_at"] = None
        changes["next_admission_at"] = None

    if new_phase in (JobPhase.FAILED, JobPhase.CANCELLED):
        if not req.failure_reason:
            raise ContractViolationError("failure_reason is required for failed/cancelled jobs", code="MISSING_FAILURE_REASON")
        changes["failure_reason"] = req.failure_reason

    return replace(job, **changes)
