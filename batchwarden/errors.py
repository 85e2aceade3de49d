"""Core engine error types.

The engine is fail-closed: it rejects a request when it cannot prove the
request keeps every tenant within its declared policy. Every rejection carries
a machine-readable `Reason` plus a human-readable message. These exception
types are mapped to HTTP responses in the API layer.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable


class Reason(str, Enum):
    OUT_OF_RANGE = "OutOfRange"
    QUOTA_EXCEEDED = "QuotaExceeded"
    MISSING_RESOURCE = "MissingResource"
    POLICY_CONFLICT = "PolicyConflict"
    DISRUPTION_BUDGET = "DisruptionBudget"
    DEADLINE_EXCEEDED = "DeadlineExceeded"
    BACKOFF_LIMIT_EXCEEDED = "BackoffLimitExceeded"
    LAUNCH_FAILED = "LaunchFailed"
    CANCELLED = "Cancelled"
    CONCURRENT_MODIFICATION = "ConcurrentModification"
    NOT_FOUND = "NotFound"
    ENGINE_RESTARTED = "EngineRestarted"


class BatchWardenError(Exception):
    """Base class for engine errors."""


@dataclass(frozen=True)
class SchemaViolation:
    path: str
    message: str


class SchemaValidationError(BatchWardenError):
    def __init__(self, kind: str, violations: Iterable[SchemaViolation]):
        self.kind = kind
        self.violations = list(violations)
        super().__init__(f"{kind} failed schema validation ({len(self.violations)} violation(s))")


class NotFoundError(BatchWardenError):
    reason = Reason.NOT_FOUND

    def __init__(self, resource_type: str, resource_id: str):
        self.resource_type = resource_type
        self.resource_id = resource_id
        super().__init__(f"{resource_type} not found: {resource_id}")


class ConflictError(BatchWardenError):
    def __init__(self, message: str, details: Any | None = None):
        self.details = details
        super().__init__(message)


class ConcurrentModificationError(ConflictError):
    """Optimistic-concurrency version mismatch. The caller should re-read and retry."""

    reason = Reason.CONCURRENT_MODIFICATION

    def __init__(self, resource_type: str, resource_id: str, *, expected: int | None, actual: int | None):
        self.resource_type = resource_type
        self.resource_id = resource_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"{resource_type} {resource_id} was modified concurrently (expected version {expected}, found {actual})",
            details={"expected_version": expected, "actual_version": actual},
        )


class PolicyViolationError(BatchWardenError):
    """Configuration or bootstrap input that the engine refuses to run with."""

    def __init__(self, message: str, details: Any | None = None):
        self.details = details
        super().__init__(message)


class ContractViolationError(BatchWardenError):
    def __init__(self, message: str, code: str = "CONTRACT_VIOLATION", details: Any | None = None):
        self.code = code
        self.details = details
        super().__init__(message)


class AdmissionError(BatchWardenError):
    """A unit or job was not admitted. Recoverable: the job stays Pending and is retried."""

    def __init__(self, reason: Reason, message: str, details: Any | None = None):
        self.reason = reason
        self.message = message
        self.details = details
        super().__init__(f"{reason.value}: {message}")


class PolicyConflictError(BatchWardenError):
    """A policy update would put already-admitted usage over the new ceiling. The update is not applied."""

    reason = Reason.POLICY_CONFLICT

    def __init__(self, message: str, details: Any | None = None):
        self.details = details
        super().__init__(message)


class LaunchError(BatchWardenError):
    """The placement collaborator could not start a unit."""

    reason = Reason.LAUNCH_FAILED


class DeadlineExceededError(BatchWardenError):
    reason = Reason.DEADLINE_EXCEEDED

    def __init__(self, job_id: str, deadline_seconds: int):
        self.job_id = job_id
        self.deadline_seconds = deadline_seconds
        super().__init__(f"Job {job_id} exceeded its active deadline ({deadline_seconds}s)")
