"""DB-agnostic storage interfaces.

The engine keeps its working state in memory and persists every record it
owns through these interfaces:
- versioned records (Job, ExecutionUnit, ResourcePolicy, DisruptionBudget,
  RecurrenceSchedule), keyed by kind + globally unique id, tagged with tenant
- an append-only event log used for job status events

Every update carries the version the writer last observed; a mismatch is
reported as ConcurrentModificationError and never silently overwritten.
Concrete drivers live in `storage/` (SQLite by default).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from batchwarden.models import RecordKind


@dataclass(frozen=True)
class StoredRecord:
    kind: RecordKind
    record_id: str
    tenant: str
    version: int
    updated_at: datetime
    document: dict[str, Any]


@dataclass(frozen=True)
class StoredEvent:
    event_id: int
    ts: datetime
    tenant: str
    job_id: str | None
    event_type: str
    details: dict[str, Any]


class RecordStore(ABC):
    @abstractmethod
    def create(self, kind: RecordKind, record_id: str, tenant: str, document: dict[str, Any]) -> int:
        """Insert a new record at version 1. Must fail if (kind, record_id) already exists."""

    @abstractmethod
    def get(self, kind: RecordKind, record_id: str) -> StoredRecord:
        """Fetch a record. Must raise NotFoundError if missing."""

    @abstractmethod
    def find(self, kind: RecordKind, record_id: str) -> StoredRecord | None:
        """Fetch a record or None."""

    @abstractmethod
    def update(self, kind: RecordKind, record_id: str, document: dict[str, Any], *, expected_version: int) -> int:
        """Replace a record if its stored version equals expected_version. Returns the new version."""

    @abstractmethod
    def delete(self, kind: RecordKind, record_id: str) -> None:
        """Delete a record (no-op when missing)."""

    @abstractmethod
    def list_records(self, kind: RecordKind, *, tenant: str | None = None) -> list[StoredRecord]:
        """List records of a kind, optionally for one tenant."""

    @abstractmethod
    def record_event(
        self,
        *,
        tenant: str,
        job_id: str | None,
        event_type: str,
        details: dict[str, Any] | None = None,
        ts: datetime | None = None,
    ) -> None:
        """Append a status event (append-only). `ts` defaults to the current time."""

    @abstractmethod
    def list_events(self, *, job_id: str | None = None, tenant: str | None = None) -> list[StoredEvent]:
        """List events in insertion order."""
