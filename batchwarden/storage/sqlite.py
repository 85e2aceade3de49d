"""SQLite storage driver (default persistence).

Implements RecordStore on a single local database file. Every write opens
its own connection, so the store is safe to share across threads.

Tables:
- records: one row per (kind, record_id) with a monotonically increasing
  version used for optimistic concurrency
- job_events: append-only status/audit log
"""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator

from batchwarden.errors import ConcurrentModificationError, ConflictError, NotFoundError, PolicyViolationError
from batchwarden.models import RecordKind
from batchwarden.storage.interfaces import RecordStore, StoredEvent, StoredRecord
from batchwarden.utils import format_rfc3339, json_dumps, parse_rfc3339, utcnow

_SCHEMA_VERSION = 1


class SQLiteDatabase:
    def __init__(self, path: Path):
        self.path = path.resolve()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._migrate()

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(str(self.path), timeout=30, isolation_level=None)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    def _migrate(self) -> None:
        with self.connect() as conn:
            conn.execute("PRAGMA journal_mode = WAL;")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS schema_version (
                  version INTEGER NOT NULL
                );
                """
            )
            row = conn.execute("SELECT version FROM schema_version LIMIT 1;").fetchone()
            if row is None:
                conn.execute("INSERT INTO schema_version(version) VALUES (?);", (_SCHEMA_VERSION,))
                version = _SCHEMA_VERSION
            else:
                version = int(row["version"])

            if version != _SCHEMA_VERSION:
                raise PolicyViolationError(f"Unsupported SQLite schema_version: {version}")

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS records (
                  kind TEXT NOT NULL,
                  record_id TEXT NOT NULL,
                  tenant TEXT NOT NULL,
                  version INTEGER NOT NULL,
                  updated_at TEXT NOT NULL,
                  doc_json TEXT NOT NULL,
                  PRIMARY KEY (kind, record_id)
                );
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_records_kind_tenant ON records(kind, tenant);")

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS job_events (
                  event_id INTEGER PRIMARY KEY AUTOINCREMENT,
                  ts TEXT NOT NULL,
                  tenant TEXT NOT NULL,
                  job_id TEXT,
                  event_type TEXT NOT NULL,
                  details_json TEXT
                );
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_job_events_tenant_ts ON job_events(tenant, ts);")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_job_events_job ON job_events(job_id, event_id);")


def _row_to_record(row: sqlite3.Row) -> StoredRecord:
    return StoredRecord(
        kind=RecordKind(row["kind"]),
        record_id=str(row["record_id"]),
        tenant=str(row["tenant"]),
        version=int(row["version"]),
        updated_at=parse_rfc3339(str(row["updated_at"])),
        document=json.loads(row["doc_json"]),
    )


class SQLiteRecordStore(RecordStore):
    def __init__(self, db: SQLiteDatabase):
        self._db = db

    @classmethod
    def open(cls, sqlite_path: Path) -> "SQLiteRecordStore":
        return cls(SQLiteDatabase(sqlite_path))

    def create(self, kind: RecordKind, record_id: str, tenant: str, document: dict[str, Any]) -> int:
        with self._db.connect() as conn:
            try:
                conn.execute(
                    "INSERT INTO records(kind, record_id, tenant, version, updated_at, doc_json) VALUES (?, ?, ?, 1, ?, ?);",
                    (kind.value, record_id, tenant, format_rfc3339(utcnow()), json_dumps(document)),
                )
            except sqlite3.IntegrityError as e:
                raise ConflictError(f"{kind.value} already exists: {record_id}") from e
        return 1

    def get(self, kind: RecordKind, record_id: str) -> StoredRecord:
        rec = self.find(kind, record_id)
        if rec is None:
            raise NotFoundError(kind.value, record_id)
        return rec

    def find(self, kind: RecordKind, record_id: str) -> StoredRecord | None:
        with self._db.connect() as conn:
            row = conn.execute(
                "SELECT * FROM records WHERE kind = ? AND record_id = ?;",
                (kind.value, record_id),
            ).fetchone()
            return _row_to_record(row) if row is not None else None

    def update(self, kind: RecordKind, record_id: str, document: dict[str, Any], *, expected_version: int) -> int:
        with self._db.connect() as conn:
            cur = conn.execute(
                """
                UPDATE records SET
                  version = version + 1,
                  updated_at = ?,
                  doc_json = ?
                WHERE kind = ? AND record_id = ? AND version = ?;
                """,
                (format_rfc3339(utcnow()), json_dumps(document), kind.value, record_id, expected_version),
            )
            if cur.rowcount == 1:
                return expected_version + 1

            row = conn.execute(
                "SELECT version FROM records WHERE kind = ? AND record_id = ?;",
                (kind.value, record_id),
            ).fetchone()
            if row is None:
                raise NotFoundError(kind.value, record_id)
            raise ConcurrentModificationError(kind.value, record_id, expected=expected_version, actual=int(row["version"]))

    def delete(self, kind: RecordKind, record_id: str) -> None:
        with self._db.connect() as conn:
            conn.execute("DELETE FROM records WHERE kind = ? AND record_id = ?;", (kind.value, record_id))

    def list_records(self, kind: RecordKind, *, tenant: str | None = None) -> list[StoredRecord]:
        with self._db.connect() as conn:
            if tenant is None:
                rows = conn.execute("SELECT * FROM records WHERE kind = ? ORDER BY record_id;", (kind.value,)).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM records WHERE kind = ? AND tenant = ? ORDER BY record_id;",
                    (kind.value, tenant),
                ).fetchall()
            return [_row_to_record(r) for r in rows]

    def record_event(
        self,
        *,
        tenant: str,
        job_id: str | None,
        event_type: str,
        details: dict[str, Any] | None = None,
        ts: datetime | None = None,
    ) -> None:
        with self._db.connect() as conn:
            conn.execute(
                "INSERT INTO job_events(ts, tenant, job_id, event_type, details_json) VALUES (?, ?, ?, ?, ?);",
                (format_rfc3339(ts or utcnow()), tenant, job_id, event_type, json_dumps(details or {})),
            )

    def list_events(self, *, job_id: str | None = None, tenant: str | None = None) -> list[StoredEvent]:
        clauses: list[str] = []
        params: list[Any] = []
        if job_id is not None:
            clauses.append("job_id = ?")
            params.append(job_id)
        if tenant is not None:
            clauses.append("tenant = ?")
            params.append(tenant)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._db.connect() as conn:
            rows = conn.execute(f"SELECT * FROM job_events {where} ORDER BY event_id;", params).fetchall()
        return [
            StoredEvent(
                event_id=int(r["event_id"]),
                ts=parse_rfc3339(str(r["ts"])),
                tenant=str(r["tenant"]),
                job_id=r["job_id"],
                event_type=str(r["event_type"]),
                details=json.loads(r["details_json"] or "{}"),
            )
            for r in rows
        ]
