"""Small utility helpers used across the engine."""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from typing import Any


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_rfc3339(dt: str) -> datetime:
    """Parse RFC3339-ish timestamps as stored in persisted records.

    Python's datetime.fromisoformat does not accept trailing "Z" on older
    interpreters, so we normalize.
    """
    s = dt.strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    parsed = datetime.fromisoformat(s)
    if parsed.tzinfo is None:
        # Fail closed: require timezone-aware timestamps.
        raise ValueError("date-time must be timezone-aware (include Z or offset)")
    return parsed.astimezone(timezone.utc)


def format_rfc3339(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def format_optional(dt: datetime | None) -> str | None:
    return format_rfc3339(dt) if dt is not None else None


def parse_optional(raw: Any) -> datetime | None:
    if raw is None or raw == "":
        return None
    return parse_rfc3339(str(raw))


def json_dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=True, sort_keys=True, separators=(",", ":"))


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def deep_get(d: dict[str, Any], path: list[str]) -> Any:
    cur: Any = d
    for k in path:
        if not isinstance(cur, dict) or k not in cur:
            raise KeyError("missing path: " + ".".join(path))
        cur = cur[k]
    return cur


def labels_match(selector: dict[str, str], labels: dict[str, str]) -> bool:
    """matchLabels semantics: every selector pair must be present. An empty selector matches everything."""
    return all(labels.get(k) == v for k, v in selector.items())
