"""Manifest document loader (YAML -> dict).

Tenant policies, disruption budgets and recurrence schedules can be declared
as YAML manifests in a directory and applied at startup. Manifests are
treated as configuration: they are schema-validated and fail closed, and the
engine's own state is still persisted through the record store.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable

import yaml

from batchwarden.errors import PolicyViolationError
from batchwarden.models import RecordKind
from batchwarden.registry.schema_validator import SchemaValidator

# Policies must exist before budgets and schedules that rely on them.
_APPLY_ORDER: dict[RecordKind, int] = {
    RecordKind.RESOURCE_POLICY: 0,
    RecordKind.DISRUPTION_BUDGET: 1,
    RecordKind.RECURRENCE_SCHEDULE: 2,
}


@dataclass(frozen=True)
class LoadedDocument:
    path: Path
    data: dict[str, Any]

    @property
    def kind(self) -> str | None:
        k = self.data.get("kind")
        return k if isinstance(k, str) else None


def load_yaml_document(path: Path) -> LoadedDocument:
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as e:
        raise PolicyViolationError(f"Unreadable manifest {path}: {e}") from e
    if not isinstance(data, dict):
        raise PolicyViolationError(f"Manifest {path} must hold a mapping")
    return LoadedDocument(path=path, data=data)


def iter_yaml_files(root: Path) -> Iterable[Path]:
    if not root.exists():
        return []
    return sorted(p for p in root.rglob("*") if p.is_file() and p.suffix.lower() in (".yaml", ".yml"))


def load_manifests(root: Path, *, schema_validator: SchemaValidator) -> list[tuple[RecordKind, LoadedDocument]]:
    """Load and validate every manifest under `root`, ordered for application."""
    loaded: list[tuple[RecordKind, LoadedDocument]] = []
    for path in iter_yaml_files(root):
        doc = load_yaml_document(path)
        try:
            kind = RecordKind(doc.kind)
        except ValueError as e:
            raise PolicyViolationError(f"Unsupported manifest kind in {path}: {doc.kind!r}") from e
        if kind not in _APPLY_ORDER:
            raise PolicyViolationError(f"Manifest kind {kind.value} cannot be declared statically ({path})")
        schema_validator.validate(kind.value, doc.data)
        loaded.append((kind, doc))
    loaded.sort(key=lambda item: (_APPLY_ORDER[item[0]], str(item[1].path)))
    return loaded
