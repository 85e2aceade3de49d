"""Schema validation for every document the engine accepts.

Schemas live beside the package in `batchwarden/schemas/`. Each
`*.schema.yaml` file is a JSON Schema Draft 2020-12 document whose `title`
names the document kind it governs; `*.defs.yaml` files only carry shared
`$defs` and are registered for `$ref` resolution. All of them are compiled
once at load, so a broken schema stops the process at boot rather than on the
first request.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Iterable

import yaml
from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError
from referencing import Registry, Resource

from batchwarden.errors import PolicyViolationError, SchemaValidationError, SchemaViolation

DEFAULT_SCHEMAS_DIR = Path(__file__).resolve().parents[1] / "schemas"

REQUIRED_KINDS = ("Job", "ResourcePolicy", "DisruptionBudget", "RecurrenceSchedule", "ResourceRequirements")


def _read_schema(path: Path) -> dict[str, Any]:
    try:
        doc = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as e:
        raise PolicyViolationError(f"Unreadable schema file {path}: {e}") from e
    if not isinstance(doc, dict):
        raise PolicyViolationError(f"Schema file {path} must hold a mapping")
    return _unescape_patterns(doc)


def _unescape_patterns(node: Any) -> Any:
    # Patterns are written JSON-style ('\\.'), so strip one level of escaping.
    if isinstance(node, dict):
        return {
            k: v.replace("\\\\", "\\") if k == "pattern" and isinstance(v, str) else _unescape_patterns(v)
            for k, v in node.items()
        }
    if isinstance(node, list):
        return [_unescape_patterns(v) for v in node]
    return node


def pointer(path: Iterable[Any]) -> str:
    """RFC 6901 pointer for a jsonschema error path; the document root is '/'."""
    tokens = [str(p).replace("~", "~0").replace("/", "~1") for p in path]
    return "/" + "/".join(tokens) if tokens else "/"


class SchemaValidator:
    def __init__(self, schemas: dict[str, dict[str, Any]], *, shared: Iterable[dict[str, Any]] = ()):
        documents = [*shared, *schemas.values()]
        registry = Registry().with_resources(
            (str(doc["$id"]), Resource.from_contents(doc)) for doc in documents if "$id" in doc
        )
        self._validators: dict[str, Draft202012Validator] = {}
        for kind, schema in schemas.items():
            try:
                Draft202012Validator.check_schema(schema)
            except SchemaError as e:
                raise PolicyViolationError(f"Schema for {kind} is not valid JSON Schema: {e.message}") from e
            self._validators[kind] = Draft202012Validator(schema, registry=registry)

    @classmethod
    def load_from_dir(cls, schemas_dir: Path = DEFAULT_SCHEMAS_DIR) -> "SchemaValidator":
        if not schemas_dir.is_dir():
            raise PolicyViolationError(f"Schemas directory not found: {schemas_dir}")

        schemas: dict[str, dict[str, Any]] = {}
        for path in sorted(schemas_dir.glob("*.schema.yaml")):
            schema = _read_schema(path)
            kind = schema.get("title")
            if not isinstance(kind, str) or not kind:
                raise PolicyViolationError(f"Schema {path} has no title naming its kind")
            if kind in schemas:
                raise PolicyViolationError(f"Kind {kind} is defined by more than one schema file")
            schemas[kind] = schema

        missing = [k for k in REQUIRED_KINDS if k not in schemas]
        if missing:
            raise PolicyViolationError(f"No schema for kinds: {', '.join(missing)}", details={"missing": missing})

        shared = [_read_schema(p) for p in sorted(schemas_dir.glob("*.defs.yaml"))]
        return cls(schemas, shared=shared)

    def kinds(self) -> list[str]:
        return sorted(self._validators)

    def validate(self, kind: str, document: dict[str, Any]) -> None:
        """Raise SchemaValidationError listing every violation, ordered by path."""
        validator = self._validators.get(kind)
        if validator is None:
            raise PolicyViolationError(f"No schema registered for kind {kind}")
        violations = sorted(
            (SchemaViolation(path=pointer(err.absolute_path), message=err.message) for err in validator.iter_errors(document)),
            key=lambda v: (v.path, v.message),
        )
        if violations:
            raise SchemaValidationError(kind=kind, violations=violations)
