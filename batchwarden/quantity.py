"""Resource quantity parsing.

CPU is carried as integer millicores and memory as integer bytes so that
admission arithmetic is exact. Inputs follow the Kubernetes quantity
notation ("250m", "0.5", "128Mi", "1G").
"""

from __future__ import annotations

import math
import re
from decimal import Decimal, InvalidOperation
from typing import Any

from batchwarden.errors import ContractViolationError

_QUANTITY_RE = re.compile(r"^([0-9]+(?:\.[0-9]*)?|\.[0-9]+)([a-zA-Z]*)$")

_MEMORY_SUFFIXES: dict[str, int] = {
    "": 1,
    "k": 10**3,
    "M": 10**6,
    "G": 10**9,
    "T": 10**12,
    "P": 10**15,
    "E": 10**18,
    "Ki": 2**10,
    "Mi": 2**20,
    "Gi": 2**30,
    "Ti": 2**40,
    "Pi": 2**50,
    "Ei": 2**60,
}

_BINARY_UNITS = (("Ei", 2**60), ("Pi", 2**50), ("Ti", 2**40), ("Gi", 2**30), ("Mi", 2**20), ("Ki", 2**10))


def _split(raw: Any, *, what: str) -> tuple[Decimal, str]:
    if isinstance(raw, bool):
        raise ContractViolationError(f"Invalid {what} quantity: {raw!r}", code="INVALID_QUANTITY")
    if isinstance(raw, (int, float)):
        if raw < 0 or (isinstance(raw, float) and not math.isfinite(raw)):
            raise ContractViolationError(f"Invalid {what} quantity: {raw!r}", code="INVALID_QUANTITY")
        return Decimal(str(raw)), ""
    m = _QUANTITY_RE.match(str(raw).strip())
    if m is None:
        raise ContractViolationError(f"Invalid {what} quantity: {raw!r}", code="INVALID_QUANTITY")
    try:
        return Decimal(m.group(1)), m.group(2)
    except InvalidOperation as e:  # pragma: no cover - regex already guards this
        raise ContractViolationError(f"Invalid {what} quantity: {raw!r}", code="INVALID_QUANTITY") from e


def parse_cpu(raw: Any) -> int:
    """Return millicores. "250m" -> 250, "1.5" -> 1500."""
    number, suffix = _split(raw, what="cpu")
    if suffix == "m":
        millis = number
    elif suffix == "":
        millis = number * 1000
    else:
        raise ContractViolationError(f"Invalid cpu quantity suffix: {raw!r}", code="INVALID_QUANTITY")
    return int(math.ceil(millis))


def parse_memory(raw: Any) -> int:
    """Return bytes. "128Mi" -> 134217728."""
    number, suffix = _split(raw, what="memory")
    if suffix == "m":
        return int(math.ceil(number / 1000))
    factor = _MEMORY_SUFFIXES.get(suffix)
    if factor is None:
        raise ContractViolationError(f"Invalid memory quantity suffix: {raw!r}", code="INVALID_QUANTITY")
    return int(math.ceil(number * factor))


def parse_optional_cpu(raw: Any) -> int | None:
    return None if raw is None else parse_cpu(raw)


def parse_optional_memory(raw: Any) -> int | None:
    return None if raw is None else parse_memory(raw)


def format_cpu(millis: int | None) -> str | None:
    if millis is None:
        return None
    if millis % 1000 == 0:
        return str(millis // 1000)
    return f"{millis}m"


def format_memory(value: int | None) -> str | None:
    if value is None:
        return None
    for suffix, factor in _BINARY_UNITS:
        if value >= factor and value % factor == 0:
            return f"{value // factor}{suffix}"
    return str(value)
