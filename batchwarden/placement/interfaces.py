"""Placement collaborator contract.

The engine never decides where a unit runs. It hands a resolved unit to a
placement backend and gets back an opaque handle; later it may ask the
backend to terminate that handle. Backends that observe unit exits
themselves report them through `poll`.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass

from batchwarden.models import ExecutionUnit


@dataclass(frozen=True)
class UnitExit:
    unit_id: str
    handle: str
    succeeded: bool
    reason: str | None = None


class PlacementBackend(ABC):
    @abstractmethod
    def launch_unit(self, unit: ExecutionUnit) -> str:
        """Start a unit and return its handle. Must raise LaunchError when the unit cannot be started."""

    @abstractmethod
    def terminate_unit(self, handle: str) -> None:
        """Signal a unit to stop. Unknown or already-finished handles are a no-op."""

    def poll(self) -> list[UnitExit]:
        """Unit exits observed since the last call. Backends that report outcomes out of band return []."""
        return []

    def close(self) -> None:
        """Release backend resources on shutdown."""
