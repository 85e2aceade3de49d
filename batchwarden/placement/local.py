"""Local process placement.

Runs each unit's command as a child process of the engine. Resource
requirements are not enforced; they are exported to the child as
environment variables so the command can size itself.
"""

from __future__ import annotations

import logging
import os
import subprocess
import threading
from pathlib import Path

from batchwarden.errors import LaunchError
from batchwarden.models import ExecutionUnit
from batchwarden.placement.interfaces import PlacementBackend, UnitExit

logger = logging.getLogger(__name__)


def _unit_env(unit: ExecutionUnit) -> dict[str, str]:
    env = dict(os.environ)
    env["BATCHWARDEN_UNIT_ID"] = unit.unit_id
    env["BATCHWARDEN_JOB_ID"] = unit.job_id
    env["BATCHWARDEN_TENANT"] = unit.tenant
    for scope, values in (("REQUEST", unit.resolved.requests), ("LIMIT", unit.resolved.limits)):
        if values.cpu is not None:
            env[f"BATCHWARDEN_CPU_{scope}_MILLICORES"] = str(values.cpu)
        if values.memory is not None:
            env[f"BATCHWARDEN_MEMORY_{scope}_BYTES"] = str(values.memory)
    return env


class LocalProcessPlacement(PlacementBackend):
    def __init__(self, *, workdir: Path | None = None, terminate_grace_seconds: float = 5.0):
        self._workdir = workdir
        self._grace = terminate_grace_seconds
        self._lock = threading.Lock()
        self._procs: dict[str, tuple[str, subprocess.Popen]] = {}

    def launch_unit(self, unit: ExecutionUnit) -> str:
        if not unit.command:
            raise LaunchError(f"Unit {unit.unit_id} has no command")
        try:
            proc = subprocess.Popen(
                list(unit.command),
                cwd=self._workdir,
                env=_unit_env(unit),
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
        except OSError as e:
            raise LaunchError(f"Failed to start unit {unit.unit_id}: {e}") from e

        handle = f"pid-{proc.pid}"
        with self._lock:
            self._procs[handle] = (unit.unit_id, proc)
        logger.info("local_unit_started", extra={"event": "local_unit_started", "unit_id": unit.unit_id, "job_id": unit.job_id})
        return handle

    def terminate_unit(self, handle: str) -> None:
        with self._lock:
            entry = self._procs.get(handle)
        if entry is None:
            return
        _, proc = entry
        if proc.poll() is not None:
            return
        proc.terminate()
        try:
            proc.wait(timeout=self._grace)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.wait(timeout=self._grace)

    def poll(self) -> list[UnitExit]:
        exits: list[UnitExit] = []
        with self._lock:
            for handle, (unit_id, proc) in list(self._procs.items()):
                code = proc.poll()
                if code is None:
                    continue
                del self._procs[handle]
                exits.append(
                    UnitExit(unit_id=unit_id, handle=handle, succeeded=code == 0, reason=None if code == 0 else f"ExitCode({code})")
                )
        return exits

    def close(self) -> None:
        with self._lock:
            handles = list(self._procs)
        for handle in handles:
            self.terminate_unit(handle)
