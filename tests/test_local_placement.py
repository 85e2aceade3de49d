from __future__ import annotations

import sys
import time

import pytest

from batchwarden.errors import LaunchError
from batchwarden.models import ExecutionUnit, ResourceRequirements
from batchwarden.placement.local import LocalProcessPlacement

from conftest import T0


def _unit(unit_id: str, *command: str) -> ExecutionUnit:
    return ExecutionUnit(
        unit_id=unit_id,
        job_id="job-local",
        tenant="acme",
        labels={},
        resolved=ResourceRequirements.from_document({"requests": {"cpu": "250m"}, "limits": {"memory": "64Mi"}}),
        command=tuple(command),
        created_at=T0,
    )


def _wait_for_exits(placement: LocalProcessPlacement, count: int, timeout_s: float = 10.0):
    deadline = time.monotonic() + timeout_s
    exits = []
    while time.monotonic() < deadline:
        exits.extend(placement.poll())
        if len(exits) >= count:
            return exits
        time.sleep(0.05)
    raise AssertionError(f"expected {count} exits, saw {exits}")


def test_exit_codes_become_outcomes(tmp_path) -> None:
    placement = LocalProcessPlacement(workdir=tmp_path)
    try:
        ok = placement.launch_unit(_unit("unit-ok", sys.executable, "-c", "pass"))
        bad = placement.launch_unit(_unit("unit-bad", sys.executable, "-c", "import sys; sys.exit(3)"))
        exits = {e.unit_id: e for e in _wait_for_exits(placement, 2)}
    finally:
        placement.close()

    assert exits["unit-ok"].succeeded and exits["unit-ok"].handle == ok
    assert not exits["unit-bad"].succeeded and exits["unit-bad"].handle == bad
    assert exits["unit-bad"].reason == "ExitCode(3)"


def test_resources_are_exported_to_the_unit(tmp_path) -> None:
    script = (
        "import os, pathlib; "
        "pathlib.Path('env.txt').write_text(os.environ['BATCHWARDEN_CPU_REQUEST_MILLICORES'] + ' ' "
        "+ os.environ['BATCHWARDEN_MEMORY_LIMIT_BYTES'])"
    )
    placement = LocalProcessPlacement(workdir=tmp_path)
    try:
        placement.launch_unit(_unit("unit-env", sys.executable, "-c", script))
        (exit_,) = _wait_for_exits(placement, 1)
    finally:
        placement.close()
    assert exit_.succeeded
    assert (tmp_path / "env.txt").read_text() == f"250 {64 * 2**20}"


def test_terminate_stops_a_running_unit(tmp_path) -> None:
    placement = LocalProcessPlacement(workdir=tmp_path, terminate_grace_seconds=5.0)
    try:
        handle = placement.launch_unit(_unit("unit-sleep", sys.executable, "-c", "import time; time.sleep(60)"))
        placement.terminate_unit(handle)
        (exit_,) = _wait_for_exits(placement, 1)
        placement.terminate_unit(handle)
    finally:
        placement.close()
    assert not exit_.succeeded


def test_missing_binary_is_a_launch_error(tmp_path) -> None:
    placement = LocalProcessPlacement(workdir=tmp_path)
    with pytest.raises(LaunchError):
        placement.launch_unit(_unit("unit-missing", str(tmp_path / "no-such-binary")))
