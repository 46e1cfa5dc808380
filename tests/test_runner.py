"""Tests for subprocess primitives."""

from __future__ import annotations

import time

import pytest

from workspace_host.errors import ExecutionTimeout, SpawnError
from workspace_host.runner import create_runner, run_command


async def test_run_command_captures_streams(tmp_path):
    result = await run_command("echo out; echo err >&2; pwd", str(tmp_path), timeout=10)

    assert result.exit_code == 0
    assert result.stdout.splitlines() == ["out", str(tmp_path)]
    assert result.stderr == "err\n"


async def test_run_command_reports_nonzero_exit(tmp_path):
    result = await run_command("exit 3", str(tmp_path), timeout=10)
    assert result.exit_code == 3


async def test_run_command_times_out_and_kills(tmp_path):
    started = time.monotonic()
    with pytest.raises(ExecutionTimeout) as exc_info:
        await run_command("sleep 30", str(tmp_path), timeout=0.5)

    assert time.monotonic() - started < 10
    assert exc_info.value.exit_code == 124


async def test_run_command_in_missing_directory_is_a_spawn_error(tmp_path):
    with pytest.raises(SpawnError):
        await run_command("true", str(tmp_path / "missing"), timeout=10)


async def test_runner_kill_terminates_process_group(tmp_path):
    runner = await create_runner("sleep 30 & sleep 30; wait", str(tmp_path), None)
    assert runner.returncode is None

    runner.kill()
    exit_code = await runner.wait()

    assert exit_code != 0
    assert runner.returncode == exit_code


async def test_create_runner_spawn_error(tmp_path):
    with pytest.raises(SpawnError):
        await create_runner("true", str(tmp_path / "missing"), None)
