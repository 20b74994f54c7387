"""Unit tests for the subprocess-backed command runner."""

from __future__ import annotations

import sys

import pytest

from prefab.control_plane.commands import CommandTimeoutError, SubprocessCommandRunner


def test_runner_merges_stderr_into_output() -> None:
    runner = SubprocessCommandRunner()

    result = runner.run(
        [sys.executable, "-c", "import sys; print('out'); print('err', file=sys.stderr)"],
        timeout_seconds=30,
    )

    assert result.ok
    assert "out" in result.output
    assert "err" in result.output


def test_runner_reports_nonzero_exit_without_raising() -> None:
    result = SubprocessCommandRunner().run(
        [sys.executable, "-c", "raise SystemExit(3)"], timeout_seconds=30
    )

    assert result.returncode == 3
    assert not result.ok


def test_runner_raises_timeout_error() -> None:
    with pytest.raises(CommandTimeoutError) as excinfo:
        SubprocessCommandRunner().run(
            [sys.executable, "-c", "import time; time.sleep(5)"], timeout_seconds=0.2
        )

    assert excinfo.value.timeout_seconds == 0.2
    assert isinstance(excinfo.value, TimeoutError)
