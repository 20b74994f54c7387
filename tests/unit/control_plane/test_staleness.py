"""Unit tests for the staleness-gated package index refresh."""

from __future__ import annotations

import os
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING

import pytest

from prefab.control_plane.commands import CommandExecutionResult, CommandTimeoutError
from prefab.control_plane.staleness import FileMarkerStore, StalenessCache
from prefab.domain.errors import RefreshError, StateSetupError

if TYPE_CHECKING:
    from collections.abc import Sequence

_NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=UTC)


class _FakeMarkerStore:
    def __init__(self, modified: datetime | None = None) -> None:
        self.modified = modified
        self.prepared = 0
        self.touches: list[datetime] = []

    def prepare(self) -> None:
        self.prepared += 1

    def modified_at(self) -> datetime | None:
        return self.modified

    def touch(self, when: datetime) -> None:
        self.touches.append(when)
        self.modified = when


class _RecordingRunner:
    def __init__(self, *, returncode: int = 0, output: str = "", timeout: bool = False) -> None:
        self.returncode = returncode
        self.output = output
        self.timeout = timeout
        self.calls: list[tuple[tuple[str, ...], float]] = []

    def run(
        self,
        command: Sequence[str],
        *,
        timeout_seconds: float,
        cwd: Path | None = None,
    ) -> CommandExecutionResult:
        self.calls.append((tuple(command), timeout_seconds))
        if self.timeout:
            raise CommandTimeoutError(command, timeout_seconds, self.output)
        return CommandExecutionResult(tuple(command), self.returncode, self.output)


class _MissingBinaryRunner:
    def run(
        self,
        command: Sequence[str],
        *,
        timeout_seconds: float,
        cwd: Path | None = None,
    ) -> CommandExecutionResult:
        raise FileNotFoundError(2, "No such file or directory", command[0])


def _cache(store: _FakeMarkerStore, runner: object) -> StalenessCache:
    return StalenessCache(
        marker_store=store,
        command_runner=runner,  # type: ignore[arg-type]
        refresh_command=("apt-get", "update"),
        timeout_seconds=30.0,
        now_provider=lambda: _NOW,
    )


def test_stale_marker_triggers_refresh_and_moves_marker_to_now() -> None:
    store = _FakeMarkerStore(_NOW - timedelta(days=8))
    runner = _RecordingRunner()

    assert _cache(store, runner).ensure_fresh() is True

    assert runner.calls == [(("apt-get", "update"), 30.0)]
    assert store.touches == [_NOW]
    assert store.prepared == 1


def test_fresh_marker_skips_refresh() -> None:
    store = _FakeMarkerStore(_NOW - timedelta(days=1))
    runner = _RecordingRunner()

    cache = _cache(store, runner)

    assert cache.ensure_fresh() is False
    assert cache.is_stale() is False
    assert runner.calls == []
    assert store.touches == []


def test_missing_marker_refreshes_and_creates_marker() -> None:
    store = _FakeMarkerStore(None)
    runner = _RecordingRunner()

    cache = _cache(store, runner)

    assert cache.is_stale() is True
    assert cache.ensure_fresh() is True
    assert store.touches == [_NOW]


def test_marker_exactly_at_window_edge_is_fresh() -> None:
    store = _FakeMarkerStore(_NOW - timedelta(days=7))
    runner = _RecordingRunner()

    assert _cache(store, runner).ensure_fresh() is False
    assert runner.calls == []


@pytest.mark.parametrize("modified", [None, _NOW - timedelta(days=30)])
def test_failed_refresh_raises_and_leaves_marker_untouched(modified: datetime | None) -> None:
    store = _FakeMarkerStore(modified)
    runner = _RecordingRunner(returncode=100, output="E: Could not get lock")

    with pytest.raises(RefreshError) as excinfo:
        _cache(store, runner).ensure_fresh()

    assert excinfo.value.returncode == 100
    assert excinfo.value.output == "E: Could not get lock"
    assert excinfo.value.command == ("apt-get", "update")
    assert store.touches == []
    assert store.modified == modified


def test_refresh_timeout_is_a_refresh_error() -> None:
    store = _FakeMarkerStore(None)
    runner = _RecordingRunner(timeout=True, output="Hit:1 http://archive")

    with pytest.raises(RefreshError) as excinfo:
        _cache(store, runner).ensure_fresh()

    assert excinfo.value.returncode is None
    assert "timed out" in str(excinfo.value)
    assert store.touches == []


def test_missing_refresh_binary_is_a_refresh_error() -> None:
    store = _FakeMarkerStore(None)

    with pytest.raises(RefreshError) as excinfo:
        _cache(store, _MissingBinaryRunner()).ensure_fresh()

    assert excinfo.value.returncode == 127
    assert store.touches == []


def test_force_refresh_runs_even_when_fresh() -> None:
    store = _FakeMarkerStore(_NOW - timedelta(hours=1))
    runner = _RecordingRunner()

    _cache(store, runner).force_refresh()

    assert len(runner.calls) == 1
    assert store.touches == [_NOW]


def test_constructor_rejects_invalid_settings() -> None:
    store = _FakeMarkerStore()
    with pytest.raises(ValueError):
        StalenessCache(marker_store=store, refresh_command=())
    with pytest.raises(ValueError):
        StalenessCache(marker_store=store, freshness_window=timedelta(0))
    with pytest.raises(ValueError):
        StalenessCache(marker_store=store, timeout_seconds=0)


def test_file_marker_store_round_trips_mtime(tmp_path: Path) -> None:
    store = FileMarkerStore(tmp_path / "state", "apt-update")

    store.prepare()
    assert (tmp_path / "state").is_dir()
    assert store.modified_at() is None

    store.touch(_NOW)
    assert store.path.exists()
    assert store.modified_at() == _NOW


def test_file_marker_store_drives_staleness_with_real_file(tmp_path: Path) -> None:
    store = FileMarkerStore(tmp_path, "apt-update")
    marker = tmp_path / "apt-update"
    marker.touch()
    old = (_NOW - timedelta(days=8)).timestamp()
    os.utime(marker, (old, old))
    runner = _RecordingRunner()

    cache = StalenessCache(
        marker_store=store,
        command_runner=runner,
        now_provider=lambda: _NOW,
    )

    assert cache.ensure_fresh() is True
    assert marker.stat().st_mtime == pytest.approx(_NOW.timestamp())
    assert cache.ensure_fresh() is False
    assert len(runner.calls) == 1


def test_file_marker_store_reports_unusable_state_dir(tmp_path: Path) -> None:
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("", encoding="utf-8")
    store = FileMarkerStore(blocker / "state")

    with pytest.raises(StateSetupError):
        store.prepare()


def test_file_marker_store_rejects_nested_marker_name(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        FileMarkerStore(tmp_path, "nested/marker")
