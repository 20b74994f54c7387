"""
Staleness gating for the expensive global refresh (package index update).

The last successful refresh is persisted as the modification time of a marker
file. The refresh runs when the marker is missing or older than the freshness
window, and the marker is moved to "now" only after the refresh succeeded, so
a failed refresh is retried on the next run.

Clock and marker storage are injected so tests can simulate time without
touching the real filesystem.
"""

from __future__ import annotations

import os
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

import structlog

from prefab.constants import (
    REFRESH_COMMAND,
    REFRESH_FRESHNESS_WINDOW,
    REFRESH_MARKER_NAME,
    REFRESH_TIMEOUT_SECONDS,
)
from prefab.control_plane.commands import CommandTimeoutError, SubprocessCommandRunner
from prefab.domain.errors import RefreshError, StateSetupError
from prefab.utils.fs import STATE_DIR_MODE, ensure_directory

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from prefab.control_plane.commands import CommandRunner


class MarkerStore(Protocol):
    """Persistent "last successful refresh" timestamp."""

    def prepare(self) -> None: ...

    def modified_at(self) -> datetime | None: ...

    def touch(self, when: datetime) -> None: ...


class FileMarkerStore:
    """Marker kept as a file whose mtime is the last successful refresh."""

    def __init__(
        self,
        state_dir: Path | str,
        marker_name: str = REFRESH_MARKER_NAME,
        *,
        dir_mode: int = STATE_DIR_MODE,
    ) -> None:
        if not marker_name or "/" in marker_name:
            raise ValueError("marker_name must be a bare file name")
        self._state_dir = Path(state_dir)
        self._path = self._state_dir / marker_name
        self._dir_mode = dir_mode

    @property
    def path(self) -> Path:
        return self._path

    def prepare(self) -> None:
        try:
            ensure_directory(self._state_dir, mode=self._dir_mode)
        except OSError as exc:
            raise StateSetupError(
                f"unable to create state directory {self._state_dir!s}: {exc}"
            ) from exc

    def modified_at(self) -> datetime | None:
        try:
            stat_result = self._path.stat()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise StateSetupError(f"unable to stat refresh marker {self._path!s}: {exc}") from exc
        return datetime.fromtimestamp(stat_result.st_mtime, tz=UTC)

    def touch(self, when: datetime) -> None:
        timestamp = _coerce_datetime_utc(when).timestamp()
        try:
            self._path.touch(exist_ok=True)
            os.utime(self._path, (timestamp, timestamp))
        except OSError as exc:
            raise StateSetupError(
                f"unable to update refresh marker {self._path!s}: {exc}"
            ) from exc


class StalenessCache:
    """Runs the global refresh at most once per freshness window."""

    def __init__(
        self,
        *,
        marker_store: MarkerStore,
        command_runner: CommandRunner | None = None,
        refresh_command: Sequence[str] = REFRESH_COMMAND,
        freshness_window: timedelta = REFRESH_FRESHNESS_WINDOW,
        timeout_seconds: float = REFRESH_TIMEOUT_SECONDS,
        now_provider: Callable[[], datetime] | None = None,
        logger: Any | None = None,
    ) -> None:
        if not refresh_command:
            raise ValueError("refresh_command must not be empty")
        if freshness_window <= timedelta(0):
            raise ValueError("freshness_window must be positive")
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")

        self._marker_store = marker_store
        self._command_runner = command_runner or SubprocessCommandRunner()
        self._refresh_command = tuple(refresh_command)
        self._freshness_window = freshness_window
        self._timeout_seconds = timeout_seconds
        self._now = now_provider or _utc_now
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def refresh_command(self) -> tuple[str, ...]:
        return self._refresh_command

    def is_stale(self) -> bool:
        last_refresh = self._marker_store.modified_at()
        if last_refresh is None:
            return True
        now = _coerce_datetime_utc(self._now())
        return _coerce_datetime_utc(last_refresh) < now - self._freshness_window

    def ensure_fresh(self) -> bool:
        """Refresh if the marker is missing or stale; return whether a refresh ran."""

        self._marker_store.prepare()
        if not self.is_stale():
            self._logger.debug("refresh.fresh")
            return False
        self._logger.info("refresh.stale")

        self._run_refresh()
        self._marker_store.touch(self._now())
        return True

    def force_refresh(self) -> None:
        """Refresh unconditionally, e.g. after new package sources were registered."""

        self._marker_store.prepare()
        self._run_refresh()
        self._marker_store.touch(self._now())

    def _run_refresh(self) -> None:
        command = self._refresh_command
        self._logger.info("refresh.run", command=" ".join(command))
        try:
            result = self._command_runner.run(command, timeout_seconds=self._timeout_seconds)
        except CommandTimeoutError as exc:
            self._logger.error(
                "refresh.timeout",
                command=" ".join(command),
                timeout_seconds=self._timeout_seconds,
                output=exc.output,
            )
            raise RefreshError(command=command, returncode=None, output=exc.output) from exc
        except OSError as exc:
            self._logger.error("refresh.unavailable", command=" ".join(command), error=str(exc))
            raise RefreshError(command=command, returncode=127, output=str(exc)) from exc

        if not result.ok:
            self._logger.error(
                "refresh.failed",
                command=" ".join(command),
                returncode=result.returncode,
                output=result.output,
            )
            raise RefreshError(command=command, returncode=result.returncode, output=result.output)


def _coerce_datetime_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


__all__ = ["FileMarkerStore", "MarkerStore", "StalenessCache"]
