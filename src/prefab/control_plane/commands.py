"""Injectable process execution used by the refresh step."""

from __future__ import annotations

import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from collections.abc import Sequence


class CommandTimeoutError(TimeoutError):
    """Raised by a runner when a command exceeds its timeout."""

    def __init__(self, command: Sequence[str], timeout_seconds: float, output: str = "") -> None:
        self.command = tuple(command)
        self.timeout_seconds = timeout_seconds
        self.output = output
        super().__init__(f"command timed out after {timeout_seconds} seconds: {' '.join(command)}")


@dataclass(frozen=True, slots=True)
class CommandExecutionResult:
    """Normalized subprocess execution result."""

    command: tuple[str, ...]
    returncode: int
    output: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class CommandRunner(Protocol):
    """Injectable command runner used for deterministic/offline testing."""

    def run(
        self,
        command: Sequence[str],
        *,
        timeout_seconds: float,
        cwd: Path | None = None,
    ) -> CommandExecutionResult: ...


class SubprocessCommandRunner:
    """Default command runner backed by ``subprocess.run``; stderr is merged into stdout."""

    def run(
        self,
        command: Sequence[str],
        *,
        timeout_seconds: float,
        cwd: Path | None = None,
    ) -> CommandExecutionResult:
        try:
            completed = subprocess.run(
                list(command),
                cwd=cwd,
                check=False,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                timeout=timeout_seconds,
            )
        except subprocess.TimeoutExpired as exc:
            raise CommandTimeoutError(command, timeout_seconds, _decode(exc.output)) from exc

        return CommandExecutionResult(
            command=tuple(command),
            returncode=completed.returncode,
            output=completed.stdout or "",
        )


def _decode(raw: str | bytes | None) -> str:
    if raw is None:
        return ""
    if isinstance(raw, bytes):
        return raw.decode("utf-8", errors="replace")
    return raw


__all__ = [
    "CommandExecutionResult",
    "CommandRunner",
    "CommandTimeoutError",
    "SubprocessCommandRunner",
]
