"""Executable CLI entrypoint for ``prefab``."""

from __future__ import annotations

import asyncio
import sys
import traceback
from enum import IntEnum
from typing import TYPE_CHECKING

from prefab.config.loader import ConfigLoadError
from prefab.config.schema import ConfigValidationError
from prefab.domain.errors import (
    BackendLoadError,
    ConvergenceCancelledError,
    FetchCancelledError,
    LocatorError,
    ManifestLoadError,
    RefreshError,
    ResourceApplyError,
    StateSetupError,
)

if TYPE_CHECKING:
    from collections.abc import Sequence


class ExitCode(IntEnum):
    """Process exit-code contract."""

    SUCCESS = 0
    CONVERGENCE_FAILED = 1
    CONFIG_ERROR = 2
    HOST_ERROR = 3
    INTERNAL_ERROR = 4
    CANCELLED = 130


_ROUTES: tuple[tuple[tuple[type[BaseException], ...], ExitCode], ...] = (
    (
        (ConvergenceCancelledError, FetchCancelledError, KeyboardInterrupt, asyncio.CancelledError),
        ExitCode.CANCELLED,
    ),
    ((ResourceApplyError,), ExitCode.CONVERGENCE_FAILED),
    (
        (ConfigLoadError, ConfigValidationError, ManifestLoadError, LocatorError),
        ExitCode.CONFIG_ERROR,
    ),
    ((RefreshError, StateSetupError, BackendLoadError), ExitCode.HOST_ERROR),
)


def cli_entrypoint(argv: Sequence[str] | None = None) -> int:
    """Entrypoint used by ``python -m prefab`` and the console script."""

    try:
        from prefab.ui.cli import run_cli

        return _normalize_exit_code(run_cli(argv))
    except SystemExit as exc:
        return _normalize_exit_code(exc.code)
    except BaseException as exc:  # noqa: BLE001 - CLI boundary normalization.
        exit_code = exit_code_for(exc)
        _emit_failure(exc, exit_code)
        return int(exit_code)


def exit_code_for(exc: BaseException) -> ExitCode:
    """Map an exception (or anything in its cause chain) to a process exit code."""

    for item in _iter_exception_chain(exc):
        for error_types, exit_code in _ROUTES:
            if isinstance(item, error_types):
                return exit_code
    return ExitCode.INTERNAL_ERROR


def _normalize_exit_code(raw_code: object) -> int:
    if isinstance(raw_code, int) and raw_code in {int(code) for code in ExitCode}:
        return raw_code
    if raw_code is None:
        return int(ExitCode.SUCCESS)
    if isinstance(raw_code, str) and raw_code.strip():
        _write_stderr(raw_code.strip())
    return int(ExitCode.INTERNAL_ERROR)


def _iter_exception_chain(exc: BaseException) -> list[BaseException]:
    seen: set[int] = set()
    items: list[BaseException] = []
    current: BaseException | None = exc
    while current is not None:
        marker = id(current)
        if marker in seen:
            break
        seen.add(marker)
        items.append(current)
        if current.__cause__ is not None:
            current = current.__cause__
            continue
        if current.__context__ is not None and not current.__suppress_context__:
            current = current.__context__
            continue
        break
    return items


def _emit_failure(exc: BaseException, exit_code: ExitCode) -> None:
    if exit_code is ExitCode.INTERNAL_ERROR:
        traceback.print_exception(type(exc), exc, exc.__traceback__, file=sys.stderr)
        return
    _write_stderr(f"error: {str(exc).strip() or exc.__class__.__name__}")


def _write_stderr(message: str) -> None:
    sys.stderr.write(message.rstrip("\n") + "\n")


__all__ = ["ExitCode", "cli_entrypoint", "exit_code_for"]
