"""Command-line interface router for prefab."""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import signal
import sys
import uuid
from collections.abc import Awaitable, Callable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Final, TypeVar

from prefab.config import (
    ConfigLoadError,
    ConfigValidationError,
    dump_effective_config,
    load_config,
    parse_override_pairs,
)
from prefab.control_plane import (
    ConvergenceEngine,
    ConvergenceReport,
    FetchReport,
    fetch_pool_from_config,
    staleness_from_config,
)
from prefab.domain import BackendLoadError, Manifest, PrefabError, ResourceKind
from prefab.ingestion import load_backend, load_manifests
from prefab.main import ExitCode, exit_code_for
from prefab.observability import correlation_scope, setup_logging, shutdown_logging
from prefab.ui.render import CLIRenderer, create_renderer
from prefab.utils.concurrency import CancellationToken
from prefab.utils.fs import atomic_write

BACKEND_ENV: Final[str] = "PREFAB_BACKEND"

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    message: str
    exit_code: int = int(ExitCode.CONVERGENCE_FAILED)

    def __str__(self) -> str:
        return self.message


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router."""

    parser = argparse.ArgumentParser(
        prog="prefab",
        description=(
            "prefab: converge a host to a declarative manifest.\n\n"
            "Common workflows:\n"
            "  prefab converge host.yaml --backend mypkg.apt:Backend\n"
            "  prefab refresh                Update the package index if stale\n"
            "  prefab fetch URL...           Warm the package archive cache\n"
            "  prefab merge a.yaml b.yaml    Show the merged manifest\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to prefab TOML config (default: ./prefab.toml if present).",
    )
    common.add_argument(
        "--set",
        dest="overrides",
        action="append",
        default=[],
        metavar="SECTION.KEY=VALUE",
        help="Override one config value; may be repeated.",
    )
    common.add_argument(
        "--json",
        action="store_true",
        default=False,
        help="Emit a single JSON object on stdout.",
    )
    common.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        default=False,
        help="Show detailed output.",
    )
    common.add_argument(
        "--no-color",
        action="store_true",
        default=False,
        help="Disable colored output (also respects NO_COLOR env var).",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # converge ------------------------------------------------------------
    converge_parser = subparsers.add_parser(
        "converge",
        parents=[common],
        help="Apply one or more manifests to this host.",
    )
    converge_parser.add_argument("manifests", nargs="+", help="Manifest documents, merged in order.")
    converge_parser.add_argument(
        "--backend",
        default=None,
        help=f"Resource backend as module:attribute (default: ${BACKEND_ENV}).",
    )
    converge_parser.set_defaults(handler=_cmd_converge)

    # refresh -------------------------------------------------------------
    refresh_parser = subparsers.add_parser(
        "refresh",
        parents=[common],
        help="Run the package index refresh when the marker is stale.",
    )
    refresh_parser.add_argument(
        "--force",
        action="store_true",
        default=False,
        help="Refresh even if the marker is fresh.",
    )
    refresh_parser.set_defaults(handler=_cmd_refresh)

    # fetch ---------------------------------------------------------------
    fetch_parser = subparsers.add_parser(
        "fetch",
        parents=[common],
        help="Download artifacts into the package archive cache.",
    )
    fetch_parser.add_argument("urls", nargs="+", help="Artifact URLs.")
    fetch_parser.add_argument(
        "--concurrency",
        type=int,
        default=None,
        help="Number of concurrent downloads (default: fetch.concurrency).",
    )
    fetch_parser.set_defaults(handler=_cmd_fetch)

    # merge ---------------------------------------------------------------
    merge_parser = subparsers.add_parser(
        "merge",
        parents=[common],
        help="Merge manifest documents without applying them.",
    )
    merge_parser.add_argument("manifests", nargs="+", help="Manifest documents, merged in order.")
    merge_parser.add_argument(
        "--output",
        default=None,
        help="Write the merged manifest document (JSON) to this path.",
    )
    merge_parser.set_defaults(handler=_cmd_merge)

    # config --------------------------------------------------------------
    config_parser = subparsers.add_parser(
        "config",
        parents=[common],
        help="Show the effective configuration.",
    )
    config_parser.set_defaults(handler=_cmd_config)

    return parser


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return int(ExitCode.CONFIG_ERROR)

    try:
        result = handler(namespace)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    except (PrefabError, ConfigLoadError, ConfigValidationError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return int(exit_code_for(exc))
    return int(result)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_converge(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    backend_ref = _optional_str(getattr(args, "backend", None)) or _optional_str(
        os.environ.get(BACKEND_ENV)
    )
    if backend_ref is None:
        raise CLIError(
            f"converge needs --backend module:attribute (or ${BACKEND_ENV})",
            exit_code=int(ExitCode.CONFIG_ERROR),
        )

    backend = load_backend(backend_ref)
    manifest = load_manifests(args.manifests, backend=backend)
    tool_package = config["archives"]["tool_package"]
    archive_tool = None
    if tool_package is not None:
        try:
            archive_tool = backend.archive_tool(tool_package)
        except Exception as exc:  # noqa: BLE001 - third-party backend boundary.
            raise BackendLoadError(
                f"backend {backend_ref!r} failed to build archive tool {tool_package!r}: {exc}"
            ) from exc

    with _logging_session(config, "converge"):
        report = _run_cancellable(
            lambda token: ConvergenceEngine.from_config(
                config, archive_tool=archive_tool, cancel_token=token
            ).converge(manifest)
        )

    if _flag(args, "json"):
        _emit_json({"command": "converge", "declared": manifest.counts(), **report.to_dict()})
        return int(ExitCode.SUCCESS)

    renderer = _get_renderer(args)
    _render_convergence(renderer, manifest, report)
    return int(ExitCode.SUCCESS)


def _cmd_refresh(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    cache = staleness_from_config(config)
    forced = _flag(args, "force")

    with _logging_session(config, "refresh"):
        if forced:
            cache.force_refresh()
            refreshed = True
        else:
            refreshed = cache.ensure_fresh()

    if _flag(args, "json"):
        _emit_json({"command": "refresh", "forced": forced, "refreshed": refreshed})
        return int(ExitCode.SUCCESS)

    _get_renderer(args).status("refresh", changed=refreshed)
    return int(ExitCode.SUCCESS)


def _cmd_fetch(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    concurrency = getattr(args, "concurrency", None)
    if concurrency is not None and concurrency <= 0:
        raise CLIError("--concurrency must be > 0", exit_code=int(ExitCode.CONFIG_ERROR))

    with _logging_session(config, "fetch"):
        report = _run_cancellable(
            lambda token: fetch_pool_from_config(config, cancel_token=token).fetch_all(
                args.urls, concurrency=concurrency
            )
        )

    exit_code = ExitCode.CONVERGENCE_FAILED if report.failed else ExitCode.SUCCESS
    if _flag(args, "json"):
        _emit_json({"command": "fetch", **report.to_dict()})
        return int(exit_code)

    renderer = _get_renderer(args)
    renderer.kv("fetched", len(report.fetched))
    renderer.kv("skipped", len(report.skipped))
    _render_fetch_failures(renderer, report)
    return int(exit_code)


def _cmd_merge(args: argparse.Namespace) -> int:
    manifest = load_manifests(args.manifests)
    document = manifest_document(manifest)

    output = _optional_str(getattr(args, "output", None))
    if output is not None:
        atomic_write(output, json.dumps(document, indent=2, sort_keys=True, default=str) + "\n")

    if _flag(args, "json"):
        _emit_json({"command": "merge", "counts": manifest.counts(), "manifest": document})
        return int(ExitCode.SUCCESS)

    renderer = _get_renderer(args)
    rows = [
        (kind.document_key, str(len(manifest.items(kind))))
        for kind in ResourceKind
        if manifest.items(kind)
    ]
    renderer.table(("kind", "entries"), rows, title=f"Merged {len(args.manifests)} manifest(s):")
    if output is not None:
        renderer.kv("written", output)
    return int(ExitCode.SUCCESS)


def _cmd_config(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    if _flag(args, "json"):
        _emit_json({"command": "config", "config": config})
        return int(ExitCode.SUCCESS)
    _get_renderer(args).text(dump_effective_config(config))
    return int(ExitCode.SUCCESS)


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


def manifest_document(manifest: Manifest) -> dict[str, list[Any]]:
    """Render a backend-free manifest back into document form."""

    document: dict[str, list[Any]] = {}
    for kind in ResourceKind:
        entries = manifest.items(kind)
        if entries:
            document[kind.document_key] = [_plain(entry) for entry in entries]
    return document


def _render_convergence(
    renderer: CLIRenderer, manifest: Manifest, report: ConvergenceReport
) -> None:
    renderer.status("converge", changed=report.changed)
    declared = manifest.counts()
    rows = [
        (
            kind.document_key,
            str(declared[kind.value]),
            str(report.applied.get(kind.value, 0)),
            str(report.satisfied.get(kind.value, 0)),
        )
        for kind in ResourceKind
        if declared[kind.value]
    ]
    renderer.table(("kind", "declared", "applied", "satisfied"), rows)
    if report.refreshed or report.forced_refresh:
        renderer.kv("package index refreshed", "yes")
    if report.archive_tool_installed:
        renderer.kv("archive tool installed", "yes")
    if renderer.verbose:
        renderer.kv("artifacts fetched", len(report.fetch.fetched))
        renderer.kv("artifacts cached", len(report.fetch.skipped))
    _render_fetch_failures(renderer, report.fetch)


def _render_fetch_failures(renderer: CLIRenderer, report: FetchReport) -> None:
    for outcome in report.failed:
        renderer.warning(f"fetch failed for {outcome.locator.url}: {outcome.error}")


def _emit_json(payload: Mapping[str, object]) -> None:
    """Emit a JSON payload to stdout with deterministic formatting."""

    print(
        json.dumps(
            payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str
        )
    )


def _get_renderer(args: argparse.Namespace) -> CLIRenderer:
    return create_renderer(no_color=_flag(args, "no_color"), verbose=_flag(args, "verbose"))


# ---------------------------------------------------------------------------
# Helpers: config, logging, cancellation
# ---------------------------------------------------------------------------


def _load_effective_config(args: argparse.Namespace) -> dict[str, Any]:
    config_path = _optional_str(getattr(args, "config_path", None))
    overrides = parse_override_pairs(getattr(args, "overrides", None))
    return load_config(config_path, cli_overrides=overrides)


@contextmanager
def _logging_session(config: Mapping[str, Any], command: str) -> Iterator[str]:
    run_id = _new_run_id()
    log_dir = config["paths"]["log_dir"]
    try:
        handle = setup_logging(config["observability"], run_id=run_id, log_dir=log_dir)
    except OSError as exc:
        raise CLIError(
            f"unable to open log directory {log_dir}: {exc}",
            exit_code=int(ExitCode.CONFIG_ERROR),
        ) from exc
    try:
        with correlation_scope(command=command):
            yield run_id
    finally:
        shutdown_logging(handle)


def _run_cancellable(factory: Callable[[CancellationToken], Awaitable[T]]) -> T:
    """Run a coroutine on a fresh loop; SIGINT/SIGTERM cancel it cooperatively."""

    async def _main() -> T:
        token = CancellationToken()
        loop = asyncio.get_running_loop()
        installed: list[signal.Signals] = []
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, token.cancel)
            except (NotImplementedError, RuntimeError, ValueError):
                # Not the main thread, or no signal support on this platform.
                continue
            installed.append(signum)
        try:
            return await factory(token)
        finally:
            for signum in installed:
                loop.remove_signal_handler(signum)

    return asyncio.run(_main())


def _new_run_id() -> str:
    stamp = datetime.now(tz=UTC).strftime("%Y%m%dT%H%M%SZ")
    return f"{stamp}-{uuid.uuid4().hex[:8]}"


def _plain(value: object) -> Any:
    if isinstance(value, Mapping):
        return {str(key): _plain(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(item) for item in value]
    return value


def _optional_str(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    stripped = value.strip()
    return stripped or None


def _flag(args: argparse.Namespace, name: str) -> bool:
    return bool(getattr(args, name, False))


__all__ = ["CLIError", "build_parser", "manifest_document", "run_cli"]
