"""
Convergence engine: applies a manifest to the host in a fixed kind order.

Phase order (each phase runs to completion, in manifest order, before the
next one starts; the first failure aborts the run):

1. users
2. staleness-gated global refresh
3. source lists (a newly applied entry requests a refresh)
4. archive-registration tool, when package archives are declared
5. package archives (a newly applied entry requests a refresh)
6. forced refresh, when requested by steps 3 or 5
7. package partition into satisfied / needs install
8. concurrent archive fetch (full join), then sequential installs
9. tarballs, directories, templates, symlinks, databases, database users,
   bundles, services

Every resource is applied as "check, then apply if not satisfied", so a
second pass over a converged host performs no mutating calls.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import timedelta
from typing import TYPE_CHECKING, Any, Final

import structlog

from prefab.control_plane.fetch_pool import FetchPool, FetchReport
from prefab.control_plane.staleness import FileMarkerStore, StalenessCache
from prefab.domain.errors import (
    ConvergenceCancelledError,
    FetchCancelledError,
    LocatorError,
    PackageInstallError,
    ResourceApplyError,
)
from prefab.domain.resources import Locator, ResourceKind, describe_resource
from prefab.observability.logging import correlation_scope
from prefab.utils.concurrency import CancellationToken

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping, Sequence

    import httpx

    from prefab.control_plane.commands import CommandRunner
    from prefab.domain.manifest import Manifest
    from prefab.domain.resources import PackageResource, Resource

TRAILING_PHASES: Final[tuple[ResourceKind, ...]] = (
    ResourceKind.TARBALLS,
    ResourceKind.DIRECTORIES,
    ResourceKind.TEMPLATES,
    ResourceKind.SYMLINKS,
    ResourceKind.DATABASES,
    ResourceKind.DATABASE_USERS,
    ResourceKind.BUNDLES,
    ResourceKind.SERVICES,
)


@dataclass(slots=True)
class _KindTally:
    applied: int = 0
    satisfied: int = 0


@dataclass(frozen=True, slots=True)
class ConvergenceReport:
    """Summary of a successful convergence pass."""

    applied: Mapping[str, int]
    satisfied: Mapping[str, int]
    refreshed: bool
    forced_refresh: bool
    archive_tool_installed: bool
    fetch: FetchReport = field(default_factory=FetchReport)

    @property
    def changed(self) -> bool:
        return (
            any(self.applied.values())
            or self.refreshed
            or self.forced_refresh
            or self.archive_tool_installed
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "applied": dict(self.applied),
            "satisfied": dict(self.satisfied),
            "refreshed": self.refreshed,
            "forced_refresh": self.forced_refresh,
            "archive_tool_installed": self.archive_tool_installed,
            "fetch": self.fetch.to_dict(),
            "changed": self.changed,
        }


class ConvergenceEngine:
    """Orchestrates one convergence pass over a manifest of appliers."""

    def __init__(
        self,
        *,
        staleness: StalenessCache,
        fetch_pool: FetchPool,
        archive_tool: PackageResource | None = None,
        cancel_token: CancellationToken | None = None,
        logger: Any | None = None,
    ) -> None:
        self._staleness = staleness
        self._fetch_pool = fetch_pool
        self._archive_tool = archive_tool
        self._token = cancel_token or CancellationToken()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @classmethod
    def from_config(
        cls,
        config: Mapping[str, Any],
        *,
        archive_tool: PackageResource | None = None,
        cancel_token: CancellationToken | None = None,
        command_runner: CommandRunner | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        now_provider: Callable[[], Any] | None = None,
    ) -> ConvergenceEngine:
        """Wire the staleness cache and fetch pool from a validated config mapping."""

        token = cancel_token or CancellationToken()
        return cls(
            staleness=staleness_from_config(
                config, command_runner=command_runner, now_provider=now_provider
            ),
            fetch_pool=fetch_pool_from_config(config, transport=transport, cancel_token=token),
            archive_tool=archive_tool,
            cancel_token=token,
        )

    async def converge(self, manifest: Manifest) -> ConvergenceReport:
        tallies = {kind: _KindTally() for kind in ResourceKind}

        with correlation_scope(phase=ResourceKind.USERS.value):
            await self._apply_phase(ResourceKind.USERS, manifest.users, tallies)

        with correlation_scope(phase="refresh"):
            refreshed = await self._call(self._staleness.ensure_fresh)

        refresh_needed = False
        with correlation_scope(phase=ResourceKind.SOURCE_LISTS.value):
            if await self._apply_phase(ResourceKind.SOURCE_LISTS, manifest.source_lists, tallies):
                refresh_needed = True

        archive_tool_installed = False
        with correlation_scope(phase=ResourceKind.PACKAGE_ARCHIVES.value):
            if manifest.package_archives:
                archive_tool_installed = await self._ensure_archive_tool()
            if await self._apply_phase(
                ResourceKind.PACKAGE_ARCHIVES, manifest.package_archives, tallies
            ):
                refresh_needed = True

        if refresh_needed:
            with correlation_scope(phase="refresh"):
                self._logger.info("refresh.forced", reason="new package sources")
                await self._call(self._staleness.force_refresh)

        with correlation_scope(phase=ResourceKind.PACKAGES.value):
            fetch_report = await self._converge_packages(manifest.packages, tallies)

        for kind in TRAILING_PHASES:
            with correlation_scope(phase=kind.value):
                await self._apply_phase(kind, manifest.items(kind), tallies)

        report = ConvergenceReport(
            applied={kind.value: tallies[kind].applied for kind in ResourceKind},
            satisfied={kind.value: tallies[kind].satisfied for kind in ResourceKind},
            refreshed=refreshed,
            forced_refresh=refresh_needed,
            archive_tool_installed=archive_tool_installed,
            fetch=fetch_report,
        )
        self._logger.info("converge.done", changed=report.changed)
        return report

    async def _apply_phase(
        self,
        kind: ResourceKind,
        resources: Sequence[Resource],
        tallies: dict[ResourceKind, _KindTally],
    ) -> bool:
        """Apply every resource of ``kind``; return whether any was newly applied."""

        applied_any = False
        for resource in resources:
            if await self._is_satisfied(kind, resource):
                tallies[kind].satisfied += 1
                continue
            await self._apply(kind, resource)
            tallies[kind].applied += 1
            applied_any = True
        return applied_any

    async def _ensure_archive_tool(self) -> bool:
        tool = self._archive_tool
        if tool is None:
            self._logger.warning("archive_tool.unconfigured")
            return False
        if await self._is_satisfied(ResourceKind.PACKAGES, tool, error_type=PackageInstallError):
            return False
        await self._apply(ResourceKind.PACKAGES, tool, error_type=PackageInstallError)
        return True

    async def _converge_packages(
        self,
        packages: Sequence[PackageResource],
        tallies: dict[ResourceKind, _KindTally],
    ) -> FetchReport:
        kind = ResourceKind.PACKAGES
        to_install: list[PackageResource] = []
        for package in packages:
            self._logger.info("package.check", package=describe_resource(package))
            if await self._is_satisfied(kind, package, error_type=PackageInstallError):
                tallies[kind].satisfied += 1
            else:
                to_install.append(package)

        if not to_install:
            return FetchReport()

        locators: list[Locator] = []
        for package in to_install:
            locators.extend(await self._archive_locators(package))

        self._check_cancelled()
        try:
            fetch_report = await self._fetch_pool.fetch_all(locators)
        except FetchCancelledError as exc:
            raise ConvergenceCancelledError("convergence cancelled while fetching") from exc

        for package in to_install:
            await self._apply(kind, package, error_type=PackageInstallError)
            tallies[kind].applied += 1
        return fetch_report

    async def _archive_locators(self, package: PackageResource) -> list[Locator]:
        try:
            raw = list(await self._call(package.archive_locators))
        except (ResourceApplyError, ConvergenceCancelledError):
            raise
        except Exception as exc:  # noqa: BLE001 - applier boundary normalization.
            raise PackageInstallError(
                kind=ResourceKind.PACKAGES,
                resource=describe_resource(package),
                reason=f"unable to resolve archive locators: {_reason(exc)}",
            ) from exc

        locators: list[Locator] = []
        for item in raw:
            try:
                locators.append(Locator.coerce(item))
            except ValueError as exc:
                raise LocatorError(
                    f"invalid artifact locator {item!r} for {describe_resource(package)}: {exc}"
                ) from exc
        return locators

    async def _is_satisfied(
        self,
        kind: ResourceKind,
        resource: Resource,
        *,
        error_type: type[ResourceApplyError] = ResourceApplyError,
    ) -> bool:
        try:
            return bool(await self._call(resource.is_satisfied))
        except (ResourceApplyError, ConvergenceCancelledError):
            raise
        except Exception as exc:  # noqa: BLE001 - applier boundary normalization.
            raise error_type(
                kind=kind,
                resource=describe_resource(resource),
                reason=f"state check failed: {_reason(exc)}",
            ) from exc

    async def _apply(
        self,
        kind: ResourceKind,
        resource: Resource,
        *,
        error_type: type[ResourceApplyError] = ResourceApplyError,
    ) -> None:
        label = describe_resource(resource)
        self._logger.info("resource.apply", kind=kind.value, resource=label)
        try:
            await self._call(resource.apply)
        except (ResourceApplyError, ConvergenceCancelledError):
            raise
        except Exception as exc:  # noqa: BLE001 - applier boundary normalization.
            self._logger.error(
                "resource.failed", kind=kind.value, resource=label, error=_reason(exc)
            )
            raise error_type(kind=kind, resource=label, reason=_reason(exc)) from exc

    async def _call(self, func: Callable[[], Any]) -> Any:
        # Appliers are blocking; cancellation is only observed between calls.
        self._check_cancelled()
        return await asyncio.to_thread(func)

    def _check_cancelled(self) -> None:
        if self._token.is_cancelled:
            raise ConvergenceCancelledError("convergence cancelled")


def staleness_from_config(
    config: Mapping[str, Any],
    *,
    command_runner: CommandRunner | None = None,
    now_provider: Callable[[], Any] | None = None,
) -> StalenessCache:
    paths = config["paths"]
    refresh = config["refresh"]
    return StalenessCache(
        marker_store=FileMarkerStore(paths["state_dir"], paths["marker_name"]),
        command_runner=command_runner,
        refresh_command=refresh["command"],
        freshness_window=timedelta(days=refresh["freshness_days"]),
        timeout_seconds=refresh["timeout_seconds"],
        now_provider=now_provider,
    )


def fetch_pool_from_config(
    config: Mapping[str, Any],
    *,
    transport: httpx.AsyncBaseTransport | None = None,
    cancel_token: CancellationToken | None = None,
) -> FetchPool:
    fetch = config["fetch"]
    return FetchPool(
        cache_dir=config["paths"]["archive_cache"],
        concurrency=fetch["concurrency"],
        timeout_seconds=fetch["timeout_seconds"],
        transport=transport,
        cancel_token=cancel_token,
    )


def _reason(exc: BaseException) -> str:
    return str(exc).strip() or exc.__class__.__name__


__all__ = [
    "TRAILING_PHASES",
    "ConvergenceEngine",
    "ConvergenceReport",
    "fetch_pool_from_config",
    "staleness_from_config",
]
