"""Unit tests for convergence phase ordering, gating, and failure handling."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING

import httpx
import pytest

from prefab.config.schema import default_config, merge_config
from prefab.control_plane.commands import CommandExecutionResult
from prefab.control_plane.engine import ConvergenceEngine
from prefab.control_plane.fetch_pool import FetchPool
from prefab.control_plane.staleness import StalenessCache
from prefab.domain import (
    ConvergenceCancelledError,
    FetchCancelledError,
    LocatorError,
    Manifest,
    PackageInstallError,
    RefreshError,
    ResourceApplyError,
    ResourceKind,
)
from prefab.utils.concurrency import CancellationToken

if TYPE_CHECKING:
    from collections.abc import Sequence

_NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=UTC)


class _Journal:
    def __init__(self) -> None:
        self.events: list[str] = []

    def mutations(self) -> list[str]:
        return [event for event in self.events if not event.startswith("check:")]


@dataclass
class _FakeResource:
    name: str
    journal: _Journal
    satisfied: bool = False
    fail_apply: Exception | None = None
    fail_check: Exception | None = None

    def describe(self) -> str:
        return self.name

    def is_satisfied(self) -> bool:
        self.journal.events.append(f"check:{self.name}")
        if self.fail_check is not None:
            raise self.fail_check
        return self.satisfied

    def apply(self) -> None:
        self.journal.events.append(f"apply:{self.name}")
        if self.fail_apply is not None:
            raise self.fail_apply
        self.satisfied = True


@dataclass
class _FakePackage(_FakeResource):
    locators: tuple[str, ...] = field(default_factory=tuple)

    @property
    def qualified_name(self) -> str:
        return self.name

    def archive_locators(self) -> Sequence[str]:
        return self.locators


class _FakeMarkerStore:
    def __init__(self, modified: datetime | None) -> None:
        self.modified = modified

    def prepare(self) -> None:
        return None

    def modified_at(self) -> datetime | None:
        return self.modified

    def touch(self, when: datetime) -> None:
        self.modified = when


class _JournalRunner:
    def __init__(self, journal: _Journal, *, returncode: int = 0) -> None:
        self.journal = journal
        self.returncode = returncode

    def run(
        self,
        command: Sequence[str],
        *,
        timeout_seconds: float,
        cwd: Path | None = None,
    ) -> CommandExecutionResult:
        self.journal.events.append("refresh")
        return CommandExecutionResult(tuple(command), self.returncode, "index output")


class _Mirror:
    def __init__(self, journal: _Journal, files: dict[str, bytes]) -> None:
        self.journal = journal
        self.files = files

    def __call__(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        self.journal.events.append(f"fetch:{url}")
        if url not in self.files:
            return httpx.Response(404)
        return httpx.Response(200, content=self.files[url])


@dataclass
class _Harness:
    journal: _Journal
    marker: _FakeMarkerStore
    cache_dir: Path
    engine: ConvergenceEngine


def _harness(
    tmp_path: Path,
    *,
    marker_age: timedelta | None = timedelta(days=1),
    files: dict[str, bytes] | None = None,
    archive_tool: _FakePackage | None = None,
    refresh_returncode: int = 0,
    cancel_token: CancellationToken | None = None,
    journal: _Journal | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> _Harness:
    journal = journal or _Journal()
    marker = _FakeMarkerStore(None if marker_age is None else _NOW - marker_age)
    staleness = StalenessCache(
        marker_store=marker,
        command_runner=_JournalRunner(journal, returncode=refresh_returncode),
        now_provider=lambda: _NOW,
    )
    cache_dir = tmp_path / "archives"
    fetch_pool = FetchPool(
        cache_dir=cache_dir,
        transport=transport or httpx.MockTransport(_Mirror(journal, files or {})),
        cancel_token=cancel_token,
    )
    engine = ConvergenceEngine(
        staleness=staleness,
        fetch_pool=fetch_pool,
        archive_tool=archive_tool,
        cancel_token=cancel_token,
    )
    return _Harness(journal, marker, cache_dir, engine)


async def test_phases_run_in_fixed_kind_order(tmp_path: Path) -> None:
    journal = _Journal()
    tool = _FakePackage("software-properties-common", journal)
    h = _harness(tmp_path, archive_tool=tool, journal=journal)

    def res(name: str) -> _FakeResource:
        return _FakeResource(name, journal)

    # Declared in a deliberately scrambled order.
    manifest = Manifest(
        services=(res("service"),),
        bundles=(res("bundle"),),
        database_users=(res("db-user"),),
        databases=(res("db"),),
        symlinks=(res("symlink"),),
        templates=(res("template"),),
        directories=(res("directory"),),
        tarballs=(res("tarball"),),
        packages=(_FakePackage("package", journal),),
        package_archives=(res("archive"),),
        source_lists=(res("source"),),
        users=(res("user"),),
    )

    report = await h.engine.converge(manifest)

    assert journal.mutations() == [
        "apply:user",
        "apply:source",
        "apply:software-properties-common",
        "apply:archive",
        "refresh",
        "apply:package",
        "apply:tarball",
        "apply:directory",
        "apply:template",
        "apply:symlink",
        "apply:db",
        "apply:db-user",
        "apply:bundle",
        "apply:service",
    ]
    assert report.forced_refresh is True
    assert report.refreshed is False
    assert report.archive_tool_installed is True
    assert all(count == 1 for count in report.applied.values())


async def test_second_pass_over_converged_host_applies_nothing(tmp_path: Path) -> None:
    journal = _Journal()
    h = _harness(tmp_path, files={"http://x/pkg.deb": b"deb"}, journal=journal)
    manifest = Manifest(
        source_lists=(_FakeResource("source", journal),),
        packages=(_FakePackage("nginx", journal, locators=("http://x/pkg.deb",)),),
        directories=(_FakeResource("/srv/www", journal),),
        services=(_FakeResource("nginx.service", journal),),
    )

    first = await h.engine.converge(manifest)
    journal.events.clear()
    second = await h.engine.converge(manifest)

    assert first.changed is True
    assert second.changed is False
    assert journal.mutations() == []
    assert second.satisfied["packages"] == 1
    assert second.satisfied["services"] == 1


async def test_directory_applies_before_template_regardless_of_declaration(tmp_path: Path) -> None:
    journal = _Journal()
    h = _harness(tmp_path, journal=journal)
    manifest = Manifest(
        templates=(_FakeResource("/etc/app/app.conf", journal),),
        directories=(_FakeResource("/etc/app", journal),),
    )

    await h.engine.converge(manifest)

    assert journal.mutations() == ["apply:/etc/app", "apply:/etc/app/app.conf"]


async def test_stale_marker_refreshes_once_without_forced_refresh(tmp_path: Path) -> None:
    journal = _Journal()
    h = _harness(tmp_path, marker_age=timedelta(days=8), journal=journal)
    manifest = Manifest(source_lists=(_FakeResource("source", journal, satisfied=True),))

    report = await h.engine.converge(manifest)

    assert journal.mutations() == ["refresh"]
    assert report.refreshed is True
    assert report.forced_refresh is False
    assert h.marker.modified == _NOW


async def test_satisfied_sources_do_not_force_refresh(tmp_path: Path) -> None:
    journal = _Journal()
    h = _harness(tmp_path, journal=journal)
    manifest = Manifest(
        source_lists=(_FakeResource("source", journal, satisfied=True),),
        package_archives=(_FakeResource("ppa", journal, satisfied=True),),
    )

    report = await h.engine.converge(manifest)

    assert "refresh" not in journal.events
    assert report.changed is False


async def test_archive_tool_is_only_checked_when_archives_are_declared(tmp_path: Path) -> None:
    journal = _Journal()
    tool = _FakePackage("software-properties-common", journal)
    h = _harness(tmp_path, archive_tool=tool, journal=journal)

    await h.engine.converge(Manifest(services=(_FakeResource("svc", journal),)))

    assert "check:software-properties-common" not in journal.events


async def test_missing_archive_tool_still_applies_archives(tmp_path: Path) -> None:
    journal = _Journal()
    h = _harness(tmp_path, archive_tool=None, journal=journal)

    report = await h.engine.converge(
        Manifest(package_archives=(_FakeResource("ppa", journal),))
    )

    assert journal.mutations() == ["apply:ppa", "refresh"]
    assert report.archive_tool_installed is False


async def test_first_failure_aborts_remaining_phases(tmp_path: Path) -> None:
    journal = _Journal()
    h = _harness(tmp_path, journal=journal)
    cause = PermissionError("permission denied")
    manifest = Manifest(
        directories=(
            _FakeResource("/srv/a", journal, fail_apply=cause),
            _FakeResource("/srv/b", journal),
        ),
        templates=(_FakeResource("/srv/a/conf", journal),),
    )

    with pytest.raises(ResourceApplyError) as excinfo:
        await h.engine.converge(manifest)

    assert excinfo.value.kind is ResourceKind.DIRECTORIES
    assert excinfo.value.resource == "/srv/a"
    assert excinfo.value.__cause__ is cause
    assert journal.mutations() == ["apply:/srv/a"]


async def test_failed_state_check_is_a_resource_error(tmp_path: Path) -> None:
    journal = _Journal()
    h = _harness(tmp_path, journal=journal)
    manifest = Manifest(users=(_FakeResource("deploy", journal, fail_check=OSError("getent")),))

    with pytest.raises(ResourceApplyError, match="state check failed"):
        await h.engine.converge(manifest)


async def test_package_install_failure_raises_package_install_error(tmp_path: Path) -> None:
    journal = _Journal()
    h = _harness(tmp_path, journal=journal)
    manifest = Manifest(
        packages=(_FakePackage("broken", journal, fail_apply=RuntimeError("dpkg exit 1")),),
        services=(_FakeResource("svc", journal),),
    )

    with pytest.raises(PackageInstallError) as excinfo:
        await h.engine.converge(manifest)

    assert excinfo.value.kind is ResourceKind.PACKAGES
    assert "apply:svc" not in journal.events


async def test_packages_are_fetched_before_any_install(tmp_path: Path) -> None:
    journal = _Journal()
    files = {"http://x/a.deb": b"a", "http://x/b.deb": b"b"}
    h = _harness(tmp_path, files=files, journal=journal)
    manifest = Manifest(
        packages=(
            _FakePackage("a", journal, locators=("http://x/a.deb",)),
            _FakePackage("b", journal, locators=("http://x/b.deb",)),
            _FakePackage("c", journal, satisfied=True, locators=("http://x/c.deb",)),
        )
    )

    report = await h.engine.converge(manifest)

    mutations = journal.mutations()
    assert sorted(mutations[:2]) == ["fetch:http://x/a.deb", "fetch:http://x/b.deb"]
    assert mutations[2:] == ["apply:a", "apply:b"]
    assert len(report.fetch.fetched) == 2


async def test_fetch_failure_does_not_abort_convergence(tmp_path: Path) -> None:
    journal = _Journal()
    h = _harness(tmp_path, files={}, journal=journal)
    manifest = Manifest(packages=(_FakePackage("pkg", journal, locators=("http://x/gone.deb",)),))

    report = await h.engine.converge(manifest)

    assert "apply:pkg" in journal.events
    assert [outcome.locator.url for outcome in report.fetch.failed] == ["http://x/gone.deb"]


async def test_refresh_failure_stops_before_source_lists(tmp_path: Path) -> None:
    journal = _Journal()
    h = _harness(tmp_path, marker_age=None, refresh_returncode=100, journal=journal)
    manifest = Manifest(
        users=(_FakeResource("deploy", journal),),
        source_lists=(_FakeResource("source", journal),),
    )

    with pytest.raises(RefreshError):
        await h.engine.converge(manifest)

    assert journal.mutations() == ["apply:deploy", "refresh"]
    assert h.marker.modified is None


async def test_cancelled_token_stops_before_first_resource(tmp_path: Path) -> None:
    journal = _Journal()
    token = CancellationToken()
    token.cancel()
    h = _harness(tmp_path, cancel_token=token, journal=journal)

    with pytest.raises(ConvergenceCancelledError):
        await h.engine.converge(Manifest(users=(_FakeResource("deploy", journal),)))

    assert journal.events == []


async def test_cancellation_during_fetch_skips_installs_and_later_phases(tmp_path: Path) -> None:
    journal = _Journal()
    token = CancellationToken()

    async def stall(request: httpx.Request) -> httpx.Response:
        journal.events.append(f"fetch:{request.url}")
        token.cancel()
        await asyncio.sleep(5)
        return httpx.Response(200, content=b"deb")

    h = _harness(
        tmp_path,
        cancel_token=token,
        journal=journal,
        transport=httpx.MockTransport(stall),
    )
    manifest = Manifest(
        packages=(_FakePackage("nginx", journal, locators=("http://x/pkg.deb",)),),
        services=(_FakeResource("nginx-service", journal),),
    )

    with pytest.raises(ConvergenceCancelledError) as excinfo:
        await asyncio.wait_for(h.engine.converge(manifest), timeout=2.0)

    assert isinstance(excinfo.value.__cause__, FetchCancelledError)
    assert "fetch:http://x/pkg.deb" in journal.events
    assert not [event for event in journal.events if event.startswith("apply:")]
    assert list(h.cache_dir.iterdir()) == []


@pytest.mark.parametrize("locator", ["ftp://x/a.deb", ""])
async def test_unusable_package_locator_aborts_before_any_install(
    tmp_path: Path, locator: str
) -> None:
    journal = _Journal()
    h = _harness(tmp_path, files={"http://x/b.deb": b"deb"}, journal=journal)
    manifest = Manifest(
        packages=(
            _FakePackage("curl", journal, locators=("http://x/b.deb",)),
            _FakePackage("broken", journal, locators=(locator,)),
        ),
        services=(_FakeResource("svc", journal),),
    )

    with pytest.raises(LocatorError):
        await h.engine.converge(manifest)

    assert not [event for event in journal.events if event.startswith(("apply:", "fetch:"))]


async def test_nginx_end_to_end(tmp_path: Path) -> None:
    journal = _Journal()
    h = _harness(
        tmp_path,
        marker_age=timedelta(days=8),
        files={"http://x/pkg.deb": b"nginx deb"},
        journal=journal,
    )
    package = _FakePackage("nginx", journal, locators=("http://x/pkg.deb",))
    service = _FakeResource("nginx", journal)

    report = await h.engine.converge(Manifest(packages=(package,), services=(service,)))

    assert journal.mutations() == ["refresh", "fetch:http://x/pkg.deb", "apply:nginx", "apply:nginx"]
    assert (h.cache_dir / "pkg.deb").read_bytes() == b"nginx deb"
    assert report.refreshed is True
    assert package.is_satisfied() and service.is_satisfied()


async def test_from_config_wires_marker_and_cache_paths(tmp_path: Path) -> None:
    journal = _Journal()
    config = merge_config(
        default_config(),
        {
            "paths": {
                "state_dir": str(tmp_path / "state"),
                "archive_cache": str(tmp_path / "cache"),
            }
        },
    )
    engine = ConvergenceEngine.from_config(
        config,
        command_runner=_JournalRunner(journal),
        now_provider=lambda: _NOW,
    )

    report = await engine.converge(Manifest())

    assert report.refreshed is True
    assert (tmp_path / "state" / "apt-update").exists()
    assert journal.events == ["refresh"]
