"""
Concurrent artifact fetching into the shared package cache.

A fixed group of workers drains a closable queue of locators. Each locator
maps to ``<cache_dir>/<last path segment>``; a destination that already exists
on disk, or that another locator claimed earlier in the same run, is skipped.
Downloads stream into a temp file that is renamed onto the destination only
after the body (and its checksum, when one is declared) is complete.

Per-artifact failures are logged and reported but never abort the run: the
destination stays absent, so the next run retries it.
"""

from __future__ import annotations

import asyncio
import hashlib
from dataclasses import dataclass, field
from enum import StrEnum
from functools import partial
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Any
from urllib.parse import unquote

import httpx
import structlog

from prefab.constants import FETCH_CHUNK_BYTES, FETCH_CONCURRENCY, FETCH_TIMEOUT_SECONDS
from prefab.domain.errors import FetchCancelledError, LocatorError, StateSetupError
from prefab.domain.resources import Locator
from prefab.utils.concurrency import (
    CancellationToken,
    ClosableQueue,
    WorkerGroup,
    run_with_timeout,
)
from prefab.utils.fs import atomic_destination, ensure_directory

if TYPE_CHECKING:
    from collections.abc import Iterable

_ALLOWED_SCHEMES = frozenset({"http", "https"})


class FetchStatus(StrEnum):
    FETCHED = "fetched"
    SKIPPED = "skipped"
    FAILED = "failed"


class ChecksumMismatchError(ValueError):
    """Downloaded bytes do not match the locator's declared SHA-256."""


@dataclass(frozen=True, slots=True)
class FetchOutcome:
    locator: Locator
    destination: Path
    status: FetchStatus
    error: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "url": self.locator.url,
            "destination": str(self.destination),
            "status": self.status.value,
            "error": self.error,
        }


@dataclass(frozen=True, slots=True)
class FetchReport:
    """Outcomes of one fetch pass, in completion order."""

    outcomes: tuple[FetchOutcome, ...] = ()

    def _with_status(self, status: FetchStatus) -> tuple[FetchOutcome, ...]:
        return tuple(outcome for outcome in self.outcomes if outcome.status is status)

    @property
    def fetched(self) -> tuple[FetchOutcome, ...]:
        return self._with_status(FetchStatus.FETCHED)

    @property
    def skipped(self) -> tuple[FetchOutcome, ...]:
        return self._with_status(FetchStatus.SKIPPED)

    @property
    def failed(self) -> tuple[FetchOutcome, ...]:
        return self._with_status(FetchStatus.FAILED)

    def to_dict(self) -> dict[str, object]:
        return {
            "fetched": len(self.fetched),
            "skipped": len(self.skipped),
            "failed": [outcome.to_dict() for outcome in self.failed],
        }


@dataclass(frozen=True, slots=True)
class _FetchJob:
    locator: Locator
    destination: Path


@dataclass(slots=True)
class _RunState:
    claimed: set[Path] = field(default_factory=set)
    outcomes: list[FetchOutcome] = field(default_factory=list)


def resolve_destination(locator: str | Locator, cache_dir: Path | str) -> Path:
    """Map a locator to its cache path; raise :class:`LocatorError` if it has no usable name."""

    try:
        resolved = Locator.coerce(locator)
        url = httpx.URL(resolved.url)
    except (ValueError, httpx.InvalidURL) as exc:
        raise LocatorError(f"invalid artifact locator {locator!r}: {exc}") from exc

    if url.scheme not in _ALLOWED_SCHEMES:
        raise LocatorError(f"unsupported scheme in artifact locator {resolved.url!r}")
    if not url.host:
        raise LocatorError(f"artifact locator has no host: {resolved.url!r}")
    name = PurePosixPath(unquote(url.path)).name
    if not name or name in {".", ".."}:
        raise LocatorError(f"artifact locator has no file name: {resolved.url!r}")
    if any(ord(char) < 0x20 or ord(char) == 0x7F for char in name):
        raise LocatorError(f"artifact file name has control characters: {resolved.url!r}")
    return Path(cache_dir) / name


class FetchPool:
    """Bounded worker pool that downloads package archives before install."""

    def __init__(
        self,
        *,
        cache_dir: Path | str,
        concurrency: int = FETCH_CONCURRENCY,
        timeout_seconds: float = FETCH_TIMEOUT_SECONDS,
        chunk_size: int = FETCH_CHUNK_BYTES,
        transport: httpx.AsyncBaseTransport | None = None,
        cancel_token: CancellationToken | None = None,
        logger: Any | None = None,
    ) -> None:
        if concurrency <= 0:
            raise ValueError("concurrency must be > 0")
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        if chunk_size <= 0:
            raise ValueError("chunk_size must be > 0")
        self._cache_dir = Path(cache_dir)
        self._concurrency = concurrency
        self._timeout_seconds = timeout_seconds
        self._chunk_size = chunk_size
        self._transport = transport
        self._token = cancel_token or CancellationToken()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def cache_dir(self) -> Path:
        return self._cache_dir

    @property
    def concurrency(self) -> int:
        return self._concurrency

    async def fetch_all(
        self,
        locators: Iterable[str | Locator],
        *,
        concurrency: int | None = None,
    ) -> FetchReport:
        """Fetch every locator, returning once all workers have drained the queue."""

        size = self._concurrency if concurrency is None else concurrency
        if size <= 0:
            raise ValueError("concurrency must be > 0")
        pending = list(locators)
        if not pending:
            return FetchReport()

        try:
            ensure_directory(self._cache_dir)
        except OSError as exc:
            raise StateSetupError(
                f"unable to create artifact cache {self._cache_dir!s}: {exc}"
            ) from exc

        state = _RunState()
        queue: ClosableQueue[_FetchJob] = ClosableQueue()
        async with httpx.AsyncClient(
            transport=self._transport,
            timeout=httpx.Timeout(self._timeout_seconds),
            follow_redirects=True,
        ) as client:
            workers = WorkerGroup(
                queue,
                partial(self._fetch_one, client, state),
                size=size,
                cancel_token=self._token,
                name="fetch",
            )
            workers.start()
            try:
                for raw in pending:
                    destination = resolve_destination(raw, self._cache_dir)
                    queue.put(_FetchJob(Locator.coerce(raw), destination))
            except LocatorError:
                await workers.cancel()
                raise
            finally:
                queue.close()

            try:
                await workers.wait()
            except asyncio.CancelledError as exc:
                if not self._token.is_cancelled:
                    raise
                raise FetchCancelledError("artifact fetching cancelled") from exc

        report = FetchReport(tuple(state.outcomes))
        self._logger.info(
            "fetch.drained",
            fetched=len(report.fetched),
            skipped=len(report.skipped),
            failed=len(report.failed),
        )
        return report

    async def _fetch_one(self, client: httpx.AsyncClient, state: _RunState, job: _FetchJob) -> None:
        # Claim on the event loop before any await so two workers never race
        # to create the same destination.
        if job.destination in state.claimed or job.destination.exists():
            state.claimed.add(job.destination)
            state.outcomes.append(FetchOutcome(job.locator, job.destination, FetchStatus.SKIPPED))
            self._logger.debug("fetch.skip", url=job.locator.url, destination=str(job.destination))
            return
        state.claimed.add(job.destination)

        try:
            await run_with_timeout(
                self._download(client, job),
                self._timeout_seconds,
                self._token,
            )
        except (httpx.HTTPError, OSError, ValueError) as exc:
            error = str(exc) or exc.__class__.__name__
            state.outcomes.append(
                FetchOutcome(job.locator, job.destination, FetchStatus.FAILED, error)
            )
            self._logger.warning("fetch.failed", url=job.locator.url, error=error)
            return

        state.outcomes.append(FetchOutcome(job.locator, job.destination, FetchStatus.FETCHED))
        self._logger.debug("fetch.done", url=job.locator.url, destination=str(job.destination))

    async def _download(self, client: httpx.AsyncClient, job: _FetchJob) -> None:
        async with client.stream("GET", job.locator.url) as response:
            response.raise_for_status()
            digest = hashlib.sha256()
            with atomic_destination(job.destination) as handle:
                async for chunk in response.aiter_bytes(self._chunk_size):
                    handle.write(chunk)
                    digest.update(chunk)
                if job.locator.sha256 is not None and digest.hexdigest() != job.locator.sha256:
                    raise ChecksumMismatchError(
                        f"checksum mismatch for {job.locator.url}: expected "
                        f"{job.locator.sha256}, got {digest.hexdigest()}"
                    )


__all__ = [
    "ChecksumMismatchError",
    "FetchOutcome",
    "FetchPool",
    "FetchReport",
    "FetchStatus",
    "resolve_destination",
]
