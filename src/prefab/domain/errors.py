"""Exception hierarchy shared by the engine, loader, and CLI."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Sequence

    from prefab.domain.resources import ResourceKind


class PrefabError(RuntimeError):
    """Base error for every failure prefab raises on purpose."""


class StateSetupError(PrefabError):
    """Raised when the state directory or refresh marker cannot be prepared."""


class RefreshError(PrefabError):
    """Raised when the global refresh command fails or times out."""

    def __init__(
        self,
        *,
        command: Sequence[str],
        returncode: int | None,
        output: str,
    ) -> None:
        self.command = tuple(command)
        self.returncode = returncode
        self.output = output
        if returncode is None:
            message = f"refresh command timed out: {' '.join(self.command)}"
        else:
            message = f"refresh command failed ({returncode}): {' '.join(self.command)}"
        super().__init__(message)


class ResourceApplyError(PrefabError):
    """Raised when a resource fails its idempotency check or apply step."""

    def __init__(self, *, kind: ResourceKind, resource: str, reason: str) -> None:
        self.kind = kind
        self.resource = resource
        self.reason = reason
        super().__init__(f"{kind.value} {resource!r}: {reason}")


class PackageInstallError(ResourceApplyError):
    """Raised when a package install fails after its artifacts were fetched."""


class LocatorError(PrefabError, ValueError):
    """Raised when an artifact locator cannot be turned into a cache destination."""


class FetchCancelledError(PrefabError):
    """Raised when artifact fetching is cancelled before the pool drained."""


class ConvergenceCancelledError(PrefabError):
    """Raised when a convergence pass is cancelled between resources."""


class ManifestLoadError(PrefabError, ValueError):
    """Raised when a manifest document cannot be read or validated."""


class BackendLoadError(PrefabError):
    """Raised when a resource backend reference cannot be resolved."""


__all__ = [
    "BackendLoadError",
    "ConvergenceCancelledError",
    "FetchCancelledError",
    "LocatorError",
    "ManifestLoadError",
    "PackageInstallError",
    "PrefabError",
    "RefreshError",
    "ResourceApplyError",
    "StateSetupError",
]
