"""
Resource kinds and the applier contracts the convergence engine consumes.

Concrete appliers (apt, templates, systemd, postgres, ...) live outside this
package and are supplied through a :class:`ResourceBackend`. The engine only
ever calls the methods declared here.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from prefab.utils.hashing import normalize_sha256

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence
    from pathlib import Path


class ResourceKind(StrEnum):
    """Resource kinds, one manifest sequence each."""

    SOURCE_LISTS = "source_lists"
    PACKAGES = "packages"
    DIRECTORIES = "directories"
    TEMPLATES = "templates"
    PACKAGE_ARCHIVES = "package_archives"
    TARBALLS = "tarballs"
    USERS = "users"
    SYMLINKS = "symlinks"
    SERVICES = "services"
    DATABASES = "databases"
    DATABASE_USERS = "database_users"
    BUNDLES = "bundles"

    @property
    def document_key(self) -> str:
        """Key used for this kind in manifest documents."""
        return _DOCUMENT_KEYS.get(self, self.value)


_DOCUMENT_KEYS: dict[ResourceKind, str] = {
    ResourceKind.PACKAGES: "apt_packages",
    ResourceKind.PACKAGE_ARCHIVES: "personal_package_archives",
    ResourceKind.DATABASES: "postgres_databases",
    ResourceKind.DATABASE_USERS: "postgres_database_users",
    ResourceKind.BUNDLES: "ruby_bundles",
}


@dataclass(frozen=True, slots=True)
class Locator:
    """Network address of a downloadable artifact, with an optional SHA-256."""

    url: str
    sha256: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.url, str) or not self.url.strip():
            raise ValueError("Locator.url must be a non-empty string")
        object.__setattr__(self, "url", self.url.strip())
        if self.sha256 is not None:
            object.__setattr__(
                self, "sha256", normalize_sha256(self.sha256, field_name="Locator.sha256")
            )

    @classmethod
    def coerce(cls, value: str | Locator) -> Locator:
        if isinstance(value, Locator):
            return value
        return cls(url=value)


@runtime_checkable
class Resource(Protocol):
    """One desired-state item: check current state, apply when different."""

    def describe(self) -> str: ...

    def is_satisfied(self) -> bool: ...

    def apply(self) -> None: ...


@runtime_checkable
class PackageResource(Resource, Protocol):
    """Package applier; also exposes the archives it needs before install."""

    @property
    def qualified_name(self) -> str: ...

    def archive_locators(self) -> Sequence[str | Locator]: ...


class ResourceBackend(Protocol):
    """Builds appliers from manifest entries for one host platform."""

    def build(
        self,
        kind: ResourceKind,
        payload: Mapping[str, Any],
        *,
        base_dir: Path,
    ) -> Resource: ...

    def archive_tool(self, package_name: str) -> PackageResource | None: ...


def describe_resource(resource: object) -> str:
    """Human-readable label for logs and errors, tolerant of partial appliers."""

    qualified = getattr(resource, "qualified_name", None)
    if isinstance(qualified, str) and qualified:
        return qualified
    describe = getattr(resource, "describe", None)
    if callable(describe):
        text = describe()
        if isinstance(text, str) and text:
            return text
    return repr(resource)


__all__ = [
    "Locator",
    "PackageResource",
    "Resource",
    "ResourceBackend",
    "ResourceKind",
    "describe_resource",
]
