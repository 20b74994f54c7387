"""Domain model: manifest aggregate, resource contracts, and error types."""

from prefab.domain.errors import (
    BackendLoadError,
    ConvergenceCancelledError,
    FetchCancelledError,
    LocatorError,
    ManifestLoadError,
    PackageInstallError,
    PrefabError,
    RefreshError,
    ResourceApplyError,
    StateSetupError,
)
from prefab.domain.manifest import Manifest, merge, merge_all
from prefab.domain.resources import (
    Locator,
    PackageResource,
    Resource,
    ResourceBackend,
    ResourceKind,
    describe_resource,
)

__all__ = [
    "BackendLoadError",
    "ConvergenceCancelledError",
    "FetchCancelledError",
    "Locator",
    "LocatorError",
    "Manifest",
    "ManifestLoadError",
    "PackageInstallError",
    "PackageResource",
    "PrefabError",
    "RefreshError",
    "Resource",
    "ResourceApplyError",
    "ResourceBackend",
    "ResourceKind",
    "StateSetupError",
    "describe_resource",
    "merge",
    "merge_all",
]
