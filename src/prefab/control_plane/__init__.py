"""Control plane: staleness-gated refresh, artifact fetching, and convergence."""

from prefab.control_plane.commands import (
    CommandExecutionResult,
    CommandRunner,
    CommandTimeoutError,
    SubprocessCommandRunner,
)
from prefab.control_plane.engine import (
    TRAILING_PHASES,
    ConvergenceEngine,
    ConvergenceReport,
    fetch_pool_from_config,
    staleness_from_config,
)
from prefab.control_plane.fetch_pool import (
    ChecksumMismatchError,
    FetchOutcome,
    FetchPool,
    FetchReport,
    FetchStatus,
    resolve_destination,
)
from prefab.control_plane.staleness import FileMarkerStore, MarkerStore, StalenessCache

__all__ = [
    "TRAILING_PHASES",
    "ChecksumMismatchError",
    "CommandExecutionResult",
    "CommandRunner",
    "CommandTimeoutError",
    "ConvergenceEngine",
    "ConvergenceReport",
    "FetchOutcome",
    "FetchPool",
    "FetchReport",
    "FetchStatus",
    "FileMarkerStore",
    "MarkerStore",
    "StalenessCache",
    "SubprocessCommandRunner",
    "fetch_pool_from_config",
    "resolve_destination",
    "staleness_from_config",
]
