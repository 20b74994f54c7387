"""Stable constants shared across the engine, config, and CLI."""

from __future__ import annotations

from datetime import timedelta
from pathlib import PurePosixPath
from typing import Final

# Schema version for prefab.toml.
CONFIG_SCHEMA_VERSION: Final[int] = 1

# Host paths used when no config overrides them.
STATE_DIR: Final[PurePosixPath] = PurePosixPath("/var/prefab")
REFRESH_MARKER_NAME: Final[str] = "apt-update"
ARCHIVE_CACHE_DIR: Final[PurePosixPath] = PurePosixPath("/var/cache/apt/archives")
LOG_DIR: Final[PurePosixPath] = PurePosixPath("/var/log/prefab")

# Global refresh (package index update).
REFRESH_COMMAND: Final[tuple[str, ...]] = ("apt-get", "update")
REFRESH_FRESHNESS_WINDOW: Final[timedelta] = timedelta(days=7)
REFRESH_TIMEOUT_SECONDS: Final[float] = 600.0

# Artifact fetching.
FETCH_CONCURRENCY: Final[int] = 20
FETCH_TIMEOUT_SECONDS: Final[float] = 300.0
FETCH_CHUNK_BYTES: Final[int] = 64 * 1024

# Package that provides the archive-registration command (add-apt-repository).
ARCHIVE_TOOL_PACKAGE: Final[str] = "software-properties-common"

__all__ = [
    "ARCHIVE_CACHE_DIR",
    "ARCHIVE_TOOL_PACKAGE",
    "CONFIG_SCHEMA_VERSION",
    "FETCH_CHUNK_BYTES",
    "FETCH_CONCURRENCY",
    "FETCH_TIMEOUT_SECONDS",
    "LOG_DIR",
    "REFRESH_COMMAND",
    "REFRESH_FRESHNESS_WINDOW",
    "REFRESH_MARKER_NAME",
    "REFRESH_TIMEOUT_SECONDS",
    "STATE_DIR",
]
