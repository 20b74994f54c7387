"""Unit tests for atomic writes and state directory creation."""

from __future__ import annotations

import hashlib
import stat
from pathlib import Path

import pytest

from prefab.utils.fs import STATE_DIR_MODE, atomic_destination, atomic_write, ensure_directory
from prefab.utils.hashing import normalize_sha256


def test_ensure_directory_creates_parents_with_mode(tmp_path: Path) -> None:
    target = tmp_path / "var" / "prefab"

    created = ensure_directory(target)

    assert created == target
    assert target.is_dir()
    # umask can only remove bits, never add group/other write.
    assert stat.S_IMODE(target.stat().st_mode) & ~STATE_DIR_MODE == 0


def test_ensure_directory_rejects_existing_file(tmp_path: Path) -> None:
    target = tmp_path / "occupied"
    target.write_text("x", encoding="utf-8")

    with pytest.raises(OSError):
        ensure_directory(target)


def test_atomic_write_replaces_content(tmp_path: Path) -> None:
    target = tmp_path / "artifact.deb"
    target.write_bytes(b"old")

    atomic_write(target, b"new")

    assert target.read_bytes() == b"new"
    assert sorted(path.name for path in tmp_path.iterdir()) == ["artifact.deb"]


def test_atomic_destination_leaves_no_file_on_failure(tmp_path: Path) -> None:
    target = tmp_path / "artifact.deb"

    with pytest.raises(RuntimeError), atomic_destination(target) as handle:
        handle.write(b"partial")
        raise RuntimeError("connection dropped")

    assert list(tmp_path.iterdir()) == []


def test_normalize_sha256_lowercases_and_strips_prefix() -> None:
    digest = hashlib.sha256(b"prefab").hexdigest()

    assert normalize_sha256(f" sha256:{digest.upper()} ", field_name="digest") == digest


def test_normalize_sha256_rejects_malformed_digest() -> None:
    with pytest.raises(ValueError):
        normalize_sha256("not-a-digest", field_name="digest")
