"""
prefab filesystem utilities

Purpose
- Create state directories with an explicit mode.
- Write files atomically: stream into a temp file in the destination
  directory, fsync, then replace the target in a single step. A reader never
  observes a partially written file under the final name.

Non-functional requirements
- Standard library only.
"""

from __future__ import annotations

import contextlib
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import IO, TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator

PathLike = str | os.PathLike[str]

STATE_DIR_MODE = 0o755

__all__ = [
    "STATE_DIR_MODE",
    "atomic_destination",
    "atomic_write",
    "ensure_directory",
]


def ensure_directory(path: PathLike, *, mode: int = STATE_DIR_MODE) -> Path:
    """Create ``path`` (and parents) if missing and return it as a ``Path``."""

    directory = Path(path)
    directory.mkdir(mode=mode, parents=True, exist_ok=True)
    if not directory.is_dir():
        raise NotADirectoryError(f"{directory!s} is not a directory")
    return directory


@contextmanager
def atomic_destination(path: PathLike) -> Iterator[IO[bytes]]:
    """
    Yield a binary handle whose content replaces ``path`` on clean exit.

    On any exception the temp file is removed and ``path`` is left untouched.
    """

    target = Path(path)
    target_parent = target.parent.resolve(strict=True)
    if not target_parent.is_dir():
        raise NotADirectoryError(f"{target_parent!s} is not a directory")

    fd, temp_name = tempfile.mkstemp(
        prefix=f".{target.name}.",
        suffix=".part",
        dir=str(target_parent),
    )
    temp_path = Path(temp_name)

    try:
        with os.fdopen(fd, "wb") as file_handle:
            yield file_handle
            file_handle.flush()
            os.fsync(file_handle.fileno())
        os.replace(temp_path, target)
        _fsync_directory(target_parent)
    except BaseException:
        with contextlib.suppress(OSError):
            temp_path.unlink(missing_ok=True)
        raise


def atomic_write(path: PathLike, data: bytes | str, *, encoding: str = "utf-8") -> None:
    """Atomically write ``data`` to ``path``."""

    payload = data.encode(encoding) if isinstance(data, str) else data
    with atomic_destination(path) as file_handle:
        file_handle.write(payload)


def _fsync_directory(path: Path) -> None:
    """
    Best-effort directory fsync for metadata durability after ``os.replace``.

    Some platforms/filesystems do not support fsync on directories.
    """

    if os.name == "nt":
        return

    flags = os.O_RDONLY
    if hasattr(os, "O_DIRECTORY"):
        flags |= os.O_DIRECTORY

    try:
        dir_fd = os.open(path, flags)
    except OSError:
        return

    try:
        os.fsync(dir_fd)
    except OSError:
        return
    finally:
        os.close(dir_fd)
