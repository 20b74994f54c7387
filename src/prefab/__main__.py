"""Module entrypoint for ``python -m prefab``."""

from __future__ import annotations

from prefab.main import cli_entrypoint

if __name__ == "__main__":
    raise SystemExit(cli_entrypoint())
