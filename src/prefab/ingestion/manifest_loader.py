"""
Manifest documents (JSON or YAML) to :class:`~prefab.domain.manifest.Manifest`.

A document is a mapping with one list per resource kind. Keys may be the
document spelling (``apt_packages``) or the field name (``packages``); any
other key is rejected. Entries are mappings, or bare strings as shorthand for
``{"name": ...}``. Relative template ``source`` paths are resolved against the
directory holding the manifest.

Without a backend the entries stay as read-only mappings, which is enough to
merge and inspect manifests; converging needs a backend that turns each entry
into an applier.
"""

from __future__ import annotations

import importlib
import json
from collections.abc import Iterable, Mapping, Sequence
from pathlib import Path
from types import MappingProxyType
from typing import Any, Final

import yaml

from prefab.domain.errors import BackendLoadError, ManifestLoadError, PrefabError
from prefab.domain.manifest import Manifest, merge_all
from prefab.domain.resources import ResourceBackend, ResourceKind

_JSON_SUFFIXES: Final[frozenset[str]] = frozenset({".json"})
_YAML_SUFFIXES: Final[frozenset[str]] = frozenset({".yaml", ".yml"})

_KIND_BY_KEY: Final[dict[str, ResourceKind]] = {
    **{kind.value: kind for kind in ResourceKind},
    **{kind.document_key: kind for kind in ResourceKind},
}


def load_manifest(path: str | Path, *, backend: ResourceBackend | None = None) -> Manifest:
    """Read one manifest document from ``path``."""

    resolved = Path(path).expanduser().resolve()
    document = _read_document(resolved)
    return parse_manifest_document(
        document, base_dir=resolved.parent, backend=backend, source=str(resolved)
    )


def load_manifests(
    paths: Iterable[str | Path], *, backend: ResourceBackend | None = None
) -> Manifest:
    """Load several documents and merge them in the given order."""

    return merge_all(load_manifest(path, backend=backend) for path in paths)


def parse_manifest_document(
    document: object,
    *,
    base_dir: Path,
    backend: ResourceBackend | None = None,
    source: str = "<document>",
) -> Manifest:
    if document is None:
        return Manifest()
    if not isinstance(document, Mapping):
        raise ManifestLoadError(
            f"{source}: manifest root must be a mapping, got {type(document).__name__}"
        )

    items: dict[ResourceKind, list[Any]] = {}
    for key in document:
        kind = _KIND_BY_KEY.get(key) if isinstance(key, str) else None
        if kind is None:
            raise ManifestLoadError(f"{source}: unknown manifest key {key!r}")
        if kind in items:
            raise ManifestLoadError(
                f"{source}: {kind.document_key!r} given twice (as {key!r})"
            )
        entries = document[key]
        if entries is None:
            items[kind] = []
            continue
        if isinstance(entries, (str, bytes)) or not isinstance(entries, Sequence):
            raise ManifestLoadError(f"{source}: {key!r} must be a list")
        items[kind] = [
            _build_entry(kind, entry, index, base_dir=base_dir, backend=backend, source=source)
            for index, entry in enumerate(entries)
        ]
    return Manifest.from_kinds(items)


def load_backend(reference: str) -> ResourceBackend:
    """
    Resolve a ``package.module:attribute`` reference to a resource backend.

    The attribute may be a backend instance or a zero-argument factory
    (including a class) returning one.
    """

    module_name, sep, attribute = reference.partition(":")
    if not sep or not module_name.strip() or not attribute.strip():
        raise BackendLoadError(
            f"backend reference must look like 'module:attribute', got {reference!r}"
        )

    try:
        module = importlib.import_module(module_name.strip())
    except ImportError as exc:
        raise BackendLoadError(f"unable to import backend module {module_name!r}: {exc}") from exc

    target: object = module
    for part in attribute.strip().split("."):
        try:
            target = getattr(target, part)
        except AttributeError as exc:
            raise BackendLoadError(f"backend {reference!r} has no attribute {part!r}") from exc

    if not _looks_like_backend(target) and callable(target):
        try:
            target = target()
        except Exception as exc:  # noqa: BLE001 - third-party factory boundary.
            raise BackendLoadError(f"backend factory {reference!r} failed: {exc}") from exc

    if not _looks_like_backend(target):
        raise BackendLoadError(
            f"{reference!r} does not provide build() and archive_tool() methods"
        )
    return target  # type: ignore[return-value]


def _read_document(path: Path) -> object:
    suffix = path.suffix.lower()
    if suffix not in _JSON_SUFFIXES | _YAML_SUFFIXES:
        raise ManifestLoadError(f"{path}: unsupported manifest format {suffix or '<none>'!r}")
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ManifestLoadError(f"unable to read manifest {path}: {exc}") from exc

    if suffix in _JSON_SUFFIXES:
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise ManifestLoadError(f"{path}: invalid JSON: {exc}") from exc
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ManifestLoadError(f"{path}: invalid YAML: {exc}") from exc


def _build_entry(
    kind: ResourceKind,
    entry: object,
    index: int,
    *,
    base_dir: Path,
    backend: ResourceBackend | None,
    source: str,
) -> Any:
    where = f"{source}: {kind.document_key}[{index}]"
    if isinstance(entry, str):
        payload: dict[str, Any] = {"name": entry}
    elif isinstance(entry, Mapping):
        payload = {str(key): value for key, value in entry.items()}
    else:
        raise ManifestLoadError(f"{where}: expected mapping or string, got {type(entry).__name__}")

    if kind is ResourceKind.TEMPLATES:
        template_source = payload.get("source")
        if isinstance(template_source, str) and template_source:
            payload["source"] = str(_resolve_relative(template_source, base_dir))

    if backend is None:
        return MappingProxyType(payload)
    try:
        return backend.build(kind, MappingProxyType(payload), base_dir=base_dir)
    except PrefabError:
        raise
    except (KeyError, TypeError, ValueError) as exc:
        raise ManifestLoadError(f"{where}: {exc}") from exc


def _resolve_relative(raw: str, base_dir: Path) -> Path:
    candidate = Path(raw).expanduser()
    if candidate.is_absolute():
        return candidate
    return base_dir / candidate


def _looks_like_backend(value: object) -> bool:
    if isinstance(value, type):
        return False
    return callable(getattr(value, "build", None)) and callable(
        getattr(value, "archive_tool", None)
    )


__all__ = [
    "load_backend",
    "load_manifest",
    "load_manifests",
    "parse_manifest_document",
]
