"""Manifest ingestion: document loading and backend resolution."""

from prefab.ingestion.manifest_loader import (
    load_backend,
    load_manifest,
    load_manifests,
    parse_manifest_document,
)

__all__ = [
    "load_backend",
    "load_manifest",
    "load_manifests",
    "parse_manifest_document",
]
