"""
Manifest aggregate and the structural merge of manifest fragments.

A manifest holds one ordered tuple per resource kind. Order inside a kind is
application order; order across kinds is fixed by the convergence engine.
"""

from __future__ import annotations

from dataclasses import dataclass, fields
from typing import TYPE_CHECKING, Any

from prefab.domain.resources import ResourceKind

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping


@dataclass(frozen=True, slots=True)
class Manifest:
    """Desired host state grouped by resource kind."""

    source_lists: tuple[Any, ...] = ()
    packages: tuple[Any, ...] = ()
    directories: tuple[Any, ...] = ()
    templates: tuple[Any, ...] = ()
    package_archives: tuple[Any, ...] = ()
    tarballs: tuple[Any, ...] = ()
    users: tuple[Any, ...] = ()
    symlinks: tuple[Any, ...] = ()
    services: tuple[Any, ...] = ()
    databases: tuple[Any, ...] = ()
    database_users: tuple[Any, ...] = ()
    bundles: tuple[Any, ...] = ()

    def __post_init__(self) -> None:
        for item in fields(self):
            value = getattr(self, item.name)
            if not isinstance(value, tuple):
                object.__setattr__(self, item.name, tuple(value))

    @classmethod
    def from_kinds(cls, items: Mapping[ResourceKind, Iterable[Any]]) -> Manifest:
        return cls(**{ResourceKind(kind).value: tuple(values) for kind, values in items.items()})

    def items(self, kind: ResourceKind) -> tuple[Any, ...]:
        return getattr(self, ResourceKind(kind).value)

    def counts(self) -> dict[str, int]:
        return {kind.value: len(self.items(kind)) for kind in ResourceKind}

    @property
    def is_empty(self) -> bool:
        return not any(self.items(kind) for kind in ResourceKind)

    def __add__(self, other: object) -> Manifest:
        if not isinstance(other, Manifest):
            return NotImplemented
        return merge(self, other)


def merge(base: Manifest, other: Manifest) -> Manifest:
    """
    Append every kind sequence of ``other`` onto ``base``.

    Base items come first. Duplicates are kept and will be applied twice;
    resolving conflicting resources is the caller's responsibility.
    """

    return Manifest(
        **{kind.value: base.items(kind) + other.items(kind) for kind in ResourceKind}
    )


def merge_all(fragments: Iterable[Manifest]) -> Manifest:
    """Fold ``fragments`` left to right, starting from the empty manifest."""

    merged = Manifest()
    for fragment in fragments:
        merged = merge(merged, fragment)
    return merged


__all__ = ["Manifest", "merge", "merge_all"]
