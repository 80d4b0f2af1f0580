"""In-memory hash collections built during a static scan or loaded for dynamic mode."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

from sri_shield.core.hashing import is_valid_sri_hash

Category = Literal["scripts", "styles"]


def _check(sri_hash: str) -> str:
    if not is_valid_sri_hash(sri_hash):
        raise ValueError(f"Invalid SRI hash literal: {sri_hash!r}")
    return sri_hash


@dataclass
class PerPageHashes:
    """Hashes actually referenced by one document."""

    scripts: set[str] = field(default_factory=set)
    styles: set[str] = field(default_factory=set)

    def add(self, category: Category, sri_hash: str) -> None:
        getattr(self, category).add(_check(sri_hash))

    def is_empty(self) -> bool:
        return not self.scripts and not self.styles


@dataclass
class ResourceHashes:
    """Resource locator -> hash maps, split by category."""

    scripts: dict[str, str] = field(default_factory=dict)
    styles: dict[str, str] = field(default_factory=dict)

    def get(self, category: Category, src: str) -> str | None:
        return getattr(self, category).get(src)

    def set(self, category: Category, src: str, sri_hash: str) -> None:
        getattr(self, category)[src] = _check(sri_hash)


@dataclass
class HashCollection:
    """Every hash seen during one build run.

    The collection is append-only: the scanner adds entries but never removes
    or overwrites them, so it can be shared across documents of the same build.
    """

    inline_script_hashes: set[str] = field(default_factory=set)
    inline_style_hashes: set[str] = field(default_factory=set)
    ext_script_hashes: set[str] = field(default_factory=set)
    ext_style_hashes: set[str] = field(default_factory=set)
    per_page_hashes: dict[str, PerPageHashes] = field(default_factory=dict)
    per_resource_hashes: ResourceHashes = field(default_factory=ResourceHashes)

    def page(self, page_path: str) -> PerPageHashes:
        """Get (creating if needed) the per-page entry for ``page_path``."""
        if page_path not in self.per_page_hashes:
            self.per_page_hashes[page_path] = PerPageHashes()
        return self.per_page_hashes[page_path]

    def add_inline(self, category: Category, sri_hash: str) -> None:
        target = self.inline_script_hashes if category == "scripts" else self.inline_style_hashes
        target.add(_check(sri_hash))

    def add_external(self, category: Category, sri_hash: str) -> None:
        target = self.ext_script_hashes if category == "scripts" else self.ext_style_hashes
        target.add(_check(sri_hash))

    def cache_resource(self, category: Category, src: str, sri_hash: str) -> None:
        """Record the hash of an external resource; existing entries win."""
        if self.per_resource_hashes.get(category, src) is None:
            self.per_resource_hashes.set(category, src, sri_hash)


@dataclass(frozen=True)
class GlobalHashTable:
    """Read-only locator -> hash table used to validate dynamic responses."""

    scripts: dict[str, str] = field(default_factory=dict)
    styles: dict[str, str] = field(default_factory=dict)

    def get(self, category: Category, src: str) -> str | None:
        return getattr(self, category).get(src)

    @classmethod
    def from_resource_hashes(cls, resources: ResourceHashes) -> GlobalHashTable:
        return cls(scripts=dict(resources.scripts), styles=dict(resources.styles))

    def __len__(self) -> int:
        return len(self.scripts) + len(self.styles)
