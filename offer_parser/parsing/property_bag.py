from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any

from .state import Assignment

"""Per-row property accumulator with write provenance.

Policy is fixed at construction: with ``prefer_first`` the first write of a key
freezes it for the rest of the row; otherwise every write replaces the prior
value. Keys compare case-insensitively (``Product.EAN`` and ``product.ean`` are
one property); the spelling of the first write is the one reported.
Only ``set`` / ``get`` / ``snapshot`` are exposed; callers never iterate the
live storage while writing.
"""

__all__ = [
    "SEED_SOURCE",
    "PropertyEntry",
    "PropertyBag",
]

SEED_SOURCE = "Seed"


@dataclass(frozen=True)
class PropertyEntry:
    value: Any
    source: str


class PropertyBag:
    def __init__(self, *, prefer_first: bool = False, seed: Iterable[Assignment] | Mapping[str, Any] | None = None) -> None:
        self._prefer_first = prefer_first
        # lower-cased key -> (display key, entry)
        self._entries: dict[str, tuple[str, PropertyEntry]] = {}
        if seed:
            items = seed.items() if isinstance(seed, Mapping) else ((a.property, a.value) for a in seed)
            for key, value in items:
                self.set(key, value, SEED_SOURCE)

    @property
    def prefer_first(self) -> bool:
        return self._prefer_first

    def set(self, key: str, value: Any, source: str) -> bool:
        """Record an assignment; returns False when the key is frozen (first-write-wins)."""
        folded = key.lower()
        if self._prefer_first and folded in self._entries:
            return False
        self._store(folded, key, PropertyEntry(value, source))
        return True

    def force_set(self, key: str, value: Any, source: str) -> None:
        """Write regardless of policy (explicit overwrite mappings only)."""
        self._store(key.lower(), key, PropertyEntry(value, source))

    def _store(self, folded: str, key: str, entry: PropertyEntry) -> None:
        current = self._entries.get(folded)
        self._entries[folded] = (key if current is None else current[0], entry)

    def apply(self, assignments: Iterable[Assignment]) -> int:
        written = 0
        for a in assignments:
            if self.set(a.property, a.value, a.source):
                written += 1
        return written

    def get(self, key: str, default: Any = None) -> Any:
        found = self._entries.get(key.lower())
        return default if found is None else found[1].value

    def source_of(self, key: str) -> str | None:
        found = self._entries.get(key.lower())
        return None if found is None else found[1].source

    def snapshot(self) -> Mapping[str, Any]:
        """Read-only copy of key -> value, in first-write order."""
        return MappingProxyType({k: e.value for k, e in self._entries.values()})

    def provenance(self) -> Mapping[str, str]:
        return MappingProxyType({k: e.source for k, e in self._entries.values()})

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and key.lower() in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __repr__(self) -> str:  # pragma: no cover (debug aid)
        policy = "first" if self._prefer_first else "last"
        return f"PropertyBag(policy={policy}, keys={[k for k, _ in self._entries.values()]})"
