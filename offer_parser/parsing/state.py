from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

"""Transformation state threaded through a rule pipeline.

TransformState is immutable: steps build a new state from the old one via
``with_text`` / ``with_captures`` and never touch the input instance.
"""

__all__ = [
    "ASSIGN_PREFIX",
    "Assignment",
    "TransformState",
    "assign_key",
]

ASSIGN_PREFIX = "assign:"


def assign_key(name: str) -> str:
    return f"{ASSIGN_PREFIX}{name}"


def _find_key(mapping: Mapping[str, Any], name: str) -> str | None:
    if name in mapping:
        return name
    folded = name.lower()
    return next((k for k in mapping if k.lower() == folded), None)


@dataclass(frozen=True)
class Assignment:
    """(property, value, source rule id) emitted by one executed rule."""
    property: str
    value: Any
    source: str


@dataclass(frozen=True)
class TransformState:
    text: str
    captures: Mapping[str, str] = field(default_factory=dict)
    # 同じ行で先に書かれたプロパティ (読み取り専用)
    bag: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not isinstance(self.captures, MappingProxyType):
            object.__setattr__(self, "captures", MappingProxyType(dict(self.captures)))
        if not isinstance(self.bag, MappingProxyType):
            object.__setattr__(self, "bag", MappingProxyType(dict(self.bag)))

    @classmethod
    def seed(cls, raw: str, bag: Mapping[str, Any] | None = None) -> TransformState:
        return cls(text=raw, bag=bag or {})

    def with_text(self, text: str) -> TransformState:
        return TransformState(text=text, captures=self.captures, bag=self.bag)

    def with_captures(self, updates: Mapping[str, str]) -> TransformState:
        """Return a state whose captures are the current ones overlaid with ``updates``.

        Capture names are case-insensitive: an update replaces an existing key
        that differs only by case.
        """
        if not updates:
            return self
        merged = dict(self.captures)
        for key, value in updates.items():
            existing = _find_key(merged, key)
            if existing is not None and existing != key:
                del merged[existing]
            merged[key] = value
        return TransformState(text=self.text, captures=merged, bag=self.bag)

    def resolve(self, name: str | None) -> str | None:
        """Look up a source value.

        None means the running text. A name resolves first as a plain capture,
        then as its ``assign:`` form, then as a property already in the row's
        bag; all three lookups ignore case. An unknown name resolves to None.
        """
        if name is None or name == "":
            return self.text
        for candidate in (name, assign_key(name)):
            key = _find_key(self.captures, candidate)
            if key is not None:
                return self.captures[key]
        key = _find_key(self.bag, name)
        if key is not None:
            value = self.bag[key]
            return None if value is None else str(value)
        return None

    def assignments(self, source: str) -> list[Assignment]:
        """Collect every ``assign:`` capture (prefix matched case-insensitively)."""
        out: list[Assignment] = []
        for key, value in self.captures.items():
            if key[: len(ASSIGN_PREFIX)].lower() == ASSIGN_PREFIX:
                out.append(Assignment(key[len(ASSIGN_PREFIX):], value, source))
        return out
