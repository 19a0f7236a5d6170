from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Protocol

from ..models.config_models import DescriptionExtractionConfig, DescriptionPattern
from ..parsing.steps import compile_pattern

"""Description-based property extraction (pluggable stage).

Both normalizers call an extractor on the offer description; which one is
used depends on ``description_extraction.enabled``. The null extractor is the
default so enabling extraction is always an explicit supplier decision.
"""

__all__ = [
    "DescriptionExtraction",
    "DescriptionExtractor",
    "NullDescriptionExtractor",
    "RegexDescriptionExtractor",
    "create_description_extractor",
]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DescriptionExtraction:
    properties: dict[str, str] = field(default_factory=dict)
    leftover: str = ""


class DescriptionExtractor(Protocol):
    def extract(self, description: str) -> DescriptionExtraction: ...


class NullDescriptionExtractor:
    def extract(self, description: str) -> DescriptionExtraction:
        return DescriptionExtraction(leftover=(description or "").strip())


def _transform(value: str, transformation: str | None) -> str:
    name = (transformation or "").strip().lower()
    if not value or not name:
        return value
    if name == "uppercase":
        return value.upper()
    if name == "lowercase":
        return value.lower()
    if name == "trim":
        return value.strip()
    if name == "removeml":
        return re.sub("ml", "", value, flags=re.IGNORECASE).strip()
    if name == "removespaces":
        return value.replace(" ", "")
    if name == "capitalize":
        return value[:1].upper() + value[1:].lower()
    return value


class RegexDescriptionExtractor:
    """Ordered regex patterns per property; the first matching pattern of a property wins.

    Matched spans are cut from the leftover text so later consumers see what
    was not explained by any pattern.
    """

    def __init__(self, patterns: tuple[DescriptionPattern, ...]) -> None:
        grouped: dict[str, list[tuple[DescriptionPattern, re.Pattern[str]]]] = {}
        for p in sorted(patterns, key=lambda p: p.priority):
            rx = compile_pattern(p.pattern, re.IGNORECASE)
            if rx is None:
                continue
            grouped.setdefault(p.property, []).append((p, rx))
        self._grouped = grouped

    def _group_value(self, m: re.Match[str], index: int) -> str:
        if index <= (m.re.groups or 0):
            return (m.group(index) or "").strip()
        return m.group(0).strip()

    def extract(self, description: str) -> DescriptionExtraction:
        if not description or not description.strip():
            return DescriptionExtraction()
        props: dict[str, str] = {}
        leftover = description
        for prop, candidates in self._grouped.items():
            for pattern, rx in candidates:
                m = rx.search(description)
                if m is None:
                    continue
                outputs: Mapping[str, int] = pattern.output_mappings or {prop: pattern.group_index}
                for out_key, group_index in outputs.items():
                    value = _transform(self._group_value(m, group_index), pattern.transformation)
                    if value:
                        props[out_key] = value
                leftover = leftover.replace(m.group(0), " ", 1)
                break
        return DescriptionExtraction(props, re.sub(r"\s+", " ", leftover).strip())


def create_description_extractor(config: DescriptionExtractionConfig) -> DescriptionExtractor:
    if config.enabled and config.patterns:
        return RegexDescriptionExtractor(config.patterns)
    return NullDescriptionExtractor()
