from __future__ import annotations

import logging
import re
from collections.abc import Mapping, Sequence

from ..models.aggregates import Product
from ..models.config_models import SubtitleAssignment, SubtitleDetectionRule, SubtitleHandlingConfig
from ..models.row_data import Row
from ..parsing.property_bag import PropertyBag
from ..parsing.steps import compile_pattern

"""Subtitle rows: detection, propagation and application as row defaults.

A subtitle row (e.g. a lone "CHANEL" line above a block of offers) is not a
data row; its extracted key/value pairs are carried onto every following data
row until the next subtitle row replaces them.
"""

__all__ = [
    "SUBTITLE_SOURCE",
    "SubtitleRowProcessor",
    "normalize_subtitle_key",
    "apply_subtitle_defaults",
    "apply_subtitle_assignments",
]

logger = logging.getLogger(__name__)

SUBTITLE_SOURCE = "Subtitle"
_SEPARATORS_RE = re.compile(r"[\s_\-]+")


def normalize_subtitle_key(key: str) -> str:
    """``"  product_line "`` -> ``"ProductLine"``."""
    lowered = key.strip().lower()
    titled = re.sub(r"(^|[\s_\-])(\w)", lambda m: m.group(1) + m.group(2).upper(), lowered)
    return _SEPARATORS_RE.sub("", titled)


def _lookup_ci(table: Mapping[str, str] | None, value: str) -> str:
    if not table:
        return value
    lowered = value.strip().lower()
    for k, v in table.items():
        if k.strip().lower() == lowered:
            return v
    return value


class SubtitleRowProcessor:
    def __init__(self, config: SubtitleHandlingConfig) -> None:
        self._config = config
        self._patterns = {
            rule.name: [rx for rx in (compile_pattern(p, re.IGNORECASE) for p in rule.validation_patterns) if rx]
            for rule in config.detection_rules
        }

    @property
    def enabled(self) -> bool:
        return self._config.enabled and any(r.apply_to_subsequent_rows for r in self._config.detection_rules)

    def _by_count(self, row: Row, rule: SubtitleDetectionRule) -> bool:
        return len(row.non_empty_values()) == rule.expected_column_count

    def _by_pattern(self, row: Row, rule: SubtitleDetectionRule) -> bool:
        if not rule.validation_patterns:
            return True
        content = " ".join(str(v) for v in row.non_empty_values())
        return any(rx.search(content) for rx in self._patterns.get(rule.name, []))

    def detect(self, row: Row) -> SubtitleDetectionRule | None:
        for rule in self._config.detection_rules:
            method = rule.detection_method.lower()
            if method == "columncount":
                matched = self._by_count(row, rule)
            elif method == "pattern":
                matched = self._by_pattern(row, rule)
            elif method == "hybrid":
                matched = self._by_count(row, rule) and self._by_pattern(row, rule)
            else:
                matched = False
            if matched:
                return rule
        return None

    @staticmethod
    def extract(row: Row, rule: SubtitleDetectionRule) -> dict[str, str]:
        values = row.non_empty_values()
        if not values:
            return {}
        first = str(values[0]).strip()
        name = rule.name.lower()
        if name == "brandsubtitle":
            return {"Brand": first}
        if name == "categorysubtitle":
            return {"Category": first}
        return {rule.name: first}

    def process(self, rows: Sequence[Row]) -> list[Row]:
        """Mark subtitle rows and carry their data onto following data rows."""
        if not self.enabled:
            return list(rows)
        current: dict[str, str] = {}
        out: list[Row] = []
        for row in rows:
            if not row.has_data:
                out.append(row)
                continue
            rule = self.detect(row)
            if rule is not None:
                data: dict[str, str] = {}
                if self._config.action.lower() == "parse":
                    data = self.extract(row, rule)
                    current.update(data)
                logger.debug(f"subtitle row {row.index} rule={rule.name} data={data}")
                out.append(row.as_subtitle(rule.name, data))
            elif current:
                out.append(row.with_subtitle(dict(current)))
            else:
                out.append(row)
        return out


def apply_subtitle_defaults(
    product: Product,
    subtitle_data: Mapping[str, str],
    lookups: Mapping[str, Mapping[str, str]] | None = None,
    value_table: str | None = None,
) -> None:
    """Write subtitle pairs into dynamic properties without overwriting existing keys."""
    table = (lookups or {}).get(value_table) if value_table else None
    for key, value in subtitle_data.items():
        if value is None or not str(value).strip():
            continue
        normalized = normalize_subtitle_key(key)
        if not normalized or normalized in product.dynamic_properties:
            continue
        product.set_dynamic(normalized, _lookup_ci(table, str(value).strip()))


def apply_subtitle_assignments(
    bag: PropertyBag,
    subtitle_data: Mapping[str, str],
    assignments: Sequence[SubtitleAssignment],
    lookups: Mapping[str, Mapping[str, str]] | None = None,
) -> None:
    """Apply subtitle pairs to a property bag.

    ``overwrite`` mappings replace any value regardless of the bag policy;
    others only fill keys the rules left empty.
    """
    by_key = {normalize_subtitle_key(k): v for k, v in subtitle_data.items()}
    for mapping in assignments:
        value = by_key.get(normalize_subtitle_key(mapping.source))
        if value is None or not str(value).strip():
            continue
        table = (lookups or {}).get(mapping.table) if mapping.table else None
        resolved = _lookup_ci(table, str(value).strip())
        if mapping.overwrite:
            bag.force_set(mapping.target, resolved, SUBTITLE_SOURCE)
        elif mapping.target not in bag:
            bag.set(mapping.target, resolved, SUBTITLE_SOURCE)
