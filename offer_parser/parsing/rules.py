from __future__ import annotations

import logging
from collections.abc import Mapping
from decimal import Decimal, InvalidOperation
from typing import Any, Protocol

from ..models.config_models import RuleConfig
from .actions import ChainRule
from .pipeline import PipelineRule, RuleConfigError, RuleResult
from .state import Assignment
from .steps import compile_pattern

"""Rule types and the rule factory.

``Pipeline`` (steps) and ``Chain`` (actions, see actions.py) are the general
forms; the other types are compact shorthands kept for older supplier documents:

- DirectAssign: ``assign`` maps property -> converter applied to the raw cell
- MapValue: ``assign`` maps ``capture->Property`` -> converter (raw cell input)
- MultiCaptureRegex: ``pattern`` with groups, ``assign`` maps ``group->Property`` -> converter
- SplitByDelimiter: splits the raw cell and assigns parts by prefix (``split_mappings``)
"""

__all__ = [
    "Rule",
    "RuleConfigError",
    "create_rule",
    "convert_value",
]

logger = logging.getLogger(__name__)

_CURRENCY_SYMBOLS = {"₪": "ILS", "$": "USD", "€": "EUR", "£": "GBP", "¥": "JPY"}


class Rule(Protocol):
    id: str
    priority: int

    def execute(self, raw: str | None, bag: Mapping[str, Any] | None = None) -> RuleResult: ...


def _to_decimal(raw: str) -> Decimal | str:
    try:
        number = Decimal(raw.strip().replace(",", "."))
    except InvalidOperation:
        return raw
    # NaN / Infinity は数値として扱わない
    return number if number.is_finite() else raw


def convert_value(raw: str, converter: str | None) -> Any:
    """Apply a named shorthand converter; unknown names return ``raw`` untouched."""
    name = (converter or "").strip()
    if name == "trim":
        return raw.strip()
    if name == "decimal":
        return _to_decimal(raw)
    if name == "unitNormalize":
        trimmed = raw.strip()
        return "ml" if trimmed.lower() == "ml" else trimmed
    if name == "currencyNormalize":
        code = raw.strip().upper()
        return _CURRENCY_SYMBOLS.get(code, code)
    return raw


def _split_arrow(key: str) -> tuple[str, str]:
    left, sep, right = key.partition("->")
    if not sep:
        return key, key
    return left.strip(), right.strip()


class DirectAssignRule:
    def __init__(self, config: RuleConfig) -> None:
        self.id = config.id
        self.priority = config.priority
        self._assign = dict(config.assign)

    def execute(self, raw: str | None, bag: Mapping[str, Any] | None = None) -> RuleResult:
        if raw is None or not raw.strip():
            return RuleResult.empty()
        out = [Assignment(prop, convert_value(raw, conv), self.id) for prop, conv in self._assign.items()]
        return RuleResult(True, out)


class MapValueRule:
    def __init__(self, config: RuleConfig) -> None:
        self.id = config.id
        self.priority = config.priority
        self._assign = [(_split_arrow(k)[1], v) for k, v in config.assign.items()]

    def execute(self, raw: str | None, bag: Mapping[str, Any] | None = None) -> RuleResult:
        if raw is None or not raw.strip():
            return RuleResult.empty()
        out = [Assignment(prop, convert_value(raw, conv), self.id) for prop, conv in self._assign]
        return RuleResult(True, out)


class MultiCaptureRegexRule:
    def __init__(self, config: RuleConfig) -> None:
        self.id = config.id
        self.priority = config.priority
        self._regex = compile_pattern(config.pattern)
        self._assign = [(*_split_arrow(k), v) for k, v in config.assign.items()]

    def execute(self, raw: str | None, bag: Mapping[str, Any] | None = None) -> RuleResult:
        if raw is None or not raw.strip() or self._regex is None:
            return RuleResult.empty()
        m = self._regex.search(raw.strip())
        if m is None:
            return RuleResult.empty()
        out: list[Assignment] = []
        for group, prop, conv in self._assign:
            try:
                captured = m.group(int(group) if group.isdigit() else group) or ""
            except IndexError:
                logger.warning(f"rule {self.id}: unknown capture group {group!r}")
                continue
            out.append(Assignment(prop, convert_value(captured, conv), self.id))
        return RuleResult(True, out)


class SplitByDelimiterRule:
    def __init__(self, config: RuleConfig) -> None:
        self.id = config.id
        self.priority = config.priority
        self._delimiter = config.delimiter or "."
        self._maps = config.split_mappings

    def execute(self, raw: str | None, bag: Mapping[str, Any] | None = None) -> RuleResult:
        if raw is None or not raw.strip():
            return RuleResult.empty()
        parts = [p.strip() for p in raw.split(self._delimiter) if p.strip()]
        out: list[Assignment] = []
        for part in parts:
            for m in self._maps:
                if part.lower().startswith(m.starts_with.lower()):
                    out.append(Assignment(m.assign_to, part[len(m.after):].strip(), self.id))
        return RuleResult(bool(out), out)


def create_rule(config: RuleConfig, lookups: Mapping[str, Mapping[str, str]]) -> Rule:
    kind = (config.type or "Pipeline").strip().lower()
    if kind == "pipeline":
        return PipelineRule(config, lookups)
    if kind in {"chain", "actions"}:
        return ChainRule(config, lookups)
    if kind == "directassign":
        return DirectAssignRule(config)
    if kind == "mapvalue":
        return MapValueRule(config)
    if kind == "multicaptureregex":
        return MultiCaptureRegexRule(config)
    if kind == "splitbydelimiter":
        return SplitByDelimiterRule(config)
    raise RuleConfigError(f"unknown rule type: {config.type!r} (rule {config.id})")
