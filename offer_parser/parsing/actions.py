from __future__ import annotations

import logging
import re
from collections.abc import Iterator, Mapping, MutableMapping, Sequence
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from ..models.config_models import ActionConfig, RuleConfig
from .pipeline import RuleConfigError, RuleResult
from .state import ASSIGN_PREFIX, Assignment, assign_key
from .steps import compile_pattern, title_case

"""Chain rules: named actions run in order over one shared working bag.

The working bag (ChainBag) starts with ``Text`` = the raw cell and an
``assign:<Property>`` entry for every static ``assign`` value of the rule.
Actions read keys from it (falling back to ``assign:<key>`` and then to the
row's property bag) and write plain keys or ``assign:`` keys. When the chain
ends, every ``assign:`` key becomes an Assignment.

List-producing actions (find, split, removefromstart) write
``<out>.Clean``, ``<out>.Length``, ``<out>.Valid`` plus either ``<out>`` (one
result) or ``<out>[0]``, ``<out>[1]``, ... (several).

Configuration problems (missing parameters, unknown lookup tables, bad
regexes) raise RuleConfigError when the rule is built; an unknown op copies
its input to its output.
"""

__all__ = [
    "TEXT_KEY",
    "CONVERT_PRESETS",
    "ChainBag",
    "ChainAction",
    "ChainRule",
    "build_action",
    "evaluate_condition",
    "write_list_output",
]

logger = logging.getLogger(__name__)

TEXT_KEY = "Text"

_LETTER = r"[^\W\d_]"
_INLINE_FLAGS_RE = re.compile(r"^\(\?[aiLmsux]+\)")
_INT_RE = re.compile(r"[+-]?\d+")
_WS_RE = re.compile(r"\s+")

CONVERT_PRESETS: dict[str, dict[str, str]] = {
    "oz_to_ml": {"fromunit": "oz", "tounit": "ml", "factor": "29.5735", "round": "int"},
    "ml_to_oz": {"fromunit": "ml", "tounit": "oz", "factor": "0.033814", "round": "none"},
}


class ChainBag(MutableMapping[str, str]):
    """Working storage for one chain run; keys compare case-insensitively.

    ``row`` is the row's property bag as written by earlier rules. It is read
    when a key is missing here and never written.
    """

    def __init__(self, text: str, row: Mapping[str, Any] | None = None) -> None:
        # lower-cased key -> (display key, value)
        self._data: dict[str, tuple[str, str]] = {}
        self._row = row or {}
        self[TEXT_KEY] = text

    def __getitem__(self, key: str) -> str:
        return self._data[key.lower()][1]

    def __setitem__(self, key: str, value: str) -> None:
        folded = key.lower()
        current = self._data.get(folded)
        self._data[folded] = (key if current is None else current[0], value)

    def __delitem__(self, key: str) -> None:
        del self._data[key.lower()]

    def __iter__(self) -> Iterator[str]:
        return (key for key, _ in self._data.values())

    def __len__(self) -> int:
        return len(self._data)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and key.lower() in self._data

    def read(self, key: str) -> str | None:
        """Working value, then its ``assign:`` form, then the row's property."""
        for candidate in (key, assign_key(key)):
            found = self._data.get(candidate.lower())
            if found is not None:
                return found[1]
        wanted = key.lower()
        for name, value in self._row.items():
            if name.lower() == wanted:
                return None if value is None else str(value)
        return None

    def write(self, key: str, value: str, assign: bool) -> None:
        self[assign_key(key) if assign else key] = value

    def assignments(self, source: str) -> list[Assignment]:
        return [
            Assignment(key[len(ASSIGN_PREFIX):], value, source)
            for key, value in self.items()
            if key.lower().startswith(ASSIGN_PREFIX)
        ]


def write_list_output(
    bag: ChainBag, base: str, cleaned: str, results: Sequence[str], assign: bool, single: bool
) -> None:
    bag[f"{base}.Clean"] = cleaned
    bag[f"{base}.Length"] = str(len(results))
    bag[f"{base}.Valid"] = "true" if results else "false"
    for i, result in enumerate(results):
        bag.write(base if single else f"{base}[{i}]", result, assign)


def _token(token: str, bag: ChainBag) -> str:
    if not token:
        return ""
    if token.lower() in {"true", "false"}:
        return token
    if len(token) >= 2 and token[0] == token[-1] and token[0] in "\"'":
        return token[1:-1]
    if _INT_RE.fullmatch(token):
        return token
    return bag.read(token) or ""


def evaluate_condition(condition: str | None, bag: ChainBag) -> bool:
    """``Left == Right`` or ``Left != Right``; operands are quoted text, integers or bag keys.

    Comparison is ordinal. Anything else evaluates to False.
    """
    text = (condition or "").strip()
    for operator in ("==", "!="):
        left, sep, right = text.partition(operator)
        if sep:
            equal = _token(left.strip(), bag) == _token(right.strip(), bag)
            return equal if operator == "==" else not equal
    return False


def _flag(value: str | None, default: bool = False) -> bool:
    if value is None or not value.strip():
        return default
    return value.strip().lower() == "true"


def _collapse(text: str) -> str:
    return _WS_RE.sub(" ", text).strip()


def _find_table(lookups: Mapping[str, Mapping[str, str]], name: str) -> Mapping[str, str] | None:
    table = lookups.get(name)
    if table is None:
        wanted = name.lower()
        table = next((t for n, t in lookups.items() if n.lower() == wanted), None)
    return table


class ChainAction:
    """Base action; as an unknown op it copies ``input`` to ``output``.

    Every action honours an optional ``condition`` parameter and, where it
    writes a value, an ``assign`` parameter (``true`` -> ``assign:<output>``).
    """

    op = "noop"

    def __init__(self, config: ActionConfig, lookups: Mapping[str, Mapping[str, str]] | None = None) -> None:
        self.input = config.input or TEXT_KEY
        self.output = config.output
        self.assign = _flag(config.param("assign"))
        self.condition = config.param("condition")

    def execute(self, bag: ChainBag) -> bool:
        if self.condition and not evaluate_condition(self.condition, bag):
            return False
        return self.run(bag)

    def run(self, bag: ChainBag) -> bool:
        if self.output:
            bag[self.output] = bag.read(self.input) or ""
        return True


class AssignAction(ChainAction):
    op = "assign"

    def run(self, bag: ChainBag) -> bool:
        bag[assign_key(self.output)] = bag.read(self.input) or ""
        return True


class ConditionalAction(ChainAction):
    """Guarded copy: when ``condition`` holds, a non-empty input goes to the output."""

    op = "conditional"

    def __init__(self, config: ActionConfig, lookups: Mapping[str, Mapping[str, str]] | None = None) -> None:
        super().__init__(config, lookups)
        if not (self.condition or "").strip():
            raise RuleConfigError("conditional action requires a 'condition' parameter")

    def run(self, bag: ChainBag) -> bool:
        value = bag.read(self.input)
        if not value:
            return False
        bag.write(self.output, value, self.assign)
        return True


class FindAction(ChainAction):
    """Regex search over the input.

    Parameters: ``pattern`` (a regex, or ``lookup:<table>`` for any key of a
    lookup table as a whole word) and ``options``, a comma list of
    ``remove``, ``ignorecase`` and one of ``first`` (default), ``last``, ``all``.
    A match yields its ``size`` group, else its first named group, else the
    whole match. With ``remove`` the match is cut out of ``<out>.Clean``.
    """

    op = "find"

    def __init__(self, config: ActionConfig, lookups: Mapping[str, Mapping[str, str]] | None = None) -> None:
        super().__init__(config, lookups)
        options = [o.strip().lower() for o in (config.param("options") or "").split(",") if o.strip()]
        self.remove = "remove" in options
        self.mode = next((o for o in options if o in {"first", "last", "all"}), "first")
        flags = re.IGNORECASE if "ignorecase" in options else 0

        pattern = config.param("pattern") or ""
        if pattern.lower().startswith("lookup:"):
            pattern = self._lookup_pattern(pattern[len("lookup:"):].strip(), lookups or {})
        if not pattern:
            raise RuleConfigError("find action requires a 'pattern' parameter")
        rx = compile_pattern(pattern, flags)
        if rx is None:
            raise RuleConfigError(f"find action: invalid pattern {pattern!r}")
        self._rx = rx
        self._fallback = self._letter_boundary(pattern, flags) if r"\b" in pattern else None

    @staticmethod
    def _lookup_pattern(table_name: str, lookups: Mapping[str, Mapping[str, str]]) -> str:
        table = _find_table(lookups, table_name)
        if table is None:
            raise RuleConfigError(f"find action: lookup table not found: {table_name}")
        # 長いキーを先に (短い部分一致を避ける)
        keys = sorted((k for k in table if k), key=len, reverse=True)
        if not keys:
            raise RuleConfigError(f"find action: lookup table is empty: {table_name}")
        return r"(?i)\b(?:" + "|".join(re.escape(k) for k in keys) + r")\b"

    @staticmethod
    def _letter_boundary(pattern: str, flags: int) -> re.Pattern[str] | None:
        # \b は英数字境界なので、"D&G" のような記号を含む語は文字境界で再試行する
        m = _INLINE_FLAGS_RE.match(pattern)
        prefix = m.group(0) if m else ""
        body = pattern[len(prefix):].replace(r"\b", "")
        return compile_pattern(f"{prefix}(?<!{_LETTER})(?:{body})(?!{_LETTER})", flags)

    def _matches(self, value: str) -> tuple[re.Pattern[str], list[re.Match[str]]]:
        matches = list(self._rx.finditer(value))
        if not matches and self._fallback is not None:
            retry = list(self._fallback.finditer(value))
            if retry:
                return self._fallback, retry
        return self._rx, matches

    @staticmethod
    def _result(m: re.Match[str]) -> str:
        groups = m.re.groupindex
        if "size" in groups and m.group("size") is not None:
            return m.group("size")
        for name in sorted(groups, key=groups.__getitem__):
            if m.group(name) is not None:
                return m.group(name)
        return m.group(0)

    def run(self, bag: ChainBag) -> bool:
        value = bag.read(self.input) or ""
        rx, matches = self._matches(value) if value else (self._rx, [])
        if not matches:
            write_list_output(bag, self.output, value, (), False, True)
            return False
        if self.mode == "all":
            cleaned = _collapse(rx.sub(" ", value)) if self.remove else value
            write_list_output(bag, self.output, cleaned, [self._result(m) for m in matches], self.assign, False)
            return True
        m = matches[0] if self.mode == "first" else matches[-1]
        cleaned = _collapse(f"{value[:m.start()]} {value[m.end():]}") if self.remove else value
        write_list_output(bag, self.output, cleaned, [self._result(m)], self.assign, True)
        return True


class SplitAction(ChainAction):
    op = "split"

    def __init__(self, config: ActionConfig, lookups: Mapping[str, Mapping[str, str]] | None = None) -> None:
        super().__init__(config, lookups)
        self.delimiter = config.param("delimiter", ":")
        if not self.delimiter:
            raise RuleConfigError("split action: empty delimiter")

    def run(self, bag: ChainBag) -> bool:
        value = bag.read(self.input) or ""
        if not value:
            write_list_output(bag, self.output, value, (), False, False)
            return False
        parts = [p.strip() for p in value.split(self.delimiter)]
        write_list_output(bag, self.output, value, parts, self.assign, False)
        return True


class MapAction(ChainAction):
    """Case-insensitive lookup of the trimmed input in ``table``.

    With ``addIfNotFound: true`` an unknown value maps to its title-cased form.
    """

    op = "map"

    def __init__(self, config: ActionConfig, lookups: Mapping[str, Mapping[str, str]] | None = None) -> None:
        super().__init__(config, lookups)
        name = (config.param("table") or "").strip()
        if not name:
            raise RuleConfigError("map action requires a 'table' parameter")
        table = _find_table(lookups or {}, name)
        if table is None:
            raise RuleConfigError(f"map action: lookup table not found: {name}")
        self._table: dict[str, str] = {}
        for key, mapped in table.items():
            self._table.setdefault(key.lower(), mapped)
        self.add_if_not_found = _flag(config.param("addifnotfound") or config.param("add_if_not_found"))

    def run(self, bag: ChainBag) -> bool:
        value = (bag.read(self.input) or "").strip()
        if not value:
            return False
        mapped = self._table.get(value.lower())
        if mapped is None:
            if not self.add_if_not_found:
                return False
            mapped = title_case(value)
        bag.write(self.output, mapped, self.assign)
        return True


class SwitchAction(ChainAction):
    """``When:<value>`` parameters map the input to an output; ``Default`` covers the rest."""

    op = "switch"

    def __init__(self, config: ActionConfig, lookups: Mapping[str, Mapping[str, str]] | None = None) -> None:
        super().__init__(config, lookups)
        self.ignore_case = _flag(config.param("ignorecase"), default=True)
        self.default = config.param("default")
        self._cases: dict[str, str] = {}
        for key, mapped in config.parameters.items():
            if key.lower().startswith("when:"):
                self._cases.setdefault(self._fold(key[len("when:"):]), mapped)
        if not self._cases and self.default is None:
            raise RuleConfigError("switch action requires a 'When:<value>' parameter or a 'Default'")

    def _fold(self, value: str) -> str:
        return value.lower() if self.ignore_case else value

    def run(self, bag: ChainBag) -> bool:
        value = self._cases.get(self._fold(bag.read(self.input) or ""), self.default)
        if value is None:
            return False
        bag.write(self.output, value, self.assign)
        return True


class CaseAction(ChainAction):
    op = "case"

    _MODES = {"title": title_case, "upper": str.upper, "lower": str.lower}

    def __init__(self, config: ActionConfig, lookups: Mapping[str, Mapping[str, str]] | None = None) -> None:
        super().__init__(config, lookups)
        mode = (config.param("mode") or "title").strip().lower()
        if mode not in self._MODES:
            raise RuleConfigError(f"case action: invalid mode {mode!r} (allowed: title, upper, lower)")
        self._convert = self._MODES[mode]

    def run(self, bag: ChainBag) -> bool:
        value = bag.read(self.input)
        if value is None:
            return False
        bag.write(self.output, self._convert(value), self.assign)
        return True


def _format_number(value: Decimal) -> str:
    if value == value.to_integral_value():
        return str(int(value))
    rounded = value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP).normalize()
    return format(rounded, "f")


class ConvertAction(ChainAction):
    """Scale a number when the unit under ``UnitKey`` equals ``FromUnit``.

    Parameters: ``Preset`` (see CONVERT_PRESETS) or ``FromUnit`` / ``ToUnit`` /
    ``Factor``; ``UnitKey`` (omitted: convert unconditionally); ``Round``
    (``none`` | ``int``); ``SetUnit`` (default true) writes ``ToUnit`` to
    ``assign:<UnitKey>`` after a conversion.
    """

    op = "convert"

    def __init__(self, config: ActionConfig, lookups: Mapping[str, Mapping[str, str]] | None = None) -> None:
        super().__init__(config, lookups)
        preset_name = (config.param("preset") or "").strip().lower()
        preset = CONVERT_PRESETS.get(preset_name, {}) if preset_name else {}
        if preset_name and not preset:
            raise RuleConfigError(f"convert action: unknown preset {preset_name!r}")

        def setting(name: str) -> str | None:
            value = config.param(name)
            return value.strip() if value and value.strip() else preset.get(name)

        self.from_unit = setting("fromunit")
        self.to_unit = setting("tounit")
        self.unit_key = setting("unitkey")
        self.round_int = (setting("round") or "none").lower() == "int"
        self.set_unit = _flag(config.param("setunit"), default=True)
        factor = setting("factor")
        if not factor:
            raise RuleConfigError("convert action requires 'Preset' or 'Factor'")
        try:
            self.factor = Decimal(factor)
        except InvalidOperation as e:
            raise RuleConfigError(f"convert action: invalid factor {factor!r}") from e
        if not self.factor.is_finite():
            raise RuleConfigError(f"convert action: invalid factor {factor!r}")

    def run(self, bag: ChainBag) -> bool:
        raw = (bag.read(self.input) or "").strip().replace(",", ".")
        try:
            number = Decimal(raw)
        except InvalidOperation:
            return False
        if not number.is_finite():
            return False
        if self.unit_key:
            unit = bag.read(self.unit_key)
            if unit is None:
                return False
            if self.from_unit and unit.strip().lower() != self.from_unit.lower():
                return False
        converted = number * self.factor
        if self.round_int:
            converted = converted.quantize(Decimal(1), rounding=ROUND_HALF_UP)
        bag.write(self.output, _format_number(converted), self.assign)
        if self.set_unit and self.to_unit and self.unit_key:
            bag[assign_key(self.unit_key)] = self.to_unit
        return True


class ClearAction(ChainAction):
    op = "clear"

    def run(self, bag: ChainBag) -> bool:
        bag.write(self.output, "", self.assign)
        return True


class ConcatAction(ChainAction):
    """Join the non-blank values of ``Keys`` (comma list) with ``Separator`` (default one space)."""

    op = "concat"

    def __init__(self, config: ActionConfig, lookups: Mapping[str, Mapping[str, str]] | None = None) -> None:
        super().__init__(config, lookups)
        self.keys = [k.strip() for k in (config.param("keys") or "").split(",") if k.strip()]
        if not self.keys:
            raise RuleConfigError("concat action requires a non-empty 'Keys' parameter")
        self.separator = config.param("separator", " ")

    def run(self, bag: ChainBag) -> bool:
        parts = [v.strip() for v in (bag.read(k) for k in self.keys) if v and v.strip()]
        if not parts:
            return False
        bag.write(self.output, self.separator.join(parts), self.assign)
        return True


class RemoveFromStartAction(ChainAction):
    """Cut the leading word when it matches ``pattern``; the word becomes ``<out>[0]``."""

    op = "removefromstart"

    def __init__(self, config: ActionConfig, lookups: Mapping[str, Mapping[str, str]] | None = None) -> None:
        super().__init__(config, lookups)
        pattern = config.param("pattern") or ""
        rx = compile_pattern(pattern) if pattern else None
        if rx is None:
            raise RuleConfigError(f"removefromstart action: missing or invalid pattern {pattern!r}")
        self._rx = rx

    def run(self, bag: ChainBag) -> bool:
        value = bag.read(self.input) or ""
        words = value.split()
        if not words or not self._rx.search(words[0]):
            write_list_output(bag, self.output, value, (), False, False)
            return False
        cleaned = value.strip()[len(words[0]):].lstrip()
        write_list_output(bag, self.output, cleaned, [words[0]], self.assign, False)
        return True


_ACTIONS: dict[str, type[ChainAction]] = {
    "assign": AssignAction,
    "conditional": ConditionalAction,
    "find": FindAction,
    "split": SplitAction,
    "map": MapAction,
    "mapping": MapAction,
    "switch": SwitchAction,
    "case": CaseAction,
    "caseformat": CaseAction,
    "convert": ConvertAction,
    "clear": ClearAction,
    "concat": ConcatAction,
    "removefromstart": RemoveFromStartAction,
}


def build_action(config: ActionConfig, lookups: Mapping[str, Mapping[str, str]]) -> ChainAction:
    op = (config.op or "").strip().lower()
    action_type = _ACTIONS.get(op)
    if action_type is None:
        logger.debug(f"unknown action op {config.op!r} -> copy input to output")
        return ChainAction(config, lookups)
    if not config.output.strip():
        raise RuleConfigError(f"{op} action requires an output")
    return action_type(config, lookups)


class ChainRule:
    """``Chain`` rule type: configured actions over a ChainBag.

    A blank raw value yields no assignments without running any action.
    """

    def __init__(self, config: RuleConfig, lookups: Mapping[str, Mapping[str, str]]) -> None:
        self.id = config.id
        self.priority = config.priority
        self._static = {k: v for k, v in config.assign.items() if k.strip()}
        try:
            self._actions = [build_action(a, lookups) for a in config.actions]
        except RuleConfigError as e:
            raise RuleConfigError(f"rule {config.id}: {e}") from e

    def run(self, raw: str, bag: Mapping[str, Any] | None = None) -> ChainBag:
        work = ChainBag(raw, bag)
        for key, value in self._static.items():
            work[assign_key(key)] = value
        for action in self._actions:
            try:
                action.execute(work)
            except (ArithmeticError, ValueError, re.error) as e:
                # 1 アクションの失敗で chain 全体は止めない
                logger.warning(f"rule {self.id}: {action.op} action failed: {e}")
        return work

    def execute(self, raw: str | None, bag: Mapping[str, Any] | None = None) -> RuleResult:
        if raw is None or not str(raw).strip():
            return RuleResult.empty()
        assignments = self.run(str(raw), bag).assignments(self.id)
        return RuleResult(bool(assignments), assignments)

    def __len__(self) -> int:
        return len(self._actions)
