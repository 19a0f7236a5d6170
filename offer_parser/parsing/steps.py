from __future__ import annotations

import logging
import re
import unicodedata
from collections.abc import Callable, Mapping
from enum import Enum
from functools import partial

from ..models.config_models import StepConfig
from .state import TransformState, assign_key

"""Step library: the fixed catalog of pure text-transformation operations.

Every step is ``TransformState -> TransformState``. ``build_step`` resolves a
StepConfig into a callable once per rule (regexes compiled, lookup tables
resolved) so per-row execution does no configuration work.

Source/target conventions shared by all steps:
- ``source`` None (or "Text") means the running text, otherwise a capture name
  (also found under its ``assign:`` form).
- a step with an ``output`` writes its result to that capture; without one it
  writes back to the source capture, or to the running text.

Unknown op names and steps whose configuration is unusable (bad regex, missing
lookup table) become pass-through steps; they never raise.
"""

__all__ = [
    "StepKind",
    "StepFn",
    "build_step",
    "compile_pattern",
    "translate_pattern",
    "regex_flags",
    "title_case",
    "DEFAULT_SIZE_PATTERNS",
]

logger = logging.getLogger(__name__)

StepFn = Callable[[TransformState], TransformState]

TEXT_SOURCE = "text"

SIZE_AND_UNIT_RE = re.compile(r"([0-9]+(?:\.[0-9]+)?)\s*([a-zA-Z]+)")
NUMBER_RE = re.compile(r"([0-9]+(?:\.[0-9]+)?)")
CAPITAL_TOKEN_RE = re.compile(r"^[A-Z&]+$")
WHITESPACE_RE = re.compile(r"\s+")

DEFAULT_SIZE_PATTERNS = (
    r"\((\d+(?:[.,]\d+)?\s*(?:ml|cl|l|g|kg|oz|fl\.?\s*oz))\)",
)

_FORMS = {
    "FORMKC": "NFKC",
    "FORMKD": "NFKD",
    "FORMC": "NFC",
    "FORMD": "NFD",
    "NFKC": "NFKC",
    "NFKD": "NFKD",
    "NFC": "NFC",
    "NFD": "NFD",
}

# (?<name>...) 形式の名前付きグループ / \k<name> 後方参照を Python 形式へ
_NET_GROUP_RE = re.compile(r"\(\?<(?![=!])(\w+)>")
_NET_BACKREF_RE = re.compile(r"\\k<(\w+)>")
_NET_REPLACEMENT_RE = re.compile(r"\$\{(\w+)\}|\$(\d+)")


class StepKind(Enum):
    UNICODE_NORMALIZE = "UnicodeNormalize"
    NORMALIZE_WHITESPACE = "NormalizeWhitespace"
    TO_UPPER = "ToUpper"
    TO_LOWER = "ToLower"
    CAPITALIZE = "Capitalize"
    REMOVE_SYMBOLS = "RemoveSymbols"
    TRIM = "Trim"
    REGEX_EXTRACT = "RegexExtract"
    REGEX_REPLACE = "RegexReplace"
    REGEX_REMOVE = "RegexRemove"
    MAP_VALUE = "MapValue"
    SPLIT_SIZE_AND_UNITS = "SplitSizeAndUnits"
    SPLIT_BY_DELIMITER = "SplitByDelimiter"
    EXTRACT_ALL_CAPITALS_FROM_START = "ExtractAllCapitalsFromStart"
    EXTRACT_SIZE_FROM_PATTERNS = "ExtractSizeFromPatterns"
    EXTRACT_MAPPED_VALUE = "ExtractMappedValue"
    EXTRACT_LAST_WORD = "ExtractLastWord"
    EXTRACT_MAPPED_WORD_ANYWHERE = "ExtractMappedWordAnywhere"
    ASSIGN = "Assign"
    CONDITIONAL_MAPPING = "ConditionalMapping"
    CONCAT = "Concat"
    REMOVE_FROM_START = "RemoveFromStart"
    UNKNOWN = "Unknown"

    @classmethod
    def from_op(cls, op: str | None) -> StepKind:
        if not op:
            return cls.UNKNOWN
        lowered = op.strip().lower()
        return _KIND_BY_NAME.get(lowered, cls.UNKNOWN)


_KIND_BY_NAME = {k.value.lower(): k for k in StepKind}
# 旧名 / 別名
_KIND_BY_NAME.update({
    "extractsizeandunits": StepKind.EXTRACT_SIZE_FROM_PATTERNS,
    "extractsize": StepKind.EXTRACT_SIZE_FROM_PATTERNS,
    "extractuppercasefromstart": StepKind.EXTRACT_ALL_CAPITALS_FROM_START,
    "split": StepKind.SPLIT_BY_DELIMITER,
})


def translate_pattern(pattern: str) -> str:
    """Accept ``(?<name>...)`` named groups as well as Python's ``(?P<name>...)``."""
    translated = _NET_GROUP_RE.sub(r"(?P<\1>", pattern)
    return _NET_BACKREF_RE.sub(r"(?P=\1)", translated)


def regex_flags(options: str | None) -> int:
    if not options:
        return 0
    lowered = options.lower()
    flags = 0
    if "ignorecase" in lowered:
        flags |= re.IGNORECASE
    if "singleline" in lowered:
        flags |= re.DOTALL
    if "multiline" in lowered:
        flags |= re.MULTILINE
    return flags


def compile_pattern(pattern: str | None, flags: int = 0) -> re.Pattern[str] | None:
    """Compile a configured pattern; an invalid one is logged and yields None."""
    try:
        return re.compile(translate_pattern(pattern or ""), flags)
    except re.error as e:
        logger.warning(f"invalid regex pattern {pattern!r}: {e}")
        return None


def _translate_replacement(replacement: str) -> str:
    escaped = replacement.replace("\\", "\\\\")
    return _NET_REPLACEMENT_RE.sub(
        lambda m: f"\\g<{m.group(1) or m.group(2)}>", escaped
    )


def _normalize_ws(text: str) -> str:
    return WHITESPACE_RE.sub(" ", text).strip()


def _fold(value: str, case_mode: str | None) -> str:
    mode = (case_mode or "exact").lower()
    if mode == "lower":
        return value.lower()
    if mode == "upper":
        return value.upper()
    return value


def _fold_table(table: Mapping[str, str], case_mode: str | None) -> dict[str, str]:
    folded: dict[str, str] = {}
    for key, value in table.items():
        # 先勝ち: 大小文字違いで衝突したキーは最初の定義を採用
        folded.setdefault(_fold(key, case_mode), value)
    return folded


def _source(state: TransformState, step: StepConfig) -> str | None:
    name = step.source
    if name and name.lower() == TEXT_SOURCE and all(k.lower() != TEXT_SOURCE for k in state.captures):
        return state.text
    return state.resolve(name)


def _write(state: TransformState, step: StepConfig, value: str) -> TransformState:
    target = step.output
    if not target and step.source and step.source.lower() != TEXT_SOURCE:
        target = step.source
    if target:
        return state.with_captures({target: value})
    return state.with_text(value)


# --- simple text steps -----------------------------------------------------

def _text_step(fn: Callable[[str], str], step: StepConfig, state: TransformState) -> TransformState:
    value = _source(state, step)
    if value is None:
        return state
    return _write(state, step, fn(value))


def title_case(value: str) -> str:
    # 文字以外 (空白・記号・数字) の直後を単語の先頭とみなす。アポストロフィの後は除く
    return re.sub(r"(?<![^\W\d_])(?<!['’])[^\W\d_]", lambda m: m.group(0).upper(), value.lower())


def _remove_symbols(value: str) -> str:
    return re.sub(r"[^\w\s]", "", value).strip()


def _unicode_normalize(form: str, value: str) -> str:
    return unicodedata.normalize(form, value)


# --- regex steps -------------------------------------------------------------

def _regex_extract(rx: re.Pattern[str], step: StepConfig, state: TransformState) -> TransformState:
    value = _source(state, step)
    if value is None:
        return state
    m = rx.search(value)
    if m is None:
        return state
    # 名前付きグループのみ (番号グループは無視)
    return state.with_captures({name: m.group(name) or "" for name in rx.groupindex})


def _regex_replace(rx: re.Pattern[str], template: str, step: StepConfig, state: TransformState) -> TransformState:
    value = _source(state, step)
    if value is None:
        return state
    return _write(state, step, rx.sub(template, value))


# --- lookup steps -------------------------------------------------------------

def _map_value(table: dict[str, str], step: StepConfig, state: TransformState) -> TransformState:
    value = _source(state, step)
    if value is None:
        return state
    mapped = table.get(_fold(value, step.case_mode))
    if mapped is None:
        if step.output:
            return state.with_captures({step.output: value})
        return state
    if step.output:
        return state.with_captures({step.output: mapped})
    return state.with_text(mapped)


def _extract_mapped_value(table: Mapping[str, str], step: StepConfig, state: TransformState) -> TransformState:
    value = _source(state, step)
    if value is None:
        return state
    extracted_out = step.extracted_out or "Extracted"
    remaining_out = step.remaining_out or "Remaining"
    for key, mapped in table.items():
        if key and key in value:
            remaining = _normalize_ws(value.replace(key, " ", 1))
            return state.with_captures({extracted_out: mapped, remaining_out: remaining})
    return state.with_captures({extracted_out: "", remaining_out: value.strip()})


def _extract_mapped_word_anywhere(table: dict[str, str], step: StepConfig, state: TransformState) -> TransformState:
    value = _source(state, step)
    if value is None:
        return state
    extracted_out = step.extracted_out or "Extracted"
    remaining_out = step.remaining_out or "Remaining"
    tokens = value.split()
    for i, token in enumerate(tokens):
        mapped = table.get(_fold(token, step.case_mode))
        if mapped is not None:
            remaining = " ".join(tokens[:i] + tokens[i + 1:])
            return state.with_captures({extracted_out: mapped, remaining_out: remaining})
    return state.with_captures({extracted_out: "", remaining_out: value.strip()})


def _conditional_mapping(
    tables: list[tuple[dict[str, str], str]], step: StepConfig, state: TransformState
) -> TransformState:
    value = _source(state, step)
    if value is None or not value.strip():
        return state
    delimiter = step.delimiter or "|"
    tokens = [t.strip().upper() for t in value.split(delimiter)]
    updates: dict[str, str] = {}
    for table, assign_to in tables:
        found = False
        for token in tokens:
            if token and token in table:
                found = True
                if table[token]:
                    updates[assign_key(assign_to)] = table[token]
                break
        if not found and table.get(""):
            updates[assign_key(assign_to)] = table[""]
    return state.with_captures(updates)


# --- size / split / token steps -----------------------------------------------

def _split_size_and_units(step: StepConfig, state: TransformState) -> TransformState:
    value = _source(state, step)
    if value is None:
        return state
    value_out = step.value_out or "Size"
    unit_out = step.unit_out or "Unit"
    m = SIZE_AND_UNIT_RE.search(value)
    if m:
        return state.with_captures({value_out: m.group(1), unit_out: m.group(2).upper()})
    m = NUMBER_RE.search(value)
    if m:
        return state.with_captures({value_out: m.group(1), unit_out: ""})
    return state


def _split_by_delimiter(step: StepConfig, state: TransformState) -> TransformState:
    value = _source(state, step)
    if value is None:
        return state
    out = step.output or "Parts"
    delimiter = step.delimiter or ":"
    parts = value.split(delimiter)
    expected = step.expected_parts
    if expected is not None and expected > 0 and len(parts) != expected:
        if step.strict:
            return state.with_captures({
                f"{out}.Length": "0",
                f"{out}.Valid": "false",
                f"{out}.Error": f"expected {expected} parts, got {len(parts)}",
            })
        parts = (parts + [""] * expected)[:expected]
    updates = {f"{out}[{i}]": p for i, p in enumerate(parts)}
    updates[f"{out}.Length"] = str(len(parts))
    updates[f"{out}.Valid"] = "true"
    return state.with_captures(updates)


def _extract_all_capitals_from_start(step: StepConfig, state: TransformState) -> TransformState:
    value = _source(state, step)
    if value is None:
        return state
    tokens = value.split()
    run = 0
    while run < len(tokens) and CAPITAL_TOKEN_RE.match(tokens[run]):
        run += 1
    # 末尾が1文字トークンなら残り側へ戻す
    if run > 0 and len(tokens[run - 1]) == 1 and tokens[run - 1].isalpha():
        run -= 1
    return state.with_captures({
        step.extracted_out or "Extracted": " ".join(tokens[:run]),
        step.remaining_out or "Remaining": " ".join(tokens[run:]),
    })


def _extract_size_from_patterns(
    patterns: list[re.Pattern[str]], step: StepConfig, state: TransformState
) -> TransformState:
    value = _source(state, step)
    if value is None:
        return state
    size_out = step.size_out or step.output or "Size"
    remaining_out = step.remaining_out or "Remaining"
    for rx in patterns:
        m = rx.search(value)
        if m is None:
            continue
        size = m.group(1) if rx.groups else m.group(0)
        remaining = _normalize_ws(value[: m.start()] + " " + value[m.end():])
        return state.with_captures({size_out: size.strip(), remaining_out: remaining})
    return state.with_captures({size_out: "", remaining_out: value.strip()})


def _extract_last_word(step: StepConfig, state: TransformState) -> TransformState:
    value = _source(state, step)
    if value is None:
        return state
    tokens = value.split()
    if not tokens:
        return state
    return state.with_captures({
        step.word_out or "Word": tokens[-1],
        step.remaining_out or "Remaining": " ".join(tokens[:-1]),
    })


def _remove_from_start(rx: re.Pattern[str], step: StepConfig, state: TransformState) -> TransformState:
    value = _source(state, step)
    if value is None:
        return state
    tokens = value.split()
    if not tokens or not rx.search(tokens[0]):
        return state
    cleaned = value.strip()[len(tokens[0]):].lstrip()
    target = step.target or step.output
    if target:
        return state.with_captures({target: cleaned, f"{target}.Removed": tokens[0]})
    return state.with_text(cleaned)


# --- assignment steps ------------------------------------------------------------

def _assign(step: StepConfig, state: TransformState) -> TransformState:
    value = _source(state, step)
    target = step.target or step.output
    if value is None or not target:
        return state
    return state.with_captures({assign_key(target): value})


def _concat(step: StepConfig, state: TransformState) -> TransformState:
    parts = []
    for key in step.keys:
        v = state.resolve(key)
        if v is not None and v.strip():
            parts.append(v.strip())
    joined = (step.separator if step.separator is not None else " ").join(parts)
    target = step.target or step.output
    if not joined or not target:
        return state
    return state.with_captures({assign_key(target) if step.assign else target: joined})


def _identity(state: TransformState) -> TransformState:
    return state


# --- builder ----------------------------------------------------------------------

def _resolve_table(step: StepConfig, lookups: Mapping[str, Mapping[str, str]]) -> Mapping[str, str] | None:
    if not step.table:
        logger.warning(f"step {step.op}: no lookup table configured")
        return None
    table = lookups.get(step.table)
    if table is None:
        logger.warning(f"step {step.op}: lookup table not found: {step.table}")
    return table


def build_step(step: StepConfig, lookups: Mapping[str, Mapping[str, str]]) -> StepFn:
    """Resolve ``step`` into a callable. Never raises for bad configuration."""
    kind = StepKind.from_op(step.op)
    builder = _BUILDERS.get(kind)
    if builder is None:
        if kind is StepKind.UNKNOWN:
            logger.debug(f"unknown step op {step.op!r} -> pass-through")
        return _identity
    return builder(step, lookups)


def _b_unicode(step: StepConfig, lookups: Mapping[str, Mapping[str, str]]) -> StepFn:
    form = _FORMS.get((step.form or "").upper(), "NFKC")
    return partial(_text_step, partial(_unicode_normalize, form), step)


def _b_text(fn: Callable[[str], str]) -> Callable[[StepConfig, Mapping[str, Mapping[str, str]]], StepFn]:
    def build(step: StepConfig, lookups: Mapping[str, Mapping[str, str]]) -> StepFn:
        return partial(_text_step, fn, step)
    return build


def _b_regex_extract(step: StepConfig, lookups: Mapping[str, Mapping[str, str]]) -> StepFn:
    rx = compile_pattern(step.pattern, regex_flags(step.options))
    if rx is None:
        return _identity
    return partial(_regex_extract, rx, step)


def _b_regex_replace(remove: bool) -> Callable[[StepConfig, Mapping[str, Mapping[str, str]]], StepFn]:
    def build(step: StepConfig, lookups: Mapping[str, Mapping[str, str]]) -> StepFn:
        rx = compile_pattern(step.pattern, regex_flags(step.options))
        if rx is None:
            return _identity
        template = "" if remove else _translate_replacement(step.replacement or "")
        return partial(_regex_replace, rx, template, step)
    return build


def _b_map_value(step: StepConfig, lookups: Mapping[str, Mapping[str, str]]) -> StepFn:
    table = _resolve_table(step, lookups)
    if table is None:
        return _identity
    return partial(_map_value, _fold_table(table, step.case_mode), step)


def _b_extract_mapped_value(step: StepConfig, lookups: Mapping[str, Mapping[str, str]]) -> StepFn:
    table = _resolve_table(step, lookups)
    if table is None:
        return _identity
    return partial(_extract_mapped_value, table, step)


def _b_extract_mapped_word(step: StepConfig, lookups: Mapping[str, Mapping[str, str]]) -> StepFn:
    table = _resolve_table(step, lookups)
    if table is None:
        return _identity
    return partial(_extract_mapped_word_anywhere, _fold_table(table, step.case_mode), step)


def _b_conditional_mapping(step: StepConfig, lookups: Mapping[str, Mapping[str, str]]) -> StepFn:
    tables: list[tuple[dict[str, str], str]] = []
    for mapping in step.mappings:
        table = lookups.get(mapping.table)
        if table is None:
            logger.warning(f"ConditionalMapping: lookup table not found: {mapping.table}")
            continue
        tables.append((_fold_table(table, "upper"), mapping.assign_to))
    return partial(_conditional_mapping, tables, step)


def _b_size_patterns(step: StepConfig, lookups: Mapping[str, Mapping[str, str]]) -> StepFn:
    flags = regex_flags(step.options) or re.IGNORECASE
    compiled = [rx for rx in (compile_pattern(p, flags) for p in (step.patterns or DEFAULT_SIZE_PATTERNS)) if rx]
    return partial(_extract_size_from_patterns, compiled, step)


def _b_remove_from_start(step: StepConfig, lookups: Mapping[str, Mapping[str, str]]) -> StepFn:
    if not step.pattern:
        return _identity
    rx = compile_pattern(step.pattern, regex_flags(step.options))
    if rx is None:
        return _identity
    return partial(_remove_from_start, rx, step)


def _b_plain(fn: Callable[[StepConfig, TransformState], TransformState]) -> Callable[[StepConfig, Mapping[str, Mapping[str, str]]], StepFn]:
    def build(step: StepConfig, lookups: Mapping[str, Mapping[str, str]]) -> StepFn:
        return partial(fn, step)
    return build


_BUILDERS: dict[StepKind, Callable[[StepConfig, Mapping[str, Mapping[str, str]]], StepFn]] = {
    StepKind.UNICODE_NORMALIZE: _b_unicode,
    StepKind.NORMALIZE_WHITESPACE: _b_text(_normalize_ws),
    StepKind.TO_UPPER: _b_text(str.upper),
    StepKind.TO_LOWER: _b_text(str.lower),
    StepKind.CAPITALIZE: _b_text(title_case),
    StepKind.REMOVE_SYMBOLS: _b_text(_remove_symbols),
    StepKind.TRIM: _b_text(str.strip),
    StepKind.REGEX_EXTRACT: _b_regex_extract,
    StepKind.REGEX_REPLACE: _b_regex_replace(remove=False),
    StepKind.REGEX_REMOVE: _b_regex_replace(remove=True),
    StepKind.MAP_VALUE: _b_map_value,
    StepKind.SPLIT_SIZE_AND_UNITS: _b_plain(_split_size_and_units),
    StepKind.SPLIT_BY_DELIMITER: _b_plain(_split_by_delimiter),
    StepKind.EXTRACT_ALL_CAPITALS_FROM_START: _b_plain(_extract_all_capitals_from_start),
    StepKind.EXTRACT_SIZE_FROM_PATTERNS: _b_size_patterns,
    StepKind.EXTRACT_MAPPED_VALUE: _b_extract_mapped_value,
    StepKind.EXTRACT_LAST_WORD: _b_plain(_extract_last_word),
    StepKind.EXTRACT_MAPPED_WORD_ANYWHERE: _b_extract_mapped_word,
    StepKind.ASSIGN: _b_plain(_assign),
    StepKind.CONDITIONAL_MAPPING: _b_conditional_mapping,
    StepKind.CONCAT: _b_plain(_concat),
    StepKind.REMOVE_FROM_START: _b_remove_from_start,
}
