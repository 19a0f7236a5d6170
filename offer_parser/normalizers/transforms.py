from __future__ import annotations

import logging
import re
from collections.abc import Mapping, Sequence
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any

import pandas as pd

from ..parsing.steps import compile_pattern

"""Column-variant value transforms and type conversion.

Transform names come from a column's ``transformations`` list, each written as
``name`` or ``name:parameters`` (split on the first colon only), applied in
order. Some transforms also yield extra properties (e.g. ``extractpattern``
named groups, ``extractsizeandunits``) which the column normalizer routes by
market classification.
"""

__all__ = [
    "apply_transformations",
    "convert_data_type",
    "normalize_for_mapping",
    "normalize_decimal",
    "normalize_unit",
    "extract_after_pattern",
    "convert_wildcard_to_regex",
    "extract_price_and_currency",
    "extract_size_and_units",
    "extract_upper_words_from_start",
    "remove_first_occurrence",
    "map_to_bool",
    "TRUE_WORDS",
]

logger = logging.getLogger(__name__)

TRUE_WORDS = frozenset({"yes", "y", "true", "1", "active", "enabled", "on"})
FALSE_WORDS = frozenset({"no", "n", "false", "0", "inactive", "disabled", "off"})

_CURRENCY_TOKEN = r"€|\$|£|¥|₪|USD|EUR|GBP|CHF|PLN|CZK|HUF|RON|BGN|HRK|DKK|SEK|NOK|ILS"
CURRENCY_RE = re.compile(rf"({_CURRENCY_TOKEN})(?!\s*(?:ml|oz|fl\s*oz))", re.IGNORECASE)
_PRICE_NOISE_RE = re.compile(r"per|each|/unit|/piece|pcs", re.IGNORECASE)
_UNIT_ALTERNATION = r"ml|l|litre|litres|cl|oz|fl\s*oz|g|kg|mg|mcg"
SIZE_UNIT_RE = re.compile(rf"([0-9]+(?:[.,][0-9]+)?)\s*({_UNIT_ALTERNATION})\b", re.IGNORECASE)
UNIT_RE = re.compile(rf"({_UNIT_ALTERNATION})\b", re.IGNORECASE)
NUMBER_RE = re.compile(r"([0-9]+(?:[.,][0-9]+)?)")

_WILDCARDS = {
    "*:": r"^[^:]*:([^:]+):",
    "*:*": r"^[^:]*:([^:]+):.*",
    "after:": r"^[^:]*:(.+)$",
    "between:|": r"^[^|]*\|([^|]+)\|",
    "between:;": r"^[^;]*;([^;]+);",
    "prefix:*": r"^[A-Z]+:(.+)$",
}


def normalize_for_mapping(value: str) -> str:
    """Lower-case, punctuation/symbols to spaces, collapse whitespace."""
    if not value or not value.strip():
        return ""
    candidate = re.sub(r"[^\w\s]|_", " ", value.strip().lower())
    return re.sub(r"\s+", " ", candidate).strip()


def normalize_decimal(value: str) -> str:
    if not value or not value.strip():
        return ""
    s = value.strip()
    if "," in s and "." in s:
        s = s.replace(",", "")
    elif "," in s:
        s = s.replace(",", ".")
    return re.sub(r"[^0-9.]", "", s)


def normalize_unit(unit: str) -> str:
    if not unit or not unit.strip():
        return ""
    u = re.sub(r"\s+", " ", unit.strip().lower())
    if u in {"l", "litre", "litres"}:
        return "l"
    if u in {"oz", "floz", "fl oz"}:
        return "fl oz"
    return u


def convert_wildcard_to_regex(pattern: str) -> str:
    if pattern in _WILDCARDS:
        return _WILDCARDS[pattern]
    if pattern.startswith("between:") and len(pattern) > len("between:"):
        d = re.escape(pattern[len("between:")])
        return rf"^[^{d}]*{d}([^{d}]+){d}"
    return re.escape(pattern).replace(r"\*", "(.*)")


def extract_after_pattern(value: str, pattern: str) -> str:
    """Text after a literal prefix (``|``-separated alternatives) or a wildcard form.

    ``"REGULARs:D&G:P1DV1C02"`` with ``"*:"`` -> ``"D&G"``. No match returns
    ``value`` unchanged.
    """
    if not value or not value.strip() or not pattern or not pattern.strip():
        return value
    if "*" in pattern or pattern in _WILDCARDS or pattern.startswith("between:"):
        rx = compile_pattern(convert_wildcard_to_regex(pattern), re.IGNORECASE)
        if rx is None:
            return value
        m = rx.search(value)
        if m is None:
            return value
        return (m.group(1) if rx.groups else m.group(0)).strip()
    for prefix in (p.strip() for p in pattern.split("|")):
        if prefix and value.lower().startswith(prefix.lower()):
            return value[len(prefix):].strip()
    return value


def extract_price_and_currency(value: str) -> tuple[str, str]:
    if not value or not value.strip():
        return "", ""
    m = CURRENCY_RE.search(value)
    currency = m.group(1).strip() if m else ""
    cleaned = _PRICE_NOISE_RE.sub("", value)
    cleaned = re.sub(_CURRENCY_TOKEN, "", cleaned, flags=re.IGNORECASE)
    cleaned = re.sub(r"[^0-9.,]", "", cleaned).strip()
    return normalize_decimal(cleaned), currency


def extract_size_and_units(value: str) -> tuple[str, str]:
    if not value or not value.strip():
        return "", ""
    m = SIZE_UNIT_RE.search(value)
    if m:
        return normalize_decimal(m.group(1)), normalize_unit(m.group(2))
    m = NUMBER_RE.search(value)
    if m:
        unit = UNIT_RE.search(value)
        return normalize_decimal(m.group(1)), normalize_unit(unit.group(1)) if unit else ""
    return "", ""


def _is_upper_segment(seg: str) -> bool:
    has_letter = False
    for ch in seg:
        if "A" <= ch <= "Z":
            has_letter = True
        elif ch != ".":
            return False
    return has_letter


def _is_upper_token(token: str) -> bool:
    if "&" in token:
        if token.startswith("&") or token.endswith("&"):
            return False
        return all(_is_upper_segment(p) for p in token.split("&"))
    return _is_upper_segment(token)


def extract_upper_words_from_start(value: str) -> str:
    """Longest leading run of upper-case words.

    Words are A-Z with optional "." or inner "&"; a lone "&" or "." counts only
    between two upper-case words.

    >>> extract_upper_words_from_start("ACME & CO. Deluxe 100ml")
    'ACME & CO.'
    >>> extract_upper_words_from_start("Hello TO YOU")
    ''
    """
    if not value or not value.strip():
        return ""
    tokens = value.split()
    out: list[str] = []
    for i, t in enumerate(tokens):
        if len(t) == 1:
            if "A" <= t <= "Z":
                out.append(t)
                continue
            if t in {"&", "."} and 0 < i < len(tokens) - 1 \
                    and _is_upper_token(tokens[i - 1]) and _is_upper_token(tokens[i + 1]):
                out.append(t)
                continue
            break
        if not _is_upper_token(t):
            break
        out.append(t)
    return " ".join(out)


def remove_first_occurrence(source: str, to_remove: str, ignore_case: bool = False) -> str:
    if not source or not to_remove:
        return source or ""
    haystack = source.lower() if ignore_case else source
    idx = haystack.find(to_remove.lower() if ignore_case else to_remove)
    if idx < 0:
        return source
    return source[:idx] + source[idx + len(to_remove):]


def clean_price(value: str) -> str:
    if not value or not value.strip():
        return value
    cleaned = re.sub(_CURRENCY_TOKEN, "", value, flags=re.IGNORECASE).strip()
    # "29,99" -> "29.99" (カンマのみ & 小数2桁)
    if "," in cleaned and "." not in cleaned:
        head, _, tail = cleaned.rpartition(",")
        if len(tail) == 2 and tail.isdigit():
            cleaned = f"{head}.{tail}"
    return cleaned.strip()


def clean_currency(value: str) -> str:
    if not value or not value.strip():
        return value
    m = CURRENCY_RE.search(value)
    return m.group(1) if m else value.strip()


def map_to_bool(value: str, parameters: str) -> str:
    """``"SET:true,REG:false"``-style mapping, keys case-insensitive; misses pass through."""
    if not value or not value.strip() or not parameters:
        return value
    mapping: dict[str, str] = {}
    for pair in parameters.split(","):
        k, sep, v = pair.partition(":")
        if sep and k.strip():
            mapping[k.strip().lower()] = v.strip()
    return mapping.get(value.strip().lower(), value)


def map_value(value: str, table: Mapping[str, str] | None) -> str:
    if not value or not table:
        return value
    lookup = normalize_for_mapping(value)
    for key, mapped in table.items():
        if normalize_for_mapping(key) == lookup:
            return mapped
    return value


def _extract_pattern(value: str, pattern: str, current_key: str | None, extra: dict[str, str]) -> str:
    rx = compile_pattern(pattern, re.IGNORECASE)
    if rx is None:
        return value
    m = rx.search(value)
    if m is None:
        return value
    named = False
    for name in rx.groupindex:
        g = m.group(name)
        if g and g.strip():
            named = True
            extra[name] = g.strip()
    if not named and rx.groups:
        extra[current_key or "Extracted"] = m.group(1).strip()
    if current_key and current_key in extra:
        return extra[current_key]
    return (m.group(1) if rx.groups else m.group(0)).strip()


def apply_transformations(
    value: str,
    transformations: Sequence[str],
    current_key: str | None = None,
    lookups: Mapping[str, Mapping[str, str]] | None = None,
) -> tuple[str, dict[str, str]]:
    """Apply named transforms in order; returns (value, extra properties).

    Unknown transform names are ignored.
    """
    extra: dict[str, str] = {}
    original = value
    for transformation in transformations:
        name, _, params = transformation.partition(":")
        name = name.strip().lower()
        params = params or None
        if name == "lowercase":
            value = value.lower()
        elif name == "uppercase":
            value = value.upper()
        elif name == "trim":
            value = value.strip()
        elif name == "capitalize":
            value = value[:1].upper() + value[1:].lower()
        elif name == "removesymbols":
            value = re.sub(r"[^\d.,]", "", value)
        elif name == "removecommas":
            value = value.replace(",", "")
        elif name == "removespaces":
            value = value.replace(" ", "")
        elif name == "cleanprice":
            value = clean_price(value)
        elif name == "cleancurrency":
            value = clean_currency(value)
        elif name == "extractafterpattern":
            value = extract_after_pattern(value, params or "*:")
        elif name == "extractpattern":
            if params:
                value = _extract_pattern(original, params, current_key, extra)
        elif name == "maptobool":
            value = map_to_bool(value, params or "SET:true,REG:false")
        elif name == "mapvalue":
            table_name = params or current_key
            value = map_value(value, (lookups or {}).get(table_name or ""))
        elif name == "upperwords":
            value = extract_upper_words_from_start(value)
        elif name == "extractsizeandunits":
            size, unit = extract_size_and_units(original)
            size_key, unit_key = "Size", "Units"
            if params:
                keys = [k.strip() for k in params.split(",")]
                size_key = keys[0] or size_key
                if len(keys) > 1 and keys[1]:
                    unit_key = keys[1]
            if size:
                extra[size_key] = size
            if unit:
                extra[unit_key] = unit
            if current_key in extra:
                value = extra[current_key]
        elif name == "extractpriceandcurrency":
            price, currency = extract_price_and_currency(original)
            if price:
                extra["Price"] = price
            if currency:
                extra["Currency"] = currency
            if current_key in extra:
                value = extra[current_key]
        else:
            logger.debug(f"unknown transformation ignored: {transformation}")
    return value, extra


def convert_data_type(value: str, data_type: str | None, data_format: str | None = None) -> Any:
    """Convert a transformed string; on failure the string is returned unchanged."""
    kind = (data_type or "string").strip().lower()
    if kind == "string" or value is None or not str(value).strip():
        return value
    text = str(value).strip()
    try:
        if kind in {"int", "integer"}:
            number = Decimal(text.replace(",", ""))
            if number != number.to_integral_value():
                return value
            return int(number)
        if kind == "decimal":
            number = Decimal(normalize_decimal(text) or text)
            return number if number.is_finite() else value
        if kind in {"bool", "boolean"}:
            lowered = text.lower()
            if lowered in TRUE_WORDS:
                return True
            if lowered in FALSE_WORDS:
                return False
            return value
        if kind in {"datetime", "date", "time"}:
            parsed = datetime.strptime(text, data_format) if data_format else pd.to_datetime(text).to_pydatetime()
            if kind == "date":
                return parsed.date()
            if kind == "time":
                return parsed.time()
            return parsed
    except (InvalidOperation, ValueError, TypeError, OverflowError):
        return value
    return value
