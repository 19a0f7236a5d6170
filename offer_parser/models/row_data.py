from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from types import MappingProxyType

"""Row model for the supplier offer parser.

A Row is one spreadsheet line after reading: column key -> raw text.
Column keys are spreadsheet letters ("A", "B", ..., "AA") as produced by the
reader; numeric keys are accepted as text for CSV-like inputs.
"""

__all__ = [
    "Row",
    "column_letter",
    "column_index",
]

_LETTERS = "ABCDEFGHIJKLMNOPQRSTUVWXYZ"


def column_letter(index: int) -> str:
    """0-based column index -> spreadsheet letters (0 -> "A", 26 -> "AA")."""
    if index < 0:
        raise ValueError(f"negative column index: {index}")
    letters = ""
    n = index + 1
    while n:
        n, rem = divmod(n - 1, 26)
        letters = _LETTERS[rem] + letters
    return letters


def column_index(key: str) -> int:
    """Column key -> 0-based index; letters ("A", "AA") or a digit string. -1 when unusable."""
    text = (key or "").strip()
    if text.isdigit():
        return int(text)
    if not text.isalpha() or not text.isascii():
        return -1
    n = 0
    for ch in text.upper():
        n = n * 26 + (ord(ch) - ord("A") + 1)
    return n - 1


@dataclass(frozen=True)
class Row:
    """Single supplier data record.

    Cells keep the reader's column order. ``subtitle_data`` carries key/value
    pairs derived from a preceding subtitle row (e.g. ``{"Brand": "CHANEL"}``).
    """
    index: int  # 1-based spreadsheet row number
    cells: Mapping[str, str]
    subtitle_data: Mapping[str, str] = field(default_factory=dict)
    is_subtitle_row: bool = False
    subtitle_rule_name: str | None = None

    def __post_init__(self) -> None:
        # 読み取り専用ビューに固定
        object.__setattr__(self, "cells", MappingProxyType(dict(self.cells)))
        object.__setattr__(self, "subtitle_data", MappingProxyType(dict(self.subtitle_data)))

    @property
    def has_data(self) -> bool:
        return any(v is not None and str(v).strip() for v in self.cells.values())

    def get(self, column: str) -> str | None:
        """Return the raw text for ``column`` (letters match in any case) or None when absent."""
        value = self.cells.get(column)
        if value is None:
            wanted = column.strip().upper()
            value = next((v for k, v in self.cells.items() if k.strip().upper() == wanted), None)
        return value

    def non_empty_values(self) -> list[str]:
        return [v for v in self.cells.values() if v is not None and str(v).strip()]

    def with_subtitle(self, data: Mapping[str, str]) -> Row:
        """Return a copy carrying ``data`` as subtitle defaults."""
        return replace(self, subtitle_data=data)

    def as_subtitle(self, rule_name: str, data: Mapping[str, str]) -> Row:
        return replace(self, is_subtitle_row=True, subtitle_rule_name=rule_name, subtitle_data=data)
