from __future__ import annotations

import pytest

from offer_parser.models.row_data import Row, column_index, column_letter


def test_row_cells_are_read_only():
    source = {"A": "1", "B": "x"}
    row = Row(index=2, cells=source)
    source["A"] = "changed"
    assert row.get("A") == "1"
    with pytest.raises(TypeError):
        row.cells["A"] = "2"  # type: ignore[index]


def test_row_get_absent_column():
    row = Row(index=2, cells={"A": "1"})
    assert row.get("Z") is None


@pytest.mark.parametrize(
    "cells,expected",
    [
        ({"A": "1"}, True),
        ({"A": "", "B": "  "}, False),
        ({}, False),
        ({"A": "", "B": "0"}, True),
    ],
)
def test_row_has_data(cells, expected):
    assert Row(index=1, cells=cells).has_data is expected


def test_non_empty_values_keep_column_order():
    row = Row(index=1, cells={"A": "", "B": "DIOR", "C": " ", "D": "Women"})
    assert row.non_empty_values() == ["DIOR", "Women"]


def test_with_subtitle_returns_copy():
    row = Row(index=5, cells={"A": "1"})
    tagged = row.with_subtitle({"Brand": "DIOR"})
    assert dict(tagged.subtitle_data) == {"Brand": "DIOR"}
    assert dict(row.subtitle_data) == {}
    assert tagged.is_subtitle_row is False


def test_as_subtitle_marks_row():
    row = Row(index=4, cells={"A": "DIOR"}).as_subtitle("BrandSubtitle", {"Brand": "DIOR"})
    assert row.is_subtitle_row is True
    assert row.subtitle_rule_name == "BrandSubtitle"
    assert row.subtitle_data["Brand"] == "DIOR"


@pytest.mark.parametrize(
    "key,expected",
    [("A", 0), ("z", 25), ("AA", 26), ("ZZ", 701), ("3", 3), (" B ", 1), ("", -1), ("A1", -1), ("É", -1)],
)
def test_column_index(key, expected):
    assert column_index(key) == expected


def test_column_letter_rejects_negative():
    with pytest.raises(ValueError):
        column_letter(-1)
