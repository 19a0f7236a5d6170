from __future__ import annotations

import re
from datetime import datetime, timezone

import pytest

from offer_parser.models.processing_result import RunResult
from offer_parser.services.summary import format_seconds, render_summary_line

"""Unit tests for summary rendering service."""

SUMMARY_PATTERN = re.compile(
    r"^SUMMARY\s+files=([0-9]+)/(\1)\s+rows=([0-9]+)\s+offers=([0-9]+)\s+skipped=([0-9]+)\s+"
    r"errors=([0-9]+)\s+warnings=([0-9]+)\s+elapsed_sec=([0-9]+\.?[0-9]*)$"
)

T0 = datetime(2024, 1, 1, 10, 0, 0, tzinfo=timezone.utc)


def _result(**kw) -> RunResult:
    base = dict(
        success_files=1,
        failed_files=0,
        total_rows=0,
        total_offers=0,
        total_skipped=0,
        total_errors=0,
        total_warnings=0,
        start_time=T0,
        end_time=T0,
        elapsed_seconds=0.0,
    )
    base.update(kw)
    return RunResult(**base)


def test_render_summary_line_all_success():
    result = _result(success_files=2, total_rows=1000, total_offers=950, total_skipped=50, elapsed_seconds=2.0)

    summary_line = render_summary_line(2, result)

    match = SUMMARY_PATTERN.match(summary_line)
    assert match, f"SUMMARY line should match regex: {summary_line}"
    assert match.group(1) == "2"  # files
    assert match.group(3) == "1000"  # rows
    assert match.group(4) == "950"  # offers
    assert match.group(5) == "50"  # skipped
    assert match.group(8) == "2"  # elapsed_sec (integer formatted without decimal)


def test_render_summary_line_partial_failure():
    result = _result(
        success_files=1, failed_files=2, total_rows=500, total_offers=300, total_skipped=190,
        total_errors=10, total_warnings=3, elapsed_seconds=3.0,
    )

    summary_line = render_summary_line(3, result)

    match = SUMMARY_PATTERN.match(summary_line)
    assert match, f"SUMMARY line should match regex: {summary_line}"
    assert match.group(6) == "10"  # errors
    assert match.group(7) == "3"  # warnings


def test_render_summary_line_zero_files():
    summary_line = render_summary_line(0, _result(success_files=0))
    assert summary_line == "SUMMARY files=0/0 rows=0 offers=0 skipped=0 errors=0 warnings=0 elapsed_sec=0"


def test_render_summary_line_decimal_precision():
    result = _result(total_rows=4, total_offers=4, elapsed_seconds=0.84)
    expected = "SUMMARY files=1/1 rows=4 offers=4 skipped=0 errors=0 warnings=0 elapsed_sec=0.84"
    assert render_summary_line(1, result) == expected


def test_render_summary_line_handles_very_small_elapsed_time():
    summary_line = render_summary_line(0, _result(elapsed_seconds=0.00005))

    match = SUMMARY_PATTERN.match(summary_line)
    assert match, f"SUMMARY line should match regex: {summary_line}"
    # 指数表記にしない
    assert "e-" not in summary_line
    assert "elapsed_sec=0.00005" in summary_line


@pytest.mark.parametrize(
    "value,expected",
    [(0, "0"), (0.0, "0"), (5.0, "5"), (1.5, "1.5"), (0.001, "0.001"), (0.0000004, "0")],
)
def test_format_seconds(value, expected):
    assert format_seconds(value) == expected
