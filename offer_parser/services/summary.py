from __future__ import annotations

from ..models.processing_result import RunResult

"""SUMMARY line rendering.

Format (fixed key order, single line):
SUMMARY files={total}/{total} rows={rows} offers={offers} skipped={skipped}
errors={errors} warnings={warnings} elapsed_sec={elapsed}
"""

__all__ = [
    "render_summary_line",
    "format_seconds",
]


def format_seconds(value: float) -> str:
    """Integral values without a decimal point; tiny values without scientific notation."""
    if value == 0:
        return "0"
    if value == int(value):
        return str(int(value))
    if value < 0.01:
        return f"{value:.6f}".rstrip("0").rstrip(".")
    return str(value)


def render_summary_line(total_files: int, result: RunResult) -> str:
    """Render the SUMMARY line for a finished run.

    Args:
        total_files: Number of input files given to the run
        result: Aggregated run metrics

    Returns:
        SUMMARY line string

    Examples:
        >>> from datetime import datetime, timezone
        >>> t = datetime(2024, 1, 1, tzinfo=timezone.utc)
        >>> r = RunResult(
        ...     success_files=1, failed_files=0, total_rows=10, total_offers=8,
        ...     total_skipped=2, total_errors=0, total_warnings=0,
        ...     start_time=t, end_time=t, elapsed_seconds=2.0,
        ... )
        >>> render_summary_line(1, r)
        'SUMMARY files=1/1 rows=10 offers=8 skipped=2 errors=0 warnings=0 elapsed_sec=2'
    """
    return (
        f"SUMMARY files={total_files}/{total_files} "
        f"rows={result.total_rows} "
        f"offers={result.total_offers} "
        f"skipped={result.total_skipped} "
        f"errors={result.total_errors} "
        f"warnings={result.total_warnings} "
        f"elapsed_sec={format_seconds(result.elapsed_seconds)}"
    )
