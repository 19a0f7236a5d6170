from __future__ import annotations

import zipfile
from pathlib import Path
from typing import Any

import pandas as pd

from ..models.config_models import FileStructureConfig
from ..models.row_data import Row, column_letter

"""Supplier file reader (pandas).

Reads .xlsx / .xls / .csv without header inference and turns every line from
``data_start_row_index`` (1-based) onward into a Row keyed by column letters.

- 全セルを文字列として読む (pandas の NA 変換は無効化; "NA" ブランド等を保持)
- 欠損セル (NaN) は "" に揃える
- 数値セルの整数値 (12.0) は "12" として扱う
"""

__all__ = [
    "ReaderError",
    "SUPPORTED_SUFFIXES",
    "read_frame",
    "frame_to_rows",
    "read_rows",
    "cell_text",
]

SUPPORTED_SUFFIXES = (".xlsx", ".xls", ".csv")


class ReaderError(Exception):
    """Raised when a supplier file cannot be read."""


def cell_text(value: Any) -> str:
    """Normalize one raw cell to text."""
    if value is None:
        return ""
    if isinstance(value, float):
        if pd.isna(value):
            return ""
        if value.is_integer():
            return str(int(value))
        return str(value)
    if isinstance(value, pd.Timestamp):
        return value.isoformat()
    if pd.api.types.is_scalar(value) and pd.isna(value):
        return ""
    return str(value)


def read_frame(path: Path, sheet_name: str | None = None) -> pd.DataFrame:
    """Read the raw sheet (no header row applied).

    Raises:
        ReaderError: unsupported suffix, missing file/sheet or unreadable content
    """
    if not path.exists():
        raise ReaderError(f"file not found: {path}")
    suffix = path.suffix.lower()
    if suffix not in SUPPORTED_SUFFIXES:
        raise ReaderError(f"unsupported file type: {path.name}")
    try:
        if suffix == ".csv":
            return pd.read_csv(
                path, header=None, dtype=object, keep_default_na=False, skip_blank_lines=False, encoding="utf-8-sig",
            )
        with pd.ExcelFile(path) as xls:
            target: str | int = 0
            if sheet_name:
                if sheet_name not in [str(n) for n in xls.sheet_names]:
                    raise ReaderError(f"sheet '{sheet_name}' not found in {path.name}")
                target = sheet_name
            return xls.parse(target, header=None, dtype=object, keep_default_na=False)
    except ReaderError:
        raise
    except pd.errors.EmptyDataError:
        return pd.DataFrame()
    except (OSError, ValueError, zipfile.BadZipFile) as e:
        raise ReaderError(f"failed to read {path.name}: {e}") from e


def frame_to_rows(df: pd.DataFrame, structure: FileStructureConfig) -> list[Row]:
    """Convert a raw frame into Rows; ``Row.index`` is the 1-based spreadsheet row number."""
    start = max(structure.data_start_row_index, 1) - 1
    letters = [column_letter(i) for i in range(df.shape[1])]
    rows: list[Row] = []
    for offset, values in enumerate(df.iloc[start:].itertuples(index=False, name=None)):
        cells = {letter: cell_text(v) for letter, v in zip(letters, values, strict=False)}
        rows.append(Row(index=start + offset + 1, cells=cells))
    return rows


def read_rows(path: Path, structure: FileStructureConfig | None = None) -> list[Row]:
    structure = structure or FileStructureConfig()
    df = read_frame(path, structure.sheet_name)
    if structure.expected_column_count is not None and df.shape[1] and df.shape[1] < structure.expected_column_count:
        raise ReaderError(
            f"{path.name}: expected at least {structure.expected_column_count} columns, found {df.shape[1]}"
        )
    return frame_to_rows(df, structure)
