from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from datetime import UTC, datetime

"""ErrorRecord model for the JSON Lines error log.

Row-boundary failures and file-level failures are both recorded here; file
level errors use row=-1 because no single row can be blamed.
"""

__all__ = [
    "ErrorRecord",
    "FILE_LEVEL_ROW",
]

FILE_LEVEL_ROW = -1


@dataclass(frozen=True)
class ErrorRecord:
    """Structured error record for JSON Lines logging.

    Attributes:
        timestamp: ISO8601 UTC timestamp with 'Z' suffix
        file: source file being processed
        supplier: supplier configuration name
        row: spreadsheet row number (1-based); -1 for file-level errors
        error_type: classification in UPPER_SNAKE_CASE
        message: exception message
    """
    timestamp: str
    file: str
    supplier: str
    row: int
    error_type: str
    message: str

    @staticmethod
    def create(file: str, supplier: str, row: int, error_type: str, message: str) -> ErrorRecord:
        ts = datetime.now(UTC).isoformat().replace("+00:00", "Z")
        return ErrorRecord(
            timestamp=ts,
            file=file,
            supplier=supplier,
            row=row,
            error_type=error_type,
            message=message,
        )

    def to_json_line(self) -> str:
        # キー集合は dataclass フィールドに固定
        return json.dumps(asdict(self), ensure_ascii=False)
