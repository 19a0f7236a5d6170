from __future__ import annotations

import sys
from pathlib import Path
from typing import Any

from tqdm import tqdm
from tqdm.std import tqdm as TqdmType

"""Progress display with tqdm (TTY only).

One tqdm instance per tracker; in non-TTY environments (CI, redirected output)
no bar is created so log output stays free of control sequences.

Two granularities are used:
- files: CLI run over several supplier files (``unit="file"``)
- rows: single-file processing (``unit="row"``)
"""

__all__ = [
    "ProgressTracker",
    "is_tty_enabled",
]


def is_tty_enabled() -> bool:
    """True when stdout is a TTY and progress should be displayed."""
    return sys.stdout.isatty()


class ProgressTracker:
    """Progress tracker using tqdm for file or row processing.

    ``enabled=False`` forces the bar off even on a TTY (nested use: the run
    over files owns the only bar).
    """

    def __init__(
        self,
        total: int,
        *,
        description: str = "Processing files",
        unit: str = "file",
        enabled: bool | None = None,
    ) -> None:
        self.total = total
        self.description = description
        self.unit = unit
        self.current = 0

        self.enabled = is_tty_enabled() if enabled is None else (enabled and is_tty_enabled())
        self.pbar: TqdmType[Any] | None
        if self.enabled:
            self.pbar = tqdm(
                total=total,
                desc=description,
                unit=unit,
                disable=False,
                leave=True,
                position=0,
                ncols=80,
                ascii=True,
            )
        else:
            self.pbar = None

    def start_file(self, file_path: Path) -> None:
        """Show the file currently being processed in the bar description."""
        self.current += 1
        if self.enabled and self.pbar is not None:
            self.pbar.set_description(f"{self.description} ({file_path.name})")

    def finish_file(self, success: bool = True) -> None:
        if self.enabled and self.pbar is not None:
            self.pbar.update(1)
            self.pbar.set_description(self.description)

    def advance(self, count: int = 1) -> None:
        """Row-level step (no description change)."""
        self.current += count
        if self.enabled and self.pbar is not None:
            self.pbar.update(count)

    def set_postfix(self, **kwargs: Any) -> None:
        if self.enabled and self.pbar is not None:
            self.pbar.set_postfix(**kwargs)

    def close(self) -> None:
        if self.enabled and self.pbar is not None:
            self.pbar.close()
            self.pbar = None

    def __enter__(self) -> ProgressTracker:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()
