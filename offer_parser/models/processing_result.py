from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime

from .aggregates import SupplierOffer

"""Processing result models for the supplier offer parser.

ProcessingStatistics is the per-file counter set; FileProcessingResult is what
the orchestrator returns for one file; RunResult aggregates a CLI run over
several files for the SUMMARY line.
"""

__all__ = [
    "ProcessingStatistics",
    "FileProcessingResult",
    "FileStat",
    "RunResult",
]


class ProcessingStatistics:
    """Per-file counters.

    Increments go through ``increment`` which holds a lock, so a caller that
    processes rows in parallel can share one instance.
    """

    _FIELDS = (
        "total_rows_processed",
        "total_data_rows",
        "offers_created",
        "products_skipped",
        "subtitle_rows",
        "error_count",
        "warning_count",
    )

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.total_rows_processed = 0  # 読み込んだ全行
        self.total_data_rows = 0  # 正規化対象となったデータ行
        self.offers_created = 0
        self.products_skipped = 0
        self.subtitle_rows = 0
        self.error_count = 0
        self.warning_count = 0
        self.processing_seconds = 0.0

    def increment(self, name: str, by: int = 1) -> None:
        if name not in self._FIELDS:
            raise AttributeError(f"unknown statistic: {name}")
        with self._lock:
            setattr(self, name, getattr(self, name) + by)

    def as_dict(self) -> dict[str, float]:
        data: dict[str, float] = {name: getattr(self, name) for name in self._FIELDS}
        data["processing_seconds"] = self.processing_seconds
        return data

    def __repr__(self) -> str:  # pragma: no cover (debug aid)
        inner = " ".join(f"{k}={v}" for k, v in self.as_dict().items())
        return f"ProcessingStatistics({inner})"


@dataclass
class FileProcessingResult:
    """Outcome of processing one supplier file.

    Always returned, even when the file failed part way: ``errors`` then holds a
    ``"Processing failed: ..."`` entry and ``supplier_offer.offers`` the rows
    completed before the failure.
    """
    source_file: str
    supplier_offer: SupplierOffer
    statistics: ProcessingStatistics = field(default_factory=ProcessingStatistics)
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    processed_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    cancelled: bool = False

    @property
    def offers(self):
        return self.supplier_offer.offers

    def add_error(self, message: str) -> None:
        self.errors.append(message)
        self.statistics.increment("error_count")

    def add_warning(self, message: str) -> None:
        self.warnings.append(message)
        self.statistics.increment("warning_count")


@dataclass(frozen=True)
class FileStat:
    file_name: str
    status: str  # success / failed
    rows: int
    offers: int
    elapsed_seconds: float


@dataclass(frozen=True)
class RunResult:
    """Aggregated run over all input files (SUMMARY line source)."""
    success_files: int
    failed_files: int
    total_rows: int
    total_offers: int
    total_skipped: int
    total_errors: int
    total_warnings: int
    start_time: datetime
    end_time: datetime
    elapsed_seconds: float
    file_stats: list[FileStat] | None = None
    results: list[FileProcessingResult] | None = None
