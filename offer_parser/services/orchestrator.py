from __future__ import annotations

import logging
import threading
from collections.abc import Iterable, Sequence
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol

from ..excel.reader import ReaderError, read_rows
from ..logging.error_log import ErrorLogBuffer
from ..models.aggregates import ProductOffer, SupplierOffer
from ..models.config_models import SupplierConfig
from ..models.error_record import FILE_LEVEL_ROW, ErrorRecord
from ..models.processing_result import FileProcessingResult, FileStat, RunResult
from ..models.row_data import Row
from ..normalizers.column_based import ColumnBasedNormalizer
from ..normalizers.rule_based import RuleBasedOfferNormalizer
from ..normalizers.subtitle import SubtitleRowProcessor
from .progress import ProgressTracker

"""Service orchestration: supplier file -> FileProcessingResult.

- process_rows: row loop with the row-boundary catch and statistics
- process_file: read + subtitle pass + row loop; never raises
- process_all: CLI run over several files, aggregated into a RunResult

Row-level failures become ``"Row {index}: {message}"`` errors and the loop
continues; a file-level failure becomes one ``"Processing failed: ..."`` error
and the rows completed so far are kept.
"""

__all__ = [
    "ProcessingError",
    "OfferNormalizer",
    "create_normalizer",
    "process_rows",
    "process_file",
    "process_all",
]

logger = logging.getLogger(__name__)


class ProcessingError(Exception):
    """Fatal run-level error (e.g. a missing input path)."""


class OfferNormalizer(Protocol):
    @property
    def supplier_name(self) -> str: ...

    def can_handle(self, file_name: str) -> bool: ...

    def normalize_row(self, row: Row) -> ProductOffer | None: ...


def create_normalizer(config: SupplierConfig) -> OfferNormalizer:
    """``mode: columns`` selects the column-classification variant; anything else the rule engine."""
    if config.mode.strip().lower() == "columns":
        return ColumnBasedNormalizer(config)
    return RuleBasedOfferNormalizer(config)


def process_rows(
    rows: Iterable[Row],
    normalizer: OfferNormalizer,
    result: FileProcessingResult,
    *,
    error_log: ErrorLogBuffer | None = None,
    cancel_event: threading.Event | None = None,
    progress: ProgressTracker | None = None,
) -> None:
    """Normalize rows into ``result`` (offers, statistics, errors).

    Empty rows and subtitle rows are counted as skipped without being
    normalized. An offer is accepted only when ``ProductOffer.is_valid()``;
    anything else (gate rejection, final check failure) is a skip, not an error.
    """
    stats = result.statistics
    for row in rows:
        if cancel_event is not None and cancel_event.is_set():
            result.cancelled = True
            result.add_warning(f"Processing cancelled before row {row.index}")
            logger.warning(f"{result.source_file}: cancelled before row {row.index}")
            break

        stats.increment("total_rows_processed")
        if progress is not None:
            progress.advance()

        if not row.has_data:
            stats.increment("products_skipped")
            continue
        if row.is_subtitle_row:
            stats.increment("subtitle_rows")
            stats.increment("products_skipped")
            logger.debug(f"row {row.index}: subtitle row ({row.subtitle_rule_name}) skipped")
            continue

        stats.increment("total_data_rows")
        try:
            offer = normalizer.normalize_row(row)
            accepted = offer is not None and offer.is_valid()
        except Exception as e:
            # 行境界で捕捉して次の行へ
            result.add_error(f"Row {row.index}: {e}")
            stats.increment("products_skipped")
            logger.error(f"{result.source_file} row {row.index}: {e}")
            if error_log is not None:
                error_log.append(
                    ErrorRecord.create(
                        file=result.source_file,
                        supplier=normalizer.supplier_name,
                        row=row.index,
                        error_type="ROW_PROCESSING_ERROR",
                        message=str(e),
                    )
                )
            continue

        if accepted:
            result.offers.append(offer)
            stats.increment("offers_created")
        else:
            stats.increment("products_skipped")


def _file_error(
    result: FileProcessingResult,
    supplier: str,
    error_type: str,
    exc: Exception,
    error_log: ErrorLogBuffer | None,
) -> None:
    result.add_error(f"Processing failed: {exc}")
    logger.error(f"{result.source_file}: {exc}")
    if error_log is not None:
        error_log.append(
            ErrorRecord.create(
                file=result.source_file,
                supplier=supplier,
                row=FILE_LEVEL_ROW,
                error_type=error_type,
                message=str(exc),
            )
        )


def process_file(
    path: Path,
    supplier_config: SupplierConfig,
    *,
    error_log: ErrorLogBuffer | None = None,
    cancel_event: threading.Event | None = None,
    show_progress: bool = True,
    normalizer: OfferNormalizer | None = None,
) -> FileProcessingResult:
    """Process one supplier file.

    Args:
        path: Supplier file (.xlsx / .xls / .csv)
        supplier_config: Loaded supplier configuration
        error_log: Buffer receiving structured error records (optional)
        cancel_event: Checked between rows; when set, the partial result is returned
        show_progress: Row progress bar (TTY only)
        normalizer: Pre-built normalizer (default: chosen from ``supplier_config.mode``)

    Returns:
        FileProcessingResult; this function does not raise for bad input.
    """
    path = Path(path)
    start = datetime.now(UTC)
    supplier_offer = SupplierOffer(
        supplier_name=supplier_config.name,
        currency=supplier_config.offer_currency,
        source_file=path.name,
    )
    result = FileProcessingResult(source_file=path.name, supplier_offer=supplier_offer)

    try:
        if normalizer is None:
            normalizer = create_normalizer(supplier_config)
        rows = read_rows(path, supplier_config.file_structure)
        rows = SubtitleRowProcessor(supplier_config.subtitle_handling).process(rows)
        with ProgressTracker(
            len(rows), description=path.name, unit="row", enabled=show_progress
        ) as progress:
            process_rows(rows, normalizer, result, error_log=error_log, cancel_event=cancel_event, progress=progress)
    except ReaderError as e:
        _file_error(result, supplier_config.name, "READ_ERROR", e, error_log)
    except Exception as e:
        _file_error(result, supplier_config.name, "UNEXPECTED_ERROR", e, error_log)
    finally:
        result.statistics.processing_seconds = (datetime.now(UTC) - start).total_seconds()

    stats = result.statistics
    logger.info(
        f"{path.name}: rows={stats.total_rows_processed} offers={stats.offers_created} "
        f"skipped={stats.products_skipped} errors={stats.error_count}"
    )
    return result


def process_all(
    paths: Sequence[Path],
    supplier_config: SupplierConfig,
    *,
    cancel_event: threading.Event | None = None,
    error_log: ErrorLogBuffer | None = None,
) -> RunResult:
    """Process every file and aggregate metrics for the SUMMARY line.

    Raises:
        ProcessingError: an input path does not exist (checked before any file is processed)
    """
    missing = [p for p in paths if not Path(p).is_file()]
    if missing:
        raise ProcessingError(f"input file not found: {', '.join(str(p) for p in missing)}")

    start_time = datetime.now(UTC)
    error_log = error_log if error_log is not None else ErrorLogBuffer()
    normalizer = create_normalizer(supplier_config)

    results: list[FileProcessingResult] = []
    file_stats: list[FileStat] = []
    success_count = 0
    failed_count = 0

    with ProgressTracker(len(paths), description="Processing files") as progress:
        for file_path in map(Path, paths):
            if cancel_event is not None and cancel_event.is_set():
                logger.warning(f"run cancelled before {file_path.name}")
                break
            progress.start_file(file_path)
            if not normalizer.can_handle(file_path.name):
                logger.warning(f"{file_path.name}: file name does not match supplier '{supplier_config.name}'")

            file_result = process_file(
                file_path,
                supplier_config,
                error_log=error_log,
                cancel_event=cancel_event,
                show_progress=False,
                normalizer=normalizer,
            )
            results.append(file_result)
            ok = not file_result.errors
            if ok:
                success_count += 1
            else:
                failed_count += 1
            progress.set_postfix(success=success_count, failed=failed_count)
            progress.finish_file(success=ok)

            stats = file_result.statistics
            file_stats.append(
                FileStat(
                    file_name=file_path.name,
                    status="success" if ok else "failed",
                    rows=stats.total_rows_processed,
                    offers=stats.offers_created,
                    elapsed_seconds=stats.processing_seconds,
                )
            )

    try:
        error_log.flush()
    except OSError as e:
        logger.warning(f"error log flush failed: {e}")

    end_time = datetime.now(UTC)
    return RunResult(
        success_files=success_count,
        failed_files=failed_count,
        total_rows=sum(r.statistics.total_rows_processed for r in results),
        total_offers=sum(r.statistics.offers_created for r in results),
        total_skipped=sum(r.statistics.products_skipped for r in results),
        total_errors=sum(r.statistics.error_count for r in results),
        total_warnings=sum(r.statistics.warning_count for r in results),
        start_time=start_time,
        end_time=end_time,
        elapsed_seconds=(end_time - start_time).total_seconds(),
        file_stats=file_stats,
        results=results,
    )
