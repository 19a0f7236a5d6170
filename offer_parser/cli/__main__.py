from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

from dotenv import load_dotenv

from offer_parser.config.loader import ConfigError, load_supplier_config
from offer_parser.excel.reader import ReaderError, read_rows
from offer_parser.logging.init import log_summary, set_debug, setup_logging
from offer_parser.models.config_models import SupplierConfig
from offer_parser.services.orchestrator import ProcessingError, process_all
from offer_parser.services.summary import render_summary_line

"""CLI entrypoint.

python -m offer_parser.cli --config supplier.yml [--catalog market.yml] [--debug] [--inspect-data] FILE...

Exit codes:
- 0: every file processed without recorded errors (also: no input files)
- 2: at least one file recorded errors (row or file level)
- 1: fatal (config error, missing input file)
"""

EXIT_SUCCESS_ALL = 0
EXIT_PARTIAL_FAILURE = 2
EXIT_FATAL = 1

ENV_CONFIG = "OFFER_PARSER_CONFIG"
ENV_CATALOG = "OFFER_PARSER_CATALOG"


def _load_env_file(path: Path, override: bool = True) -> None:
    """Load .env (override=True: .env の値で既存の環境変数を上書き)."""
    if path.exists():
        load_dotenv(dotenv_path=path, override=override)


def _parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="offer_parser", description="Rule-based supplier offer parser")
    p.add_argument("files", nargs="*", type=Path, help="Supplier files (.xlsx / .xls / .csv)")
    p.add_argument("--config", type=Path, default=None, help=f"Supplier config (YAML/JSON); default ${ENV_CONFIG}")
    p.add_argument("--catalog", type=Path, default=None, help=f"Market property catalog; default ${ENV_CATALOG}")
    p.add_argument("--debug", action="store_true", help="Enable debug logging")
    p.add_argument("--inspect-data", action="store_true", help="Print the first rows of each file then exit")
    return p.parse_args(argv)


def _env_path(name: str) -> Path | None:
    value = os.getenv(name)
    return Path(value) if value else None


def _inspect_data(files: list[Path], cfg: SupplierConfig) -> int:
    if not files:
        print("inspect: no input files")
        return EXIT_SUCCESS_ALL
    for f in files:
        print(f"FILE: {f.name}")
        try:
            rows = read_rows(f, cfg.file_structure)
        except ReaderError as e:
            print(f"  read_error: {e}")
            continue
        columns = list(rows[0].cells) if rows else []
        print(f"  rows={len(rows)} cols={columns}")
        print("    sample_rows=", [dict(r.cells) for r in rows[:3]])
    return EXIT_SUCCESS_ALL


def main(argv: list[str] | None = None) -> int:
    logger = setup_logging()

    # None のときのみ sys.argv を読む (テストの cli_main([]) で pytest 引数を拾わない)
    if argv is None:
        argv = sys.argv[1:]
    args = _parse_args(argv)
    _load_env_file(Path(".env"), override=True)

    if args.debug:
        set_debug(True)
        logger.debug("debug mode enabled")

    config_path = args.config or _env_path(ENV_CONFIG)
    if config_path is None:
        logger.error(f"config: no supplier config given (--config or ${ENV_CONFIG})")
        return EXIT_FATAL
    catalog_path = args.catalog or _env_path(ENV_CATALOG)
    try:
        cfg = load_supplier_config(config_path, catalog_path)
    except ConfigError as e:
        logger.error(f"config: {e}")
        return EXIT_FATAL

    files: list[Path] = list(args.files)
    if args.inspect_data:
        return _inspect_data(files, cfg)

    logger.info(f"supplier={cfg.name} mode={cfg.mode} files={len(files)}")
    try:
        result = process_all(files, cfg)
    except ProcessingError as e:
        logger.error(f"processing: {e}")
        return EXIT_FATAL

    total_files = result.success_files + result.failed_files
    summary_line = render_summary_line(total_files, result)
    # log_summary が "SUMMARY " を付けるため先頭を除去
    log_summary(summary_line[len("SUMMARY "):])

    if result.failed_files > 0 or result.total_errors > 0:
        return EXIT_PARTIAL_FAILURE
    return EXIT_SUCCESS_ALL


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
