# Shared pytest fixtures
from __future__ import annotations

import csv
import tempfile
from pathlib import Path

import pytest

from offer_parser.logging.init import reset_logging


@pytest.fixture()
def temp_workdir(monkeypatch) -> Path:
    with tempfile.TemporaryDirectory() as d:
        p = Path(d)
        (p / "config").mkdir()
        (p / "data").mkdir()
        (p / "logs").mkdir()
        monkeypatch.chdir(p)
        yield p


@pytest.fixture(autouse=True)
def _clean_logging():
    # CLI テストごとに logger を作り直す
    reset_logging()
    yield
    reset_logging()


@pytest.fixture()
def sample_supplier_yaml() -> str:
    return """name: acme
currency: EUR
fileNamePatterns: ["acme*.csv", "acme*.xlsx"]
fileStructure:
  headerRowIndex: 1
  dataStartRowIndex: 2
parser:
  settings:
    preferFirstAssignment: true
  lookups:
    Brands:
      CHANEL: Chanel
      D&G: Dolce & Gabbana
      DIOR: Dior
  columns:
    - column: A
      rules:
        - id: ean
          steps:
            - op: Trim
            - op: Assign
              to: Product.EAN
    - column: B
      rules:
        - id: description
          steps:
            - op: NormalizeWhitespace
            - op: Assign
              to: Offer.Description
            - op: ExtractSizeFromPatterns
              sizeOut: Size
              remainingOut: Rest
            - op: ExtractAllCapitalsFromStart
              from: Rest
              extractedOut: Brand
              remainingOut: Name
            - op: Assign
              from: Name
              to: Product.Name
            - op: Assign
              from: Size
              to: Product.Size
            - op: MapValue
              table: Brands
              from: Brand
              out: BrandName
            - op: Assign
              from: BrandName
              to: Product.Brand
    - column: C
      rules:
        - id: price
          type: DirectAssign
          assign:
            Offer.Price: decimal
    - column: D
      rules:
        - id: quantity
          steps:
            - op: Trim
            - op: Assign
              to: Offer.Quantity
"""


@pytest.fixture()
def write_config(temp_workdir: Path, sample_supplier_yaml: str) -> Path:
    cfg = temp_workdir / "config" / "acme.yml"
    cfg.write_text(sample_supplier_yaml, encoding="utf-8")
    return cfg


def write_csv(path: Path, rows: list[list[object]]) -> Path:
    with path.open("w", encoding="utf-8", newline="") as f:
        writer = csv.writer(f)
        for row in rows:
            writer.writerow(row)
    return path


@pytest.fixture()
def sample_rows() -> list[list[object]]:
    return [
        ["EAN", "Description", "Price", "Qty"],
        ["1234567890123", "CHANEL N5 Eau  (100ml)", "12.5", "3"],
        ["ABC123", "DIOR Sauvage (50ml)", "20", "1"],
        ["9876543210987", "Acme Deluxe Perfume", "0", "2"],
        ["", "", "", ""],
        ["5555555555555", "D&G Light Blue (100ml)", "45.90", "6"],
    ]


@pytest.fixture()
def sample_csv(temp_workdir: Path, sample_rows: list[list[object]]) -> Path:
    return write_csv(temp_workdir / "data" / "acme-2024-05.csv", sample_rows)


@pytest.fixture()
def csv_writer():
    return write_csv
