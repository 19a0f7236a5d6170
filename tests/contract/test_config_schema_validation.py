from __future__ import annotations

import json

import jsonschema
import pytest
import yaml
from jsonschema.exceptions import ValidationError

from offer_parser.config.loader import SCHEMA_PATH, normalize_document

"""Supplier config schema contract test."""


def _schema() -> dict:
    return json.loads(SCHEMA_PATH.read_text(encoding="utf-8"))


def test_config_schema_valid_example(sample_supplier_yaml: str):
    document = normalize_document(yaml.safe_load(sample_supplier_yaml))
    jsonschema.validate(document, _schema())


def test_config_schema_valid_column_mode_example():
    document = normalize_document({
        "name": "gamma",
        "mode": "columns",
        "columnProperties": {
            "A": {"targetProperty": "EAN", "classification": "productEAN"},
            "C": {"targetProperty": "Price", "validation": {"isRequired": True}},
        },
        "subtitleHandling": {
            "enabled": True,
            "action": "parse",
            "detectionRules": [{"name": "Brand", "expectedColumnCount": 1}],
        },
    })
    jsonschema.validate(document, _schema())


@pytest.mark.parametrize(
    "document",
    [
        {"currency": "EUR"},
        {"name": ""},
        {"name": "x", "mode": "magic"},
        {"name": "x", "file_structure": {"data_start_row_index": 0}},
        {"name": "x", "parser": {"columns": [{"rules": []}]}},
        {"name": "x", "parser": {"rules": [{"type": "DirectAssign"}]}},
        {"name": "x", "parser": {"columns": [{"column": "A", "rules": [{"steps": [{"to": "Product.EAN"}]}]}]}},
        {"name": "x", "subtitle_assignments": [{"source": "Brand"}]},
    ],
)
def test_config_schema_rejects_invalid(document):
    with pytest.raises(ValidationError):
        jsonschema.validate(document, _schema())
