from __future__ import annotations
import json
import pytest
from pathlib import Path
from offer_parser.config.loader import ConfigError, load_supplier_config, merge_catalog, normalize_document
from offer_parser.models.config_models import PropertyClassification


def test_load_supplier_config_success(write_config: Path):
    cfg = load_supplier_config(write_config)
    assert cfg.name == "acme"
    assert cfg.mode == "rules"
    assert cfg.offer_currency == "EUR"
    assert cfg.file_name_patterns == ("acme*.csv", "acme*.xlsx")
    assert cfg.file_structure.data_start_row_index == 2
    assert cfg.parser.settings.prefer_first_assignment is True
    assert dict(cfg.lookups["Brands"])["D&G"] == "Dolce & Gabbana"
    assert [c.column for c in cfg.parser.columns] == ["A", "B", "C", "D"]

    steps = cfg.parser.columns[1].rules[0].steps
    # camelCase キーと from/out/to 別名の正規化
    assert (steps[2].op, steps[2].size_out, steps[2].remaining_out) == ("ExtractSizeFromPatterns", "Size", "Rest")
    assert (steps[3].source, steps[3].extracted_out, steps[3].remaining_out) == ("Rest", "Brand", "Name")
    assert (steps[6].table, steps[6].source, steps[6].output) == ("Brands", "Brand", "BrandName")
    assert steps[7].target == "Product.Brand"

    price = cfg.parser.columns[2].rules[0]
    assert price.type == "DirectAssign"
    assert dict(price.assign) == {"Offer.Price": "decimal"}


def test_load_config_missing_file(temp_workdir: Path):
    missing = temp_workdir / "config" / "not_exists.yml"
    with pytest.raises(ConfigError):
        load_supplier_config(missing)


def test_load_config_invalid_yaml(temp_workdir: Path):
    path = temp_workdir / "config" / "broken.yml"
    path.write_text("name: [unclosed\n", encoding="utf-8")
    with pytest.raises(ConfigError) as e:
        load_supplier_config(path)
    assert "invalid yaml/json" in str(e.value)


def test_load_config_missing_required(temp_workdir: Path):
    path = temp_workdir / "config" / "noname.yml"
    path.write_text("currency: EUR\n", encoding="utf-8")
    with pytest.raises(ConfigError) as e:
        load_supplier_config(path)
    assert "config validation failed" in str(e.value) and "required property" in str(e.value)


def test_load_config_invalid_mode(write_config: Path):
    text = write_config.read_text(encoding="utf-8").replace("currency: EUR\n", "currency: EUR\nmode: magic\n")
    write_config.write_text(text, encoding="utf-8")
    with pytest.raises(ConfigError) as e:
        load_supplier_config(write_config)
    assert "config validation failed at mode" in str(e.value)


def test_load_config_unknown_rule_type(write_config: Path):
    text = write_config.read_text(encoding="utf-8").replace("type: DirectAssign", "type: Telepathy")
    write_config.write_text(text, encoding="utf-8")
    with pytest.raises(ConfigError) as e:
        load_supplier_config(write_config)
    assert "unknown rule type" in str(e.value)


def test_load_json_document_with_flat_rules(temp_workdir: Path):
    doc = {
        "name": "beta",
        "parser": {
            "rules": [
                {"column": "B", "type": "MultiCaptureRegex", "pattern": r"(\d+)\s*ml", "assign": {"1->Product.Size": "decimal"}},
                {"column": "A", "steps": [{"operation": "Assign", "to": "Product.EAN"}]},
                {"column": "B", "type": "SplitByDelimiter", "delimiter": ".", "mappings": [{"startsWith": "EAN", "assignTo": "Product.EAN", "after": "EAN"}]},
            ]
        },
    }
    path = temp_workdir / "config" / "beta.json"
    path.write_text(json.dumps(doc), encoding="utf-8")
    cfg = load_supplier_config(path)
    # 宣言順: 最初に出現した列順でまとめる
    assert [c.column for c in cfg.parser.columns] == ["B", "A"]
    b_rules = cfg.parser.columns[0].rules
    assert [r.id for r in b_rules] == ["B#r1", "B#r3"]
    assert b_rules[1].split_mappings[0].assign_to == "Product.EAN"
    assert cfg.parser.columns[1].rules[0].steps[0].op == "Assign"
    assert cfg.offer_currency == "USD"


def test_column_keys_are_upper_cased_and_merged(temp_workdir: Path):
    doc = {
        "name": "delta",
        "parser": {
            "columns": [{"column": "a", "rules": [{"steps": [{"op": "Assign", "to": "Product.EAN"}]}]}],
            "rules": [{"column": " A ", "type": "DirectAssign", "assign": {"Offer.Code": "trim"}}],
        },
    }
    path = temp_workdir / "config" / "delta.json"
    path.write_text(json.dumps(doc), encoding="utf-8")
    cfg = load_supplier_config(path)
    assert [c.column for c in cfg.parser.columns] == ["A"]
    assert [r.id for r in cfg.parser.columns[0].rules] == ["A#1", "A#r1"]


def test_column_mode_with_catalog_merge(temp_workdir: Path):
    supplier = temp_workdir / "config" / "gamma.yml"
    supplier.write_text(
        """name: gamma
mode: columns
columnProperties:
  A:
    targetProperty: EAN
    classification: productEAN
  C:
    targetProperty: Price
    dataType:
      type: decimal
      transformations: [cleanprice]
      defaultValue: "0"
    validation:
      skipEntireRow: true
""",
        encoding="utf-8",
    )
    catalog = temp_workdir / "config" / "catalog.yml"
    catalog.write_text(
        """properties:
  EAN:
    validation:
      isRequired: true
      validationPatterns: ['^\\d+$']
  Price:
    classification: offerPrice
    validation:
      isRequired: true
""",
        encoding="utf-8",
    )
    cfg = load_supplier_config(supplier, catalog)
    ean = cfg.column_properties["A"]
    assert ean.classification is PropertyClassification.PRODUCT_EAN
    assert ean.validation.is_required is True
    assert ean.validation.validation_patterns == (r"^\d+$",)

    price = cfg.column_properties["C"]
    assert price.classification is PropertyClassification.OFFER_PRICE
    assert price.data_type == "decimal"
    assert price.transformations == ("cleanprice",)
    assert price.default_value == "0"
    # validation はキー単位でマージ (supplier 優先)
    assert price.validation.is_required is True
    assert price.validation.skip_entire_row is True


def test_merge_catalog_supplier_values_win():
    doc = {"name": "x", "column_properties": {"A": {"target_property": "Brand", "data_type": "string"}}}
    catalog = {"brand": {"data_type": "int", "display_name": "Brand name"}}
    merged = merge_catalog(doc, catalog)
    assert merged["column_properties"]["A"]["data_type"] == "string"
    assert merged["column_properties"]["A"]["display_name"] == "Brand name"
    assert merge_catalog(doc, None) is doc


def test_normalize_document_keeps_data_sections():
    raw = {
        "fileStructure": {"headerRowIndex": 1},
        "parser": {"lookups": {"Brands": {"camelKey": "v"}}, "rules": [{"assign": {"Offer.Price": "decimal"}}]},
        "columnProperties": {"A": {"targetProperty": "EAN"}},
    }
    assert normalize_document(raw) == {
        "file_structure": {"header_row_index": 1},
        "parser": {"lookups": {"Brands": {"camelKey": "v"}}, "rules": [{"assign": {"Offer.Price": "decimal"}}]},
        "column_properties": {"A": {"target_property": "EAN"}},
    }


def test_chain_rule_with_singular_rule_and_action_aliases(temp_workdir: Path):
    doc = {
        "name": "epsilon",
        "parser": {
            "lookups": {"Brands": {"D&G": "Dolce & Gabbana"}},
            "columns": [
                {
                    "column": "c",
                    "rule": {
                        "id": "desc",
                        "type": "Chain",
                        "actions": [
                            {"op": "RemoveFromStart", "to": "Lead", "parameters": {"pattern": "^[A-Z&]+$"}},
                            {
                                "operation": "Map",
                                "from": "Lead[0]",
                                "out": "Product.Brand",
                                "assign": True,
                                "parameters": {"Table": "Brands", "AddIfNotFound": True},
                            },
                        ],
                    },
                }
            ],
        },
    }
    path = temp_workdir / "config" / "epsilon.json"
    path.write_text(json.dumps(doc), encoding="utf-8")
    cfg = load_supplier_config(path)
    rule = cfg.parser.columns[0].rules[0]
    assert cfg.parser.columns[0].column == "C"
    assert rule.type == "Chain"
    lead, brand = rule.actions
    assert (lead.op, lead.input, lead.output) == ("RemoveFromStart", "Text", "Lead")
    assert (brand.op, brand.input, brand.output) == ("Map", "Lead[0]", "Product.Brand")
    assert brand.param("table") == "Brands"
    assert brand.param("addifnotfound") == "True"
    assert brand.param("assign") == "true"
