from __future__ import annotations

import json
import re
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import jsonschema
import yaml
from jsonschema.exceptions import ValidationError

from ..models.config_models import (
    ColumnProperty,
    ColumnRulesConfig,
    ColumnValidation,
    ConditionalMappingConfig,
    DescriptionExtractionConfig,
    DescriptionPattern,
    FileStructureConfig,
    ParserConfig,
    ParserSettings,
    PropertyClassification,
    ActionConfig,
    RuleConfig,
    SplitMappingConfig,
    StepConfig,
    SubtitleAssignment,
    SubtitleDetectionRule,
    SubtitleHandlingConfig,
    SupplierConfig,
    freeze_tables,
)
from ..parsing.engine import ParserEngine
from ..parsing.rules import RuleConfigError

"""Supplier configuration loader.

Responsibilities:
- Load a YAML or JSON supplier document (``yaml.safe_load`` reads both)
- Normalize keys: camelCase -> snake_case, step and action aliases (from/in/out/to)
- Merge an optional market property catalog beneath the supplier's column
  properties (supplier values win)
- Validate against ``supplier_schema.json`` (jsonschema)
- Build the frozen config dataclasses; rule types are checked by building the
  parser engine once
"""

__all__ = [
    "ConfigError",
    "SCHEMA_PATH",
    "load_document",
    "normalize_document",
    "merge_catalog",
    "build_supplier_config",
    "load_supplier_config",
]

SCHEMA_PATH = Path(__file__).parent / "supplier_schema.json"

# 値がデータそのもの (キーを変換しない) のセクション
_OPAQUE_KEYS = frozenset({"lookups", "assign", "output_mappings", "parameters"})
# キーが列キー ("A", "B") のセクション: キーは保持し中身のみ正規化
_KEYED_KEYS = frozenset({"column_properties", "properties"})

_STEP_ALIASES = {
    "from": "source",
    "in": "source",
    "input": "source",
    "out": "output",
    "output_property": "output",
    "to": "target",
    "operation": "op",
    "values_out": "value_out",
    "units_out": "unit_out",
}

_ACTION_ALIASES = {
    "from": "input",
    "in": "input",
    "source": "input",
    "out": "output",
    "to": "output",
    "target": "output",
    "operation": "op",
}

_CAMEL_RE = re.compile(r"(?<=[a-z0-9])([A-Z])")


class ConfigError(Exception):
    pass


def _snake(key: str) -> str:
    return _CAMEL_RE.sub(r"_\1", key).lower()


def normalize_document(data: Any, _parent: str | None = None) -> Any:
    """Snake-case structural keys recursively; data sections are left as written."""
    if isinstance(data, list):
        return [normalize_document(item, _parent) for item in data]
    if not isinstance(data, dict):
        return data
    out: dict[str, Any] = {}
    for raw_key, value in data.items():
        if _parent in _KEYED_KEYS:
            out[str(raw_key)] = normalize_document(value)
            continue
        key = _snake(str(raw_key))
        if _parent == "steps":
            key = _STEP_ALIASES.get(key, key)
        elif _parent == "actions":
            key = _ACTION_ALIASES.get(key, key)
        if key in _OPAQUE_KEYS and isinstance(value, dict):
            if key == "lookups":
                out[key] = {str(t): {str(k): v for k, v in (table or {}).items()} for t, table in value.items()}
            else:
                out[key] = {str(k): v for k, v in value.items()}
            continue
        out[key] = normalize_document(value, key)
    return out


def load_document(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise ConfigError(f"config file not found: {path}")
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid yaml/json: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"config root must be a mapping: {path}")
    return normalize_document(data)


def _validate_config_schema(data: dict[str, Any]) -> None:
    """Validate a normalized document.

    Raises:
        ConfigError: schema file missing/invalid or the document violates it
    """
    if not SCHEMA_PATH.exists():
        raise ConfigError(f"config schema not found: {SCHEMA_PATH}")
    try:
        schema = json.loads(SCHEMA_PATH.read_text(encoding="utf-8"))
        jsonschema.validate(data, schema)
    except json.JSONDecodeError as e:
        raise ConfigError(f"invalid schema file: {e}") from e
    except ValidationError as e:
        where = "/".join(str(p) for p in e.absolute_path) or "<root>"
        raise ConfigError(f"config validation failed at {where}: {e.message}") from e


def merge_catalog(document: dict[str, Any], catalog: Mapping[str, Any] | None) -> dict[str, Any]:
    """Fill column properties from market-wide catalog entries.

    Catalog entries are keyed by target property (case-insensitive). Supplier
    values take precedence; ``validation`` is merged key by key.
    """
    if not catalog:
        return document
    entries = catalog.get("properties", catalog)
    by_name = {str(k).lower(): v for k, v in entries.items() if isinstance(v, dict)}
    merged_props: dict[str, Any] = {}
    for column_key, prop in (document.get("column_properties") or {}).items():
        prop = dict(prop or {})
        target = str(prop.get("target_property") or prop.get("display_name") or "").lower()
        base = by_name.get(target)
        if base is not None:
            combined = {**base, **prop}
            combined["validation"] = {**(base.get("validation") or {}), **(prop.get("validation") or {})}
            prop = combined
        merged_props[column_key] = prop
    if not merged_props:
        return document
    return {**document, "column_properties": merged_props}


def _tuple(values: Any) -> tuple[str, ...]:
    if values is None:
        return ()
    if isinstance(values, str):
        return (values,)
    return tuple(str(v) for v in values)


def _opt_str(value: Any) -> str | None:
    return None if value is None else str(value)


def _build_step(raw: Mapping[str, Any]) -> StepConfig:
    d = {_STEP_ALIASES.get(k, k): v for k, v in raw.items()}
    mappings = tuple(
        ConditionalMappingConfig(table=str(m.get("table", "")), assign_to=str(m.get("assign_to", "")))
        for m in d.get("mappings") or ()
    )
    expected = d.get("expected_parts")
    return StepConfig(
        op=str(d["op"]),
        pattern=_opt_str(d.get("pattern")),
        options=_opt_str(d.get("options")),
        replacement=_opt_str(d.get("replacement")),
        table=_opt_str(d.get("table")),
        source=_opt_str(d.get("source")),
        output=_opt_str(d.get("output")),
        target=_opt_str(d.get("target")),
        value_out=_opt_str(d.get("value_out")),
        unit_out=_opt_str(d.get("unit_out")),
        form=_opt_str(d.get("form")),
        case_mode=_opt_str(d.get("case_mode") or d.get("case")),
        word_out=_opt_str(d.get("word_out")),
        remaining_out=_opt_str(d.get("remaining_out")),
        extracted_out=_opt_str(d.get("extracted_out")),
        size_out=_opt_str(d.get("size_out")),
        patterns=_tuple(d.get("patterns")),
        delimiter=_opt_str(d.get("delimiter")),
        expected_parts=None if expected is None else int(expected),
        strict=bool(d.get("strict", False)),
        mappings=mappings,
        keys=_tuple(d.get("keys")),
        separator=_opt_str(d.get("separator")),
        assign=bool(d.get("assign", False)),
    )


def _build_action(raw: Mapping[str, Any]) -> ActionConfig:
    d = {_ACTION_ALIASES.get(k, k): v for k, v in raw.items()}
    parameters = {str(k): ("" if v is None else str(v)) for k, v in (d.get("parameters") or {}).items()}
    # assign: true はパラメータとしても書ける
    if "assign" in d and not any(k.lower() == "assign" for k in parameters):
        parameters["assign"] = str(d["assign"]).lower()
    return ActionConfig(
        op=str(d["op"]),
        input=str(d.get("input") or "Text"),
        output=str(d.get("output") or ""),
        parameters=parameters,
    )


def _build_rule(raw: Mapping[str, Any], fallback_id: str) -> RuleConfig:
    split = tuple(
        SplitMappingConfig(
            starts_with=str(m.get("starts_with", "")),
            assign_to=str(m.get("assign_to", "")),
            after=str(m.get("after", "")),
        )
        for m in raw.get("mappings") or ()
    )
    return RuleConfig(
        id=str(raw.get("id") or fallback_id),
        type=str(raw.get("type") or "Pipeline"),
        priority=int(raw.get("priority", 0)),
        steps=tuple(_build_step(s) for s in raw.get("steps") or ()),
        pattern=_opt_str(raw.get("pattern")),
        delimiter=_opt_str(raw.get("delimiter")),
        assign={str(k): ("" if v is None else str(v)) for k, v in (raw.get("assign") or {}).items()},
        split_mappings=split,
        actions=tuple(_build_action(a) for a in raw.get("actions") or ()),
    )


def _build_parser(raw: Mapping[str, Any]) -> ParserConfig:
    s = raw.get("settings") or {}
    settings = ParserSettings(
        stop_on_first_match_per_column=bool(s.get("stop_on_first_match_per_column", False)),
        default_culture=str(s.get("default_culture", "en-US")),
        prefer_first_assignment=bool(s.get("prefer_first_assignment", False)),
    )
    # columns: [{column, rules}] と rules: [{column, ...}] の両形式を宣言順で統合
    grouped: dict[str, list[RuleConfig]] = {}
    for col in raw.get("columns") or ():
        column = str(col["column"]).strip().upper()
        rules = grouped.setdefault(column, [])
        # 単数形 rule: {...} も 1 件のルールとして受け付ける
        col_rules = col.get("rules") or ([col["rule"]] if col.get("rule") else [])
        for i, r in enumerate(col_rules):
            rules.append(_build_rule(r, f"{column}#{i + 1}"))
    for i, r in enumerate(raw.get("rules") or ()):
        column = str(r["column"]).strip().upper()
        grouped.setdefault(column, []).append(_build_rule(r, f"{column}#r{i + 1}"))
    columns = tuple(ColumnRulesConfig(column=c, rules=tuple(rs)) for c, rs in grouped.items())
    return ParserConfig(settings=settings, lookups=freeze_tables(raw.get("lookups")), columns=columns)


def _build_column_property(column_key: str, raw: Mapping[str, Any]) -> ColumnProperty:
    data_type = raw.get("data_type", "string")
    fmt = raw.get("format")
    transformations = raw.get("transformations")
    default_value = raw.get("default_value")
    if isinstance(data_type, dict):
        # 旧形式: dataType: {type, format, transformations, defaultValue}
        fmt = data_type.get("format", fmt)
        transformations = data_type.get("transformations", transformations)
        default_value = data_type.get("default_value", default_value)
        data_type = data_type.get("type", "string")
    v = raw.get("validation") or {}
    validation = ColumnValidation(
        is_required=bool(v.get("is_required", False)),
        skip_entire_row=bool(v.get("skip_entire_row", False)),
        allowed_values=_tuple(v.get("allowed_values")),
        validation_patterns=_tuple(v.get("validation_patterns")),
    )
    target = str(raw.get("target_property") or raw.get("display_name") or column_key)
    return ColumnProperty(
        key=str(raw.get("key") or column_key),
        target_property=target,
        classification=PropertyClassification.parse(raw.get("classification")),
        display_name=str(raw.get("display_name") or target),
        data_type=str(data_type or "string"),
        data_format=_opt_str(fmt),
        default_value=_opt_str(default_value),
        transformations=_tuple(transformations),
        validation=validation,
        skip=bool(raw.get("skip", False)),
    )


def build_supplier_config(doc: Mapping[str, Any]) -> SupplierConfig:
    fs = doc.get("file_structure") or {}
    file_structure = FileStructureConfig(
        header_row_index=int(fs.get("header_row_index", 1)),
        data_start_row_index=int(fs.get("data_start_row_index", 2)),
        sheet_name=_opt_str(fs.get("sheet_name")),
        expected_column_count=fs.get("expected_column_count"),
    )
    sh = doc.get("subtitle_handling") or {}
    subtitle = SubtitleHandlingConfig(
        enabled=bool(sh.get("enabled", False)),
        action=str(sh.get("action", "parse")),
        value_table=_opt_str(sh.get("value_table")),
        detection_rules=tuple(
            SubtitleDetectionRule(
                name=str(r["name"]),
                detection_method=str(r.get("detection_method", "columnCount")),
                expected_column_count=int(r.get("expected_column_count", 1)),
                validation_patterns=_tuple(r.get("validation_patterns")),
                apply_to_subsequent_rows=bool(r.get("apply_to_subsequent_rows", True)),
            )
            for r in sh.get("detection_rules") or ()
        ),
    )
    de = doc.get("description_extraction") or {}
    description = DescriptionExtractionConfig(
        enabled=bool(de.get("enabled", False)),
        patterns=tuple(
            DescriptionPattern(
                property=str(p["property"]),
                pattern=str(p["pattern"]),
                priority=int(p.get("priority", 0)),
                group_index=int(p.get("group_index", 1)),
                transformation=_opt_str(p.get("transformation")),
                output_mappings={str(k): int(v) for k, v in (p.get("output_mappings") or {}).items()},
            )
            for p in de.get("patterns") or ()
        ),
    )
    return SupplierConfig(
        name=str(doc["name"]),
        mode=str(doc.get("mode", "rules")),
        currency=_opt_str(doc.get("currency")),
        file_name_patterns=_tuple(doc.get("file_name_patterns")),
        file_structure=file_structure,
        parser=_build_parser(doc.get("parser") or {}),
        column_properties={
            str(k): _build_column_property(str(k), v or {}) for k, v in (doc.get("column_properties") or {}).items()
        },
        preferred_name_properties=_tuple(doc.get("preferred_name_properties")),
        subtitle_handling=subtitle,
        subtitle_assignments=tuple(
            SubtitleAssignment(
                source=str(a["source"]),
                target=str(a["target"]),
                table=_opt_str(a.get("table")),
                overwrite=bool(a.get("overwrite", False)),
            )
            for a in doc.get("subtitle_assignments") or ()
        ),
        description_extraction=description,
    )


def load_supplier_config(path: Path, catalog_path: Path | None = None) -> SupplierConfig:
    """Load, merge, validate and build one supplier configuration.

    Raises:
        ConfigError: missing/invalid file, schema violation or an unbuildable rule
    """
    doc = load_document(path)
    if catalog_path is not None:
        doc = merge_catalog(doc, load_document(catalog_path))
    _validate_config_schema(doc)
    config = build_supplier_config(doc)
    if config.mode == "rules":
        try:
            ParserEngine(config.parser)
        except RuleConfigError as e:
            raise ConfigError(f"{path.name}: {e}") from e
    return config
