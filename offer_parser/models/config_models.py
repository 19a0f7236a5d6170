from __future__ import annotations

import fnmatch
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType

"""Config dataclasses for the supplier offer parser.

These are the in-memory forms of a supplier configuration document. The loader
in offer_parser/config/loader.py builds them once per supplier; everything here
is frozen and shared read-only across all rows of a file.
"""

__all__ = [
    "PropertyClassification",
    "StepConfig",
    "ConditionalMappingConfig",
    "SplitMappingConfig",
    "ActionConfig",
    "RuleConfig",
    "ColumnRulesConfig",
    "ParserSettings",
    "ParserConfig",
    "ColumnValidation",
    "ColumnProperty",
    "SubtitleDetectionRule",
    "SubtitleHandlingConfig",
    "SubtitleAssignment",
    "DescriptionPattern",
    "DescriptionExtractionConfig",
    "FileStructureConfig",
    "SupplierConfig",
    "freeze_tables",
]


class PropertyClassification(Enum):
    """Destination of a configured property/column value.

    Exactly one classification per configured column. The two ``*_DYNAMIC``
    members route into the open-ended property maps of product or offer.
    """
    PRODUCT_NAME = "productName"
    PRODUCT_EAN = "productEAN"
    OFFER_PRICE = "offerPrice"
    OFFER_CURRENCY = "offerCurrency"
    OFFER_QUANTITY = "offerQuantity"
    OFFER_DESCRIPTION = "offerDescription"
    PRODUCT_DYNAMIC = "productDynamic"
    OFFER_DYNAMIC = "offerDynamic"

    @classmethod
    def parse(cls, value: str | None) -> PropertyClassification:
        """Case-insensitive lookup; legacy "coreProduct"/"offer" tags map to the dynamic members."""
        if not value:
            return cls.PRODUCT_DYNAMIC
        lowered = value.strip().lower()
        for member in cls:
            if member.value.lower() == lowered:
                return member
        if lowered in {"offer", "offerproperty"}:
            return cls.OFFER_DYNAMIC
        # coreProduct / product / 不明値 -> product 側
        return cls.PRODUCT_DYNAMIC

    @property
    def is_offer_level(self) -> bool:
        return self in {
            PropertyClassification.OFFER_PRICE,
            PropertyClassification.OFFER_CURRENCY,
            PropertyClassification.OFFER_QUANTITY,
            PropertyClassification.OFFER_DESCRIPTION,
            PropertyClassification.OFFER_DYNAMIC,
        }


def freeze_tables(tables: Mapping[str, Mapping[str, str]] | None) -> Mapping[str, Mapping[str, str]]:
    """Wrap lookup tables in read-only views (insertion order preserved)."""
    if not tables:
        return MappingProxyType({})
    return MappingProxyType(
        {name: MappingProxyType({str(k): str(v) for k, v in table.items()}) for name, table in tables.items()}
    )


@dataclass(frozen=True)
class ConditionalMappingConfig:
    table: str
    assign_to: str


@dataclass(frozen=True)
class SplitMappingConfig:
    starts_with: str
    assign_to: str
    after: str = ""


@dataclass(frozen=True)
class StepConfig:
    """One pipeline step: an op name plus op-specific parameters.

    ``source`` comes from the document's ``from``/``in`` key, ``output`` from
    ``out`` and ``target`` from ``to``. Unused parameters stay None.
    """
    op: str
    pattern: str | None = None
    options: str | None = None
    replacement: str | None = None
    table: str | None = None
    source: str | None = None
    output: str | None = None
    target: str | None = None
    value_out: str | None = None
    unit_out: str | None = None
    form: str | None = None
    case_mode: str | None = None  # exact | lower | upper
    word_out: str | None = None
    remaining_out: str | None = None
    extracted_out: str | None = None
    size_out: str | None = None
    patterns: tuple[str, ...] = ()
    delimiter: str | None = None
    expected_parts: int | None = None
    strict: bool = False
    mappings: tuple[ConditionalMappingConfig, ...] = ()
    keys: tuple[str, ...] = ()
    separator: str | None = None
    assign: bool = False


@dataclass(frozen=True)
class ActionConfig:
    """One action of a ``Chain`` rule.

    ``input`` / ``output`` name working-bag keys; ``parameters`` keeps the
    document's spelling and is read case-insensitively.
    """
    op: str
    input: str = "Text"
    output: str = ""
    parameters: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "parameters", MappingProxyType(dict(self.parameters)))

    def param(self, name: str, default: str | None = None) -> str | None:
        wanted = name.lower()
        for key, value in self.parameters.items():
            if key.lower() == wanted:
                return value
        return default


@dataclass(frozen=True)
class RuleConfig:
    """A configured rule bound to one column.

    ``id`` is the write provenance recorded in the property bag.
    """
    id: str
    type: str = "Pipeline"  # Pipeline | Chain | DirectAssign | MapValue | MultiCaptureRegex | SplitByDelimiter
    priority: int = 0
    steps: tuple[StepConfig, ...] = ()
    pattern: str | None = None
    delimiter: str | None = None
    assign: Mapping[str, str] = field(default_factory=dict)
    split_mappings: tuple[SplitMappingConfig, ...] = ()
    actions: tuple[ActionConfig, ...] = ()


@dataclass(frozen=True)
class ColumnRulesConfig:
    column: str
    rules: tuple[RuleConfig, ...] = ()


@dataclass(frozen=True)
class ParserSettings:
    stop_on_first_match_per_column: bool = False
    default_culture: str = "en-US"
    prefer_first_assignment: bool = False


@dataclass(frozen=True)
class ParserConfig:
    """Rule-based parser configuration: settings, lookup tables and column rules in declaration order."""
    settings: ParserSettings = field(default_factory=ParserSettings)
    lookups: Mapping[str, Mapping[str, str]] = field(default_factory=lambda: MappingProxyType({}))
    columns: tuple[ColumnRulesConfig, ...] = ()


@dataclass(frozen=True)
class ColumnValidation:
    is_required: bool = False
    skip_entire_row: bool = False
    allowed_values: tuple[str, ...] = ()
    validation_patterns: tuple[str, ...] = ()


@dataclass(frozen=True)
class ColumnProperty:
    """Column-variant property definition.

    May be merged from a market-wide catalog; supplier values win.
    """
    key: str  # column key ("A", "B", "3")
    target_property: str
    classification: PropertyClassification = PropertyClassification.PRODUCT_DYNAMIC
    display_name: str = ""
    data_type: str = "string"
    data_format: str | None = None
    default_value: str | None = None
    transformations: tuple[str, ...] = ()
    validation: ColumnValidation = field(default_factory=ColumnValidation)
    skip: bool = False


@dataclass(frozen=True)
class SubtitleDetectionRule:
    name: str
    detection_method: str = "columnCount"  # columnCount | pattern | hybrid
    expected_column_count: int = 1
    validation_patterns: tuple[str, ...] = ()
    apply_to_subsequent_rows: bool = True


@dataclass(frozen=True)
class SubtitleHandlingConfig:
    enabled: bool = False
    action: str = "parse"  # parse | skip
    detection_rules: tuple[SubtitleDetectionRule, ...] = ()
    value_table: str | None = None  # 値正規化に使う lookup table 名


@dataclass(frozen=True)
class SubtitleAssignment:
    """Maps a subtitle key onto a property bag key (rule-based variant)."""
    source: str
    target: str
    table: str | None = None
    overwrite: bool = False


@dataclass(frozen=True)
class DescriptionPattern:
    property: str
    pattern: str
    priority: int = 0
    group_index: int = 1
    transformation: str | None = None
    output_mappings: Mapping[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class DescriptionExtractionConfig:
    enabled: bool = False
    patterns: tuple[DescriptionPattern, ...] = ()


@dataclass(frozen=True)
class FileStructureConfig:
    header_row_index: int = 1  # 1-based
    data_start_row_index: int = 2  # 1-based
    sheet_name: str | None = None
    expected_column_count: int | None = None


@dataclass(frozen=True)
class SupplierConfig:
    """Root configuration for one supplier."""
    name: str
    mode: str = "rules"  # rules | columns
    currency: str | None = None
    file_name_patterns: tuple[str, ...] = ()
    file_structure: FileStructureConfig = field(default_factory=FileStructureConfig)
    parser: ParserConfig = field(default_factory=ParserConfig)
    column_properties: Mapping[str, ColumnProperty] = field(default_factory=dict)
    preferred_name_properties: tuple[str, ...] = ()
    subtitle_handling: SubtitleHandlingConfig = field(default_factory=SubtitleHandlingConfig)
    subtitle_assignments: tuple[SubtitleAssignment, ...] = ()
    description_extraction: DescriptionExtractionConfig = field(default_factory=DescriptionExtractionConfig)

    @property
    def lookups(self) -> Mapping[str, Mapping[str, str]]:
        return self.parser.lookups

    @property
    def offer_currency(self) -> str:
        return self.currency or "USD"

    def matches_file(self, file_name: str) -> bool:
        """True when the supplier name occurs in ``file_name`` or a configured glob matches."""
        lowered = file_name.lower()
        if self.name and self.name.lower() in lowered:
            return True
        return any(fnmatch.fnmatch(lowered, p.lower()) for p in self.file_name_patterns)
