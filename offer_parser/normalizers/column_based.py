from __future__ import annotations

import logging
from typing import Any

from ..models.aggregates import Product, ProductOffer
from ..models.config_models import ColumnProperty, PropertyClassification, SupplierConfig
from ..models.row_data import Row, column_index, column_letter
from .description import create_description_extractor
from .router import route_classified, synthesize_name
from .subtitle import apply_subtitle_defaults
from .transforms import apply_transformations, convert_data_type
from .validation import validate_value

"""Column-classification offer normalizer (older/simpler variant).

Each configured column property declares its own classification, so no rule
pipeline or property bag is involved. Per column:
validate raw value -> transformations -> data type conversion -> route.
"""

__all__ = [
    "ColumnBasedNormalizer",
]

logger = logging.getLogger(__name__)


class ColumnBasedNormalizer:
    def __init__(self, supplier_config: SupplierConfig) -> None:
        self._config = supplier_config
        self._describer = create_description_extractor(supplier_config.description_extraction)
        # extractSizeAndUnits 等が生成する追加キーの行き先 (target_property -> classification)
        self._classification_by_target = {
            p.target_property.lower(): p.classification for p in supplier_config.column_properties.values()
        }

    @property
    def supplier_name(self) -> str:
        return self._config.name

    def can_handle(self, file_name: str) -> bool:
        return bool(file_name) and self._config.matches_file(file_name)

    @staticmethod
    def cell_value(row: Row, key: str) -> str | None:
        """Trimmed cell text for a column key, or None when the key is unusable/absent."""
        index = column_index(key)
        if index < 0:
            return None
        raw = row.get(column_letter(index))
        if raw is None:
            raw = row.get(key)
        return None if raw is None else str(raw).strip()

    def _route_extra(self, offer: ProductOffer, key: str, value: Any) -> None:
        classification = self._classification_by_target.get(key.lower())
        if classification is None:
            classification = PropertyClassification.PRODUCT_DYNAMIC
        route_classified(offer, classification, key, value)

    def _process_column(self, offer: ProductOffer, prop: ColumnProperty, raw: str) -> None:
        value, extra = apply_transformations(raw, prop.transformations, prop.target_property, self._config.lookups)
        converted = convert_data_type(value, prop.data_type, prop.data_format)
        if converted is None or (isinstance(converted, str) and not converted.strip()):
            if prop.default_value is None:
                return
            converted = prop.default_value
        route_classified(offer, prop.classification, prop.target_property, converted)
        for key, extra_value in extra.items():
            if key == prop.target_property:
                continue
            self._route_extra(offer, key, extra_value)

    def normalize_row(self, row: Row) -> ProductOffer | None:
        """Build an offer from the configured columns; None when a column vetoes the row."""
        cfg = self._config
        product = Product()
        offer = ProductOffer(product=product, currency=None)

        for key, prop in cfg.column_properties.items():
            if prop.skip or not prop.target_property:
                continue
            raw = self.cell_value(row, prop.key or key)
            if raw is None:
                continue
            check = validate_value(prop, raw)
            if not check.is_valid:
                if check.skip_entire_row:
                    logger.debug(f"row {row.index}: {check.message} (row skipped)")
                    return None
                logger.debug(f"row {row.index}: {check.message} (column skipped)")
                continue
            if not raw:
                if prop.default_value is not None:
                    route_classified(offer, prop.classification, prop.target_property, prop.default_value)
                continue
            self._process_column(offer, prop, raw)

        if row.subtitle_data:
            apply_subtitle_defaults(product, row.subtitle_data, cfg.lookups, cfg.subtitle_handling.value_table)

        if offer.description:
            extracted = self._describer.extract(offer.description)
            for key, value in extracted.properties.items():
                if key not in product.dynamic_properties:
                    product.set_dynamic(key, value)

        if not offer.currency:
            offer.currency = cfg.offer_currency
        if not product.name:
            product.name = synthesize_name(product, cfg.preferred_name_properties)
        return offer
