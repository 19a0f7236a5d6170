from __future__ import annotations

import logging

from ..models.aggregates import ProductOffer
from ..models.config_models import SupplierConfig
from ..models.row_data import Row
from ..parsing.engine import ParserEngine
from .description import create_description_extractor
from .router import is_valid_property_bag, route_bag, synthesize_name
from .subtitle import apply_subtitle_assignments, apply_subtitle_defaults

"""Rule-based offer normalizer.

Row flow:
1. ParserEngine builds the property bag from the configured column rules
2. subtitle assignment mappings are applied to the bag
3. row validity gate on ``Product.EAN``
4. bag keys routed onto Product / ProductOffer (``Category.Property``)
5. subtitle defaults, description extraction and name synthesis fill gaps

Final acceptance (``ProductOffer.is_valid``) is decided by the caller so that
rejected and skipped rows are counted in one place.
"""

__all__ = [
    "RuleBasedOfferNormalizer",
]

logger = logging.getLogger(__name__)


class RuleBasedOfferNormalizer:
    def __init__(self, supplier_config: SupplierConfig) -> None:
        self._config = supplier_config
        self._engine = ParserEngine(supplier_config.parser)
        self._describer = create_description_extractor(supplier_config.description_extraction)

    @property
    def supplier_name(self) -> str:
        return self._config.name

    @property
    def engine(self) -> ParserEngine:
        return self._engine

    def can_handle(self, file_name: str) -> bool:
        return bool(file_name) and self._config.matches_file(file_name)

    def normalize_row(self, row: Row) -> ProductOffer | None:
        """Return the routed offer for ``row`` or None when the validity gate rejects it."""
        cfg = self._config
        bag = self._engine.parse(row)
        if row.subtitle_data and cfg.subtitle_assignments:
            apply_subtitle_assignments(bag, row.subtitle_data, cfg.subtitle_assignments, cfg.lookups)

        values = bag.snapshot()
        if not is_valid_property_bag(values):
            logger.debug(f"row {row.index}: missing or non-numeric Product.EAN ({values.get('Product.EAN')!r})")
            return None

        offer = route_bag(values, cfg.offer_currency)
        product = offer.product
        if product is None:  # pragma: no cover (route_bag always attaches one)
            return None
        if row.subtitle_data:
            apply_subtitle_defaults(product, row.subtitle_data, cfg.lookups, cfg.subtitle_handling.value_table)

        if offer.description:
            extracted = self._describer.extract(offer.description)
            for key, value in extracted.properties.items():
                if key not in product.dynamic_properties:
                    product.set_dynamic(key, value)

        if not product.name:
            product.name = synthesize_name(product, cfg.preferred_name_properties)
        logger.debug(f"row {row.index}: {len(values)} properties -> ean={product.ean}")
        return offer
