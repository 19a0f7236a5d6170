from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

"""Output aggregates produced per accepted row.

Product and ProductOffer are created fresh for each row and discarded when the
row fails validation. SupplierOffer is the per-file header holding the
accepted offers.
"""

__all__ = [
    "Product",
    "ProductOffer",
    "SupplierOffer",
]


@dataclass
class Product:
    name: str = ""
    ean: str = ""
    dynamic_properties: dict[str, Any] = field(default_factory=dict)

    def set_dynamic(self, key: str, value: Any) -> None:
        self.dynamic_properties[key] = value


@dataclass
class ProductOffer:
    product: Product | None = None
    price: Decimal | None = None
    currency: str | None = None
    quantity: int | None = None
    description: str | None = None
    properties: dict[str, Any] = field(default_factory=dict)

    def is_valid(self) -> bool:
        """Final acceptance check: product, non-empty EAN, price > 0 and quantity > 0."""
        if self.product is None or not self.product.ean:
            return False
        if self.price is None or not self.price.is_finite() or self.price <= 0:
            return False
        return self.quantity is not None and self.quantity > 0


@dataclass
class SupplierOffer:
    supplier_name: str
    currency: str = "USD"
    source_file: str = ""
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    offers: list[ProductOffer] = field(default_factory=list)
