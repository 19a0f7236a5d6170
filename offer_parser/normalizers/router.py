from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from decimal import Decimal, InvalidOperation
from typing import Any

from ..models.aggregates import Product, ProductOffer
from ..models.config_models import PropertyClassification
from .transforms import normalize_decimal

"""Classification router: writes values onto aggregate fields.

Two entry points share the same field semantics:
- ``route_bag`` for property-bag keys in ``Category.Property`` form
- ``route_classified`` for a column's declared PropertyClassification

Numeric fields that fail to parse keep their previous value; nothing here raises
for bad data.
"""

__all__ = [
    "EAN_PATTERN",
    "is_valid_property_bag",
    "route_bag",
    "route_classified",
    "synthesize_name",
    "parse_decimal",
    "parse_int",
    "is_blank",
]

EAN_PATTERN = re.compile(r"^\d+$")
EAN_KEY = "Product.EAN"
UNKNOWN_PRODUCT = "Unknown Product"


def is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def parse_decimal(value: Any) -> Decimal | None:
    if isinstance(value, Decimal):
        return value if value.is_finite() else None
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int | float):
        number = Decimal(str(value))
        return number if number.is_finite() else None
    text = str(value).strip()
    for candidate in (text, normalize_decimal(text)):
        if not candidate:
            continue
        try:
            number = Decimal(candidate)
        except InvalidOperation:
            continue
        if number.is_finite():
            return number
    return None


def parse_int(value: Any) -> int | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int):
        return value
    text = str(value).strip()
    try:
        return int(text)
    except ValueError:
        pass
    number = parse_decimal(text)
    if number is not None and number == number.to_integral_value():
        return int(number)
    return None


def is_valid_property_bag(values: Mapping[str, Any]) -> bool:
    """Row gate: ``Product.EAN`` (any casing) present, a non-blank string, all decimal digits."""
    if not values:
        return False
    ean = values.get(EAN_KEY)
    if ean is None:
        wanted = EAN_KEY.lower()
        ean = next((v for k, v in values.items() if k.lower() == wanted), None)
    if not isinstance(ean, str) or not ean.strip():
        return False
    return EAN_PATTERN.match(ean) is not None


def route_bag(values: Mapping[str, Any], default_currency: str | None = None) -> ProductOffer:
    """Build a product + offer from ``Category.Property`` keys (case-insensitive).

    Unknown categories and keys without a category are ignored; blank values
    are skipped.
    """
    product = Product()
    offer = ProductOffer(product=product, currency=default_currency)
    for key, value in values.items():
        if is_blank(value):
            continue
        category, sep, prop = key.partition(".")
        if not sep or not prop:
            continue
        cat = category.strip().lower()
        name = prop.strip().lower()
        if cat == "product":
            if name == "ean":
                product.ean = str(value).strip()
            elif name == "name":
                product.name = str(value).strip()
            else:
                product.set_dynamic(prop.strip(), value)
        elif cat == "offer":
            if name == "price":
                parsed_price = parse_decimal(value)
                if parsed_price is not None:
                    offer.price = parsed_price
            elif name == "currency":
                offer.currency = str(value).strip()
            elif name == "quantity":
                parsed = parse_int(value)
                offer.quantity = parsed if parsed is not None else offer.quantity
            elif name == "description":
                offer.description = str(value).strip()
            else:
                offer.properties[prop.strip()] = value
    return offer


def route_classified(offer: ProductOffer, classification: PropertyClassification, key: str, value: Any) -> None:
    """Write one column value by its declared classification."""
    product = offer.product
    if product is None:
        product = offer.product = Product()
    if classification is PropertyClassification.PRODUCT_NAME:
        product.name = str(value).strip()
    elif classification is PropertyClassification.PRODUCT_EAN:
        product.ean = str(value).strip()
    elif classification is PropertyClassification.OFFER_PRICE:
        parsed_price = parse_decimal(value)
        if parsed_price is not None:
            offer.price = parsed_price
    elif classification is PropertyClassification.OFFER_CURRENCY:
        offer.currency = str(value).strip()
    elif classification is PropertyClassification.OFFER_QUANTITY:
        parsed = parse_int(value)
        offer.quantity = parsed if parsed is not None else offer.quantity
    elif classification is PropertyClassification.OFFER_DESCRIPTION:
        offer.description = str(value).strip()
    elif classification is PropertyClassification.OFFER_DYNAMIC:
        offer.properties[key] = value
    else:
        product.set_dynamic(key, value)


def synthesize_name(product: Product, preferred: Sequence[str] = ()) -> str:
    """Name from preferred properties (or all dynamic ones), then EAN, then a literal."""
    dynamic = product.dynamic_properties
    if preferred:
        lowered = {k.lower(): v for k, v in dynamic.items()}
        values = [lowered.get(p.lower()) for p in preferred]
    else:
        values = list(dynamic.values())
    parts = [str(v).strip() for v in values if v is not None and str(v).strip()]
    if parts:
        return " ".join(parts)
    if product.ean:
        return f"Product {product.ean}"
    return UNKNOWN_PRODUCT
