"""Domain models for the supplier offer parser.

Rows, configuration dataclasses, output aggregates and processing results.
"""

from .aggregates import Product, ProductOffer, SupplierOffer
from .config_models import ParserConfig, PropertyClassification, RuleConfig, StepConfig, SupplierConfig
from .processing_result import FileProcessingResult, ProcessingStatistics
from .row_data import Row

__all__ = [
    # Configuration models
    "ParserConfig",
    "PropertyClassification",
    "RuleConfig",
    "StepConfig",
    "SupplierConfig",
    # Aggregates
    "Product",
    "ProductOffer",
    "SupplierOffer",
    # Processing models
    "Row",
    "FileProcessingResult",
    "ProcessingStatistics",
]
