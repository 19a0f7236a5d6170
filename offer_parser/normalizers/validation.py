from __future__ import annotations

import re
from dataclasses import dataclass

from ..models.config_models import ColumnProperty
from ..parsing.steps import compile_pattern

"""Raw-value validation for the column variant.

Runs on the untransformed (trimmed) cell value before any transformation.
"""

__all__ = [
    "ValidationResult",
    "validate_value",
]


@dataclass(frozen=True)
class ValidationResult:
    is_valid: bool
    skip_entire_row: bool = False
    message: str = ""

    @staticmethod
    def ok() -> ValidationResult:
        return ValidationResult(True)


def validate_value(prop: ColumnProperty, value: str | None) -> ValidationResult:
    """Required / allowed-values / pattern checks, all case-insensitive.

    Patterns only apply to non-empty values; any single pattern match passes.
    """
    rules = prop.validation
    text = (value or "").strip()

    def invalid(msg: str) -> ValidationResult:
        return ValidationResult(False, rules.skip_entire_row, msg)

    if rules.is_required and not text:
        return invalid(f"Required field '{prop.target_property or prop.key}' is empty")

    if rules.allowed_values and text:
        allowed = {a.lower() for a in rules.allowed_values}
        if text.lower() not in allowed:
            return invalid(f"Value '{text}' not allowed for '{prop.target_property or prop.key}'")

    if rules.validation_patterns and text:
        compiled = [compile_pattern(p, re.IGNORECASE) for p in rules.validation_patterns]
        if not any(rx is not None and rx.search(text) for rx in compiled):
            return invalid(f"Value '{text}' does not match validation patterns for '{prop.target_property or prop.key}'")

    return ValidationResult.ok()
