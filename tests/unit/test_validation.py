from __future__ import annotations

from offer_parser.models.config_models import ColumnProperty, ColumnValidation
from offer_parser.normalizers.validation import validate_value


def _prop(**validation) -> ColumnProperty:
    return ColumnProperty(key="A", target_property="EAN", validation=ColumnValidation(**validation))


def test_no_rules_always_valid():
    assert validate_value(_prop(), None).is_valid is True
    assert validate_value(_prop(), "anything").is_valid is True


def test_required_field_empty():
    result = validate_value(_prop(is_required=True), "   ")
    assert result.is_valid is False
    assert result.skip_entire_row is False
    assert "Required field 'EAN' is empty" in result.message


def test_required_with_skip_entire_row():
    result = validate_value(_prop(is_required=True, skip_entire_row=True), None)
    assert result.is_valid is False
    assert result.skip_entire_row is True


def test_allowed_values_case_insensitive():
    prop = _prop(allowed_values=("SET", "REG"))
    assert validate_value(prop, "set").is_valid is True
    bad = validate_value(prop, "promo")
    assert bad.is_valid is False
    assert "not allowed" in bad.message
    # 空値は allowed チェック対象外
    assert validate_value(prop, "").is_valid is True


def test_validation_patterns_any_match_passes():
    prop = _prop(validation_patterns=(r"^\d{13}$", r"^\d{8}$"))
    assert validate_value(prop, "12345678").is_valid is True
    assert validate_value(prop, "1234567890123").is_valid is True
    assert validate_value(prop, "ABC").is_valid is False
    assert validate_value(prop, "").is_valid is True


def test_validation_pattern_is_case_insensitive():
    prop = _prop(validation_patterns=(r"^[a-z]+$",))
    assert validate_value(prop, "ABC").is_valid is True


def test_invalid_pattern_never_matches():
    prop = _prop(validation_patterns=("([",))
    assert validate_value(prop, "x").is_valid is False
