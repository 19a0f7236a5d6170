from __future__ import annotations

import logging
from decimal import Decimal
from types import MappingProxyType

import pytest

from offer_parser.models.config_models import ConditionalMappingConfig, StepConfig, freeze_tables
from offer_parser.parsing.state import TransformState
from offer_parser.parsing.steps import StepKind, build_step, translate_pattern

LOOKUPS = freeze_tables({
    "Brands": {"CHANEL": "Chanel", "D&G": "Dolce & Gabbana", "Dior": "Dior"},
    "Concentration": {"EDP": "Eau de Parfum", "EDT": "Eau de Toilette"},
    "Gender": {"M": "Men", "W": "Women", "": "Unisex"},
    "Type": {"TESTER": "Tester", "SET": ""},
})


def run(step: StepConfig, text: str, captures: dict[str, str] | None = None) -> TransformState:
    return build_step(step, LOOKUPS)(TransformState(text, captures or {}))


def test_step_kind_from_op_is_case_insensitive_with_aliases():
    assert StepKind.from_op("regexextract") is StepKind.REGEX_EXTRACT
    assert StepKind.from_op("  ToUpper ") is StepKind.TO_UPPER
    assert StepKind.from_op("ExtractSizeAndUnits") is StepKind.EXTRACT_SIZE_FROM_PATTERNS
    assert StepKind.from_op("Split") is StepKind.SPLIT_BY_DELIMITER
    assert StepKind.from_op("NoSuchOp") is StepKind.UNKNOWN
    assert StepKind.from_op(None) is StepKind.UNKNOWN


def test_unknown_op_is_pass_through():
    state = TransformState("Abc", {"x": "1"})
    assert build_step(StepConfig(op="Frobnicate"), LOOKUPS)(state) is state


def test_steps_do_not_mutate_input_state():
    before = TransformState("  abc  ", {"k": "v"})
    after = build_step(StepConfig(op="Trim"), LOOKUPS)(before)
    assert before.text == "  abc  "
    assert after.text == "abc"
    assert isinstance(after.captures, MappingProxyType)
    with pytest.raises(TypeError):
        after.captures["k"] = "changed"  # type: ignore[index]


@pytest.mark.parametrize(
    "op,text,expected",
    [
        ("NormalizeWhitespace", "  a \t b\n c  ", "a b c"),
        ("ToUpper", "Eau de Parfum", "EAU DE PARFUM"),
        ("ToLower", "Eau de Parfum", "eau de parfum"),
        ("Capitalize", "eAU DE parfum", "Eau De Parfum"),
        ("Capitalize", "d&g light blue", "D&G Light Blue"),
        ("Capitalize", "yves saint-laurent l'homme", "Yves Saint-Laurent L'homme"),
        ("Capitalize", "set(3x30ml)", "Set(3X30Ml)"),
        ("RemoveSymbols", " N°5 - Eau! ", "N5  Eau"),
        ("Trim", "  x  ", "x"),
    ],
)
def test_simple_text_steps(op, text, expected):
    assert run(StepConfig(op=op), text).text == expected


def test_unicode_normalize_defaults_to_nfkc():
    assert run(StepConfig(op="UnicodeNormalize"), "ＣＨＡＮＥＬ ５０ｍｌ").text == "CHANEL 50ml"
    decomposed = run(StepConfig(op="UnicodeNormalize", form="FormD"), "\u00e9").text
    assert decomposed == "e\u0301"


def test_text_step_writes_to_output_capture_and_keeps_text():
    st = run(StepConfig(op="ToUpper", source="Brand", output="BrandUpper"), "raw", {"Brand": "dior"})
    assert st.text == "raw"
    assert st.captures["BrandUpper"] == "DIOR"
    assert st.captures["Brand"] == "dior"


def test_text_step_without_output_writes_back_to_source_capture():
    st = run(StepConfig(op="Trim", source="Brand"), "raw", {"Brand": "  dior "})
    assert st.captures["Brand"] == "dior"
    assert st.text == "raw"


def test_missing_source_capture_is_no_op():
    state = TransformState("raw", {})
    assert build_step(StepConfig(op="ToUpper", source="Nope"), LOOKUPS)(state) is state


def test_source_resolves_assign_prefixed_capture():
    st = run(StepConfig(op="ToUpper", source="Product.Brand", output="B"), "raw", {"assign:Product.Brand": "dior"})
    assert st.captures["B"] == "DIOR"


def test_capture_names_are_case_insensitive():
    st = run(StepConfig(op="ToUpper", source="brand", output="B"), "raw", {"Brand": "dior"})
    assert st.captures["B"] == "DIOR"
    replaced = st.with_captures({"b": "x"})
    assert dict(replaced.captures) == {"Brand": "dior", "b": "x"}
    assert replaced.resolve("B") == "x"


def test_source_falls_back_to_row_bag():
    state = TransformState.seed("N5", bag={"Product.Brand": "CHANEL", "Offer.Price": Decimal("12.5")})
    st = build_step(StepConfig(op="ToLower", source="product.brand", output="B"), LOOKUPS)(state)
    assert st.captures["B"] == "chanel"
    assert st.resolve("Offer.Price") == "12.5"
    # ローカルのキャプチャが行バッグより優先
    assert st.with_captures({"Product.Brand": "DIOR"}).resolve("Product.Brand") == "DIOR"
    assert st.with_text("x").bag == st.bag


def test_regex_extract_between_first_and_second_colon():
    step = StepConfig(op="RegexExtract", pattern=r"^[^:]*:(?<Brand>[^:]+):")
    st = run(step, "REGULARs:D&G:P1DV1C02")
    assert st.captures["Brand"] == "D&G"
    assert st.text == "REGULARs:D&G:P1DV1C02"


def test_regex_extract_only_named_groups_become_captures():
    step = StepConfig(op="RegexExtract", pattern=r"(\d+)\s*(?P<Unit>ml)", options="IgnoreCase")
    st = run(step, "Size 100 ML")
    assert dict(st.captures) == {"Unit": "ML"}


def test_regex_extract_no_match_is_unchanged():
    state = TransformState("abc", {})
    assert build_step(StepConfig(op="RegexExtract", pattern=r"(?<N>\d+)"), LOOKUPS)(state) is state


def test_invalid_regex_logs_warning_and_passes_through(caplog):
    state = TransformState("abc", {})
    with caplog.at_level(logging.WARNING, logger="offer_parser.parsing.steps"):
        fn = build_step(StepConfig(op="RegexReplace", pattern="(unclosed", replacement="x"), LOOKUPS)
    assert fn(state) is state
    assert any("invalid regex" in r.getMessage() for r in caplog.records)


def test_regex_replace_translates_group_references():
    step = StepConfig(op="RegexReplace", pattern=r"(?<size>\d+)\s*ML", replacement="${size}ml", options="IgnoreCase")
    assert run(step, "Eau 100 ML").text == "Eau 100ml"
    step2 = StepConfig(op="RegexReplace", pattern=r"(\w+)-(\w+)", replacement="$2 $1")
    assert run(step2, "blue-light").text == "light blue"


def test_regex_remove():
    assert run(StepConfig(op="RegexRemove", pattern=r"\s*TESTER"), "Sauvage TESTER").text == "Sauvage"


def test_translate_pattern_handles_backreferences():
    assert translate_pattern(r"(?<a>x)\k<a>") == r"(?P<a>x)(?P=a)"
    # lookbehind stays untouched
    assert translate_pattern(r"(?<=a)b") == r"(?<=a)b"


def test_map_value_hit_replaces_text_or_writes_output():
    assert run(StepConfig(op="MapValue", table="Concentration"), "EDP").text == "Eau de Parfum"
    st = run(StepConfig(op="MapValue", table="Concentration", output="Conc"), "EDT")
    assert st.captures["Conc"] == "Eau de Toilette"
    assert st.text == "EDT"


def test_map_value_case_mode_and_miss():
    st = run(StepConfig(op="MapValue", table="Brands", case_mode="upper", output="B"), "chanel")
    assert st.captures["B"] == "Chanel"
    # exact mode: miss passes the source through
    st2 = run(StepConfig(op="MapValue", table="Brands", output="B"), "chanel")
    assert st2.captures["B"] == "chanel"
    assert run(StepConfig(op="MapValue", table="Brands"), "chanel").text == "chanel"


def test_map_value_missing_table_is_no_op(caplog):
    state = TransformState("x", {})
    with caplog.at_level(logging.WARNING):
        fn = build_step(StepConfig(op="MapValue", table="Nope"), LOOKUPS)
    assert fn(state) is state
    assert any("lookup table not found" in r.getMessage() for r in caplog.records)


def test_split_size_and_units():
    st = run(StepConfig(op="SplitSizeAndUnits"), "100ml")
    assert st.captures["Size"] == "100"
    assert st.captures["Unit"] == "ML"
    st2 = run(StepConfig(op="SplitSizeAndUnits", value_out="V", unit_out="U"), "7.5 oz")
    assert (st2.captures["V"], st2.captures["U"]) == ("7.5", "OZ")


def test_split_size_and_units_numeric_only_and_no_number():
    st = run(StepConfig(op="SplitSizeAndUnits"), "size 50")
    assert st.captures["Size"] == "50"
    assert st.captures["Unit"] == ""
    state = TransformState("no digits", {})
    assert build_step(StepConfig(op="SplitSizeAndUnits"), LOOKUPS)(state) is state


def test_split_by_delimiter_exact_count():
    st = run(StepConfig(op="SplitByDelimiter", delimiter=":", output="P", expected_parts=3), "REGULARs:D&G:P1DV1C02")
    assert st.captures["P[0]"] == "REGULARs"
    assert st.captures["P[1]"] == "D&G"
    assert st.captures["P[2]"] == "P1DV1C02"
    assert st.captures["P.Length"] == "3"
    assert st.captures["P.Valid"] == "true"


def test_split_by_delimiter_strict_and_lenient_agree_when_count_matches():
    lenient = run(StepConfig(op="SplitByDelimiter", delimiter="|", expected_parts=2), "a|b")
    strict = run(StepConfig(op="SplitByDelimiter", delimiter="|", expected_parts=2, strict=True), "a|b")
    assert dict(lenient.captures) == dict(strict.captures)
    assert strict.captures["Parts.Valid"] == "true"


def test_split_by_delimiter_strict_mismatch_marks_invalid():
    st = run(StepConfig(op="SplitByDelimiter", delimiter="|", expected_parts=3, strict=True), "a|b")
    assert st.captures["Parts.Valid"] == "false"
    assert st.captures["Parts.Length"] == "0"
    assert "Parts.Error" in st.captures
    assert "Parts[0]" not in st.captures


def test_split_by_delimiter_lenient_pads_and_truncates():
    padded = run(StepConfig(op="SplitByDelimiter", delimiter="|", expected_parts=3), "a|b")
    assert [padded.captures[f"Parts[{i}]"] for i in range(3)] == ["a", "b", ""]
    assert padded.captures["Parts.Length"] == "3"
    cut = run(StepConfig(op="SplitByDelimiter", delimiter="|", expected_parts=2), "a|b|c")
    assert "Parts[2]" not in cut.captures
    assert cut.captures["Parts.Valid"] == "true"


def test_extract_all_capitals_from_start():
    st = run(StepConfig(op="ExtractAllCapitalsFromStart"), "CHANEL N5 Eau")
    assert st.captures["Extracted"] == "CHANEL"
    assert st.captures["Remaining"] == "N5 Eau"
    none = run(StepConfig(op="ExtractAllCapitalsFromStart"), "Acme Deluxe Perfume")
    assert none.captures["Extracted"] == ""
    assert none.captures["Remaining"] == "Acme Deluxe Perfume"


def test_extract_all_capitals_returns_trailing_single_letter():
    st = run(StepConfig(op="ExtractAllCapitalsFromStart", extracted_out="Brand", remaining_out="Rest"), "DIOR J Adore")
    assert st.captures["Brand"] == "DIOR"
    assert st.captures["Rest"] == "J Adore"
    amp = run(StepConfig(op="ExtractAllCapitalsFromStart"), "DOLCE & GABBANA Light Blue")
    assert amp.captures["Extracted"] == "DOLCE & GABBANA"


def test_extract_size_from_patterns_default_and_custom():
    st = run(StepConfig(op="ExtractSizeFromPatterns"), "Sauvage (100 ML) EDT")
    assert st.captures["Size"] == "100 ML"
    assert st.captures["Remaining"] == "Sauvage EDT"
    custom = run(
        StepConfig(op="ExtractSizeFromPatterns", patterns=(r"(\d+)\s*pcs", r"(\d+)ml"), size_out="S"), "Set 3pcs 30ml"
    )
    assert custom.captures["S"] == "3"
    miss = run(StepConfig(op="ExtractSizeFromPatterns"), "Sauvage")
    assert miss.captures["Size"] == ""
    assert miss.captures["Remaining"] == "Sauvage"


def test_extract_mapped_value_uses_table_order():
    st = run(StepConfig(op="ExtractMappedValue", table="Brands"), "Light Blue D&G 100ml")
    assert st.captures["Extracted"] == "Dolce & Gabbana"
    assert st.captures["Remaining"] == "Light Blue 100ml"
    miss = run(StepConfig(op="ExtractMappedValue", table="Brands"), "Acme")
    assert miss.captures["Extracted"] == ""


def test_extract_last_word():
    st = run(StepConfig(op="ExtractLastWord"), "Eau de Parfum EDP")
    assert st.captures["Word"] == "EDP"
    assert st.captures["Remaining"] == "Eau de Parfum"


def test_extract_mapped_word_anywhere():
    st = run(
        StepConfig(op="ExtractMappedWordAnywhere", table="Concentration", case_mode="upper", extracted_out="Conc"),
        "Sauvage edt 100ml",
    )
    assert st.captures["Conc"] == "Eau de Toilette"
    assert st.captures["Remaining"] == "Sauvage 100ml"


def test_assign_writes_prefixed_capture():
    st = run(StepConfig(op="Assign", target="Product.EAN"), "123")
    assert st.captures["assign:Product.EAN"] == "123"
    st2 = run(StepConfig(op="Assign", source="Brand", target="Product.Brand"), "x", {"Brand": ""})
    assert st2.captures["assign:Product.Brand"] == ""


def test_conditional_mapping_first_key_present_wins():
    step = StepConfig(
        op="ConditionalMapping",
        mappings=(
            ConditionalMappingConfig(table="Gender", assign_to="Product.Gender"),
            ConditionalMappingConfig(table="Type", assign_to="Product.Type"),
        ),
    )
    st = run(step, "w|tester")
    assert st.captures["assign:Product.Gender"] == "Women"
    assert st.captures["assign:Product.Type"] == "Tester"


def test_conditional_mapping_fallback_and_empty_values():
    step = StepConfig(
        op="ConditionalMapping",
        mappings=(
            ConditionalMappingConfig(table="Gender", assign_to="Product.Gender"),
            ConditionalMappingConfig(table="Type", assign_to="Product.Type"),
        ),
    )
    st = run(step, "SET")
    # Gender: no token present -> "" fallback; Type: SET maps to "" -> nothing assigned
    assert st.captures["assign:Product.Gender"] == "Unisex"
    assert "assign:Product.Type" not in st.captures


def test_concat_and_remove_from_start():
    st = run(StepConfig(op="Concat", keys=("Brand", "Name", "Missing"), target="Full", assign=True), "x",
             {"Brand": "Dior", "Name": " Sauvage "})
    assert st.captures["assign:Full"] == "Dior Sauvage"
    rm = run(StepConfig(op="RemoveFromStart", pattern=r"^(?i:tester)$", target="Clean"), "TESTER Sauvage EDT")
    assert rm.captures["Clean"] == "Sauvage EDT"
    assert rm.captures["Clean.Removed"] == "TESTER"


@pytest.mark.parametrize(
    "step",
    [
        StepConfig(op="NormalizeWhitespace"),
        StepConfig(op="ExtractAllCapitalsFromStart"),
        StepConfig(op="SplitByDelimiter", delimiter=":", expected_parts=3, strict=True),
        StepConfig(op="MapValue", table="Brands", output="B"),
    ],
)
def test_steps_are_idempotent_for_identical_state(step):
    fn = build_step(step, LOOKUPS)
    state = TransformState("CHANEL  N5:Eau", {})
    assert fn(state) == fn(state)
