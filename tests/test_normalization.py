"""Alias normalization, data type inference and value coercion."""

from decimal import Decimal

import pytest
from pydantic import ValidationError

from packages.domain.codification.normalization import (
    code_from_name,
    coerce_value,
    detect_data_type,
    infer_data_type_from_name,
    normalize_alias,
    normalize_category,
)
from packages.domain.codification.schemas import DataType, ExtractedItemInput


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("Site Acquisition Costs (incl. VAT)", "site acquisition cost"),
        ("Contingency 5%", "contingency"),
        ("Café Fit-Out x4", "cafe fit out"),
        ("Professional_Fees", "professional fee"),
        ("INTEREST RATES", "interest rate"),
        ("Unit Sales (5 bed)", "unit sale"),
        ("  Stamp   Duty  ", "stamp duty"),
        ("Box 4", "box 4"),
    ],
)
def test_normalize_alias_examples(raw, expected):
    assert normalize_alias(raw) == expected


@pytest.mark.parametrize(
    "raw",
    [
        "Site Acquisition Costs (incl. VAT)",
        "Plot 5 (3 bed semi)",
        "Build Costs - 4 bed detached x2",
        "((nested (notes)))",
        "Fees fees FEES",
        "7.5% 10 %",
        "Préliminaries & Externals",
        "x4 x 12 x",
        "",
    ],
)
def test_normalize_alias_is_idempotent(raw):
    once = normalize_alias(raw)
    assert normalize_alias(once) == once


@pytest.mark.parametrize("raw", [None, "", "   ", "%%%", "(only notes)", "--//--"])
def test_normalize_alias_is_total(raw):
    assert normalize_alias(raw) == ""


def test_plural_variants_share_a_key():
    assert normalize_alias("Build Costs") == normalize_alias("build cost")
    assert normalize_alias("Legal Fees") == normalize_alias("LEGAL FEE")


def test_normalize_category():
    assert normalize_category("Site Costs") == "site.costs"
    assert normalize_category("  Professional Fees 2 ") == "professional.fees.2"


def test_code_from_name():
    assert code_from_name("Site Acquisition Costs") == "site.acquisition.cost"
    assert code_from_name("(notes only)") == "uncategorized.item"


@pytest.mark.parametrize(
    "name, expected",
    [
        ("Interest Rate", "percentage"),
        ("Developer Margin %", "percentage"),
        ("Number of Units", "number"),
        ("Stamp Duty", "currency"),
    ],
)
def test_infer_data_type_from_name(name, expected):
    assert infer_data_type_from_name(name) == expected


@pytest.mark.parametrize(
    "value, currency, expected",
    [
        (100, "GBP", "currency"),
        ("£61,250", None, "currency"),
        ("7.5%", None, "percentage"),
        (0.075, None, "percentage"),
        (12, None, "number"),
        ("freehold", None, "string"),
        (True, None, "string"),
    ],
)
def test_detect_data_type(value, currency, expected):
    assert detect_data_type(value, currency) == expected


def test_coerce_value_numeric_forms():
    assert coerce_value("£1,250,000", "currency") == Decimal("1250000")
    assert coerce_value("7.5%", "percentage") == Decimal("0.075")
    assert coerce_value(12, "number") == Decimal("12")
    assert coerce_value(0.1, "percentage") == Decimal("0.1")
    assert coerce_value("  ", "currency") is None
    assert coerce_value(None, "currency") is None


def test_coerce_value_string_type():
    assert coerce_value(42, "string") == "42"
    assert coerce_value("Freehold", "string") == "Freehold"


@pytest.mark.parametrize("value", ["n/a", True, "NaN", "Infinity", [1, 2]])
def test_coerce_value_rejects_non_numeric(value):
    with pytest.raises(ValueError):
        coerce_value(value, "currency")


def test_extracted_item_infers_type_and_coerces():
    item = ExtractedItemInput(name="Stamp Duty", value="£61,250")
    assert item.data_type == DataType.CURRENCY
    assert item.value == Decimal("61250")

    rate = ExtractedItemInput(name="Interest", value="6.5%")
    assert rate.data_type == DataType.PERCENTAGE
    assert rate.value == Decimal("0.065")


def test_extracted_item_rejects_value_that_does_not_fit_type():
    with pytest.raises(ValidationError):
        ExtractedItemInput(name="Stamp Duty", value="n/a", data_type="currency")
