import pytest
from decimal import Decimal

from billing_portal.src.billing.discount_calculator import (
    SELF_PAY_DISCOUNTS,
    DEFAULT_DISCOUNT_MULTIPLIER,
    calculate_discounted_amount,
    discount_multiplier_for,
    to_minor_units,
    from_minor_units,
)


@pytest.mark.parametrize("original, code, expected", [
    ("250.00", "office_visit", "162.50"),
    ("85.00", "lab_work", "42.50"),
    ("180.00", "imaging", "126.00"),
    ("750.00", "procedure", "487.50"),
    ("350.00", "consultation", "210.00"),
    ("100.00", "office_visit", "65.00"),
])
def test_known_codes_use_their_multiplier(original, code, expected):
    assert calculate_discounted_amount(Decimal(original), code) == Decimal(expected)


def test_unknown_code_uses_default_multiplier():
    assert discount_multiplier_for("acupuncture") == DEFAULT_DISCOUNT_MULTIPLIER
    assert calculate_discounted_amount(Decimal("200.00"), "acupuncture") == Decimal("130.00")


def test_zero_amount_is_zero_for_any_code():
    assert calculate_discounted_amount(Decimal("0"), "imaging") == Decimal("0.00")
    assert calculate_discounted_amount(Decimal("0"), "not_a_code") == Decimal("0.00")


def test_rounds_half_up_to_the_cent():
    # 0.01 * 0.50 = 0.005 -> 0.01
    assert calculate_discounted_amount(Decimal("0.01"), "lab_work") == Decimal("0.01")
    # 10.05 * 0.65 = 6.5325 -> 6.53
    assert calculate_discounted_amount(Decimal("10.05"), "office_visit") == Decimal("6.53")
    # 0.03 * 0.50 = 0.015 -> 0.02
    assert calculate_discounted_amount(Decimal("0.03"), "lab_work") == Decimal("0.02")


def test_discount_never_exceeds_original_or_goes_negative():
    amounts = [Decimal("0.01"), Decimal("0.99"), Decimal("1.00"), Decimal("19.99"), Decimal("12345.67")]
    for code in list(SELF_PAY_DISCOUNTS) + ["unknown"]:
        for amount in amounts:
            discounted = calculate_discounted_amount(amount, code)
            assert Decimal("0") <= discounted <= amount


def test_negative_amount_raises():
    with pytest.raises(ValueError):
        calculate_discounted_amount(Decimal("-1.00"), "office_visit")


def test_float_amount_is_rejected():
    with pytest.raises(TypeError):
        calculate_discounted_amount(100.0, "office_visit")


def test_string_amount_is_accepted():
    assert calculate_discounted_amount("85.00", "lab_work") == Decimal("42.50")


def test_discount_table_is_read_only():
    with pytest.raises(TypeError):
        SELF_PAY_DISCOUNTS["office_visit"] = Decimal("0.10")


def test_minor_unit_conversions():
    assert to_minor_units(Decimal("205.00")) == 20500
    assert to_minor_units(Decimal("0.005")) == 1
    assert to_minor_units(Decimal("162.50")) == 16250
    assert from_minor_units(20500) == Decimal("205.00")
    assert from_minor_units(1) == Decimal("0.01")
