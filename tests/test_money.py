"""
tests/test_money.py
Pure money calculations: totals, deposits, balances, tolerance matching.
"""

from decimal import Decimal

import pytest

from shared.utils.money import (
    amounts_match,
    compute_balance,
    compute_deposit,
    compute_referral,
    compute_total,
    round2,
)


def test_deposit_is_percentage_of_total():
    assert compute_deposit(Decimal("200.00"), 15) == Decimal("30.00")


def test_deposit_rounds_half_up_to_cents():
    # 33.33 * 15% = 4.9995
    assert compute_deposit(Decimal("33.33"), 15) == Decimal("5.00")
    assert round2("2.675") == Decimal("2.68")


@pytest.mark.parametrize("total,percent", [
    (Decimal("0"), 15),
    (Decimal("99.99"), 0),
    (Decimal("99.99"), 100),
    (Decimal("1234.56"), Decimal("12.5")),
])
def test_deposit_stays_within_total(total, percent):
    deposit = compute_deposit(total, percent)
    assert Decimal("0") <= deposit <= total


def test_deposit_rejects_out_of_range_percent():
    with pytest.raises(ValueError):
        compute_deposit(Decimal("100"), 101)
    with pytest.raises(ValueError):
        compute_deposit(Decimal("100"), -1)


def test_total_prorates_hourly_rate():
    assert compute_total(Decimal("100.00"), 120) == Decimal("200.00")
    assert compute_total(Decimal("100.00"), 90) == Decimal("150.00")
    assert compute_total(Decimal("100.00"), 20) == Decimal("33.33")


def test_total_requires_positive_duration():
    with pytest.raises(ValueError):
        compute_total(Decimal("100.00"), 0)


def test_balance_never_negative():
    assert compute_balance(Decimal("200.00"), Decimal("30.00")) == Decimal("170.00")
    assert compute_balance(Decimal("200.00"), Decimal("250.00")) == Decimal("0.00")


def test_referral_is_independent_of_deposit():
    assert compute_referral(Decimal("200.00"), 10) == Decimal("20.00")


def test_amounts_match_within_one_cent():
    assert amounts_match(Decimal("30.00"), Decimal("30.00"))
    assert amounts_match(Decimal("30.01"), Decimal("30.00"))
    assert amounts_match("29.99", Decimal("30.00"))
    assert not amounts_match(Decimal("30.02"), Decimal("30.00"))
    assert not amounts_match(Decimal("25.00"), Decimal("30.00"))


def test_float_input_does_not_leak_binary_noise():
    assert compute_deposit(0.1 + 0.2, 100) == Decimal("0.30")
