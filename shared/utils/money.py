"""
shared/utils/money.py
Pure money calculations for bookings. No I/O.

All amounts are Decimal, rounded half-up to 2 places (cents).
"""

from decimal import ROUND_HALF_UP, Decimal
from typing import Union

Number = Union[Decimal, int, float, str]

CENT = Decimal("0.01")
HUNDRED = Decimal("100")
DEFAULT_TOLERANCE = Decimal("0.01")


def to_decimal(value: Number) -> Decimal:
    # str() first so floats like 0.1 don't drag binary noise into the Decimal
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def round2(value: Number) -> Decimal:
    """Round half-up to 2 decimal places."""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def _check_percent(percent: Decimal) -> None:
    if percent < 0 or percent > HUNDRED:
        raise ValueError(f"Percentage must be between 0 and 100, got {percent}")


def _check_non_negative(name: str, value: Decimal) -> None:
    if value < 0:
        raise ValueError(f"{name} must be non-negative, got {value}")


def compute_total(hourly_rate: Number, duration_minutes: int) -> Decimal:
    """Price for a booking: hourly rate pro-rated over the duration."""
    rate = to_decimal(hourly_rate)
    _check_non_negative("hourly_rate", rate)
    if duration_minutes <= 0:
        raise ValueError(f"duration_minutes must be positive, got {duration_minutes}")
    return round2(rate * Decimal(duration_minutes) / Decimal(60))


def compute_deposit(total: Number, percent: Number) -> Decimal:
    """deposit = round2(total × percent / 100)"""
    total = to_decimal(total)
    percent = to_decimal(percent)
    _check_non_negative("total", total)
    _check_percent(percent)
    return round2(total * percent / HUNDRED)


def compute_balance(total: Number, deposit_paid: Number) -> Decimal:
    """balance = round2(total − deposit paid), never below zero."""
    total = to_decimal(total)
    deposit_paid = to_decimal(deposit_paid)
    _check_non_negative("total", total)
    _check_non_negative("deposit_paid", deposit_paid)
    return max(round2(total - deposit_paid), Decimal("0.00"))


def compute_referral(total: Number, percent: Number) -> Decimal:
    """Referral amount, computed against the total independently of the deposit."""
    return compute_deposit(total, percent)


def amounts_match(actual: Number, expected: Number, tolerance: Number = DEFAULT_TOLERANCE) -> bool:
    return abs(to_decimal(actual) - to_decimal(expected)) <= to_decimal(tolerance)
