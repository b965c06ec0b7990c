"""
Fixed-point constants and helpers for StakeFlow.

All reward accounting uses integers scaled by 18 decimal places:

    1.0 reward-per-share = 10**18 accumulator units

Every division truncates toward zero (operands are never negative), and
the truncated remainder is forgone.  The loss per accumulator advance is
bounded by ``PRECISION / total_staked`` accumulator units.

>>> mul_div(3, PRECISION, 2)
1500000000000000000
>>> bps_share(1001, 5000)
500
"""

from __future__ import annotations

from stakeflow_core.errors import InvariantViolation, ValidationError

# Decimal places of the reward-per-share accumulator.
PRECISION_DECIMALS: int = 18

PRECISION: int = 10 ** PRECISION_DECIMALS

# 10_000 basis points == 100 %.
BPS_DENOMINATOR: int = 10_000


def mul_div(a: int, b: int, denominator: int) -> int:
    """Return ``a * b // denominator`` for non-negative integers."""
    if denominator <= 0:
        raise InvariantViolation(f"Division by non-positive denominator {denominator}")
    if a < 0 or b < 0:
        raise InvariantViolation(f"Negative operand in mul_div: {a} * {b}")
    return a * b // denominator


def checked_sub(a: int, b: int, what: str = "value") -> int:
    """Subtract *b* from *a*, raising ``InvariantViolation`` on underflow."""
    if b > a:
        raise InvariantViolation(f"{what} underflow: {a} - {b}")
    return a - b


def bps_share(amount: int, bps: int) -> int:
    """Truncated share of *amount* for an allocation in basis points."""
    return mul_div(amount, bps, BPS_DENOMINATOR)


def require_uint(value: object, name: str = "value") -> int:
    """Return *value* if it is a non-negative ``int`` (bools rejected)."""
    if not isinstance(value, int) or isinstance(value, bool):
        raise ValidationError(f"{name} must be an integer", code="bad_amount")
    if value < 0:
        raise ValidationError(f"{name} must be non-negative", code="bad_amount")
    return value


def to_decimal_string(value: int, decimals: int = PRECISION_DECIMALS) -> str:
    """Render a fixed-point integer as a decimal string (display only)."""
    whole, frac = divmod(value, 10 ** decimals)
    if frac == 0:
        return str(whole)
    return f"{whole}.{frac:0{decimals}d}".rstrip("0")
