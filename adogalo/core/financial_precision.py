"""
DECIMAL PRECISION & MONEY UTILITIES

This module provides:
1. Decimal arithmetic for every money computation
2. Rounding at the calculation boundary only (2 places, half-up)
3. Value validation (no negative amounts where forbidden)

Amounts are whole Rupiah in practice; they are stored as float in MongoDB.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Union
import logging

from adogalo.core.errors import EscrowValidationError

logger = logging.getLogger(__name__)

DECIMAL_PLACES = 2
QUANTIZE_PATTERN = Decimal('0.01')

Number = Union[float, int, str, Decimal]


class FinancialPrecisionError(EscrowValidationError):
    """Raised when a value cannot be interpreted as money"""
    pass


class NegativeValueError(EscrowValidationError):
    """Raised when a negative financial value is detected"""
    pass


def to_decimal(value: Number) -> Decimal:
    """
    Convert any numeric value to Decimal.
    Does NOT round - preserves full precision for intermediate calculations.
    """
    if value is None:
        return Decimal('0')
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise FinancialPrecisionError(f"Cannot convert {type(value)} to Decimal")
    if isinstance(value, (int, float)):
        # via str to avoid binary float artefacts
        return Decimal(str(value))
    if isinstance(value, str):
        try:
            return Decimal(value)
        except InvalidOperation:
            raise FinancialPrecisionError(f"Invalid amount: {value!r}")
    raise FinancialPrecisionError(f"Cannot convert {type(value)} to Decimal")


def round_financial(value: Number) -> Decimal:
    """Round to 2 decimal places. Call ONLY at calculation boundaries."""
    return to_decimal(value).quantize(QUANTIZE_PATTERN, rounding=ROUND_HALF_UP)


def to_float(value: Number) -> float:
    """Convert back to float for MongoDB storage, rounded first."""
    return float(round_financial(value))


def validate_non_negative(value: Number, field_name: str) -> None:
    if to_decimal(value) < Decimal('0'):
        raise NegativeValueError(
            f"Nilai '{field_name}' tidak boleh negatif: {value}",
            details={"field": field_name},
        )


def validate_positive(value: Number, field_name: str) -> None:
    if to_decimal(value) <= Decimal('0'):
        raise NegativeValueError(
            f"Nilai '{field_name}' harus lebih dari 0: {value}",
            details={"field": field_name},
        )


def safe_multiply(a: Number, b: Number) -> Decimal:
    return to_decimal(a) * to_decimal(b)


def safe_divide(numerator: Number, denominator: Number) -> Decimal:
    """Division with zero check, x / 0 == 0"""
    denom = to_decimal(denominator)
    if denom == Decimal('0'):
        return Decimal('0')
    return to_decimal(numerator) / denom


def safe_subtract(a: Number, b: Number) -> Decimal:
    return to_decimal(a) - to_decimal(b)


def safe_add(*values: Number) -> Decimal:
    result = Decimal('0')
    for v in values:
        result += to_decimal(v)
    return result


def calculate_percentage(amount: Number, percentage: Number) -> Decimal:
    """
    Calculate percentage of an amount.
    Example: calculate_percentage(1000, 10) = 100
    """
    return safe_multiply(amount, safe_divide(percentage, Decimal('100')))
