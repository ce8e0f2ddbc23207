"""
DECIMAL PRECISION & ORDER ARITHMETIC

This module provides:
1. Decimal precision lock (2-decimal places)
2. Safe money arithmetic for line items and order totals
3. Value validation (no negative amounts)
4. Rounding where money enters the system (model inputs), formulas stay exact
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Iterable, NamedTuple, Union
import logging

logger = logging.getLogger(__name__)

# Precision configuration
DECIMAL_PLACES = 2
QUANTIZE_PATTERN = Decimal('0.01')
ZERO = Decimal('0')

Number = Union[float, int, str, Decimal]


class FinancialPrecisionError(Exception):
    """Raised when a value cannot be interpreted as money"""
    pass


class NegativeValueError(FinancialPrecisionError):
    """Raised when a negative financial value is detected"""
    pass


def to_decimal(value: Number) -> Decimal:
    """
    Convert any numeric value to Decimal.
    Does NOT round - preserves full precision for intermediate calculations.
    """
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise FinancialPrecisionError("Cannot convert bool to Decimal")
    try:
        if isinstance(value, (int, float)):
            # Via string to avoid binary float artefacts
            return Decimal(str(value))
        if isinstance(value, str):
            return Decimal(value.strip())
    except InvalidOperation:
        raise FinancialPrecisionError(f"Invalid numeric value: {value!r}")
    raise FinancialPrecisionError(f"Cannot convert {type(value)} to Decimal")


def round_financial(value: Number) -> Decimal:
    """
    Round a value to 2 decimal places (half up).
    This should be called ONLY at calculation boundaries.
    """
    return to_decimal(value).quantize(QUANTIZE_PATTERN, rounding=ROUND_HALF_UP)


def validate_non_negative(value: Number, field_name: str) -> None:
    """Raises NegativeValueError if value < 0."""
    if to_decimal(value) < ZERO:
        raise NegativeValueError(
            f"Financial value '{field_name}' cannot be negative: {value}"
        )


def validate_positive(value: Number, field_name: str) -> None:
    """Raises NegativeValueError if value <= 0."""
    if to_decimal(value) <= ZERO:
        raise NegativeValueError(
            f"Financial value '{field_name}' must be positive: {value}"
        )


def safe_add(*values: Number) -> Decimal:
    """Safe addition of multiple values"""
    result = ZERO
    for v in values:
        result += to_decimal(v)
    return result


def safe_multiply(a: Number, b: Number) -> Decimal:
    """Safe multiplication preserving precision"""
    return to_decimal(a) * to_decimal(b)


def percentage_of(part: Number, whole: Number) -> Decimal:
    """Percentage of whole represented by part, 0 when whole is 0."""
    whole_d = to_decimal(whole)
    if whole_d == ZERO:
        return ZERO
    return to_decimal(part) * Decimal('100') / whole_d


# =============================================================================
# ORDER CALCULATIONS
# =============================================================================

class OrderTotals(NamedTuple):
    subtotal: Decimal
    total: Decimal


def calculate_line_total(quantity: int, unit_price: Number) -> Decimal:
    """
    LOCKED FORMULA: line_total = quantity * unit_price

    Exact product. Callers round unit_price to cents first.
    """
    validate_positive(quantity, 'quantity')
    validate_non_negative(unit_price, 'unit_price')
    return safe_multiply(quantity, unit_price)


def calculate_order_totals(
    line_totals: Iterable[Number],
    tax: Number = 0,
    shipping: Number = 0
) -> OrderTotals:
    """
    LOCKED FORMULAS:
    - subtotal = sum(line_total)
    - total = subtotal + tax + shipping
    """
    validate_non_negative(tax, 'tax')
    validate_non_negative(shipping, 'shipping')

    subtotal = safe_add(*line_totals)
    total = safe_add(subtotal, tax, shipping)
    return OrderTotals(subtotal=subtotal, total=total)
