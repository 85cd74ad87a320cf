"""
Monetary Amount Helpers

All balances and amounts are Decimal, rounded to two places with
ROUND_HALF_UP. NEVER uses float for monetary values.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP, getcontext
from typing import Union
import re

from .errors import InvalidAmount

# High precision for intermediate arithmetic
getcontext().prec = 28

PRECISION = 2
ZERO = Decimal('0.00')

AmountLike = Union[Decimal, str, int]


def quantize(value: Decimal) -> Decimal:
    """Round a Decimal to monetary precision"""
    return value.quantize(Decimal('0.1') ** PRECISION, rounding=ROUND_HALF_UP)


def to_amount(value: AmountLike) -> Decimal:
    """
    Convert a Decimal, int or numeric string to a rounded monetary Decimal

    Raises:
        InvalidAmount: If the value is a float, empty, or not a finite number
    """
    if isinstance(value, bool) or isinstance(value, float):
        raise InvalidAmount("Monetary amounts must be Decimal, int or string, not float")

    if isinstance(value, str):
        value = parse_amount(value)

    try:
        amount = Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidAmount(f"Cannot convert '{value}' to an amount")

    if not amount.is_finite():
        raise InvalidAmount("Amount must be a finite number")

    return quantize(amount)


def to_positive_amount(value: AmountLike) -> Decimal:
    """Convert and require a strictly positive amount"""
    amount = to_amount(value)
    if amount <= ZERO:
        raise InvalidAmount(f"Amount must be positive, got {amount}")
    return amount


def parse_amount(value: str) -> Decimal:
    """
    Parse a user supplied amount string, tolerating currency symbols and
    thousands separators ("$1,250.50", "1.250,50")
    """
    if not value or not value.strip():
        raise InvalidAmount("Amount must be a non-empty string")

    clean_value = re.sub(r'[^\d.,\-+]', '', value.strip())

    if ',' in clean_value and '.' in clean_value:
        # Whichever separator comes last is the decimal separator
        if clean_value.rfind(',') > clean_value.rfind('.'):
            clean_value = clean_value.replace('.', '').replace(',', '.')
        else:
            clean_value = clean_value.replace(',', '')
    elif clean_value.count(',') == 1 and len(clean_value.split(',')[1]) <= 2:
        clean_value = clean_value.replace(',', '.')
    else:
        clean_value = clean_value.replace(',', '')

    try:
        return Decimal(clean_value)
    except InvalidOperation:
        raise InvalidAmount(f"Cannot convert '{value}' to an amount")


def format_amount(amount: Decimal) -> str:
    """Format for display and logs"""
    return f"{quantize(amount):,.{PRECISION}f}"
