"""
Arithmetic Primitives

Decimal-safe parsing and guards shared by the simulator and the ledger
engine. NEVER uses float for monetary values: floats coming in from JSON are
converted through their string repr so 0.1 stays 0.1.
"""

import math
import re
import sys
from decimal import Decimal, InvalidOperation, ROUND_FLOOR, getcontext
from typing import Any, Optional

from .errors import ValidationError

# Set global decimal context for financial precision
getcontext().prec = 28

ZERO = Decimal('0')
ONE = Decimal('1')
HUNDRED = Decimal('100')

# Tolerance for balance checks: the binary64 machine epsilon. It only absorbs
# representation noise, it is not a business tolerance.
BALANCE_EPSILON = Decimal(sys.float_info.epsilon)


def to_decimal(value: Any, field: str) -> Decimal:
    """
    Convert a raw input value to Decimal

    Args:
        value: str, int, float or Decimal
        field: Field name used in the error message

    Returns:
        Finite Decimal value

    Raises:
        ValidationError: If the value is missing, not numeric or not finite
    """
    if value is None or isinstance(value, bool):
        raise ValidationError(f"{field} is required", field=field)

    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, int):
        result = Decimal(value)
    elif isinstance(value, float):
        if not math.isfinite(value):
            raise ValidationError(f"{field} must be a finite number", field=field)
        result = Decimal(repr(value))
    elif isinstance(value, str):
        clean_value = value.strip()
        if not clean_value:
            raise ValidationError(f"{field} is required", field=field)
        # Form inputs may use a comma as the decimal separator
        if re.fullmatch(r'[+-]?\d+,\d+', clean_value):
            clean_value = clean_value.replace(',', '.')
        try:
            result = Decimal(clean_value)
        except InvalidOperation:
            raise ValidationError(f"{field} must be a number, got '{value}'", field=field)
    else:
        raise ValidationError(f"{field} must be a number", field=field)

    if not result.is_finite():
        raise ValidationError(f"{field} must be a finite number", field=field)
    return result


def is_blank(value: Any) -> bool:
    """True for None and whitespace-only strings"""
    return value is None or (isinstance(value, str) and not value.strip())


def parse_positive(value: Any, field: str) -> Decimal:
    """Parse a value that must be strictly greater than zero"""
    result = to_decimal(value, field)
    if result <= ZERO:
        raise ValidationError(f"{field} must be greater than 0", field=field)
    return result


def parse_optional_positive(value: Any, field: str) -> Optional[Decimal]:
    """Like parse_positive, but blank input yields None"""
    if is_blank(value):
        return None
    return parse_positive(value, field)


def parse_percentage(value: Any, field: str) -> Decimal:
    """Parse a percentage in the half-open range [0, 100)"""
    result = to_decimal(value, field)
    if result < ZERO or result >= HUNDRED:
        raise ValidationError(f"{field} must be between 0 and 100", field=field)
    return result


def parse_optional_percentage(value: Any, field: str) -> Optional[Decimal]:
    """Like parse_percentage, but blank input yields None"""
    if is_blank(value):
        return None
    return parse_percentage(value, field)


def parse_loop_count(value: Any, field: str = "loop_count",
                     maximum: Optional[int] = None) -> int:
    """
    Parse a positive iteration count

    Fractional counts are floored; anything that floors below 1 is rejected.
    """
    result = to_decimal(value, field)
    if result <= ZERO:
        raise ValidationError(f"{field} must be a positive whole number", field=field)
    count = int(result.to_integral_value(rounding=ROUND_FLOOR))
    if count < 1:
        raise ValidationError(f"{field} must be a positive whole number", field=field)
    if maximum is not None and count > maximum:
        raise ValidationError(f"{field} must not exceed {maximum}", field=field)
    return count


def parse_flag(value: Any, field: str) -> bool:
    """Parse a boolean form flag ("true"/"false", 1/0, bool)"""
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    if isinstance(value, (int, Decimal)) and value in (0, 1):
        return bool(value)
    if isinstance(value, str) and value.strip().lower() in ("true", "1", "yes", "on"):
        return True
    if isinstance(value, str) and value.strip().lower() in ("false", "0", "no", "off", ""):
        return False
    raise ValidationError(f"{field} must be a boolean", field=field)


def safe_divide(numerator: Decimal, denominator: Decimal, context: str) -> Decimal:
    """Divide, refusing a zero denominator instead of raising DivisionByZero"""
    if denominator == ZERO:
        raise ValidationError(f"Cannot compute {context}: division by zero")
    return numerator / denominator


def percent_to_ratio(percent: Optional[Decimal]) -> Decimal:
    """Convert a percentage (or None) to a ratio in [0, 1)"""
    if percent is None:
        return ZERO
    return percent / HUNDRED
