"""
Shared money parsing utilities.

Model output mixes representations for the same value:
- Symbols and codes: "$1,234.56", "1234.56 USD"
- Numeric literals: 1234.56
- Empty placeholders: "", None

Everything that reads an amount from a model response goes through
parse_amount so the rules live in one place.
"""

import math
import re
from typing import Any, Optional


_NON_NUMERIC = re.compile(r'[^0-9.,-]')
_THOUSANDS_COMMA = re.compile(r',(?=\d{3}(?:\D|$))')
_FLOAT_PREFIX = re.compile(r'^[-+]?(?:\d+\.?\d*|\.\d+)')


def parse_amount(value: Any) -> Optional[float]:
    """
    Parse an amount into a non-negative value rounded to 2 decimals.

    Args:
        value: String, number, or None from a model response

    Returns:
        Float amount or None if nothing usable was found

    Examples:
        >>> parse_amount("$1,234.50")
        1234.5
        >>> parse_amount("1234.50 USD")
        1234.5
        >>> parse_amount("abc") is None
        True
    """
    if value is None or value == "":
        return None

    # bool is an int subclass but never a money value
    if isinstance(value, bool):
        return None

    if isinstance(value, (int, float)):
        try:
            if not math.isfinite(value):
                return None
            return round(abs(float(value)), 2)
        except OverflowError:
            # ints beyond float range
            return None

    cleaned = _NON_NUMERIC.sub('', str(value))
    cleaned = _THOUSANDS_COMMA.sub('', cleaned)
    cleaned = cleaned.replace(',', '')

    # Leading numeric prefix only, "12.5-3" reads as 12.5
    match = _FLOAT_PREFIX.match(cleaned)
    if not match:
        return None

    try:
        amount = float(match.group(0))
    except ValueError:
        return None

    if not math.isfinite(amount):
        return None

    return round(abs(amount), 2)


def stringify_amount(value: Any) -> Optional[str]:
    """
    Parse an amount and render it with exactly two decimals.

    Examples:
        >>> stringify_amount("12")
        '12.00'
        >>> stringify_amount(None) is None
        True
    """
    amount = parse_amount(value)
    if amount is None:
        return None
    return f"{amount:.2f}"
