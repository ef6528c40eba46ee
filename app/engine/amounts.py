"""
Fixed-point amount helpers.

All money is Decimal with two fractional digits. Floats coming from JSON
bodies or SQLite are converted through str() so no binary rounding leaks in.
"""

import re
from decimal import ROUND_DOWN, Decimal, InvalidOperation
from typing import Optional, Union

CENT = Decimal("0.01")
ZERO = Decimal("0")

# $1,234.56 / 1234.56 / 12 as they appear in OCR text
OCR_AMOUNT_PATTERN = re.compile(r"\$?(\d{1,3}(?:,\d{3})*(?:\.\d{2})?)")

AmountLike = Union[Decimal, int, float, str, None]


def to_decimal(value: AmountLike) -> Optional[Decimal]:
    """
    Convert a stored or extracted amount to Decimal.
    Returns None for missing or non-numeric values.
    """
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    s = str(value).strip().replace("$", "").replace(",", "")
    if not s:
        return None
    try:
        amount = Decimal(s)
    except (InvalidOperation, ValueError):
        return None
    if not amount.is_finite():
        return None
    return amount


def quantize(amount: Decimal) -> Decimal:
    """Round half-even to cents."""
    return amount.quantize(CENT)


def truncate(amount: Decimal) -> Decimal:
    """Truncate toward zero to cents."""
    return amount.quantize(CENT, rounding=ROUND_DOWN)


def amount_diff(a: AmountLike, b: AmountLike) -> Optional[Decimal]:
    """|a - b| or None if either side is missing."""
    d1 = to_decimal(a)
    d2 = to_decimal(b)
    if d1 is None or d2 is None:
        return None
    return abs(d1 - d2)


def extract_ocr_amounts(text: Optional[str]) -> list[Decimal]:
    """Positive money-looking numbers in OCR text, in order of appearance."""
    if not text:
        return []
    amounts = []
    for m in OCR_AMOUNT_PATTERN.finditer(text):
        value = to_decimal(m.group(1))
        if value is not None and value > ZERO:
            amounts.append(value)
    return amounts


def is_round_number(amount: Decimal, step: Decimal = Decimal("100")) -> bool:
    return amount % step == 0
