"""
Date helpers for extracted receipt dates and calendar arithmetic.

OCR/LLM extraction yields free-text dates. Common US receipt formats are tried
first, then dateutil as a fallback. Frequency intervals use relativedelta so
monthly/quarterly/yearly steps land on calendar boundaries.
"""

import re
from datetime import date, datetime, timedelta
from typing import Optional, Union

from dateutil import parser as dateutil_parser
from dateutil.relativedelta import relativedelta

from app.models.enums import Frequency

# Ordered by specificity (try most specific first)
DATE_FORMATS = [
    (r'^(\d{4})-(\d{2})-(\d{2})', 'YYYY-MM-DD'),
    (r'^(\d{1,2})/(\d{1,2})/(\d{4})$', 'M/D/YYYY'),
    (r'^(\d{1,2})/(\d{1,2})/(\d{2})$', 'M/D/YY'),
    (r'^(\d{1,2})-(\d{1,2})-(\d{4})$', 'M-D-YYYY'),
]

# Nominal period in days, used for tolerance windows
FREQUENCY_DAYS = {
    Frequency.WEEKLY.value: 7,
    Frequency.MONTHLY.value: 30,
    Frequency.QUARTERLY.value: 90,
    Frequency.YEARLY.value: 365,
}

FREQUENCY_STEP = {
    Frequency.WEEKLY.value: relativedelta(weeks=1),
    Frequency.MONTHLY.value: relativedelta(months=1),
    Frequency.QUARTERLY.value: relativedelta(months=3),
    Frequency.YEARLY.value: relativedelta(years=1),
}

DateLike = Union[date, datetime, str, None]


def parse_receipt_date(raw: DateLike) -> Optional[date]:
    """
    Parse an extracted date into a calendar date.
    Returns None when the value is missing or unparseable.
    """
    if raw is None:
        return None
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw

    raw_clean = raw.strip()
    if not raw_clean:
        return None

    for pattern, format_name in DATE_FORMATS:
        m = re.match(pattern, raw_clean)
        if not m:
            continue
        try:
            return _parse_by_format(m, format_name)
        except ValueError:
            continue

    try:
        return dateutil_parser.parse(raw_clean).date()
    except (ValueError, OverflowError):
        return None


def _parse_by_format(match, format_name: str) -> date:
    if format_name == 'YYYY-MM-DD':
        return date(int(match.group(1)), int(match.group(2)), int(match.group(3)))

    month = int(match.group(1))
    day = int(match.group(2))
    year = int(match.group(3))
    if format_name == 'M/D/YY':
        year = 1900 + year if year > 50 else 2000 + year
    return date(year, month, day)


def as_date(value: DateLike) -> Optional[date]:
    """Coerce a date, datetime or string to a date."""
    return parse_receipt_date(value)


def days_between(a: DateLike, b: DateLike) -> Optional[int]:
    """Absolute day distance, or None if either side is missing/unparseable."""
    d1 = as_date(a)
    d2 = as_date(b)
    if d1 is None or d2 is None:
        return None
    return abs((d1 - d2).days)


def advance(start: date, frequency: str, steps: int = 1) -> date:
    """Step a date forward by the frequency interval."""
    step = FREQUENCY_STEP.get(frequency, FREQUENCY_STEP[Frequency.MONTHLY.value])
    return start + step * steps


def period_days(frequency: str) -> int:
    return FREQUENCY_DAYS.get(frequency, FREQUENCY_DAYS[Frequency.MONTHLY.value])


def infer_frequency(average_gap_days: float) -> Frequency:
    """Classify an average inter-occurrence gap."""
    if average_gap_days <= 7:
        return Frequency.WEEKLY
    if average_gap_days <= 35:
        return Frequency.MONTHLY
    if average_gap_days <= 95:
        return Frequency.QUARTERLY
    return Frequency.YEARLY


def window(center: date, days: int) -> tuple[date, date]:
    """Symmetric [center - days, center + days] window."""
    return center - timedelta(days=days), center + timedelta(days=days)


def is_weekend(d: date) -> bool:
    return d.weekday() >= 5
