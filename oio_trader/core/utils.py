"""
Utility functions used across the OIO trading system.
"""

import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Tuple, Union
from dateutil import parser as date_parser
from dateutil.relativedelta import relativedelta


# 1=Second, 2=Minute, 3=Hour, 4=Day, 5=Week, 6=Month (ProjectX unit codes)
_UNIT_MAP = {
    "s": 1,
    "m": 2,
    "h": 3,
    "d": 4,
    "w": 5,
    "mo": 6,
}


def parse_timeframe(timeframe: str) -> Tuple[int, int]:
    """
    Parse a timeframe string (like "5m", "1h", "1d") into (unit, value).

    Args:
        timeframe: String representation of the timeframe

    Returns:
        Tuple of (unit, value) where:
          - unit is an integer (1=Second, 2=Minute, 3=Hour, 4=Day, 5=Week, 6=Month)
          - value is the number of units

    Raises:
        ValueError: If the timeframe string is invalid
    """
    if not timeframe or not timeframe.strip():
        raise ValueError("Timeframe cannot be empty")

    timeframe = timeframe.strip().lower()

    digits = ""
    for char in timeframe:
        if char.isdigit():
            digits += char
        else:
            break

    unit_str = timeframe[len(digits):].strip()
    value = int(digits) if digits else 1

    if unit_str not in _UNIT_MAP:
        raise ValueError(f"Invalid timeframe unit: {unit_str}")
    if value <= 0:
        raise ValueError(f"Timeframe value must be positive: {timeframe}")

    return (_UNIT_MAP[unit_str], value)


def bar_interval(unit: int, value: int) -> relativedelta:
    """Length of one bar of the given timeframe."""
    if unit == 1:
        return relativedelta(seconds=value)
    elif unit == 2:
        return relativedelta(minutes=value)
    elif unit == 3:
        return relativedelta(hours=value)
    elif unit == 4:
        return relativedelta(days=value)
    elif unit == 5:
        return relativedelta(weeks=value)
    elif unit == 6:
        return relativedelta(months=value)
    raise ValueError(f"Invalid unit: {unit}")


def ensure_utc(timestamp: Union[str, datetime.datetime]) -> datetime.datetime:
    """Parse (if needed) and return a timezone-aware UTC datetime."""
    if isinstance(timestamp, str):
        timestamp = date_parser.parse(timestamp)

    if timestamp.tzinfo is None:
        return timestamp.replace(tzinfo=datetime.timezone.utc)
    return timestamp.astimezone(datetime.timezone.utc)


def to_epoch_seconds(timestamp: datetime.datetime) -> int:
    """Canonical integer timestamp used as a cycle key."""
    return int(ensure_utc(timestamp).timestamp())


def tick_size_from_digits(digits: int) -> Decimal:
    """Smallest price step implied by the instrument's decimal precision."""
    return Decimal(1).scaleb(-digits)


def normalize_price(price: Union[Decimal, float, int, str], digits: int) -> Decimal:
    """
    Round a price to the instrument's precision.

    Floats are converted through ``str`` so that e.g. 8.5 stays 8.5 rather than
    its binary approximation.
    """
    if not isinstance(price, Decimal):
        price = Decimal(str(price))
    return price.quantize(tick_size_from_digits(digits), rounding=ROUND_HALF_UP)
