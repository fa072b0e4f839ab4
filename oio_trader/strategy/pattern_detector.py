"""
Outside-Inside-Outside (OIO) pattern detection.

Three consecutive closed bars form an OIO pattern when the first and the
third both envelope the middle bar: their highs are at or above its high and
their lows are at or below its low. Equal extremes still qualify.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional, Sequence
from pydantic import BaseModel, ConfigDict

from oio_trader.core.utils import normalize_price, to_epoch_seconds
from oio_trader.data.models import Bar

logger = logging.getLogger(__name__)


class OIOPattern(BaseModel):
    """A confirmed OIO pattern; ``id`` keys the trading cycle built from it."""
    model_config = ConfigDict(frozen=True)

    id: int
    start_time: datetime
    end_time: datetime
    high: Decimal
    low: Decimal
    midpoint: Decimal


def detect(bars: Sequence[Bar], digits: int) -> Optional[OIOPattern]:
    """
    Check the last three closed bars for an OIO pattern.

    Args:
        bars: Closed bars ordered oldest to youngest; only the last three are used
        digits: Instrument price precision used to normalize the levels

    Returns:
        The pattern, or None if the bars do not form one
    """
    if len(bars) < 3:
        return None

    bar1, bar2, bar3 = bars[-3], bars[-2], bars[-1]

    outside_high = bar1.h >= bar2.h and bar3.h >= bar2.h
    outside_low = bar1.l <= bar2.l and bar3.l <= bar2.l
    if not (outside_high and outside_low):
        return None

    high = normalize_price(max(bar1.h, bar3.h), digits)
    low = normalize_price(min(bar1.l, bar3.l), digits)
    midpoint = normalize_price((high + low) / 2, digits)

    return OIOPattern(
        id=to_epoch_seconds(bar3.t),
        start_time=bar1.t,
        end_time=bar3.close_time,
        high=high,
        low=low,
        midpoint=midpoint,
    )


class PatternDetector:
    """
    Edge-triggered wrapper around ``detect``.

    Each youngest bar is evaluated once; repeated calls while no new bar has
    closed return None without re-evaluating.
    """

    def __init__(self, digits: int):
        self.digits = digits
        self.last_bar_time: Optional[datetime] = None

    def process(self, bars: Sequence[Bar]) -> Optional[OIOPattern]:
        if not bars:
            return None

        youngest = bars[-1].t
        if self.last_bar_time is not None and youngest <= self.last_bar_time:
            logger.debug(f"Bar {youngest} already evaluated, skipping detection")
            return None
        self.last_bar_time = youngest

        pattern = detect(bars, self.digits)
        if pattern:
            logger.info(
                f"OIO pattern {pattern.id} detected: high={pattern.high} low={pattern.low} "
                f"mid={pattern.midpoint} ({pattern.start_time} -> {pattern.end_time})"
            )
        return pattern
