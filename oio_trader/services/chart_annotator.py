"""
Chart annotation sink.

Keeps the rectangle of every active cycle so that it can be rendered by a
chart client (see the status API). Nothing in the trading logic reads it back.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Dict, List
from pydantic import BaseModel

logger = logging.getLogger(__name__)


class Rectangle(BaseModel):
    """Price/time box spanning an OIO pattern."""
    id: int
    start_time: datetime
    end_time: datetime
    high: Decimal
    low: Decimal


class ChartAnnotator:
    """In-memory rectangle registry keyed by cycle id."""

    def __init__(self):
        self._rectangles: Dict[int, Rectangle] = {}

    def draw(self, cycle_id: int, start_time: datetime, end_time: datetime, high: Decimal, low: Decimal):
        self._rectangles[cycle_id] = Rectangle(
            id=cycle_id, start_time=start_time, end_time=end_time, high=high, low=low
        )
        logger.info(f"Drew rectangle {cycle_id}: {start_time} -> {end_time}, {low} - {high}")

    def remove(self, cycle_id: int):
        if self._rectangles.pop(cycle_id, None) is not None:
            logger.info(f"Removed rectangle {cycle_id}")

    def rectangles(self) -> List[Rectangle]:
        return list(self._rectangles.values())
