"""
Data models for the OIO trading system.

This module defines Pydantic models for OHLC bars and quotes.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from oio_trader.core.utils import bar_interval


class Bar(BaseModel):
    """
    Model representing a closed OHLC (Open, High, Low, Close) bar.

    Fields match the ProjectX API response format, with additional metadata.
    """
    model_config = ConfigDict(frozen=True, extra="ignore")

    t: datetime = Field(..., description="Timestamp (start of the bar)")
    o: float = Field(..., description="Open price")
    h: float = Field(..., description="High price")
    l: float = Field(..., description="Low price")
    c: float = Field(..., description="Close price")
    v: Optional[float] = Field(0, description="Volume (if available)")

    contract_id: str = Field(..., description="Contract ID this bar belongs to")
    timeframe_unit: int = Field(..., description="Timeframe unit (1=s, 2=m, 3=h, 4=d, 5=w, 6=mo)")
    timeframe_value: int = Field(..., description="Number of units in timeframe")

    @field_validator("t")
    @classmethod
    def ensure_timezone(cls, v):
        """Ensure timestamp has timezone info."""
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @model_validator(mode="after")
    def validate_price_range(self):
        """Validate that low <= open, close <= high."""
        if self.l > self.h:
            raise ValueError("Low price cannot be greater than high price")
        for price in (self.o, self.c):
            if price > self.h:
                raise ValueError("Price cannot be greater than high price")
            if price < self.l:
                raise ValueError("Price cannot be less than low price")
        return self

    @property
    def close_time(self) -> datetime:
        """End of the interval this bar covers."""
        return self.t + bar_interval(self.timeframe_unit, self.timeframe_value)


class Quote(BaseModel):
    """Best bid/ask snapshot for a contract."""
    contract_id: str
    bid: Decimal
    ask: Decimal
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @model_validator(mode="after")
    def validate_spread(self):
        if self.bid > self.ask:
            raise ValueError(f"Bid {self.bid} is above ask {self.ask}")
        return self
