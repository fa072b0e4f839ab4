"""
Trading cycle state.

A cycle spans one OIO pattern from confirmation until none of its orders or
positions remain at the broker. Only the cycle state machine mutates it.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional
from pydantic import BaseModel

from oio_trader.execution.broker_gateway import Direction, TrackedRef


class CyclePhase(str, Enum):
    IDLE = "idle"
    PENDING_ENTRY = "pending_entry"
    FIRST_LEG_FILLED = "first_leg_filled"
    CHASE_PENDING = "chase_pending"
    BOTH_LEGS_FILLED = "both_legs_filled"


class Cycle(BaseModel):
    """The single active cycle; a default instance is the idle, empty cycle."""
    id: int = 0
    is_active: bool = False
    phase: CyclePhase = CyclePhase.IDLE

    entry_high: Optional[Decimal] = None
    entry_low: Optional[Decimal] = None
    midpoint: Optional[Decimal] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    initial_buy_ref: Optional[TrackedRef] = None
    initial_sell_ref: Optional[TrackedRef] = None
    first_filled_ref: Optional[TrackedRef] = None
    first_filled_direction: Optional[Direction] = None
    chase_ref: Optional[TrackedRef] = None

    take_profits_adjusted: bool = False
    take_profit_adjust_attempted: bool = False

    def tracked_refs(self) -> List[TrackedRef]:
        """References that keep the cycle alive while any of them is live."""
        refs = [self.initial_buy_ref, self.initial_sell_ref, self.first_filled_ref, self.chase_ref]
        # The first leg keeps the ticket of the initial order it came from.
        return list(dict.fromkeys(ref for ref in refs if ref is not None))

    def sibling_ref(self) -> Optional[TrackedRef]:
        """The initial order opposite to the first filled leg."""
        if self.first_filled_direction == Direction.LONG:
            return self.initial_sell_ref
        if self.first_filled_direction == Direction.SHORT:
            return self.initial_buy_ref
        return None

    def clear_sibling_ref(self):
        if self.first_filled_direction == Direction.LONG:
            self.initial_sell_ref = None
        elif self.first_filled_direction == Direction.SHORT:
            self.initial_buy_ref = None
