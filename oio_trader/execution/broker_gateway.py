"""
Broker gateway contract.

The cycle state machine talks to the venue only through ``BrokerGateway``.
Orders and the positions they turn into are addressed by one ``TrackedRef``;
``resolve`` reports whether the ticket is currently a pending order, an open
position, or gone.
"""

import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Callable, List, Optional
from pydantic import BaseModel, ConfigDict, Field

from oio_trader.data.models import Bar, Quote


class Direction(str, Enum):
    """Trade direction of an order or position."""
    LONG = "long"
    SHORT = "short"

    @property
    def sign(self) -> int:
        return 1 if self is Direction.LONG else -1


class RefState(str, Enum):
    """Broker-side status of a tracked ticket."""
    PENDING = "pending"
    OPEN = "open"
    GONE = "gone"


class CancelOutcome(str, Enum):
    CANCELLED = "cancelled"
    ALREADY_GONE = "already_gone"


class ModifyOutcome(str, Enum):
    MODIFIED = "modified"
    NO_CHANGE = "no_change"


class TrackedRef(BaseModel):
    """Broker ticket plus the ownership tag it was placed with."""
    model_config = ConfigDict(frozen=True)

    ticket: str
    tag: str

    def __str__(self) -> str:
        return self.ticket


class ResolvedRef(BaseModel):
    """Snapshot of what a ticket currently denotes at the broker."""
    ref: TrackedRef
    state: RefState
    tag: Optional[str] = None
    direction: Optional[Direction] = None
    price: Optional[Decimal] = None  # order price while pending, entry price once open
    volume: Optional[Decimal] = None
    stop_loss: Optional[Decimal] = None
    take_profit: Optional[Decimal] = None

    @property
    def is_pending(self) -> bool:
        return self.state == RefState.PENDING

    @property
    def is_open_position(self) -> bool:
        return self.state == RefState.OPEN

    @property
    def is_live(self) -> bool:
        """Still a working order or an open position."""
        return self.state != RefState.GONE

    @classmethod
    def gone(cls, ref: TrackedRef) -> "ResolvedRef":
        return cls(ref=ref, state=RefState.GONE)


class TradeEventKind(str, Enum):
    ORDER_PLACED = "order_placed"
    ORDER_FILLED = "order_filled"
    ORDER_CANCELLED = "order_cancelled"
    POSITION_MODIFIED = "position_modified"
    POSITION_CLOSED = "position_closed"


class TradeEvent(BaseModel):
    """Push notification that something changed at the broker."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    kind: TradeEventKind
    ticket: str
    tag: Optional[str] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    detail: Optional[str] = None


class BrokerGateway(ABC):
    """Abstract base class for broker gateways."""

    @abstractmethod
    async def recent_closed_bars(self, n: int) -> List[Bar]:
        """Return up to ``n`` most recent closed bars, oldest first."""
        pass

    @abstractmethod
    async def latest_quote(self) -> Quote:
        """Return the latest quote. Raises MarketDataError when none is available."""
        pass

    @abstractmethod
    async def place_pending_order(
        self,
        direction: Direction,
        price: Decimal,
        stop_loss: Decimal,
        take_profit: Decimal,
        volume: Decimal,
        tag: str,
        comment: str = "",
    ) -> TrackedRef:
        """Place a pending entry order. Raises OrderRejectedError on refusal."""
        pass

    @abstractmethod
    async def cancel_order(self, ref: TrackedRef) -> CancelOutcome:
        """Cancel a pending order. Raises OrderRejectedError on refusal."""
        pass

    @abstractmethod
    async def modify_stop_loss_take_profit(
        self, ref: TrackedRef, stop_loss: Decimal, take_profit: Decimal
    ) -> ModifyOutcome:
        """Change the protective levels of an open position. Raises OrderRejectedError on refusal."""
        pass

    @abstractmethod
    async def resolve(self, ref: TrackedRef) -> ResolvedRef:
        """Report the current broker-side state of a ticket. GONE is authoritative."""
        pass

    def min_stop_distance(self) -> Optional[Decimal]:
        """Venue minimum distance between price and stops, if the venue reports one."""
        return None

    @abstractmethod
    def register_trade_event_callback(self, callback: Callable[[TradeEvent], None]):
        """Register a callback invoked for every trade event."""
        pass
