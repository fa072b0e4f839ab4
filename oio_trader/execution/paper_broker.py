"""
Paper broker.

An in-process ``BrokerGateway`` that executes against live quotes: pending
orders fill when the quote crosses their price, positions close when the
quote reaches their stop-loss or take-profit. Orders become positions under
the same ticket, as on ticket-based venues.
"""

import logging
import uuid
from collections import deque
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Callable, Deque, Dict, List, Optional
from pydantic import BaseModel, Field

from oio_trader.core.config import ExecutionSettings, StrategySettings
from oio_trader.core.exceptions import MarketDataError, OrderRejectedError, RejectCode
from oio_trader.data.models import Bar, Quote
from oio_trader.execution.broker_gateway import (
    BrokerGateway, CancelOutcome, Direction, ModifyOutcome, RefState,
    ResolvedRef, TrackedRef, TradeEvent, TradeEventKind
)

logger = logging.getLogger(__name__)


class OrderTrigger(str, Enum):
    """How a pending order is triggered relative to the market at placement."""
    LIMIT = "limit"  # better than the market: buy below ask, sell above bid
    STOP = "stop"    # breakout: buy above ask, sell below bid


class PaperOrder(BaseModel):
    ticket: str
    direction: Direction
    trigger: OrderTrigger
    price: Decimal
    stop_loss: Decimal
    take_profit: Decimal
    volume: Decimal
    tag: str
    comment: str = ""
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class PaperPosition(BaseModel):
    ticket: str
    direction: Direction
    entry_price: Decimal
    volume: Decimal
    stop_loss: Decimal
    take_profit: Decimal
    tag: str
    comment: str = ""
    opened_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    closed_at: Optional[datetime] = None
    exit_price: Optional[Decimal] = None

    @property
    def realized_pnl(self) -> Optional[Decimal]:
        if self.exit_price is None:
            return None
        return (self.exit_price - self.entry_price) * self.direction.sign * self.volume


class PaperBroker(BrokerGateway):
    """Quote-driven simulated venue for a single contract."""

    def __init__(self,
                 contract_id: str,
                 max_bars: int = 100,
                 trade_allowed: bool = True,
                 min_stop_distance: Optional[Decimal] = None):
        self.contract_id = contract_id
        self.trade_allowed = trade_allowed
        self._min_stop_distance = min_stop_distance

        self._bars: Deque[Bar] = deque(maxlen=max_bars)
        self._quote: Optional[Quote] = None
        self._orders: Dict[str, PaperOrder] = {}
        self._positions: Dict[str, PaperPosition] = {}
        self.closed_positions: List[PaperPosition] = []

        self.trade_event_callbacks: List[Callable[[TradeEvent], None]] = []
        logger.info(f"PaperBroker initialized for {contract_id} (trade_allowed={trade_allowed})")

    @classmethod
    def from_settings(cls, strategy: StrategySettings, execution: ExecutionSettings) -> "PaperBroker":
        min_distance = None
        if execution.min_stop_distance_ticks:
            min_distance = execution.min_stop_distance_ticks * strategy.tick_size
        return cls(
            contract_id=strategy.contract_id,
            max_bars=max(execution.bar_history, 3),
            trade_allowed=execution.trade_allowed,
            min_stop_distance=min_distance,
        )

    # ------------------------------------------------------------------
    # Market data in
    # ------------------------------------------------------------------

    def add_bar(self, bar: Bar) -> bool:
        """Append a closed bar. Returns False for bars that are not newer than the last one."""
        if bar.contract_id != self.contract_id:
            logger.warning(f"Ignoring bar for {bar.contract_id}, broker trades {self.contract_id}")
            return False
        if self._bars and bar.t <= self._bars[-1].t:
            return False
        self._bars.append(bar)
        return True

    def update_quote(self, quote: Quote) -> List[TradeEvent]:
        """
        Apply a new quote: trigger pending orders, then check protective levels.

        Returns:
            The trade events produced by this quote
        """
        if quote.contract_id != self.contract_id:
            return []
        self._quote = quote

        events = []
        for order in list(self._orders.values()):
            if self._is_triggered(order, quote):
                events.append(self._fill(order))

        for position in list(self._positions.values()):
            exit_price = self._exit_price(position, quote)
            if exit_price is not None:
                events.append(self._close(position, exit_price))
        return events

    def _is_triggered(self, order: PaperOrder, quote: Quote) -> bool:
        if order.direction == Direction.LONG:
            if order.trigger == OrderTrigger.STOP:
                return quote.ask >= order.price
            return quote.ask <= order.price
        if order.trigger == OrderTrigger.STOP:
            return quote.bid <= order.price
        return quote.bid >= order.price

    def _exit_price(self, position: PaperPosition, quote: Quote) -> Optional[Decimal]:
        if position.direction == Direction.LONG:
            if quote.bid <= position.stop_loss or quote.bid >= position.take_profit:
                return quote.bid
        else:
            if quote.ask >= position.stop_loss or quote.ask <= position.take_profit:
                return quote.ask
        return None

    def _fill(self, order: PaperOrder) -> TradeEvent:
        del self._orders[order.ticket]
        position = PaperPosition(
            ticket=order.ticket,
            direction=order.direction,
            entry_price=order.price,
            volume=order.volume,
            stop_loss=order.stop_loss,
            take_profit=order.take_profit,
            tag=order.tag,
            comment=order.comment,
        )
        self._positions[order.ticket] = position
        logger.info(f"PaperBroker: order {order.ticket} FILLED {order.direction.value} {order.volume} @ {order.price}")
        return self._emit(TradeEventKind.ORDER_FILLED, order.ticket, order.tag, f"filled @ {order.price}")

    def _close(self, position: PaperPosition, exit_price: Decimal) -> TradeEvent:
        del self._positions[position.ticket]
        position.exit_price = exit_price
        position.closed_at = datetime.now(timezone.utc)
        self.closed_positions.append(position)
        logger.info(
            f"PaperBroker: position {position.ticket} CLOSED @ {exit_price}, P&L {position.realized_pnl}"
        )
        return self._emit(TradeEventKind.POSITION_CLOSED, position.ticket, position.tag, f"closed @ {exit_price}")

    # ------------------------------------------------------------------
    # BrokerGateway
    # ------------------------------------------------------------------

    async def recent_closed_bars(self, n: int) -> List[Bar]:
        return list(self._bars)[-n:] if n > 0 else []

    async def latest_quote(self) -> Quote:
        if self._quote is None:
            raise MarketDataError(f"No quote received yet for {self.contract_id}")
        return self._quote

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
        if not self.trade_allowed:
            raise OrderRejectedError(RejectCode.TRADE_DISABLED, "trading is disabled")
        if self._quote is None:
            raise OrderRejectedError(RejectCode.MARKET_CLOSED, "no prices")
        if volume <= 0:
            raise OrderRejectedError(RejectCode.INVALID_VOLUME, f"volume {volume}")
        if price <= 0:
            raise OrderRejectedError(RejectCode.INVALID_PRICE, f"price {price}")
        if direction == Direction.LONG and not stop_loss < price < take_profit:
            raise OrderRejectedError(RejectCode.INVALID_STOPS, f"buy @ {price} SL={stop_loss} TP={take_profit}")
        if direction == Direction.SHORT and not take_profit < price < stop_loss:
            raise OrderRejectedError(RejectCode.INVALID_STOPS, f"sell @ {price} SL={stop_loss} TP={take_profit}")

        if direction == Direction.LONG:
            trigger = OrderTrigger.STOP if price > self._quote.ask else OrderTrigger.LIMIT
        else:
            trigger = OrderTrigger.STOP if price < self._quote.bid else OrderTrigger.LIMIT

        order = PaperOrder(
            ticket=uuid.uuid4().hex[:12],
            direction=direction,
            trigger=trigger,
            price=price,
            stop_loss=stop_loss,
            take_profit=take_profit,
            volume=volume,
            tag=tag,
            comment=comment,
        )
        self._orders[order.ticket] = order
        logger.info(
            f"PaperBroker: {trigger.value} {direction.value} order {order.ticket} @ {price} "
            f"SL={stop_loss} TP={take_profit} [{comment}]"
        )
        self._emit(TradeEventKind.ORDER_PLACED, order.ticket, tag, comment)
        return TrackedRef(ticket=order.ticket, tag=tag)

    async def cancel_order(self, ref: TrackedRef) -> CancelOutcome:
        order = self._orders.pop(ref.ticket, None)
        if order is None:
            logger.info(f"PaperBroker: no pending order {ref.ticket} to cancel")
            return CancelOutcome.ALREADY_GONE

        logger.info(f"PaperBroker: order {ref.ticket} CANCELLED")
        self._emit(TradeEventKind.ORDER_CANCELLED, order.ticket, order.tag, order.comment)
        return CancelOutcome.CANCELLED

    async def modify_stop_loss_take_profit(
        self, ref: TrackedRef, stop_loss: Decimal, take_profit: Decimal
    ) -> ModifyOutcome:
        position = self._positions.get(ref.ticket)
        if position is None:
            raise OrderRejectedError(RejectCode.POSITION_NOT_FOUND, f"no open position {ref.ticket}")

        if position.stop_loss == stop_loss and position.take_profit == take_profit:
            return ModifyOutcome.NO_CHANGE

        if self._quote is not None:
            if position.direction == Direction.LONG:
                valid = stop_loss < self._quote.bid < take_profit
            else:
                valid = take_profit < self._quote.ask < stop_loss
            if not valid:
                raise OrderRejectedError(
                    RejectCode.INVALID_STOPS,
                    f"SL={stop_loss} TP={take_profit} vs bid={self._quote.bid} ask={self._quote.ask}"
                )

        position.stop_loss = stop_loss
        position.take_profit = take_profit
        logger.info(f"PaperBroker: position {ref.ticket} SL={stop_loss} TP={take_profit}")
        self._emit(TradeEventKind.POSITION_MODIFIED, position.ticket, position.tag, f"TP={take_profit}")
        return ModifyOutcome.MODIFIED

    async def resolve(self, ref: TrackedRef) -> ResolvedRef:
        order = self._orders.get(ref.ticket)
        if order is not None:
            return ResolvedRef(
                ref=ref, state=RefState.PENDING, tag=order.tag, direction=order.direction,
                price=order.price, volume=order.volume,
                stop_loss=order.stop_loss, take_profit=order.take_profit,
            )

        position = self._positions.get(ref.ticket)
        if position is not None:
            return ResolvedRef(
                ref=ref, state=RefState.OPEN, tag=position.tag, direction=position.direction,
                price=position.entry_price, volume=position.volume,
                stop_loss=position.stop_loss, take_profit=position.take_profit,
            )

        return ResolvedRef.gone(ref)

    def pop_closed_positions(self, comment_prefix: str) -> List[PaperPosition]:
        """Remove and return the closed positions whose comment starts with ``comment_prefix``."""
        taken = [p for p in self.closed_positions if p.comment.startswith(comment_prefix)]
        self.closed_positions = [p for p in self.closed_positions if not p.comment.startswith(comment_prefix)]
        return taken

    def min_stop_distance(self) -> Optional[Decimal]:
        return self._min_stop_distance

    def register_trade_event_callback(self, callback: Callable[[TradeEvent], None]):
        self.trade_event_callbacks.append(callback)

    def _emit(self, kind: TradeEventKind, ticket: str, tag: str, detail: str = "") -> TradeEvent:
        event = TradeEvent(kind=kind, ticket=ticket, tag=tag, detail=detail)
        for callback in self.trade_event_callbacks:
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Error in trade event callback: {str(e)}")
        return event
