"""
OIO cycle state machine.

This module turns confirmed OIO patterns into broker actions and walks the
resulting cycle through its phases:

    IDLE -> PENDING_ENTRY -> FIRST_LEG_FILLED -> CHASE_PENDING -> BOTH_LEGS_FILLED

Every handler re-resolves the tracked tickets at the broker instead of
trusting cached flags, and every handler ends with a termination check that
resets the cycle once nothing it placed is still live.
"""

import logging
from datetime import datetime
from typing import Callable, List, Optional

from oio_trader.core.config import StrategySettings
from oio_trader.data.models import Bar
from oio_trader.core.exceptions import InvalidOrderError, OIOTraderError, OrderRejectedError
from oio_trader.execution.broker_gateway import (
    BrokerGateway, Direction, ResolvedRef, TrackedRef, TradeEvent
)
from oio_trader.execution.order_manager import OrderManager, OrderRequest
from oio_trader.services.chart_annotator import ChartAnnotator
from oio_trader.strategy.cycle import Cycle, CyclePhase
from oio_trader.strategy.pattern_detector import OIOPattern, PatternDetector

logger = logging.getLogger(__name__)


class CycleStateMachine:
    """
    Owns the single OIO cycle and drives it from detection to termination.

    Handlers are meant to be awaited one at a time from a single consumer;
    the cycle is not protected by a lock.
    """

    def __init__(self,
                 gateway: BrokerGateway,
                 settings: StrategySettings,
                 annotator: Optional[ChartAnnotator] = None,
                 order_manager: Optional[OrderManager] = None,
                 bar_lookback: int = 100):
        """
        Initialize the state machine.

        Args:
            gateway: Broker used for bars, orders and ticket resolution
            settings: Validated strategy settings
            annotator: Optional chart annotation sink
            order_manager: Order pricing; built from settings when omitted
            bar_lookback: How many recent bars to fetch when locating a signalled bar
        """
        self.gateway = gateway
        self.settings = settings
        self.bar_lookback = bar_lookback
        self.annotator = annotator
        self.order_manager = order_manager or OrderManager(settings)
        self.detector = PatternDetector(settings.digits)
        self.cycle = Cycle()

        self.on_cycle_closed_callbacks: List[Callable[[Cycle], None]] = []

    @property
    def phase(self) -> CyclePhase:
        return self.cycle.phase

    def register_cycle_closed_callback(self, callback: Callable[[Cycle], None]):
        """Register a callback for cycle closed events."""
        self.on_cycle_closed_callbacks.append(callback)

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------

    async def on_bar_closed(self, bar_time: Optional[datetime] = None) -> Optional[OIOPattern]:
        """
        Run one detection pass for a newly closed bar, then the termination check.

        Args:
            bar_time: Open time of the bar that closed; the three bars ending
                there are evaluated. None evaluates the three most recent bars.

        Returns:
            The detected pattern, if any
        """
        pattern = None
        try:
            bars = await self._bars_ending_at(bar_time)
            pattern = self.detector.process(bars)
            if pattern:
                await self.on_pattern(pattern)
        except OIOTraderError as e:
            logger.error(f"Detection pass failed: {e}")

        await self.check_termination()
        return pattern

    async def on_pattern(self, pattern: OIOPattern) -> bool:
        """
        Open a cycle for a confirmed pattern by placing both breakout orders.

        If the second order cannot be placed the first is cancelled and the
        pattern is discarded.

        Returns:
            True if a new cycle was activated
        """
        if self.cycle.is_active:
            if self.cycle.id == pattern.id:
                logger.debug(f"Pattern {pattern.id} already has an active cycle, ignoring")
            else:
                logger.info(
                    f"Pattern {pattern.id} ignored: cycle {self.cycle.id} is still active "
                    f"({self.cycle.phase.value})"
                )
            return False

        om = self.order_manager
        try:
            buy_ref = await self._submit(om.build_initial_order(pattern, Direction.LONG))
        except (InvalidOrderError, OrderRejectedError) as e:
            self._log_order_failure(f"Initial buy for pattern {pattern.id}", e)
            logger.info(f"Pattern {pattern.id} discarded")
            return False

        try:
            sell_ref = await self._submit(om.build_initial_order(pattern, Direction.SHORT))
        except (InvalidOrderError, OrderRejectedError) as e:
            self._log_order_failure(f"Initial sell for pattern {pattern.id}", e)
            if not await self._compensate(buy_ref):
                logger.error(
                    f"Pattern {pattern.id}: buy order {buy_ref} may still be working after a failed "
                    f"compensating cancel; cycle abandoned without activation"
                )
            logger.info(f"Pattern {pattern.id} discarded")
            return False

        self.cycle = Cycle(
            id=pattern.id,
            is_active=True,
            phase=CyclePhase.PENDING_ENTRY,
            entry_high=pattern.high,
            entry_low=pattern.low,
            midpoint=pattern.midpoint,
            start_time=pattern.start_time,
            end_time=pattern.end_time,
            initial_buy_ref=buy_ref,
            initial_sell_ref=sell_ref,
        )
        logger.info(f"Cycle {pattern.id} started: buy {buy_ref}, sell {sell_ref}")
        self._draw(pattern)
        return True

    async def on_trade_event(self, event: TradeEvent):
        """Advance the cycle after a broker notification, then run the termination check."""
        logger.debug(f"Trade event {event.kind.value} for ticket {event.ticket}")

        if self.cycle.is_active:
            try:
                await self._advance()
            except OIOTraderError as e:
                logger.error(f"Cycle {self.cycle.id}: transition check failed: {e}")

        await self.check_termination()

    async def check_termination(self) -> bool:
        """
        Reset the cycle when none of its tracked tickets is live at the broker.

        Returns:
            True if the cycle was reset
        """
        if not self.cycle.is_active:
            return False

        for ref in self.cycle.tracked_refs():
            try:
                resolved = await self._resolve(ref)
            except OIOTraderError as e:
                logger.warning(f"Cycle {self.cycle.id}: cannot resolve {ref}, assuming live: {e}")
                return False
            if resolved.is_live:
                return False

        logger.info(f"Cycle {self.cycle.id} terminated: no tracked orders or positions remain")
        self.reset_cycle()
        return True

    def reset_cycle(self):
        """Discard the current cycle and remove its chart annotation."""
        outgoing = self.cycle
        self.cycle = Cycle()

        if not outgoing.is_active:
            return

        if self.annotator:
            try:
                self.annotator.remove(outgoing.id)
            except Exception as e:
                logger.error(f"Error removing annotation for cycle {outgoing.id}: {str(e)}")

        for callback in self.on_cycle_closed_callbacks:
            try:
                callback(outgoing)
            except Exception as e:
                logger.error(f"Error in cycle closed callback: {str(e)}")

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def _advance(self):
        if self.cycle.phase == CyclePhase.PENDING_ENTRY:
            await self._check_initial_fills()
        elif self.cycle.sibling_ref() is not None:
            await self._cancel_sibling()

        if self.cycle.phase == CyclePhase.CHASE_PENDING:
            await self._check_chase_fill()

    async def _check_initial_fills(self):
        buy = await self._resolve(self.cycle.initial_buy_ref)
        sell = await self._resolve(self.cycle.initial_sell_ref)

        if buy is not None and buy.is_open_position:
            filled, direction, other = buy, Direction.LONG, sell
        elif sell is not None and sell.is_open_position:
            filled, direction, other = sell, Direction.SHORT, buy
        else:
            return

        self.cycle.first_filled_ref = filled.ref
        self.cycle.first_filled_direction = direction
        self.cycle.phase = CyclePhase.FIRST_LEG_FILLED
        logger.info(
            f"Cycle {self.cycle.id}: first leg {filled.ref} filled {direction.value} at {filled.price} "
            f"(SL={filled.stop_loss} TP={filled.take_profit})"
        )

        if other is not None and other.is_open_position:
            logger.warning(
                f"Cycle {self.cycle.id}: both initial orders filled; {other.ref} keeps its own "
                f"protective levels and stays tracked"
            )
        else:
            await self._cancel_sibling()

        await self._place_chase(filled)

    async def _cancel_sibling(self) -> bool:
        """
        Cancel the initial order opposite to the first leg and stop tracking it.

        The reference is kept when the cancel fails so the termination check
        still sees the order; the cancel is tried again on the next event.
        """
        sibling = self.cycle.sibling_ref()
        if sibling is None:
            return True

        try:
            resolved = await self._resolve(sibling)
        except OIOTraderError as e:
            logger.error(f"Cycle {self.cycle.id}: cannot resolve sibling {sibling}: {e}; will retry on next event")
            return False

        if resolved.is_open_position:
            return False

        if resolved.is_pending:
            try:
                outcome = await self.gateway.cancel_order(sibling)
                logger.info(f"Cycle {self.cycle.id}: sibling order {sibling} {outcome.value}")
            except OrderRejectedError as e:
                if not e.is_moot:
                    logger.error(
                        f"Cycle {self.cycle.id}: cancel of sibling {sibling} failed "
                        f"({e.category.value}): {e}; will retry on next event"
                    )
                    return False
                logger.info(f"Cycle {self.cycle.id}: sibling order {sibling} already gone ({e.code.value})")
            except OIOTraderError as e:
                logger.error(f"Cycle {self.cycle.id}: cancel of sibling {sibling} failed: {e}; will retry on next event")
                return False

        self.cycle.clear_sibling_ref()
        return True

    async def _place_chase(self, first_leg: ResolvedRef):
        if self.cycle.chase_ref is not None:
            return

        direction = self.cycle.first_filled_direction
        if first_leg.stop_loss is None:
            logger.error(f"Cycle {self.cycle.id}: first leg {first_leg.ref} has no stop-loss to copy, no chase order")
            return

        request = self.order_manager.build_chase_order(
            self.cycle.id, self.cycle.midpoint, direction, first_leg.stop_loss
        )
        try:
            self.cycle.chase_ref = await self._submit(request)
        except (InvalidOrderError, OrderRejectedError) as e:
            self._log_order_failure(f"Cycle {self.cycle.id}: chase order", e)
            logger.warning(f"Cycle {self.cycle.id}: first leg {first_leg.ref} continues without a chase order")
            return

        self.cycle.phase = CyclePhase.CHASE_PENDING
        logger.info(f"Cycle {self.cycle.id}: chase order {self.cycle.chase_ref} {direction.value} at {request.price}")

    async def _check_chase_fill(self):
        if self.cycle.take_profit_adjust_attempted:
            return

        chase = await self._resolve(self.cycle.chase_ref)
        if chase is None or not chase.is_open_position:
            return

        first = await self._resolve(self.cycle.first_filled_ref)
        if first is None or not first.is_open_position:
            self.cycle.take_profit_adjust_attempted = True
            logger.warning(
                f"Cycle {self.cycle.id}: chase {chase.ref} filled but first leg is no longer open; "
                f"take-profits left as placed"
            )
            return

        await self._adjust_take_profits(first, chase)

    async def _adjust_take_profits(self, first: ResolvedRef, chase: ResolvedRef):
        """Move both legs to one take-profit derived from their average entry; attempted once."""
        self.cycle.take_profit_adjust_attempted = True
        direction = self.cycle.first_filled_direction

        try:
            take_profit = self.order_manager.shared_take_profit([first, chase], direction)
        except InvalidOrderError as e:
            logger.error(f"Cycle {self.cycle.id}: cannot compute shared take-profit: {e}")
            return

        adjusted = 0
        for leg in (first, chase):
            try:
                self.order_manager.validate_protection(direction, leg.stop_loss, take_profit)
                outcome = await self.gateway.modify_stop_loss_take_profit(leg.ref, leg.stop_loss, take_profit)
                adjusted += 1
                logger.info(f"Cycle {self.cycle.id}: leg {leg.ref} take-profit -> {take_profit} ({outcome.value})")
            except (InvalidOrderError, OrderRejectedError) as e:
                self._log_order_failure(f"Cycle {self.cycle.id}: take-profit update of {leg.ref}", e)

        if adjusted == 2:
            self.cycle.take_profits_adjusted = True
            self.cycle.phase = CyclePhase.BOTH_LEGS_FILLED
            logger.info(f"Cycle {self.cycle.id}: both legs share take-profit {take_profit}")
        else:
            logger.warning(
                f"Cycle {self.cycle.id}: only {adjusted} of 2 legs adjusted; monitoring until closure"
            )

    # ------------------------------------------------------------------
    # Broker helpers
    # ------------------------------------------------------------------

    async def _bars_ending_at(self, bar_time: Optional[datetime]) -> List[Bar]:
        if bar_time is None:
            return await self.gateway.recent_closed_bars(3)

        bars = await self.gateway.recent_closed_bars(self.bar_lookback)
        window = [bar for bar in bars if bar.t <= bar_time][-3:]
        if not window or window[-1].t != bar_time:
            logger.warning(f"Bar {bar_time} is no longer held by the broker, skipping detection")
            return []
        return window

    async def _submit(self, request: OrderRequest) -> TrackedRef:
        """
        Raises:
            InvalidOrderError: If the request fails validation (nothing is sent)
            OrderRejectedError: If the broker refuses the order
        """
        self.order_manager.validate(request)
        self.order_manager.check_stop_distance(request, self.gateway.min_stop_distance())
        ref = await self.gateway.place_pending_order(
            direction=request.direction,
            price=request.price,
            stop_loss=request.stop_loss,
            take_profit=request.take_profit,
            volume=request.volume,
            tag=request.tag,
            comment=request.comment,
        )
        logger.info(
            f"Placed {request.direction.value} order {ref} at {request.price} "
            f"SL={request.stop_loss} TP={request.take_profit} vol={request.volume}"
        )
        return ref

    async def _compensate(self, ref: TrackedRef) -> bool:
        """Cancel an order whose sibling could not be placed."""
        try:
            outcome = await self.gateway.cancel_order(ref)
            logger.info(f"Compensating cancel of {ref}: {outcome.value}")
            return True
        except OrderRejectedError as e:
            if e.is_moot:
                logger.info(f"Compensating cancel of {ref}: already gone ({e.code.value})")
                return True
            logger.error(f"Compensating cancel of {ref} failed ({e.category.value}): {e}")
            return False

    async def _resolve(self, ref: Optional[TrackedRef]) -> Optional[ResolvedRef]:
        """Resolve a ticket, treating tickets that carry a foreign tag as gone."""
        if ref is None:
            return None

        resolved = await self.gateway.resolve(ref)
        if resolved.is_live and resolved.tag != self.settings.order_tag:
            logger.warning(f"Ticket {ref} carries foreign tag {resolved.tag!r}, treating as gone")
            return ResolvedRef.gone(ref)
        return resolved

    def _log_order_failure(self, what: str, error: Exception):
        if isinstance(error, OrderRejectedError):
            logger.error(f"{what} rejected by broker ({error.category.value}): {error}")
        else:
            logger.error(f"{what} not submitted: {error}")

    def _draw(self, pattern: OIOPattern):
        if not self.annotator:
            return
        try:
            self.annotator.draw(pattern.id, pattern.start_time, pattern.end_time, pattern.high, pattern.low)
        except Exception as e:
            logger.error(f"Error drawing annotation for cycle {pattern.id}: {str(e)}")
