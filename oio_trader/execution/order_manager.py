import logging
from decimal import Decimal
from typing import Optional, Sequence

from pydantic import BaseModel

from oio_trader.core.config import StrategySettings
from oio_trader.core.exceptions import InvalidOrderError
from oio_trader.core.utils import normalize_price
from oio_trader.execution.broker_gateway import Direction, ResolvedRef
from oio_trader.strategy.pattern_detector import OIOPattern

logger = logging.getLogger(__name__)


class OrderRequest(BaseModel):
    """A fully priced pending order, ready for submission."""
    direction: Direction
    price: Decimal
    stop_loss: Decimal
    take_profit: Decimal
    volume: Decimal
    tag: str
    comment: str = ""


class OrderManager:
    """Prices the orders of an OIO cycle and checks their stop/target ordering."""

    def __init__(self, settings: StrategySettings):
        self.settings = settings
        self.digits = settings.digits
        self.tick_size = settings.tick_size
        self.tp_distance = settings.take_profit_distance
        logger.info(
            f"OrderManager initialized: digits={self.digits} tick={self.tick_size} "
            f"tp_distance={self.tp_distance} qty={settings.quantity}"
        )

    def _normalize(self, price: Decimal) -> Decimal:
        return normalize_price(price, self.digits)

    def _target(self, entry: Decimal, direction: Direction) -> Decimal:
        return self._normalize(entry + direction.sign * self.tp_distance)

    def build_initial_order(self, pattern: OIOPattern, direction: Direction) -> OrderRequest:
        """
        Breakout order for one side of the pattern.

        A long entry sits one tick above the pattern high with its stop at the
        pattern low; a short entry one tick below the low with its stop at the
        high. Targets are the configured distance beyond the entry.
        """
        if direction == Direction.LONG:
            price = self._normalize(pattern.high + self.tick_size)
            stop_loss = pattern.low
        else:
            price = self._normalize(pattern.low - self.tick_size)
            stop_loss = pattern.high

        return OrderRequest(
            direction=direction,
            price=price,
            stop_loss=self._normalize(stop_loss),
            take_profit=self._target(price, direction),
            volume=self.settings.quantity,
            tag=self.settings.order_tag,
            comment=f"OIO {pattern.id} initial {direction.value}",
        )

    def build_chase_order(self, cycle_id: int, midpoint: Decimal, direction: Direction,
                          stop_loss: Decimal) -> OrderRequest:
        """Second order at the pattern midpoint, same direction and stop as the first leg."""
        price = self._normalize(midpoint)
        return OrderRequest(
            direction=direction,
            price=price,
            stop_loss=self._normalize(stop_loss),
            take_profit=self._target(price, direction),
            volume=self.settings.quantity,
            tag=self.settings.order_tag,
            comment=f"OIO {cycle_id} chase {direction.value}",
        )

    def shared_take_profit(self, legs: Sequence[ResolvedRef], direction: Direction) -> Decimal:
        """
        Volume-weighted average entry of the legs plus the target distance.

        Raises:
            InvalidOrderError: If the legs carry no volume
        """
        total_volume = sum((leg.volume for leg in legs), Decimal("0"))
        if total_volume <= 0:
            raise InvalidOrderError("Cannot average entries with zero total volume")

        weighted = sum((leg.price * leg.volume for leg in legs), Decimal("0"))
        average_entry = weighted / total_volume
        take_profit = self._target(average_entry, direction)
        logger.info(
            f"Average entry {average_entry} over volume {total_volume}, shared take-profit {take_profit}"
        )
        return take_profit

    def validate(self, request: OrderRequest):
        """
        Raises:
            InvalidOrderError: If stop-loss and take-profit are not on the correct sides of the price
        """
        if request.price <= 0:
            raise InvalidOrderError(f"Non-positive price {request.price}")

        if request.direction == Direction.LONG:
            ordered = request.stop_loss < request.price < request.take_profit
        else:
            ordered = request.take_profit < request.price < request.stop_loss

        if not ordered:
            raise InvalidOrderError(
                f"{request.direction.value} order at {request.price} has SL={request.stop_loss} "
                f"TP={request.take_profit} on the wrong side"
            )

    def validate_protection(self, direction: Direction, stop_loss: Decimal, take_profit: Decimal):
        """
        Check the levels for a position modification, where only their relative order is known.

        Raises:
            InvalidOrderError: If the take-profit is not beyond the stop-loss in the trade direction
        """
        if direction == Direction.LONG and not stop_loss < take_profit:
            raise InvalidOrderError(f"Long take-profit {take_profit} not above stop-loss {stop_loss}")
        if direction == Direction.SHORT and not take_profit < stop_loss:
            raise InvalidOrderError(f"Short take-profit {take_profit} not below stop-loss {stop_loss}")

    def check_stop_distance(self, request: OrderRequest, min_distance: Optional[Decimal]) -> bool:
        """
        Advisory check against the venue's minimum stop distance.

        Violations are logged, never enforced; the venue decides.
        """
        if not min_distance:
            return True

        ok = True
        for label, level in (("stop-loss", request.stop_loss), ("take-profit", request.take_profit)):
            distance = abs(request.price - level)
            if distance < min_distance:
                ok = False
                logger.warning(
                    f"{request.comment}: {label} {level} is {distance} from price {request.price}, "
                    f"below the venue minimum {min_distance}"
                )
        return ok
