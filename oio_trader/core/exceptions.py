"""
Custom exceptions for the OIO trading system.

Broker rejections carry a ``RejectCode`` which ``classify_reject`` maps onto
one of three handling categories.
"""

from enum import Enum


class RejectCode(str, Enum):
    """Venue reject reasons, normalized across gateways."""
    CONNECTION_LOST = "connection_lost"
    TIMEOUT = "timeout"
    TOO_MANY_REQUESTS = "too_many_requests"
    INVALID_PRICE = "invalid_price"
    INVALID_STOPS = "invalid_stops"
    INVALID_VOLUME = "invalid_volume"
    TRADE_DISABLED = "trade_disabled"
    MARKET_CLOSED = "market_closed"
    NO_MONEY = "no_money"
    INVALID_ORDER = "invalid_order"
    ORDER_NOT_FOUND = "order_not_found"
    POSITION_NOT_FOUND = "position_not_found"
    UNKNOWN = "unknown"


class RejectCategory(str, Enum):
    """How a rejection should be handled by the caller."""
    RETRIABLE_ENVIRONMENTAL = "retriable_environmental"
    NON_RETRIABLE_REQUEST = "non_retriable_request"
    ALREADY_MOOT = "already_moot"


_RETRIABLE = {
    RejectCode.CONNECTION_LOST,
    RejectCode.TIMEOUT,
    RejectCode.TOO_MANY_REQUESTS,
}

_ALREADY_MOOT = {
    RejectCode.INVALID_ORDER,
    RejectCode.ORDER_NOT_FOUND,
    RejectCode.POSITION_NOT_FOUND,
}


def classify_reject(code: RejectCode) -> RejectCategory:
    """Map a reject code to its handling category."""
    if code in _RETRIABLE:
        return RejectCategory.RETRIABLE_ENVIRONMENTAL
    if code in _ALREADY_MOOT:
        return RejectCategory.ALREADY_MOOT
    return RejectCategory.NON_RETRIABLE_REQUEST


class OIOTraderError(Exception):
    """Base class for all exceptions in the application."""
    pass


class ConfigurationError(OIOTraderError):
    """Exception raised for configuration errors."""
    pass


class ApiError(OIOTraderError):
    """Exception raised for errors in API calls."""

    def __init__(self, message, status_code=None, response=None):
        super().__init__(message)
        self.status_code = status_code
        self.response = response


class MarketDataError(OIOTraderError):
    """Exception raised for errors in market data processing."""
    pass


class WebSocketConnectionError(OIOTraderError):
    """Exception raised for WebSocket connection errors."""
    pass


class OrderExecutionError(OIOTraderError):
    """Exception raised for order execution errors."""
    pass


class OrderRejectedError(OrderExecutionError):
    """Raised by a broker gateway when the venue refuses a request."""

    def __init__(self, code: RejectCode, reason: str = ""):
        super().__init__(f"{code.value}: {reason}" if reason else code.value)
        self.code = code
        self.reason = reason

    @property
    def category(self) -> RejectCategory:
        return classify_reject(self.code)

    @property
    def is_moot(self) -> bool:
        """True when the target no longer exists, so a cancel intent is already satisfied."""
        return self.category == RejectCategory.ALREADY_MOOT


class InvalidOrderError(OrderExecutionError):
    """Raised before submission when a computed order has inconsistent price levels."""
    pass
