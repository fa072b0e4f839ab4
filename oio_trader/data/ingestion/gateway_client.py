"""
ProjectX Gateway API client.

This module handles communication with the ProjectX Gateway API: REST calls
for authentication and bar history, and the SignalR market hub for live
quotes.
"""

import json
import asyncio
import logging
from decimal import Decimal
from typing import Dict, List, Any, Optional, Callable
from datetime import datetime, timezone
import aiohttp
from signalrcore.hub_connection_builder import HubConnectionBuilder

from oio_trader.core.exceptions import ApiError, WebSocketConnectionError
from oio_trader.core.config import Config
from oio_trader.core.utils import bar_interval, ensure_utc, parse_timeframe
from oio_trader.data.models import Bar, Quote


logger = logging.getLogger(__name__)


class GatewayClient:
    """Client for interacting with the ProjectX Gateway API."""

    def __init__(self, config: Config):
        """
        Initialize the client with configuration.

        Args:
            config: Configuration object
        """
        self.api_url = config.get_api_url()
        self.api_token = config.get_api_token()
        self.username = config.get_username()
        self.market_hub_url = config.get_rtc_market_url()

        self.session = None
        self.session_token = None
        self.market_hub_connection = None
        self.quote_callbacks: List[Callable[[Quote], None]] = []
        # ProjectX quote messages can carry only the side that changed
        self._last_quotes: Dict[str, Dict[str, Decimal]] = {}

    async def close(self):
        if self.market_hub_connection:
            await self.disconnect_market_hub()
        if self.session:
            await self.session.close()
            self.session = None

    async def _ensure_session(self):
        """Ensure an aiohttp session exists."""
        if self.session is None:
            self.session = aiohttp.ClientSession()

    async def _ensure_auth(self):
        """Ensure we have a valid session token."""
        if self.session_token is None:
            await self.login()

    async def login(self):
        """
        Login to get a session token.

        Raises:
            ApiError: If login fails
        """
        if not self.api_token:
            logger.error("Missing API token for authentication")
            raise ApiError("Missing API token for authentication")

        if not self.username:
            logger.error("Missing username for authentication")
            raise ApiError("Missing username for authentication")

        logger.info(f"Attempting login with username: {self.username}")

        url = f"{self.api_url}/api/Auth/loginKey"
        data = {
            "userName": self.username.strip(),
            "apiKey": self.api_token.strip()
        }

        response_data = await self._post(url, data, authenticated=False)

        self.session_token = response_data.get("token")
        if not self.session_token:
            logger.error("No token in login response")
            raise ApiError("No token in login response", response=response_data)

        token_preview = f"{self.session_token[:5]}...{self.session_token[-5:] if len(self.session_token) > 10 else ''}"
        logger.info(f"Successfully logged in and got session token: {token_preview}")

    def _get_auth_headers(self) -> Dict[str, str]:
        """
        Get authentication headers for API requests.

        Returns:
            Dict containing auth headers
        """
        if not self.session_token:
            raise ApiError("No session token available")

        return {
            "Authorization": f"Bearer {self.session_token}",
            "Content-Type": "application/json"
        }

    async def _post(self, url: str, data: Dict[str, Any], authenticated: bool = True) -> Dict[str, Any]:
        """
        POST a JSON body and return the decoded response.

        Raises:
            ApiError: On transport errors, non-JSON bodies, HTTP errors or success=false
        """
        await self._ensure_session()
        if authenticated:
            headers = self._get_auth_headers()
        else:
            headers = {"accept": "application/json", "Content-Type": "application/json"}

        try:
            async with self.session.post(url, headers=headers, json=data) as response:
                response_text = await response.text()
                try:
                    response_data = json.loads(response_text)
                except json.JSONDecodeError as e:
                    logger.error(f"Invalid JSON response from {url}: {response_text[:200]}")
                    raise ApiError(f"Invalid JSON response from server. Status: {response.status}",
                                   status_code=response.status) from e

                if response.status >= 400:
                    error_msg = response_data.get("errorMessage") or "Unknown error"
                    logger.error(f"Request to {url} failed with status {response.status}: {error_msg}")
                    raise ApiError(
                        f"Request failed with status {response.status}: {error_msg}",
                        status_code=response.status,
                        response=response_data
                    )

                if not response_data.get("success", False):
                    error_code = response_data.get("errorCode")
                    error_msg = response_data.get("errorMessage") or f"Error Code {error_code}"
                    logger.error(f"API returned error for {url}: {error_msg}")
                    raise ApiError(f"API returned error: {error_msg}", response=response_data)

                return response_data

        except aiohttp.ClientError as e:
            logger.error(f"HTTP request error: {str(e)}")
            raise ApiError(f"HTTP request failed: {str(e)}") from e

    async def retrieve_bars(
        self,
        contract_id: str,
        timeframe: str,
        limit: int = 10,
        include_partial_bar: bool = False,
        end_time: Optional[datetime] = None
    ) -> List[Bar]:
        """
        Retrieve the most recent OHLC bars from the ProjectX Gateway API.

        Args:
            contract_id: The contract ID to retrieve bars for
            timeframe: String representation of the timeframe (e.g., "5m", "1h")
            limit: Maximum number of bars to retrieve
            include_partial_bar: Whether to include a partial bar for the current period
            end_time: End time for the bars, defaults to now

        Returns:
            List of Bar objects, oldest first

        Raises:
            ApiError: If the API returns an error
        """
        await self._ensure_auth()
        unit, unit_number = parse_timeframe(timeframe)

        end_time = ensure_utc(end_time) if end_time else datetime.now(timezone.utc)
        # Ask for twice the span so session gaps still leave `limit` bars.
        start_time = end_time - bar_interval(unit, unit_number * limit * 2)

        url = f"{self.api_url}/api/History/retrieveBars"
        data = {
            "contractId": contract_id,
            "live": False,
            "startTime": start_time.isoformat(),
            "endTime": end_time.isoformat(),
            "unit": unit,
            "unitNumber": unit_number,
            "limit": limit,
            "includePartialBar": include_partial_bar
        }

        response_data = await self._post(url, data)

        bars = []
        for bar_data in response_data.get("bars") or []:
            try:
                bars.append(Bar(
                    t=bar_data["t"],
                    o=bar_data["o"],
                    h=bar_data["h"],
                    l=bar_data["l"],
                    c=bar_data["c"],
                    v=bar_data.get("v", 0),
                    contract_id=contract_id,
                    timeframe_unit=unit,
                    timeframe_value=unit_number
                ))
            except (KeyError, ValueError) as e:
                logger.error(f"Error processing bar data: {str(e)}")
                logger.debug(f"Bar data: {bar_data}")
                continue

        bars.sort(key=lambda b: b.t)
        return bars

    async def connect_market_hub(self):
        """
        Connect to the ProjectX Market Hub for real-time quotes.

        Raises:
            WebSocketConnectionError: If connection fails
        """
        try:
            await self._ensure_auth()

            separator = "&" if "?" in self.market_hub_url else "?"
            url_with_token = f"{self.market_hub_url}{separator}access_token={self.session_token}"

            logger.info(f"Connecting to Market Hub URL: {self.market_hub_url}")

            self.market_hub_connection = HubConnectionBuilder() \
                .with_url(
                    url_with_token,
                    options={
                        "access_token_factory": lambda: self.session_token,
                        "skip_negotiation": True
                    }
                ) \
                .with_automatic_reconnect({
                    "type": "interval",
                    "keep_alive_interval": 10,
                    "reconnect_interval": 5,
                    "max_attempts": 5
                }) \
                .build()

            self.market_hub_connection.on("GatewayQuote", self._handle_quote_event)

            loop = asyncio.get_running_loop()
            connection_future = loop.create_future()

            # signalrcore invokes these from its own thread
            def on_connect():
                loop.call_soon_threadsafe(
                    lambda: connection_future.done() or connection_future.set_result(True)
                )

            def on_error(error):
                loop.call_soon_threadsafe(
                    lambda: connection_future.done()
                    or connection_future.set_exception(WebSocketConnectionError(str(error)))
                )

            self.market_hub_connection.on_open(on_connect)
            self.market_hub_connection.on_error(on_error)
            self.market_hub_connection.start()

            try:
                await asyncio.wait_for(connection_future, timeout=30.0)
            except asyncio.TimeoutError:
                raise WebSocketConnectionError("Connection timeout")

            logger.info("Connected to ProjectX Market Hub")
            return self.market_hub_connection

        except (ApiError, WebSocketConnectionError) as e:
            logger.error(f"Failed to connect to Market Hub: {str(e)}")
            await self.disconnect_market_hub()
            raise WebSocketConnectionError(f"Failed to connect to Market Hub: {str(e)}") from e

    async def disconnect_market_hub(self):
        """Disconnect from the ProjectX Market Hub."""
        if self.market_hub_connection is not None:
            try:
                self.market_hub_connection.stop()
            except Exception as e:
                logger.error(f"Error disconnecting from Market Hub: {str(e)}")
            finally:
                self.market_hub_connection = None
                logger.info("Disconnected from ProjectX Market Hub")

    async def subscribe_contract_quotes(self, contract_id: str):
        """
        Subscribe to quotes for a specific contract.

        Raises:
            WebSocketConnectionError: If not connected to the Market Hub
        """
        if self.market_hub_connection is None:
            raise WebSocketConnectionError("Not connected to Market Hub")

        try:
            # The signalrcore library's send method is not async
            self.market_hub_connection.send("SubscribeContractQuotes", [contract_id])
            logger.info(f"Subscribed to quotes for contract: {contract_id}")
        except Exception as e:
            logger.error(f"Failed to subscribe to quotes: {str(e)}")
            raise WebSocketConnectionError(f"Failed to subscribe to quotes: {str(e)}") from e

    def register_quote_callback(self, callback: Callable[[Quote], None]):
        """
        Register a callback for quote events.

        Callbacks run on the SignalR thread.
        """
        self.quote_callbacks.append(callback)

    def _handle_quote_event(self, args: List[Any]):
        """
        Handle a quote event from the Market Hub.
        Example args: ['CON.F.US.MES.M25', {'bestBid': 5300.25, 'bestAsk': 5300.5, ...}]
        """
        if not isinstance(args, list) or len(args) < 2 or not isinstance(args[1], dict):
            logger.warning(f"Received malformed quote event args: {args}")
            return

        contract_id, quote_data = args[0], args[1]
        quote = self.parse_quote(contract_id, quote_data)
        if quote is None:
            return

        for callback in self.quote_callbacks:
            try:
                callback(quote)
            except Exception as e:
                logger.error(f"Error in quote callback: {str(e)}")

    def parse_quote(self, contract_id: str, quote_data: Dict[str, Any]) -> Optional[Quote]:
        """Merge a (possibly partial) quote message into the last known bid/ask."""
        last = self._last_quotes.setdefault(contract_id, {})
        for side, key in (("bid", "bestBid"), ("ask", "bestAsk")):
            if quote_data.get(key) is not None:
                last[side] = Decimal(str(quote_data[key]))

        if "bid" not in last or "ask" not in last:
            logger.debug(f"Incomplete quote for {contract_id}: {quote_data}")
            return None

        timestamp = quote_data.get("lastUpdated") or quote_data.get("timestamp")
        try:
            return Quote(
                contract_id=contract_id,
                bid=last["bid"],
                ask=last["ask"],
                timestamp=ensure_utc(timestamp) if timestamp else datetime.now(timezone.utc),
            )
        except ValueError as e:
            logger.warning(f"Discarding quote for {contract_id}: {e}")
            return None
