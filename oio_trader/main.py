"""
Main entry point for the OIO trading system.

This module wires the ProjectX market data feed, the paper broker, the cycle
state machine and the event dispatcher together and runs them on one event
loop.
"""

import asyncio
import logging
from typing import List, Optional

import uvicorn

from oio_trader.api.server import create_app
from oio_trader.coordination.event_dispatcher import BarPoller, EventDispatcher
from oio_trader.core.config import Config
from oio_trader.core.exceptions import ApiError, WebSocketConnectionError
from oio_trader.data.ingestion.gateway_client import GatewayClient
from oio_trader.execution.paper_broker import PaperBroker
from oio_trader.services.chart_annotator import ChartAnnotator
from oio_trader.strategy.cycle import Cycle
from oio_trader.strategy.cycle_state_machine import CycleStateMachine

logger = logging.getLogger(__name__)


class TradingApp:
    """
    Main trading application that orchestrates all components.
    """

    def __init__(self, config: Config):
        """
        Initialize the trading application.

        Args:
            config: Loaded configuration; strategy and execution sections are
                validated here and raise ConfigurationError when invalid.
        """
        self.config = config
        self.strategy_settings = config.get_strategy_settings()
        self.execution_settings = config.get_execution_settings()

        self.gateway_client: Optional[GatewayClient] = None
        self.broker: Optional[PaperBroker] = None
        self.annotator: Optional[ChartAnnotator] = None
        self.state_machine: Optional[CycleStateMachine] = None
        self.dispatcher: Optional[EventDispatcher] = None
        self.bar_poller: Optional[BarPoller] = None
        self._tasks: List[asyncio.Task] = []

    def setup(self):
        """Set up the application components."""
        s = self.strategy_settings
        logger.info(
            f"Setting up OIO trader for {s.contract_id} {s.timeframe}: qty={s.quantity} "
            f"tp={s.take_profit_ticks} ticks, tag={s.order_tag}"
        )

        self.gateway_client = GatewayClient(self.config)
        self.broker = PaperBroker.from_settings(s, self.execution_settings)
        self.annotator = ChartAnnotator()
        self.state_machine = CycleStateMachine(
            self.broker, s, annotator=self.annotator,
            bar_lookback=max(self.execution_settings.bar_history, 3),
        )
        self.state_machine.register_cycle_closed_callback(self.on_cycle_closed)

        self.dispatcher = EventDispatcher(self.state_machine, self.broker)
        self.bar_poller = BarPoller(
            client=self.gateway_client,
            broker=self.broker,
            dispatcher=self.dispatcher,
            contract_id=s.contract_id,
            timeframe=s.timeframe,
            history=self.execution_settings.bar_history,
            interval_seconds=self.execution_settings.poll_interval_seconds,
        )
        self.gateway_client.register_quote_callback(self.dispatcher.on_quote)

    async def bootstrap(self):
        """
        Authenticate, load recent history and subscribe to quotes.

        History loaded here is not signalled, so the first detection pass
        happens on the first bar that closes after startup.
        """
        await self.gateway_client.login()
        loaded = await self.bar_poller.poll_once(signal=False)
        if self.bar_poller.last_bar_time is not None:
            self.state_machine.detector.last_bar_time = self.bar_poller.last_bar_time
        logger.info(f"Loaded {loaded} historical bars")

        await self.gateway_client.connect_market_hub()
        await self.gateway_client.subscribe_contract_quotes(self.strategy_settings.contract_id)

    def on_cycle_closed(self, cycle: Cycle):
        closed = self.broker.pop_closed_positions(f"OIO {cycle.id} ")
        pnl = sum(p.realized_pnl for p in closed)
        logger.info(f"Cycle {cycle.id} closed after phase {cycle.phase.value}: {len(closed)} position(s), P&L {pnl}")

    async def run(self):
        """Run the trading application until cancelled."""
        self.setup()
        self.dispatcher.bind_loop(asyncio.get_running_loop())

        try:
            await self.bootstrap()
        except (ApiError, WebSocketConnectionError) as e:
            logger.error(f"Startup failed: {str(e)}")
            await self.gateway_client.close()
            raise

        self._tasks = [
            asyncio.create_task(self.dispatcher.run(), name="dispatcher"),
            asyncio.create_task(self.bar_poller.run(), name="bar-poller"),
        ]

        api_config = self.config.get_status_api_config()
        if api_config.get("enabled", False):
            app = create_app(self.state_machine, self.annotator)
            server = uvicorn.Server(uvicorn.Config(
                app,
                host=api_config.get("host", "127.0.0.1"),
                port=int(api_config.get("port", 8000)),
                log_level="warning",
            ))
            self._tasks.append(asyncio.create_task(server.serve(), name="status-api"))

        logger.info("OIO trader running")
        try:
            await asyncio.gather(*self._tasks)
        finally:
            await self.shutdown()

    async def shutdown(self):
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        if self.gateway_client:
            await self.gateway_client.close()
        logger.info("OIO trader stopped")
