"""
Single-consumer event dispatch.

Bar closes, quotes and broker trade events all land on one asyncio queue and
are handled strictly one after another, so the cycle state machine never
sees two handlers interleave.
"""

import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Optional
from pydantic import BaseModel

from oio_trader.core.exceptions import OIOTraderError
from oio_trader.data.ingestion.gateway_client import GatewayClient
from oio_trader.data.models import Quote
from oio_trader.execution.broker_gateway import TradeEvent
from oio_trader.execution.paper_broker import PaperBroker
from oio_trader.strategy.cycle_state_machine import CycleStateMachine

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    BAR_CLOSED = "bar_closed"
    QUOTE = "quote"
    TRADE = "trade"


class Event(BaseModel):
    kind: EventKind
    payload: Any = None


class EventDispatcher:
    """Feeds queued events to the broker and the state machine in arrival order."""

    def __init__(self, state_machine: CycleStateMachine, broker: PaperBroker):
        self.state_machine = state_machine
        self.broker = broker
        self.queue: asyncio.Queue = asyncio.Queue()
        self.processed = 0
        self._loop: Optional[asyncio.AbstractEventLoop] = None

        broker.register_trade_event_callback(self.on_trade_event)

    def bind_loop(self, loop: asyncio.AbstractEventLoop):
        """Event loop that thread-safe producers hand their events to."""
        self._loop = loop

    def submit(self, kind: EventKind, payload: Any = None):
        """Enqueue from the event loop thread."""
        self.queue.put_nowait(Event(kind=kind, payload=payload))

    def submit_threadsafe(self, kind: EventKind, payload: Any = None):
        """Enqueue from a foreign thread (e.g. the SignalR client)."""
        if self._loop is None:
            logger.warning(f"Dropping {kind.value} event: dispatcher not bound to a loop")
            return
        self._loop.call_soon_threadsafe(self.submit, kind, payload)

    def on_trade_event(self, event: TradeEvent):
        self.submit(EventKind.TRADE, event)

    def on_quote(self, quote: Quote):
        self.submit_threadsafe(EventKind.QUOTE, quote)

    async def dispatch(self, event: Event):
        if event.kind == EventKind.QUOTE:
            self.broker.update_quote(event.payload)
        elif event.kind == EventKind.BAR_CLOSED:
            await self.state_machine.on_bar_closed(event.payload)
        elif event.kind == EventKind.TRADE:
            await self.state_machine.on_trade_event(event.payload)

    async def _process(self, event: Event):
        try:
            await self.dispatch(event)
        except Exception as e:
            logger.error(f"Error handling {event.kind.value} event: {str(e)}", exc_info=True)
        finally:
            self.processed += 1
            self.queue.task_done()

    async def drain(self):
        """Handle queued events, including ones enqueued while draining, until the queue is empty."""
        while not self.queue.empty():
            event = self.queue.get_nowait()
            if event is None:
                self.queue.task_done()
                continue
            await self._process(event)

    async def run(self):
        """Consume events until ``stop`` is called."""
        self.bind_loop(asyncio.get_running_loop())
        logger.info("Event dispatcher started")
        while True:
            event = await self.queue.get()
            if event is None:
                self.queue.task_done()
                break
            await self._process(event)
        logger.info(f"Event dispatcher stopped after {self.processed} events")

    def stop(self):
        """Stop after the events already queued have been handled."""
        self.queue.put_nowait(None)


class BarPoller:
    """Polls ProjectX for closed bars and signals each newly closed bar once, oldest first."""

    def __init__(self,
                 client: GatewayClient,
                 broker: PaperBroker,
                 dispatcher: EventDispatcher,
                 contract_id: str,
                 timeframe: str,
                 history: int = 10,
                 interval_seconds: float = 5.0):
        self.client = client
        self.broker = broker
        self.dispatcher = dispatcher
        self.contract_id = contract_id
        self.timeframe = timeframe
        self.history = history
        self.interval_seconds = interval_seconds
        self.last_bar_time: Optional[datetime] = None

    async def poll_once(self, signal: bool = True) -> int:
        """
        Fetch recent closed bars and push the new ones to the broker.

        Args:
            signal: Enqueue one BAR_CLOSED event per new bar; False only primes history

        Returns:
            Number of new bars
        """
        bars = await self.client.retrieve_bars(
            contract_id=self.contract_id,
            timeframe=self.timeframe,
            limit=self.history,
            include_partial_bar=False
        )

        new_bars = 0
        for bar in bars:
            if self.last_bar_time is not None and bar.t <= self.last_bar_time:
                continue
            if self.broker.add_bar(bar):
                new_bars += 1
                if signal:
                    # every closed bar ends its own three-bar window
                    self.dispatcher.submit(EventKind.BAR_CLOSED, bar.t)
            self.last_bar_time = bar.t

        if new_bars:
            logger.debug(f"{new_bars} new {self.timeframe} bar(s) for {self.contract_id}, last at {self.last_bar_time}")
        return new_bars

    async def run(self):
        logger.info(f"Polling {self.contract_id} {self.timeframe} bars every {self.interval_seconds}s")
        while True:
            try:
                await self.poll_once()
            except OIOTraderError as e:
                logger.error(f"Bar poll failed: {str(e)}")
            await asyncio.sleep(self.interval_seconds)
