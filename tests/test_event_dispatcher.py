"""
Tests for the event dispatcher and the bar poller.
"""

import os
import sys
import asyncio
import unittest
from datetime import datetime, timezone, timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, Mock

# Add project root to path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from oio_trader.coordination.event_dispatcher import BarPoller, EventDispatcher, EventKind
from oio_trader.core.config import StrategySettings
from oio_trader.data.ingestion.gateway_client import GatewayClient
from oio_trader.data.models import Bar, Quote
from oio_trader.execution.broker_gateway import TradeEvent, TradeEventKind
from oio_trader.execution.paper_broker import PaperBroker
from oio_trader.strategy.cycle import CyclePhase
from oio_trader.strategy.cycle_state_machine import CycleStateMachine

CONTRACT = "CON.F.US.MES.M25"
T0 = datetime(2024, 5, 6, 13, 30, tzinfo=timezone.utc)


def make_bar(index, high=10, low=8):
    return Bar(
        t=T0 + timedelta(minutes=5 * index), o=low, h=high, l=low, c=high,
        contract_id=CONTRACT, timeframe_unit=2, timeframe_value=5,
    )


def quote(bid, ask):
    return Quote(contract_id=CONTRACT, bid=Decimal(str(bid)), ask=Decimal(str(ask)))


class TestEventDispatcher(unittest.IsolatedAsyncioTestCase):
    """Test cases for event dispatch with a mocked state machine."""

    async def asyncSetUp(self):
        self.calls = []
        self.state_machine = AsyncMock(spec=CycleStateMachine)
        self.state_machine.on_bar_closed.side_effect = lambda bar_time=None: self.calls.append("bar")
        self.state_machine.on_trade_event.side_effect = lambda event: self.calls.append(f"trade:{event.ticket}")

        self.broker = Mock(spec=PaperBroker)
        self.broker.update_quote.side_effect = lambda q: self.calls.append(f"quote:{q.bid}")

        self.dispatcher = EventDispatcher(self.state_machine, self.broker)

    async def test_registers_for_trade_events(self):
        self.broker.register_trade_event_callback.assert_called_once_with(self.dispatcher.on_trade_event)

    async def test_events_are_handled_in_arrival_order(self):
        self.dispatcher.submit(EventKind.QUOTE, quote(9, 9.25))
        self.dispatcher.submit(EventKind.BAR_CLOSED, T0)
        self.dispatcher.on_trade_event(TradeEvent(kind=TradeEventKind.ORDER_FILLED, ticket="abc"))
        self.dispatcher.submit(EventKind.QUOTE, quote(9.5, 9.75))

        await self.dispatcher.drain()

        self.assertEqual(self.calls, ["quote:9", "bar", "trade:abc", "quote:9.5"])
        self.assertEqual(self.dispatcher.processed, 4)
        self.assertTrue(self.dispatcher.queue.empty())

    async def test_handler_error_does_not_stop_dispatch(self):
        self.state_machine.on_bar_closed.side_effect = RuntimeError("boom")
        self.dispatcher.submit(EventKind.BAR_CLOSED)
        self.dispatcher.submit(EventKind.QUOTE, quote(9, 9.25))

        with self.assertLogs("oio_trader.coordination.event_dispatcher", level="ERROR"):
            await self.dispatcher.drain()

        self.assertEqual(self.calls, ["quote:9"])
        self.assertEqual(self.dispatcher.processed, 2)

    async def test_threadsafe_submission(self):
        with self.assertLogs("oio_trader.coordination.event_dispatcher", level="WARNING"):
            self.dispatcher.on_quote(quote(9, 9.25))
        self.assertTrue(self.dispatcher.queue.empty())

        self.dispatcher.bind_loop(asyncio.get_running_loop())
        await asyncio.to_thread(self.dispatcher.on_quote, quote(9, 9.25))
        await asyncio.sleep(0)

        self.assertEqual(self.dispatcher.queue.qsize(), 1)

    async def test_run_until_stopped(self):
        task = asyncio.create_task(self.dispatcher.run())
        self.dispatcher.submit(EventKind.BAR_CLOSED)
        self.dispatcher.submit(EventKind.QUOTE, quote(9, 9.25))
        self.dispatcher.stop()

        await asyncio.wait_for(task, timeout=1.0)

        self.assertEqual(self.calls, ["bar", "quote:9"])
        self.assertEqual(self.dispatcher.processed, 2)


class TestDispatchEndToEnd(unittest.IsolatedAsyncioTestCase):
    """Bars, quotes and broker events flowing through one queue into a real state machine."""

    async def asyncSetUp(self):
        settings = StrategySettings(
            contract_id=CONTRACT, order_tag="OIO-MES", digits=2,
            tick_size=Decimal("0.25"), take_profit_ticks=4,
        )
        self.broker = PaperBroker(CONTRACT)
        self.state_machine = CycleStateMachine(self.broker, settings)
        self.dispatcher = EventDispatcher(self.state_machine, self.broker)

    async def test_pattern_fill_and_chase(self):
        for i, (high, low) in enumerate([(10, 8), (9, 8.5), (10, 8)]):
            self.broker.add_bar(make_bar(i, high, low))
        self.dispatcher.submit(EventKind.QUOTE, quote(9, 9.25))
        self.dispatcher.submit(EventKind.BAR_CLOSED)
        await self.dispatcher.drain()

        self.assertEqual(self.state_machine.phase, CyclePhase.PENDING_ENTRY)

        # the fill is reported by the broker while the quote is handled and queued behind it
        self.dispatcher.submit(EventKind.QUOTE, quote(10, 10.25))
        await self.dispatcher.drain()

        self.assertEqual(self.state_machine.phase, CyclePhase.CHASE_PENDING)
        self.assertTrue(self.dispatcher.queue.empty())

    async def test_pattern_inside_a_multi_bar_poll(self):
        client = AsyncMock(spec=GatewayClient)
        bars = [make_bar(i, high, low) for i, (high, low) in enumerate([(10, 8), (9, 8.5), (10, 8), (30, 29)])]
        client.retrieve_bars.return_value = bars
        poller = BarPoller(client, self.broker, self.dispatcher, CONTRACT, "5m")

        self.dispatcher.submit(EventKind.QUOTE, quote(9, 9.25))
        self.assertEqual(await poller.poll_once(), 4)
        await self.dispatcher.drain()

        # bars 1-3 form the pattern even though bar 4 arrived in the same poll
        cycle = self.state_machine.cycle
        self.assertTrue(cycle.is_active)
        self.assertEqual(cycle.id, int(bars[2].t.timestamp()))
        self.assertEqual(self.state_machine.detector.last_bar_time, bars[3].t)


class TestBarPoller(unittest.IsolatedAsyncioTestCase):
    """Test cases for the bar poller."""

    async def asyncSetUp(self):
        self.client = AsyncMock(spec=GatewayClient)
        self.broker = PaperBroker(CONTRACT)
        self.dispatcher = EventDispatcher(AsyncMock(spec=CycleStateMachine), self.broker)
        self.poller = BarPoller(
            client=self.client,
            broker=self.broker,
            dispatcher=self.dispatcher,
            contract_id=CONTRACT,
            timeframe="5m",
            history=10,
        )

    async def test_priming_does_not_signal(self):
        self.client.retrieve_bars.return_value = [make_bar(i) for i in range(3)]

        self.assertEqual(await self.poller.poll_once(signal=False), 3)
        self.assertEqual(self.poller.last_bar_time, make_bar(2).t)
        self.assertTrue(self.dispatcher.queue.empty())
        self.assertEqual(len(await self.broker.recent_closed_bars(10)), 3)

        self.client.retrieve_bars.assert_awaited_with(
            contract_id=CONTRACT, timeframe="5m", limit=10, include_partial_bar=False
        )

    async def test_new_bar_signals_once(self):
        self.client.retrieve_bars.return_value = [make_bar(i) for i in range(3)]
        await self.poller.poll_once(signal=False)

        self.client.retrieve_bars.return_value = [make_bar(i) for i in range(4)]
        self.assertEqual(await self.poller.poll_once(), 1)
        self.assertEqual(self.dispatcher.queue.qsize(), 1)

        event = self.dispatcher.queue.get_nowait()
        self.assertEqual(event.kind, EventKind.BAR_CLOSED)
        self.assertEqual(event.payload, make_bar(3).t)

        # nothing new on the next poll
        self.assertEqual(await self.poller.poll_once(), 0)
        self.assertTrue(self.dispatcher.queue.empty())

    async def test_every_new_bar_is_signalled(self):
        bars = [make_bar(i) for i in range(4)]
        self.client.retrieve_bars.return_value = bars

        self.assertEqual(await self.poller.poll_once(), 4)

        payloads = []
        while not self.dispatcher.queue.empty():
            event = self.dispatcher.queue.get_nowait()
            self.assertEqual(event.kind, EventKind.BAR_CLOSED)
            payloads.append(event.payload)
        self.assertEqual(payloads, [bar.t for bar in bars])

    async def test_empty_response(self):
        self.client.retrieve_bars.return_value = []
        self.assertEqual(await self.poller.poll_once(), 0)
        self.assertIsNone(self.poller.last_bar_time)


if __name__ == "__main__":
    unittest.main()
