"""
Unit tests for ProjectX message parsing in the gateway client.
"""

import os
import sys
import unittest
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import Mock

# Add project root to path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..', '..')))

from oio_trader.core.config import Config
from oio_trader.data.ingestion.gateway_client import GatewayClient

CONTRACT = "CON.F.US.MES.M25"


class TestQuoteParsing(unittest.TestCase):

    def setUp(self):
        config = Mock(spec=Config)
        config.get_api_url.return_value = "https://gateway.example"
        config.get_api_token.return_value = "x" * 40
        config.get_username.return_value = "trader"
        config.get_rtc_market_url.return_value = "wss://rtc.example/hubs/market"
        self.client = GatewayClient(config)

    def test_full_quote(self):
        quote = self.client.parse_quote(CONTRACT, {
            "bestBid": 5300.25,
            "bestAsk": 5300.5,
            "lastUpdated": "2024-05-06T13:35:01Z",
        })

        self.assertEqual(quote.contract_id, CONTRACT)
        self.assertEqual(quote.bid, Decimal("5300.25"))
        self.assertEqual(quote.ask, Decimal("5300.5"))
        self.assertEqual(quote.timestamp, datetime(2024, 5, 6, 13, 35, 1, tzinfo=timezone.utc))

    def test_partial_quotes_are_merged(self):
        self.assertIsNone(self.client.parse_quote(CONTRACT, {"bestBid": 5300.25}))

        quote = self.client.parse_quote(CONTRACT, {"bestAsk": 5300.5})
        self.assertEqual((quote.bid, quote.ask), (Decimal("5300.25"), Decimal("5300.5")))

        quote = self.client.parse_quote(CONTRACT, {"bestBid": 5300.5})
        self.assertEqual((quote.bid, quote.ask), (Decimal("5300.5"), Decimal("5300.5")))

    def test_crossed_quote_is_discarded(self):
        self.assertIsNone(self.client.parse_quote(CONTRACT, {"bestBid": 5301, "bestAsk": 5300}))

    def test_quote_event_reaches_callbacks(self):
        received = []
        self.client.register_quote_callback(received.append)
        self.client.register_quote_callback(Mock(side_effect=RuntimeError("boom")))

        self.client._handle_quote_event([CONTRACT, {"bestBid": 1.5, "bestAsk": 1.75}])
        self.client._handle_quote_event(["malformed"])

        self.assertEqual(len(received), 1)
        self.assertEqual(received[0].ask, Decimal("1.75"))


if __name__ == "__main__":
    unittest.main()
