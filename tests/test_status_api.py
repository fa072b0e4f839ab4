"""
Tests for the read-only status API.
"""

import os
import sys
import unittest
from datetime import datetime, timezone
from decimal import Decimal

from fastapi.testclient import TestClient

# Add project root to path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from oio_trader.api.server import create_app
from oio_trader.core.config import StrategySettings
from oio_trader.execution.broker_gateway import Direction, TrackedRef
from oio_trader.execution.paper_broker import PaperBroker
from oio_trader.services.chart_annotator import ChartAnnotator
from oio_trader.strategy.cycle import Cycle, CyclePhase
from oio_trader.strategy.cycle_state_machine import CycleStateMachine

CONTRACT = "CON.F.US.MES.M25"


class TestStatusApi(unittest.TestCase):

    def setUp(self):
        settings = StrategySettings(contract_id=CONTRACT, order_tag="OIO-MES", digits=2, tick_size=Decimal("0.25"))
        self.annotator = ChartAnnotator()
        self.state_machine = CycleStateMachine(PaperBroker(CONTRACT), settings, annotator=self.annotator)
        self.client = TestClient(create_app(self.state_machine, self.annotator))

    def test_idle(self):
        response = self.client.get("/")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"status": "ok", "phase": "idle"})

        cycle = self.client.get("/api/cycle").json()
        self.assertEqual(cycle["id"], 0)
        self.assertFalse(cycle["is_active"])
        self.assertIsNone(cycle["initial_buy_ticket"])

        self.assertEqual(self.client.get("/api/annotations").json(), [])

    def test_active_cycle(self):
        start = datetime(2024, 5, 6, 13, 30, tzinfo=timezone.utc)
        end = datetime(2024, 5, 6, 13, 45, tzinfo=timezone.utc)
        self.state_machine.cycle = Cycle(
            id=1715003100,
            is_active=True,
            phase=CyclePhase.CHASE_PENDING,
            entry_high=Decimal("10.00"),
            entry_low=Decimal("8.00"),
            midpoint=Decimal("9.00"),
            start_time=start,
            end_time=end,
            initial_buy_ref=TrackedRef(ticket="b1", tag="OIO-MES"),
            first_filled_ref=TrackedRef(ticket="b1", tag="OIO-MES"),
            first_filled_direction=Direction.LONG,
            chase_ref=TrackedRef(ticket="c1", tag="OIO-MES"),
        )
        self.annotator.draw(1715003100, start, end, Decimal("10.00"), Decimal("8.00"))

        self.assertEqual(self.client.get("/").json()["phase"], "chase_pending")

        cycle = self.client.get("/api/cycle").json()
        self.assertEqual(cycle["id"], 1715003100)
        self.assertEqual(cycle["first_filled_direction"], "long")
        self.assertEqual(cycle["initial_buy_ticket"], "b1")
        self.assertIsNone(cycle["initial_sell_ticket"])
        self.assertEqual(cycle["chase_ticket"], "c1")
        self.assertEqual(Decimal(cycle["midpoint"]), Decimal("9.00"))

        annotations = self.client.get("/api/annotations").json()
        self.assertEqual(len(annotations), 1)
        self.assertEqual(annotations[0]["id"], 1715003100)


if __name__ == "__main__":
    unittest.main()
