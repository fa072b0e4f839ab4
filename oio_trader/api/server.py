"""
Read-only status API for the OIO trader.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from fastapi import FastAPI
from pydantic import BaseModel

from oio_trader.services.chart_annotator import ChartAnnotator, Rectangle
from oio_trader.strategy.cycle import CyclePhase
from oio_trader.strategy.cycle_state_machine import CycleStateMachine

logger = logging.getLogger(__name__)


class CycleStatus(BaseModel):
    id: int
    is_active: bool
    phase: CyclePhase
    entry_high: Optional[Decimal] = None
    entry_low: Optional[Decimal] = None
    midpoint: Optional[Decimal] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    initial_buy_ticket: Optional[str] = None
    initial_sell_ticket: Optional[str] = None
    first_filled_ticket: Optional[str] = None
    first_filled_direction: Optional[str] = None
    chase_ticket: Optional[str] = None
    take_profits_adjusted: bool = False


def _ticket(ref) -> Optional[str]:
    return ref.ticket if ref is not None else None


def create_app(state_machine: CycleStateMachine, annotator: ChartAnnotator) -> FastAPI:
    """Build the API around the live state machine and annotator."""
    app = FastAPI(title="OIO Trader Status API")

    @app.get("/")
    def read_root():
        return {"status": "ok", "phase": state_machine.phase.value}

    @app.get("/api/cycle", response_model=CycleStatus)
    def get_cycle():
        cycle = state_machine.cycle
        return CycleStatus(
            id=cycle.id,
            is_active=cycle.is_active,
            phase=cycle.phase,
            entry_high=cycle.entry_high,
            entry_low=cycle.entry_low,
            midpoint=cycle.midpoint,
            start_time=cycle.start_time,
            end_time=cycle.end_time,
            initial_buy_ticket=_ticket(cycle.initial_buy_ref),
            initial_sell_ticket=_ticket(cycle.initial_sell_ref),
            first_filled_ticket=_ticket(cycle.first_filled_ref),
            first_filled_direction=cycle.first_filled_direction.value if cycle.first_filled_direction else None,
            chase_ticket=_ticket(cycle.chase_ref),
            take_profits_adjusted=cycle.take_profits_adjusted,
        )

    @app.get("/api/annotations", response_model=List[Rectangle])
    def get_annotations():
        return annotator.rectangles()

    return app
