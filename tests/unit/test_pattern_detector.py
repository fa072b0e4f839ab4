"""
Unit tests for OIO pattern detection.
"""

import os
import sys
import unittest
from datetime import datetime, timezone, timedelta
from decimal import Decimal

# Add project root to path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..', '..')))

from oio_trader.data.models import Bar
from oio_trader.strategy.pattern_detector import PatternDetector, detect

T0 = datetime(2024, 5, 6, 13, 30, tzinfo=timezone.utc)


def make_bars(ranges, start=T0, minutes=5):
    bars = []
    for i, (high, low) in enumerate(ranges):
        bars.append(Bar(
            t=start + timedelta(minutes=minutes * i),
            o=low, h=high, l=low, c=high,
            contract_id="CON.F.US.MES.M25",
            timeframe_unit=2,
            timeframe_value=minutes,
        ))
    return bars


class TestDetect(unittest.TestCase):

    def test_basic_pattern(self):
        bars = make_bars([(10, 8), (9, 8.5), (10, 8)])
        pattern = detect(bars, digits=5)

        self.assertIsNotNone(pattern)
        self.assertEqual(pattern.high, Decimal("10.00000"))
        self.assertEqual(pattern.low, Decimal("8.00000"))
        self.assertEqual(pattern.midpoint, Decimal("9.00000"))
        self.assertEqual(pattern.start_time, bars[0].t)
        self.assertEqual(pattern.end_time, bars[2].t + timedelta(minutes=5))
        self.assertEqual(pattern.id, int(bars[2].t.timestamp()))

    def test_range_uses_extremes_of_outer_bars(self):
        pattern = detect(make_bars([(10.5, 8), (9, 8.5), (10, 7.5)]), digits=2)

        self.assertEqual(pattern.high, Decimal("10.50"))
        self.assertEqual(pattern.low, Decimal("7.50"))
        self.assertEqual(pattern.midpoint, Decimal("9.00"))

    def test_equal_extremes_qualify(self):
        pattern = detect(make_bars([(9, 8.5), (9, 8.5), (9, 8.5)]), digits=5)

        self.assertIsNotNone(pattern)
        self.assertEqual(pattern.midpoint, Decimal("8.75000"))

    def test_midpoint_rounds_half_up(self):
        pattern = detect(make_bars([(10.001, 8), (9, 8.5), (10, 8)]), digits=3)
        self.assertEqual(pattern.midpoint, Decimal("9.001"))  # 9.0005 -> 9.001

    def test_non_patterns(self):
        # middle bar pokes above the first bar
        self.assertIsNone(detect(make_bars([(10, 8), (10.5, 8.5), (11, 8)]), digits=5))
        # middle bar pokes below the third bar
        self.assertIsNone(detect(make_bars([(10, 8), (9, 7.9), (10, 8)]), digits=5))
        # third bar is inside the middle bar
        self.assertIsNone(detect(make_bars([(10, 8), (9, 8.5), (8.9, 8.6)]), digits=5))

    def test_too_few_bars(self):
        self.assertIsNone(detect(make_bars([(10, 8), (9, 8.5)]), digits=5))
        self.assertIsNone(detect([], digits=5))

    def test_only_last_three_bars_count(self):
        bars = make_bars([(20, 1), (10, 8), (9, 8.5), (10, 8)])
        pattern = detect(bars, digits=5)

        self.assertEqual(pattern.high, Decimal("10.00000"))
        self.assertEqual(pattern.start_time, bars[1].t)


class TestPatternDetector(unittest.TestCase):

    def test_evaluates_each_bar_once(self):
        detector = PatternDetector(digits=5)
        bars = make_bars([(10, 8), (9, 8.5), (10, 8)])

        first = detector.process(bars)
        self.assertIsNotNone(first)
        self.assertEqual(detector.last_bar_time, bars[-1].t)

        # same youngest bar again: no re-evaluation
        self.assertIsNone(detector.process(bars))

    def test_new_bar_is_evaluated(self):
        detector = PatternDetector(digits=5)
        bars = make_bars([(10, 8), (9, 8.5), (10, 8), (9.5, 8.2), (10, 8)])

        self.assertIsNotNone(detector.process(bars[:3]))
        self.assertIsNone(detector.process(bars[1:4]))  # 9/8.5 - 10/8 - 9.5/8.2 is no pattern
        pattern = detector.process(bars[2:5])
        self.assertIsNotNone(pattern)
        self.assertEqual(pattern.id, int(bars[4].t.timestamp()))

    def test_primed_history_is_not_signalled(self):
        detector = PatternDetector(digits=5)
        bars = make_bars([(10, 8), (9, 8.5), (10, 8)])
        detector.last_bar_time = bars[-1].t

        self.assertIsNone(detector.process(bars))

    def test_empty_input(self):
        detector = PatternDetector(digits=5)
        self.assertIsNone(detector.process([]))
        self.assertIsNone(detector.last_bar_time)


if __name__ == "__main__":
    unittest.main()
