"""
Tests for protection levels and their attachment to venue positions.
"""

import pytest

from conftest import SYMBOL, Harness, flat_candles, make_instrument, run
from liqtrader.client_interface import VenuePosition
from liqtrader.models import Position, Side
from liqtrader.protection import ProtectionPlan


class TestLevels:
    def test_trailing_distance_needs_atr(self, harness):
        assert harness.protection.trailing_distance(SYMBOL, None) is None
        assert harness.protection.trailing_distance(SYMBOL, 2.0) == 3.0
        # Below one tick rounds up to the tick
        assert harness.protection.trailing_distance(SYMBOL, 0.001) == 0.01

    def test_activation_clears_fees(self, harness):
        p = harness.protection
        assert p.trailing_activation(SYMBOL, Side.BUY, 100.0, 3.0) == pytest.approx(103.15)
        assert p.trailing_activation(SYMBOL, Side.SELL, 100.0, 3.0) == pytest.approx(96.85)

    def test_take_profit_from_atr(self, harness):
        tp = harness.protection.take_profit(SYMBOL, Side.BUY, 100.0, 0.5, 50.0, atr=2.0)
        assert tp == 103.0

    def test_take_profit_floor(self, harness):
        # 0.3% would be 100.3; 1% of 50 USD over 0.5 qty needs a 1.0 move
        tp = harness.protection.take_profit(SYMBOL, Side.SELL, 100.0, 0.5, 50.0, atr=None)
        assert tp == 99.0

    def test_plan_prefers_trailing(self, harness):
        plan = harness.protection.plan(SYMBOL, Side.BUY, 100.0, 0.5, 50.0, 90.0, atr=2.0)

        assert plan.trailing_distance == 3.0
        assert plan.take_profit is None
        assert plan.tp_method == "atr"

        plan = harness.protection.plan(SYMBOL, Side.BUY, 100.0, 0.5, 50.0, 90.0, atr=None)
        assert plan.trailing_distance is None
        assert plan.take_profit == 101.0
        assert plan.tp_method == "pct"


class TestAttach:
    def _venue_position(self, harness):
        harness.venue.positions[SYMBOL] = VenuePosition(SYMBOL, Side.BUY, 0.5, 100.0)

    def test_both_calls_confirmed(self, harness):
        self._venue_position(harness)
        plan = ProtectionPlan(stop_loss=90.0, trailing_distance=3.0, trailing_activation=103.15)

        result = run(harness.protection.attach(SYMBOL, plan))

        assert result.stop_loss == 90.0
        assert result.trailing_distance == 3.0
        assert len(harness.venue.protection_calls) == 2

    def test_trailing_failure_is_independent(self, harness):
        self._venue_position(harness)
        harness.venue.fail_trailing = True
        plan = ProtectionPlan(stop_loss=90.0, trailing_distance=3.0, trailing_activation=103.15)

        result = run(harness.protection.attach(SYMBOL, plan))

        assert result.confirmed
        assert result.stop_loss == 90.0
        assert result.trailing_distance is None

    def test_stop_failure_still_tries_trailing(self, harness):
        self._venue_position(harness)
        harness.venue.fail_sl = True
        plan = ProtectionPlan(stop_loss=90.0, trailing_distance=3.0, trailing_activation=103.15)

        result = run(harness.protection.attach(SYMBOL, plan))

        assert result.confirmed
        assert result.stop_loss is None
        assert result.trailing_distance == 3.0

    def test_ensure_uses_atr_stop(self, harness):
        self._venue_position(harness)
        harness.venue.klines[SYMBOL] = flat_candles(15, high=101.0, low=99.0, close=100.0)

        result = run(harness.protection.ensure(SYMBOL, Side.BUY, 100.0, 0.5))

        assert result.stop_loss == 98.0
        assert result.trailing_distance == 3.0

    def test_ensure_returns_none_when_nothing_sticks(self, harness):
        self._venue_position(harness)
        harness.venue.fail_sl = True

        assert run(harness.protection.ensure(SYMBOL, Side.BUY, 100.0, 0.5)) is None

    def test_restore_only_what_was_lost(self, harness):
        self._venue_position(harness)
        position = Position(SYMBOL, Side.BUY, 100.0, 0.5, stop_loss_price=90.0,
                            trailing_distance=3.0, trailing_activation_price=103.15)

        run(harness.protection.restore(position, restore_sl=False, restore_trailing=True))

        assert harness.venue.protection_calls == [dict(
            symbol=SYMBOL, stop_loss=None, take_profit=None, trailing_stop=3.0,
            active_price=103.15, tp_limit=False,
        )]

    def test_tighten_all(self, harness):
        positions = [
            Position(SYMBOL, Side.BUY, 100.0, 0.5, stop_loss_price=90.0, total_budget_notional=500.0),
        ]

        updated = run(harness.protection.tighten_all(positions, open_count=2))

        assert updated == 1
        assert positions[0].stop_loss_price == 95.0

    def test_tighten_all_skips_symbols_in_flight(self, venue):
        venue.instruments = [make_instrument(), make_instrument("ALTUSDT")]
        h = Harness(venue)
        positions = [
            Position(SYMBOL, Side.BUY, 100.0, 0.5, stop_loss_price=90.0, total_budget_notional=500.0),
            Position("ALTUSDT", Side.BUY, 100.0, 0.5, stop_loss_price=90.0, total_budget_notional=500.0),
        ]
        h.locks.try_acquire("ALTUSDT")

        updated = run(h.protection.tighten_all(positions, open_count=2, locks=h.locks))

        assert updated == 1
        assert positions[0].stop_loss_price == 95.0
        assert positions[1].stop_loss_price == 90.0
        assert [c["symbol"] for c in venue.protection_calls] == [SYMBOL]
