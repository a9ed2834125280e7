"""
Tests for the Reconciliation Engine: close detection and PnL matching,
adoption, naked-position protection, healing, time exits and backfill.
"""

import time
from unittest.mock import AsyncMock

import pytest

from conftest import SYMBOL, make_instrument, run
from liqtrader.client_interface import ClosedPnlRecord, Execution, OrderBookTop, VenuePosition
from liqtrader.exceptions import TransientIOFailure
from liqtrader.models import ClosedTrade, ExitType, Fees, Position, Side, now_ms


def open_position(**overrides) -> Position:
    fields = dict(
        symbol=SYMBOL, side=Side.BUY, entry_price=100.0, quantity=1.0,
        stop_loss_price=90.0, open_time=now_ms() - 60_000,
        total_budget_notional=500.0, last_entry_price=100.0, entry_order_id="ord-entry",
    )
    fields.update(overrides)
    return Position(**fields)


def venue_position(**overrides) -> VenuePosition:
    fields = dict(symbol=SYMBOL, side=Side.BUY, size=1.0, avg_price=100.0,
                  stop_loss=90.0, mark_price=100.0)
    fields.update(overrides)
    return VenuePosition(**fields)


def settlement(order_id="close-1", created_time=None, closed_pnl=4.2, **overrides) -> ClosedPnlRecord:
    fields = dict(
        symbol=SYMBOL, order_id=order_id, side=Side.SELL, avg_entry_price=100.0,
        avg_exit_price=104.3, qty=1.0, closed_pnl=closed_pnl,
        created_time=created_time if created_time is not None else now_ms(),
    )
    fields.update(overrides)
    return ClosedPnlRecord(**fields)


def tick_and_settle(harness):
    async def scenario():
        report = await harness.reconciler.tick()
        await harness.reconciler.drain_background()
        return report
    return run(scenario())


class TestCloseDetection:
    def test_match_on_third_attempt(self, harness):
        """Venue PnL is taken verbatim and fees are summed from executions."""
        harness.ledger.add(open_position())
        record = settlement()
        harness.venue.closed_pnl_script = [[], [], [record]]
        harness.venue.executions = {
            "ord-entry": [Execution("ord-entry", 0.03, False)],
            "close-1": [Execution("close-1", 0.02, True), Execution("close-1", 0.01, True)],
        }

        report = tick_and_settle(harness)

        assert report.closing == [SYMBOL]
        assert harness.venue.closed_pnl_calls == 3
        trade = harness.pnl.trades[0]
        assert trade.net_pnl == 4.2
        assert trade.fees.total == pytest.approx(0.06)
        assert trade.exit_is_maker is True
        assert trade.entry_is_maker is False
        assert trade.exit_type is ExitType.TP_SL_TRAIL
        assert trade.pnl_resolved
        assert SYMBOL not in harness.ledger
        assert not harness.locks.is_locked(SYMBOL)
        assert "close-1" in harness.pnl.consumed_ids
        assert harness.pnl.reserved_ids == set()
        assert harness.pnl.total_pnl == pytest.approx(4.2)

    def test_relaxed_attempts_accept_records_before_open(self, harness):
        position = open_position()
        harness.ledger.add(position)
        harness.venue.closed_pnl = [settlement(created_time=position.open_time - 5_000)]

        tick_and_settle(harness)

        assert harness.venue.closed_pnl_calls == 4
        assert harness.pnl.trades[0].close_order_id == "close-1"

    def test_consumed_record_not_reused(self, harness):
        harness.ledger.add(open_position())
        harness.pnl.consumed_ids.add("close-1")
        harness.venue.closed_pnl = [settlement()]

        tick_and_settle(harness)

        trade = harness.pnl.trades[0]
        assert trade.pnl_resolved is False
        assert trade.close_order_id is None

    def test_unmatched_close_uses_local_estimate(self, harness):
        harness.ledger.add(open_position(mark_price=105.0))

        tick_and_settle(harness)

        trade = harness.pnl.trades[0]
        assert trade.pnl_resolved is False
        assert trade.net_pnl == pytest.approx(5.0)
        assert trade.exit_price == 105.0
        assert harness.venue.closed_pnl_calls == 5
        assert SYMBOL not in harness.ledger

    def test_grace_period_protects_new_positions(self, harness):
        harness.ledger.add(open_position(open_time=now_ms()))

        report = tick_and_settle(harness)

        assert report.closing == []
        assert SYMBOL in harness.ledger

    def test_locked_symbol_not_closed(self, harness):
        harness.ledger.add(open_position())
        harness.locks.try_acquire(SYMBOL)

        report = tick_and_settle(harness)

        assert report.closing == []
        assert SYMBOL in harness.ledger

    def test_recent_close_deduplicated(self, harness):
        harness.ledger.add(open_position())
        harness.reconciler.recently_closed[SYMBOL] = time.time()

        report = tick_and_settle(harness)

        assert report.closing == []

    def test_snapshot_failure_aborts_tick(self, harness):
        harness.ledger.add(open_position())
        harness.venue.positions_error = True

        report = tick_and_settle(harness)

        assert report.aborted
        assert SYMBOL in harness.ledger
        assert harness.pnl.trades == []


class TestAdoption:
    def test_untracked_position_adopted(self, harness):
        harness.venue.positions[SYMBOL] = venue_position(size=0.5, trailing_stop=3.0)

        report = tick_and_settle(harness)

        assert report.adopted == [SYMBOL]
        position = harness.ledger.get(SYMBOL)
        assert position.adopted
        assert position.dca_level == 0
        assert position.total_budget_notional == pytest.approx(500.0)
        assert position.stop_loss_price == 90.0
        assert position.trailing_activation_price == pytest.approx(103.15)
        assert harness.venue.protection_calls == []

    def test_naked_adopted_position_protected(self, harness):
        harness.venue.positions[SYMBOL] = venue_position(size=0.5, stop_loss=None)

        report = tick_and_settle(harness)

        assert report.protected == [SYMBOL]
        position = harness.ledger.get(SYMBOL)
        assert position.stop_loss_price == 90.0
        assert harness.venue.positions[SYMBOL].stop_loss == 90.0

    def test_locked_symbol_not_adopted(self, harness):
        harness.venue.positions[SYMBOL] = venue_position()
        harness.locks.try_acquire(SYMBOL)

        report = tick_and_settle(harness)

        assert report.adopted == []
        assert SYMBOL not in harness.ledger

    def test_adoption_tightens_existing_stops(self, harness):
        harness.registry.load([make_instrument(), make_instrument("ALTUSDT")])
        harness.ledger.add(open_position())
        harness.venue.positions[SYMBOL] = venue_position()
        harness.venue.positions["ALTUSDT"] = venue_position(symbol="ALTUSDT", size=0.5)

        report = tick_and_settle(harness)

        assert report.adopted == ["ALTUSDT"]
        # Loss budget split two ways: 25 / 5.0 qty = 5 price units
        assert harness.ledger.get(SYMBOL).stop_loss_price == 95.0
        assert harness.ledger.get("ALTUSDT").stop_loss_price == 95.0
        assert harness.venue.positions[SYMBOL].stop_loss == 95.0
        assert harness.reconciler.background.results[-1].succeeded


class TestProtection:
    def test_restored_naked_position_protected_in_tick(self, harness):
        """A persisted entry with no exits is protected by the first tick."""
        harness.ledger.add(open_position(stop_loss_price=None))
        harness.venue.positions[SYMBOL] = venue_position(stop_loss=None)

        report = tick_and_settle(harness)

        assert report.protected == [SYMBOL]
        assert harness.ledger.get(SYMBOL).stop_loss_price == 90.0
        assert harness.venue.positions[SYMBOL].stop_loss == 90.0

    def test_failed_protection_reported(self, harness):
        harness.venue.fail_sl = True
        harness.ledger.add(open_position(stop_loss_price=None))
        harness.venue.positions[SYMBOL] = venue_position(stop_loss=None)

        report = tick_and_settle(harness)

        assert report.still_naked == [SYMBOL]
        assert harness.ledger.get(SYMBOL).stop_loss_price is None

    def test_lost_stop_is_healed(self, harness):
        harness.ledger.add(open_position())
        harness.venue.positions[SYMBOL] = venue_position(stop_loss=None)

        report = tick_and_settle(harness)

        assert report.healing == [SYMBOL]
        assert harness.venue.protection_calls[-1]["stop_loss"] == 90.0
        assert harness.venue.positions[SYMBOL].stop_loss == 90.0
        assert harness.reconciler.status()["healing"] == []

    def test_venue_levels_synced_into_ledger(self, harness):
        harness.ledger.add(open_position(stop_loss_price=None))
        harness.venue.positions[SYMBOL] = venue_position(stop_loss=88.0, mark_price=101.0,
                                                         unrealized_pnl=1.0)

        tick_and_settle(harness)

        position = harness.ledger.get(SYMBOL)
        assert position.stop_loss_price == 88.0
        assert position.mark_price == 101.0
        assert position.unrealized_pnl == 1.0
        assert harness.venue.protection_calls == []

    def test_trailing_only_is_not_naked_by_default(self, harness):
        venue_pos = venue_position(stop_loss=None, trailing_stop=3.0)
        assert not harness.reconciler.is_naked(venue_pos)

        harness.protection_config.naked_requires_all_missing = False
        assert harness.reconciler.is_naked(venue_pos)


class TestTimeExit:
    def test_held_too_long_closed_at_ask(self, harness):
        harness.reconcile_config.max_hold_seconds = 30
        harness.ledger.add(open_position())
        harness.venue.positions[SYMBOL] = venue_position()
        harness.venue.books[SYMBOL] = OrderBookTop(best_bid=99.9, best_ask=100.1)
        harness.venue.closed_pnl = [settlement()]

        report = tick_and_settle(harness)

        assert report.time_exits == [SYMBOL]
        close = harness.venue.closes[0]
        assert close["order_type"] == "Limit"
        assert close["price"] == 100.1
        trade = harness.pnl.trades[0]
        assert trade.exit_type is ExitType.TIME_EXIT
        assert SYMBOL not in harness.ledger
        assert not harness.locks.is_locked(SYMBOL)

    def test_unconfirmed_limit_close_is_cancelled(self, harness):
        harness.reconcile_config.max_hold_seconds = 30
        harness.ledger.add(open_position())
        harness.venue.positions[SYMBOL] = venue_position()
        harness.venue.books[SYMBOL] = OrderBookTop(best_bid=99.9, best_ask=100.1)
        venue = harness.venue
        place_close = venue.close_position
        responses = []

        async def close_then_lose_positions(*args, **kwargs):
            response = await place_close(*args, **kwargs)
            responses.append(response)
            venue.positions_error = True
            return response

        venue.close_position = close_then_lose_positions

        report = tick_and_settle(harness)

        assert report.time_exits == [SYMBOL]
        assert [(c["order_type"], c["price"]) for c in venue.closes] == [("Limit", 100.1)]
        assert venue.cancels == [responses[0].order_id]
        assert SYMBOL in harness.ledger
        assert harness.pnl.trades == []
        assert not harness.locks.is_locked(SYMBOL)
        assert SYMBOL not in harness.reconciler.recently_closed
        assert harness.reconciler.background.results[-1].succeeded

    def test_market_close_failure_keeps_position(self, harness):
        harness.reconcile_config.max_hold_seconds = 30
        harness.reconcile_config.time_exit_order_type = "Market"
        harness.ledger.add(open_position())
        harness.venue.positions[SYMBOL] = venue_position()
        harness.venue.close_position = AsyncMock(side_effect=TransientIOFailure("timeout"))

        report = tick_and_settle(harness)

        assert report.time_exits == [SYMBOL]
        assert SYMBOL in harness.ledger
        assert not harness.locks.is_locked(SYMBOL)
        assert harness.reconciler.background.results[-1].succeeded

    def test_armed_trailing_in_profit_left_alone(self, harness):
        harness.reconcile_config.max_hold_seconds = 30
        harness.ledger.add(open_position(trailing_distance=3.0, trailing_activation_price=103.15))
        harness.venue.positions[SYMBOL] = venue_position(
            trailing_stop=3.0, mark_price=104.0, unrealized_pnl=4.0
        )

        report = tick_and_settle(harness)

        assert report.time_exits == []
        assert harness.venue.closes == []

    def test_disabled_by_default(self, harness):
        assert not harness.reconciler.time_exit_due(open_position(open_time=0))


class TestBackfill:
    def test_consumed_record_skipped(self, harness):
        """A second sweep is a no-op: history length and total are unchanged."""
        harness.pnl.append(ClosedTrade(
            symbol=SYMBOL, side=Side.BUY, entry_price=100.0, exit_price=104.3, quantity=1.0,
            net_pnl=4.2, close_order_id="close-1", closed_at=now_ms() - 3_600_000,
        ))
        harness.venue.closed_pnl = [settlement()]

        report = run(harness.reconciler.backfill())

        assert report.added == 0
        assert report.repaired == 0
        assert len(harness.pnl.trades) == 1
        assert harness.pnl.total_pnl == pytest.approx(4.2)

    def test_missing_close_added(self, harness):
        harness.venue.closed_pnl = [settlement(closed_pnl=-3.0)]
        harness.venue.executions = {"close-1": [Execution("close-1", 0.05, False)]}

        report = run(harness.reconciler.backfill())

        assert report.added == 1
        trade = harness.pnl.trades[0]
        assert trade.exit_type is ExitType.RECONCILED
        assert trade.side is Side.BUY
        assert trade.net_pnl == -3.0
        assert trade.fees.close == 0.05
        assert "close-1" in harness.pnl.consumed_ids

    def test_unresolved_trade_repaired_in_place(self, harness):
        record = settlement(closed_pnl=3.9)
        trade = ClosedTrade(
            symbol=SYMBOL, side=Side.BUY, entry_price=100.0, exit_price=105.0, quantity=1.0,
            net_pnl=5.0, pnl_resolved=False, local_estimate=5.0, closed_at=record.created_time - 2_000,
        )
        harness.pnl.append(trade)
        harness.venue.closed_pnl = [record]

        report = run(harness.reconciler.backfill())

        assert report.repaired == 1
        assert report.added == 0
        assert len(harness.pnl.trades) == 1
        assert trade.pnl_resolved
        assert trade.net_pnl == 3.9
        assert trade.close_order_id == "close-1"
        assert harness.pnl.total_pnl == pytest.approx(3.9)

    def test_reserved_record_left_for_in_flight_close(self, harness):
        harness.pnl.reserve("close-1")
        harness.venue.closed_pnl = [settlement()]

        report = run(harness.reconciler.backfill())

        assert report.added == 0

    def test_same_bucket_not_duplicated(self, harness):
        record = settlement(order_id="close-2")
        harness.pnl.append(ClosedTrade(
            symbol=SYMBOL, side=Side.BUY, entry_price=100.0, exit_price=104.3, quantity=1.0,
            net_pnl=4.2, close_order_id="close-1", closed_at=record.created_time,
        ))
        harness.venue.closed_pnl = [record]

        report = run(harness.reconciler.backfill())

        assert report.added == 0
        assert len(harness.pnl.trades) == 1

    def test_records_before_reset_ignored(self, harness):
        harness.venue.closed_pnl = [settlement(created_time=now_ms() - 60_000)]
        harness.pnl.reset()

        report = run(harness.reconciler.backfill())

        assert report.added == 0

    def test_open_position_records_left_to_tick(self, harness):
        position = open_position()
        harness.ledger.add(position)
        harness.venue.closed_pnl = [settlement(created_time=position.open_time + 1_000)]

        report = run(harness.reconciler.backfill())

        assert report.added == 0
        assert harness.pnl.trades == []
