"""
Tests for the Position Ledger and pending locks.
"""

import pytest

from liqtrader.exceptions import InvariantViolation
from liqtrader.ledger import PendingLocks, PositionLedger
from liqtrader.models import Position, Side


def position(symbol="BTCUSDT", qty=1.0):
    return Position(symbol=symbol, side=Side.BUY, entry_price=100.0, quantity=qty)


class TestPendingLocks:
    def test_acquire_is_exclusive(self):
        locks = PendingLocks()

        assert locks.try_acquire("BTCUSDT")
        assert not locks.try_acquire("BTCUSDT")
        assert locks.try_acquire("ETHUSDT")
        assert len(locks) == 2

    def test_release_is_idempotent(self):
        locks = PendingLocks()
        locks.try_acquire("BTCUSDT")

        locks.release("BTCUSDT")
        locks.release("BTCUSDT")

        assert not locks.is_locked("BTCUSDT")
        assert locks.try_acquire("BTCUSDT")


class TestPositionLedger:
    def test_one_position_per_symbol(self):
        ledger = PositionLedger()
        ledger.add(position())

        with pytest.raises(InvariantViolation):
            ledger.add(position())

    def test_zero_quantity_rejected(self):
        with pytest.raises(InvariantViolation):
            PositionLedger().add(position(qty=0.0))

    def test_open_or_pending_counts_distinct_symbols(self):
        ledger = PositionLedger()
        locks = PendingLocks()
        ledger.add(position("BTCUSDT"))
        locks.try_acquire("BTCUSDT")
        locks.try_acquire("ETHUSDT")

        assert ledger.open_or_pending_count(locks) == 2

    def test_iteration_is_a_snapshot(self):
        ledger = PositionLedger()
        ledger.add(position("BTCUSDT"))
        ledger.add(position("ETHUSDT"))

        for p in ledger:
            ledger.remove(p.symbol)

        assert len(ledger) == 0

    def test_remove_missing_returns_none(self):
        assert PositionLedger().remove("BTCUSDT") is None
