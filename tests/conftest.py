"""
Shared fixtures: a scripted in-memory venue and a fully wired engine.
"""

import asyncio
from dataclasses import replace
from typing import Dict, List, Optional

import pytest

from config.settings import (
    DcaConfig,
    IndicatorConfig,
    ProtectionConfig,
    ReconcileConfig,
    TradingConfig,
)
from liqtrader.client_interface import (
    Candle,
    ClosedPnlRecord,
    Execution,
    InstrumentInfo,
    OrderBookTop,
    OrderStatus,
    Ticker,
    VenuePosition,
    VenueResponse,
)
from liqtrader.exceptions import TransientIOFailure
from liqtrader.executor import ExecutionEngine
from liqtrader.indicators import IndicatorService
from liqtrader.instruments import InstrumentRegistry, VolumeFilter
from liqtrader.ledger import PendingLocks, PositionLedger
from liqtrader.models import Side
from liqtrader.pnl_history import PnlHistory
from liqtrader.protection import ProtectionManager
from liqtrader.reconciler import Reconciler
from liqtrader.risk_manager import RiskManager


SYMBOL = "TESTUSDT"


def make_instrument(symbol: str = SYMBOL, **overrides) -> InstrumentInfo:
    fields = dict(
        symbol=symbol, tick_size=0.01, qty_step=0.1, min_qty=0.1,
        max_leverage=25.0, status="Trading", is_pre_listing=False,
    )
    fields.update(overrides)
    return InstrumentInfo(**fields)


class FakeVenue:
    """
    In-memory VenueGateway.

    Market orders fill immediately at `fill_prices[symbol]` (or the order
    price, or 100.0) and grow the venue position. Tests script the rest by
    setting attributes.
    """

    def __init__(self):
        self.positions: Dict[str, VenuePosition] = {}
        self.closed_pnl: List[ClosedPnlRecord] = []
        # Optional per-call answers for list_closed_pnl, consumed in order
        self.closed_pnl_script: List[List[ClosedPnlRecord]] = []
        self.executions: Dict[str, List[Execution]] = {}
        self.books: Dict[str, OrderBookTop] = {}
        self.klines: Dict[str, List[Candle]] = {}
        self.instruments: List[InstrumentInfo] = [make_instrument()]
        self.tickers: List[Ticker] = [Ticker(SYMBOL, 100.0, 50_000_000.0)]
        self.balance = 1000.0
        self.fill_prices: Dict[str, float] = {}
        self.order_status: Dict[str, OrderStatus] = {}

        self.reject_orders = False
        self.limit_fill = True
        self.limit_partial_qty = 0.0
        self.fail_sl = False
        self.fail_trailing = False
        self.positions_error = False
        self.status_unknown = False

        self.orders: List[dict] = []
        self.protection_calls: List[dict] = []
        self.cancels: List[str] = []
        self.closes: List[dict] = []
        self.leverage_calls: List[tuple] = []
        self.closed_pnl_calls = 0
        self._seq = 0

    def _next_id(self) -> str:
        self._seq += 1
        return f"ord-{self._seq}"

    def _fill(self, symbol: str, side: Side, qty: float, price: float):
        existing = self.positions.get(symbol)
        if existing is None:
            self.positions[symbol] = VenuePosition(
                symbol=symbol, side=side, size=qty, avg_price=price, mark_price=price,
            )
            return
        total = existing.size + qty
        avg = (existing.avg_price * existing.size + price * qty) / total
        self.positions[symbol] = replace(existing, size=round(total, 8), avg_price=avg)

    # ==================== ORDERS ====================

    async def place_order(self, symbol, side, qty, order_type="Market", price=None,
                          time_in_force="GTC", reduce_only=False, order_link_id=None):
        await asyncio.sleep(0)
        self.orders.append(dict(
            symbol=symbol, side=Side(side), qty=qty, order_type=order_type, price=price,
            time_in_force=time_in_force, reduce_only=reduce_only, order_link_id=order_link_id,
        ))
        if self.reject_orders:
            return VenueResponse(ok=False, ret_code=10001, message="order rejected")

        order_id = self._next_id()
        fill_price = self.fill_prices.get(symbol) or price or 100.0
        if order_type == "Limit" and not self.limit_fill:
            filled_qty = self.limit_partial_qty
            status = "PartiallyFilled" if filled_qty else "New"
        else:
            filled_qty = qty
            status = "Filled"
        if filled_qty:
            self._fill(symbol, Side(side), filled_qty, fill_price)
        self.order_status[order_id] = OrderStatus(
            order_id, order_link_id or "", status, fill_price, filled_qty
        )
        return VenueResponse(ok=True, result={"orderId": order_id, "orderLinkId": order_link_id or ""})

    async def cancel_order(self, symbol, order_id):
        self.cancels.append(order_id)
        return VenueResponse(ok=True, result={"orderId": order_id})

    async def get_order_status(self, symbol, order_id=None, order_link_id=None):
        if self.status_unknown:
            return None
        if order_id:
            return self.order_status.get(order_id)
        for status in self.order_status.values():
            if status.order_link_id == order_link_id:
                return status
        return None

    async def close_position(self, symbol, side, qty, order_type="Market", price=None):
        self.closes.append(dict(symbol=symbol, side=Side(side), qty=qty, order_type=order_type, price=price))
        self.positions.pop(symbol, None)
        return VenueResponse(ok=True, result={"orderId": self._next_id()})

    async def set_leverage(self, symbol, leverage):
        self.leverage_calls.append((symbol, leverage))
        return VenueResponse(ok=True)

    async def switch_one_way_mode(self, symbol):
        return VenueResponse(ok=True)

    async def set_protection(self, symbol, stop_loss=None, take_profit=None, trailing_stop=None,
                             active_price=None, tp_limit=False):
        await asyncio.sleep(0)
        self.protection_calls.append(dict(
            symbol=symbol, stop_loss=stop_loss, take_profit=take_profit,
            trailing_stop=trailing_stop, active_price=active_price, tp_limit=tp_limit,
        ))
        if trailing_stop is not None and self.fail_trailing:
            return VenueResponse(ok=False, ret_code=10001, message="trailing rejected")
        if stop_loss is not None and self.fail_sl:
            return VenueResponse(ok=False, ret_code=10001, message="sl rejected")
        position = self.positions.get(symbol)
        if position is not None:
            if stop_loss is not None:
                position.stop_loss = stop_loss
            if take_profit is not None:
                position.take_profit = take_profit
            if trailing_stop is not None:
                position.trailing_stop = trailing_stop
        return VenueResponse(ok=True)

    # ==================== READS ====================

    async def list_open_positions(self):
        if self.positions_error:
            raise TransientIOFailure("positions unavailable")
        return [replace(p) for p in self.positions.values() if p.size > 0]

    async def list_closed_pnl(self, symbol=None, limit=50):
        self.closed_pnl_calls += 1
        records = self.closed_pnl_script.pop(0) if self.closed_pnl_script else self.closed_pnl
        if symbol:
            records = [r for r in records if r.symbol == symbol]
        return list(records)[:limit]

    async def list_executions(self, symbol, order_id):
        return list(self.executions.get(order_id, []))

    async def get_orderbook_top(self, symbol):
        return self.books.get(symbol)

    async def get_klines(self, symbol, interval, limit):
        return list(self.klines.get(symbol, []))[-limit:]

    async def get_instruments(self):
        return list(self.instruments)

    async def get_tickers(self):
        return list(self.tickers)

    async def get_wallet_balance(self):
        return self.balance


def flat_candles(n: int, high: float, low: float, close: float, volume: float = 10.0) -> List[Candle]:
    return [Candle(i * 60_000, close, high, low, close, volume) for i in range(n)]


class Harness:
    """Every engine component wired to one FakeVenue."""

    def __init__(self, venue: Optional[FakeVenue] = None, **trading_overrides):
        self.venue = venue or FakeVenue()
        trading = dict(
            position_size_usd=50.0, leverage=5, max_positions=5, min_position_pct=50.0,
            total_risk_pct=5.0, min_liq_value_usd=10_000.0, min_turnover_24h=5_000_000.0,
            entry_order_type="Market", fill_settle_seconds=0.0,
        )
        trading.update(trading_overrides)
        self.trading = TradingConfig(**trading)
        self.dca = DcaConfig(splits=[0.10, 0.20, 0.30, 0.40], vwap_sd_multiplier=2.0)
        self.indicator_config = IndicatorConfig(
            atr_period=14, atr_interval="1", vwap_interval="1",
        )
        self.protection_config = ProtectionConfig(
            take_profit_pct=0.3, min_tp_pct=1.0, tp_atr_multiplier=1.5, sl_atr_multiplier=1.0,
            trailing_atr_multiplier=1.5, tp_order_type="Limit", naked_requires_all_missing=True,
        )
        self.reconcile_config = ReconcileConfig(
            interval_seconds=2.0, close_grace_seconds=15.0, close_dedup_seconds=10.0,
            settle_delay_seconds=0.0, match_attempts=5, match_retry_delay_seconds=0.0,
            match_relax_last=2, backfill_interval_seconds=60.0, max_hold_seconds=0.0,
            time_exit_order_type="Limit",
        )

        self.registry = InstrumentRegistry()
        self.registry.load(self.venue.instruments)
        self.volume_filter = VolumeFilter()
        self.volume_filter.load(self.venue.tickers)
        self.ledger = PositionLedger()
        self.locks = PendingLocks()
        self.pnl = PnlHistory()
        self.risk = RiskManager(self.registry, self.trading, self.dca, self.protection_config)
        self.risk.update_balance(self.venue.balance)
        self.indicators = IndicatorService(self.venue, self.indicator_config)
        self.protection = ProtectionManager(
            self.venue, self.registry, self.risk, self.indicators, self.protection_config, self.dca
        )
        self.engine = ExecutionEngine(
            self.venue, self.ledger, self.locks, self.registry, self.volume_filter,
            self.risk, self.indicators, self.protection, self.trading, self.dca,
        )
        self.reconciler = Reconciler(
            self.venue, self.ledger, self.locks, self.protection, self.pnl, self.registry,
            self.reconcile_config, self.protection_config, self.trading, self.dca,
        )


def run(coro):
    return asyncio.run(coro)


@pytest.fixture
def venue():
    return FakeVenue()


@pytest.fixture
def harness(venue):
    return Harness(venue)
