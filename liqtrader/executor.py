"""
Execution Engine.

Turns qualifying liquidation events into counter-positions: gates the
event, opens a fresh position or adds a DCA level, attaches protection and
records the outcome. Every invocation ends in exactly one ExecutionResult.
"""

import asyncio
import time
import uuid
from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, List, Optional, Set

from config.settings import DcaConfig, TradingConfig, settings
from liqtrader.background import BackgroundResult, BackgroundTasks
from liqtrader.client_interface import VenueResponse
from liqtrader.exceptions import TransientIOFailure, VenueRejection
from liqtrader.indicators import IndicatorService
from liqtrader.instruments import InstrumentRegistry, VolumeFilter
from liqtrader.ledger import PendingLocks, PositionLedger
from liqtrader.models import (
    ExecutionResult,
    ExecutionStatus,
    LiquidationEvent,
    Position,
    Side,
    TradeLogEntry,
    now_ms,
)
from liqtrader.protection import ProtectionManager, ProtectionPlan
from liqtrader.risk_manager import RiskManager
from utils.logger import log


def new_order_link_id() -> str:
    return f"liq-{uuid.uuid4().hex[:24]}"


@dataclass
class OrderOutcome:
    """Result of submitting an entry order. `result` set means stop here."""

    response: Optional[VenueResponse] = None
    mode: str = ""
    result: Optional[ExecutionResult] = None


class _Timer:
    """Per-phase latency in milliseconds."""

    def __init__(self):
        self.started = time.monotonic()
        self.phases: Dict[str, int] = {}
        self._mark = self.started

    def lap(self, phase: str):
        now = time.monotonic()
        self.phases[phase] = int((now - self._mark) * 1000)
        self._mark = now

    @property
    def total_ms(self) -> int:
        return int((time.monotonic() - self.started) * 1000)


class ExecutionEngine:
    """
    Handles on_liquidation for every qualifying event.

    Gating order (first failure wins):
    1. capacity over open and pending symbols
    2. per-symbol lock, acquired before the first await
    3. DCA path if the symbol is open, fresh entry otherwise
    """

    def __init__(
        self,
        gateway,
        ledger: PositionLedger,
        locks: PendingLocks,
        registry: InstrumentRegistry,
        volume_filter: VolumeFilter,
        risk: RiskManager,
        indicators: IndicatorService,
        protection: ProtectionManager,
        trading: Optional[TradingConfig] = None,
        dca: Optional[DcaConfig] = None,
    ):
        self.gateway = gateway
        self.ledger = ledger
        self.locks = locks
        self.registry = registry
        self.volume_filter = volume_filter
        self.risk = risk
        self.indicators = indicators
        self.protection = protection
        self.trading = trading or settings.trading
        self.dca = dca or settings.dca

        self.leverage_set: Set[str] = set()
        self.leverage_results: Dict[str, BackgroundResult] = {}
        self.trade_log: Deque[TradeLogEntry] = deque(maxlen=self.trading.trade_log_size)
        self.background = BackgroundTasks()

    # ==================== ENTRY POINT ====================

    async def on_liquidation(self, event: LiquidationEvent) -> ExecutionResult:
        """Process one qualifying liquidation event."""
        timer = _Timer()
        symbol = event.symbol

        if self.ledger.open_or_pending_count(self.locks) >= self.trading.max_positions:
            return self._finish(event, ExecutionResult.skipped("max positions reached"), timer)

        if not self.locks.try_acquire(symbol):
            return self._finish(event, ExecutionResult.skipped("pending"), timer)

        try:
            existing = self.ledger.get(symbol)
            if existing is not None:
                result = await self._add_dca(event, existing, timer)
            else:
                result = await self._open_fresh(event, timer)
        except Exception as e:
            log.exception(f"Order error for {symbol}: {e}")
            result = ExecutionResult.error(str(e))
        finally:
            self.locks.release(symbol)

        return self._finish(event, result, timer)

    # ==================== FRESH ENTRY ====================

    async def _open_fresh(self, event: LiquidationEvent, timer: _Timer) -> ExecutionResult:
        symbol = event.symbol
        inst = self.registry.get(symbol)
        if inst is None:
            return ExecutionResult.skipped("unknown instrument")
        if self.registry.is_blocked(symbol):
            return ExecutionResult.skipped("pre-listing/blocked instrument")
        if not self.volume_filter.passes(symbol, self.trading.min_turnover_24h):
            turnover = self.volume_filter.turnover(symbol) or 0.0
            return ExecutionResult.skipped(f"low volume (${turnover / 1e6:.1f}M 24h)")
        if not self.risk.has_balance:
            return ExecutionResult.skipped("no account balance loaded")

        side = event.entry_side
        total_budget = self.risk.total_budget()
        sizing = self.risk.size_level(symbol, side, event.price, total_budget, 0)
        if sizing.qty < inst.min_qty:
            return ExecutionResult.skipped(f"qty below minimum ({sizing.qty} < {inst.min_qty})")
        timer.lap("pre_checks")

        await self._ensure_leverage(symbol, inst.max_leverage)
        timer.lap("leverage")

        atr = await self.indicators.atr(symbol)
        timer.lap("atr")

        outcome = await self._submit(symbol, side, sizing.qty, timer, held_qty=0.0)
        if outcome.result is not None:
            return outcome.result

        fill_price, fill_qty = await self._venue_fill(symbol, event.price, sizing.qty)
        timer.lap("position_fetch")

        stop_offset = self.risk.stop_offset(symbol, fill_price, total_budget, len(self.ledger) + 1)
        stop_loss = self.risk.stop_price(symbol, side, fill_price, stop_offset)
        plan = self.protection.plan(symbol, side, fill_price, fill_qty, sizing.notional, stop_loss, atr)
        confirmed = await self.protection.attach(symbol, plan)
        timer.lap("protection")

        position = Position(
            symbol=symbol,
            side=side,
            entry_price=fill_price,
            quantity=fill_qty,
            open_time=now_ms(),
            dca_level=0,
            total_budget_notional=total_budget,
            last_entry_price=fill_price,
            entry_order_id=outcome.response.order_id,
            atr=atr,
            tp_method=plan.tp_method,
            entry_order_mode=outcome.mode,
            liq_usd_value=event.usd_value,
            exec_time_ms=timer.total_ms,
        )
        confirmed.apply_to(position)
        self.ledger.add(position)

        if len(self.ledger) > 1:
            self.background.spawn(
                "tighten_all",
                self.protection.tighten_all(self.ledger.positions(), len(self.ledger), self.locks),
            )

        exit_desc = (
            f"Trail: {position.trailing_distance}" if position.trailing_distance
            else f"TP: {position.take_profit_price}"
        )
        log.info(
            f"TRADE: {side.value} {fill_qty} {symbol} @ {fill_price} (liq {event.price}) | "
            f"{exit_desc} | SL: {position.stop_loss_price} | {plan.tp_method} | {outcome.mode} | "
            f"Liq: ${event.usd_value:,.0f}"
        )
        return ExecutionResult.filled(
            position, f"fill {fill_price} | {exit_desc} | SL {position.stop_loss_price} [{plan.tp_method}]"
        )

    async def _ensure_leverage(self, symbol: str, max_leverage: float):
        """One-way mode and leverage, once per symbol. Failures never block entry."""
        if symbol in self.leverage_set:
            return
        leverage = min(self.trading.leverage, max_leverage) if max_leverage else self.trading.leverage
        result = BackgroundResult(name=f"leverage:{symbol}")
        try:
            mode = await self.gateway.switch_one_way_mode(symbol)
            lev = await self.gateway.set_leverage(symbol, leverage)
            result.succeeded = mode.ok and lev.ok
            if not result.succeeded:
                result.error = lev.message if not lev.ok else mode.message
        except (TransientIOFailure, VenueRejection) as e:
            result.error = str(e)

        self.leverage_results[symbol] = result
        if result.succeeded:
            self.leverage_set.add(symbol)
        else:
            log.warning(f"Leverage setup for {symbol} failed, continuing: {result.error}")

    # ==================== DCA ====================

    async def _add_dca(self, event: LiquidationEvent, position: Position,
                       timer: _Timer) -> ExecutionResult:
        symbol = event.symbol
        levels = len(self.dca.splits)
        if position.dca_level >= levels - 1:
            return ExecutionResult.skipped(f"DCA fully filled ({levels}/{levels})")
        if position.total_budget_notional <= 0:
            return ExecutionResult.skipped("DCA: no budget info")

        if not await self._price_improved(event, position):
            return ExecutionResult.skipped(f"DCA: price {event.price} not improved")
        timer.lap("pre_checks")

        inst = self.registry.get(symbol)
        if inst is None:
            return ExecutionResult.skipped("DCA: unknown instrument")

        next_level = position.dca_level + 1
        sizing = self.risk.size_level(
            symbol, position.side, event.price, position.total_budget_notional, next_level
        )
        if sizing.qty < inst.min_qty:
            return ExecutionResult.skipped(f"DCA: qty below minimum ({sizing.qty})")

        outcome = await self._submit(symbol, position.side, sizing.qty, timer,
                                     held_qty=position.quantity)
        if outcome.result is not None:
            return outcome.result

        avg_price, total_qty = await self._venue_fill(
            symbol, event.price, position.quantity + sizing.qty
        )
        timer.lap("position_fetch")

        stop_loss = self.protection.risk_stop(
            symbol, position.side, avg_price, position.total_budget_notional, len(self.ledger)
        )
        trailing = position.trailing_distance
        plan = ProtectionPlan(
            stop_loss=stop_loss,
            trailing_distance=trailing,
            trailing_activation=(
                self.protection.trailing_activation(symbol, position.side, avg_price, trailing)
                if trailing else None
            ),
        )
        confirmed = await self.protection.attach(symbol, plan)
        timer.lap("protection")

        position.entry_price = avg_price
        position.quantity = total_qty
        if confirmed.stop_loss is not None:
            position.stop_loss_price = confirmed.stop_loss
        if confirmed.trailing_activation is not None:
            position.trailing_activation_price = confirmed.trailing_activation
        position.dca_level = next_level
        position.last_entry_price = event.price

        label = f"DCA {next_level + 1}/{levels}"
        log.info(
            f"TRADE: {label} {position.side.value} +{sizing.qty} {symbol} @ {event.price} | "
            f"Avg: {avg_price} | SL: {position.stop_loss_price} | Total: {total_qty} | {outcome.mode}"
        )
        return ExecutionResult.filled(
            position, f"{label} | avg {avg_price} | SL {position.stop_loss_price} | qty {total_qty}"
        )

    async def _price_improved(self, event: LiquidationEvent, position: Position) -> bool:
        """VWAP band check when available, strict improvement on last entry otherwise."""
        band = await self.indicators.vwap_band(event.symbol)
        if band is not None:
            k = self.dca.vwap_sd_multiplier
            if position.side is Side.BUY:
                return event.price <= band.lower(k)
            return event.price >= band.upper(k)

        last = position.last_entry_price or position.entry_price
        if position.side is Side.BUY:
            return event.price < last
        return event.price > last

    # ==================== ORDER ROUTING ====================

    async def _submit(self, symbol: str, side: Side, qty: float, timer: _Timer,
                      held_qty: float) -> OrderOutcome:
        """
        Submit an entry order and confirm it filled.

        Limit mode rests a PostOnly order at the top of book and cancels it if
        it has not filled after the settle delay. Without a book top the order
        goes out at market.
        """
        link_id = new_order_link_id()

        if self.trading.entry_order_type == "Limit":
            limit_price = await self._book_price(symbol, side)
            timer.lap("orderbook")
            if limit_price is not None:
                return await self._submit_limit(symbol, side, qty, limit_price, link_id, timer, held_qty)
            mode = "market-fallback"
        else:
            mode = "market"

        try:
            response = await self.gateway.place_order(symbol, side, qty, "Market", order_link_id=link_id)
        except TransientIOFailure as e:
            return OrderOutcome(result=ExecutionResult.error(f"order outcome unknown: {e}"))
        timer.lap("order_place")

        if not response.ok:
            log.error(f"Order FAILED for {symbol}: {response.message} ({response.ret_code})")
            return OrderOutcome(result=ExecutionResult.failed(response.message or "order rejected"))
        return OrderOutcome(response=response, mode=mode)

    async def _submit_limit(self, symbol: str, side: Side, qty: float, price: float,
                            link_id: str, timer: _Timer, held_qty: float) -> OrderOutcome:
        try:
            response = await self.gateway.place_order(
                symbol, side, qty, "Limit", price=price, time_in_force="PostOnly",
                order_link_id=link_id,
            )
        except TransientIOFailure as e:
            return OrderOutcome(result=ExecutionResult.error(f"order outcome unknown: {e}"))
        timer.lap("order_place")

        if not response.ok:
            log.warning(f"Limit rejected for {symbol}: {response.message} ({response.ret_code})")
            return OrderOutcome(result=ExecutionResult.skipped(f"limit rejected: {response.message}"))

        await asyncio.sleep(self.trading.fill_settle_seconds)
        filled, status = await self._confirm_fill(symbol, side, response.order_id, held_qty)
        timer.lap("fill_wait")

        if not filled:
            await self._cancel(symbol, response.order_id)
            # A partial fill survives the cancel and is kept as the entry
            if status is not None and status.cum_exec_qty > 0:
                log.info(f"{symbol} limit partially filled ({status.cum_exec_qty}/{qty})")
                return OrderOutcome(response=response, mode="limit-partial")
            state = status.status if status is not None else "unknown"
            return OrderOutcome(result=ExecutionResult.skipped(f"limit not filled ({state})"))

        return OrderOutcome(response=response, mode="limit")

    async def _confirm_fill(self, symbol: str, side: Side, order_id: str, held_qty: float):
        """
        Returns (filled, status). When the order status cannot be read, the
        venue position decides: it must have grown past what was held before.
        """
        try:
            status = await self.gateway.get_order_status(symbol, order_id=order_id)
        except (TransientIOFailure, VenueRejection) as e:
            log.warning(f"Order status check failed for {symbol}: {e}")
            status = None

        if status is not None:
            return status.is_filled, status

        try:
            positions = await self.gateway.list_open_positions()
        except (TransientIOFailure, VenueRejection) as e:
            log.warning(f"Position check failed for {symbol}: {e}")
            return False, None
        grown = any(
            p.symbol == symbol and p.side == side and p.size > held_qty for p in positions
        )
        return grown, None

    async def _cancel(self, symbol: str, order_id: Optional[str]):
        if not order_id:
            return
        try:
            response = await self.gateway.cancel_order(symbol, order_id)
            if not response.ok:
                log.debug(f"Cancel {order_id} for {symbol}: {response.message}")
        except (TransientIOFailure, VenueRejection) as e:
            log.warning(f"Cancel failed for {symbol} {order_id}: {e}")

    async def _book_price(self, symbol: str, side: Side) -> Optional[float]:
        """Best bid for buys, best ask for sells."""
        try:
            top = await self.gateway.get_orderbook_top(symbol)
        except (TransientIOFailure, VenueRejection) as e:
            log.warning(f"Orderbook error for {symbol}: {e}")
            return None
        if top is None:
            return None
        price = top.best_bid if side is Side.BUY else top.best_ask
        return self.registry.round_price(symbol, price) if price else None

    async def _venue_fill(self, symbol: str, fallback_price: float, fallback_qty: float):
        """True average price and size from the venue position."""
        try:
            positions = await self.gateway.list_open_positions()
        except (TransientIOFailure, VenueRejection) as e:
            log.warning(f"Could not fetch fill for {symbol}, using estimates: {e}")
            return fallback_price, fallback_qty
        for p in positions:
            if p.symbol == symbol and p.size > 0:
                return p.avg_price or fallback_price, p.size
        return fallback_price, fallback_qty

    # ==================== BACKGROUND TASKS ====================

    async def drain_background(self):
        """Wait for all in-flight background tasks."""
        await self.background.drain()

    # ==================== TRADE LOG ====================

    def _finish(self, event: LiquidationEvent, result: ExecutionResult, timer: _Timer) -> ExecutionResult:
        result.exec_time_ms = timer.total_ms
        position = result.position
        entry = TradeLogEntry(
            symbol=event.symbol,
            liquidated_side=event.liquidated_side.value,
            liq_price=event.price,
            liq_usd_value=event.usd_value,
            status=result.status.value,
            detail=result.reason,
            exec_time_ms=result.exec_time_ms,
            timing=dict(timer.phases),
            position={
                "order_id": position.entry_order_id,
                "side": position.side.value,
                "qty": position.quantity,
                "entry_price": position.entry_price,
                "tp_price": position.take_profit_price,
                "sl_price": position.stop_loss_price,
                "atr": position.atr,
                "trailing_stop": position.trailing_distance,
                "tp_method": position.tp_method,
                "dca_level": position.dca_level,
            } if position is not None else None,
        )
        self.trade_log.appendleft(entry)

        if result.status is ExecutionStatus.SKIPPED:
            log.info(f"{event.symbol} skipped: {result.reason}")
        elif result.status is ExecutionStatus.FILLED:
            parts = " | ".join(f"{k}:{v}ms" for k, v in timer.phases.items() if v)
            log.info(f"[LATENCY] {event.symbol} | {parts} | TOTAL: {result.exec_time_ms}ms")
        else:
            log.error(f"{event.symbol} {result.status.value}: {result.reason}")
        return result

    def average_exec_time_ms(self) -> float:
        filled = [e.exec_time_ms for e in self.trade_log if e.status == ExecutionStatus.FILLED.value]
        return sum(filled) / len(filled) if filled else 0.0

    def restore_trade_log(self, entries: List[dict]):
        self.trade_log.clear()
        for data in entries[: self.trade_log.maxlen]:
            self.trade_log.append(TradeLogEntry.from_dict(data))

    def reset_trade_log(self):
        self.trade_log.clear()
        log.info("Trade log reset")
