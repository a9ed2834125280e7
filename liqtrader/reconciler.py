"""
Reconciliation Engine.

Keeps the Position Ledger consistent with the venue:
- adopts positions the venue has but the ledger does not
- detects closes the venue settled and books them with matched PnL
- heals protective orders that disappeared
- force-closes positions held past the maximum hold time
- backfills and repairs PnL history from the venue's closed-PnL list
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

from config.settings import (
    DcaConfig,
    ProtectionConfig,
    ReconcileConfig,
    TradingConfig,
    settings,
)
from liqtrader.background import BackgroundTasks
from liqtrader.client_interface import ClosedPnlRecord, VenuePosition
from liqtrader.exceptions import TransientIOFailure, UnmatchedSettlement, VenueRejection
from liqtrader.instruments import InstrumentRegistry
from liqtrader.ledger import PendingLocks, PositionLedger
from liqtrader.matching import MatchRetryPolicy, match_record, relative_diff
from liqtrader.models import ClosedTrade, ExitType, Fees, Position, Side, now_ms
from liqtrader.pnl_history import PnlHistory
from liqtrader.protection import ProtectionManager
from utils.logger import log


@dataclass
class CloseData:
    """Everything the venue told us about one close."""

    record: Optional[ClosedPnlRecord] = None
    tier: Optional[str] = None
    fees: Fees = field(default_factory=Fees)
    entry_is_maker: bool = False
    exit_is_maker: bool = False


@dataclass
class TickReport:
    aborted: bool = False
    adopted: List[str] = field(default_factory=list)
    closing: List[str] = field(default_factory=list)
    healing: List[str] = field(default_factory=list)
    protected: List[str] = field(default_factory=list)
    still_naked: List[str] = field(default_factory=list)
    time_exits: List[str] = field(default_factory=list)


@dataclass
class BackfillReport:
    fetched: int = 0
    repaired: int = 0
    added: int = 0


class Reconciler:
    """Drives the per-tick diff between the ledger and the venue."""

    def __init__(
        self,
        gateway,
        ledger: PositionLedger,
        locks: PendingLocks,
        protection: ProtectionManager,
        pnl: PnlHistory,
        registry: InstrumentRegistry,
        config: Optional[ReconcileConfig] = None,
        protection_config: Optional[ProtectionConfig] = None,
        trading: Optional[TradingConfig] = None,
        dca: Optional[DcaConfig] = None,
    ):
        self.gateway = gateway
        self.ledger = ledger
        self.locks = locks
        self.protection = protection
        self.pnl = pnl
        self.registry = registry
        self.config = config or settings.reconcile
        self.protection_config = protection_config or settings.protection
        self.trading = trading or settings.trading
        self.dca = dca or settings.dca
        self.policy = MatchRetryPolicy.from_config(self.config)

        self.recently_closed: Dict[str, float] = {}
        self.background = BackgroundTasks()
        self._healing: Set[str] = set()
        self.ticks = 0
        self.last_tick_at: Optional[float] = None
        self.last_backfill_at: Optional[float] = None

    # ==================== TICK ====================

    async def tick(self) -> TickReport:
        """One reconciliation pass against a fresh venue snapshot."""
        report = TickReport()
        try:
            remote = await self.gateway.list_open_positions()
        except (TransientIOFailure, VenueRejection) as e:
            log.error(f"Position snapshot failed, skipping tick: {e}")
            report.aborted = True
            return report

        self.ticks += 1
        self.last_tick_at = time.time()
        by_symbol = {p.symbol: p for p in remote if p.size > 0}

        for symbol, venue_pos in by_symbol.items():
            if symbol in self.ledger or self.locks.is_locked(symbol):
                continue
            await self._adopt(venue_pos, report)

        for position in self.ledger.positions():
            # Adopted positions were already handled against this snapshot
            if position.symbol in report.adopted:
                continue
            if self.ledger.get(position.symbol) is not position:
                continue
            venue_pos = by_symbol.get(position.symbol)
            if venue_pos is None:
                self._on_missing(position, report)
            else:
                await self._on_present(position, venue_pos, report)

        return report

    def is_naked(self, venue_pos: VenuePosition) -> bool:
        sl_missing = venue_pos.stop_loss is None
        if self.protection_config.naked_requires_all_missing:
            return sl_missing and venue_pos.trailing_stop is None
        return sl_missing

    async def _adopt(self, venue_pos: VenuePosition, report: TickReport):
        symbol = venue_pos.symbol
        closed_at = self.recently_closed.get(symbol)
        if closed_at is not None and time.time() - closed_at < self.config.close_dedup_seconds:
            log.warning(f"{symbol} reappeared right after close, adopting as a fresh position")

        notional = venue_pos.avg_price * venue_pos.size
        position = Position(
            symbol=symbol,
            side=venue_pos.side,
            entry_price=venue_pos.avg_price,
            quantity=venue_pos.size,
            stop_loss_price=venue_pos.stop_loss,
            take_profit_price=venue_pos.take_profit,
            trailing_distance=venue_pos.trailing_stop,
            open_time=venue_pos.created_time or now_ms(),
            dca_level=0,
            total_budget_notional=notional / self.dca.splits[0],
            last_entry_price=venue_pos.avg_price,
            mark_price=venue_pos.mark_price,
            unrealized_pnl=venue_pos.unrealized_pnl,
            adopted=True,
        )
        if venue_pos.trailing_stop:
            position.trailing_activation_price = self.protection.trailing_activation(
                symbol, venue_pos.side, venue_pos.avg_price, venue_pos.trailing_stop
            )
        self.ledger.add(position)
        report.adopted.append(symbol)
        log.info(
            f"Adopted untracked position: {position.side.value} {position.quantity} {symbol} "
            f"@ {position.entry_price} | SL: {position.stop_loss_price or '-'} "
            f"| Trail: {position.trailing_distance or '-'}"
        )

        if self.is_naked(venue_pos):
            await self._ensure(position, report)

        if len(self.ledger) > 1:
            self.background.spawn(
                "tighten_all",
                self.protection.tighten_all(self.ledger.positions(), len(self.ledger), self.locks),
            )

    async def _ensure(self, position: Position, report: TickReport):
        """Emergency protection for a naked position, inside the tick."""
        symbol = position.symbol
        log.warning(f"{symbol} is unprotected on the venue, attaching protection now")
        result = await self.protection.ensure(
            symbol,
            position.side,
            position.entry_price,
            position.quantity,
            total_budget=position.total_budget_notional or None,
            open_count=max(1, len(self.ledger)),
        )
        if result is None:
            report.still_naked.append(symbol)
            log.error(f"{symbol} still unprotected, will retry next tick")
            return
        if self.ledger.get(symbol) is position:
            result.apply_to(position)
        report.protected.append(symbol)

    def _on_missing(self, position: Position, report: TickReport):
        """Ledger has it, venue does not: the position closed."""
        symbol = position.symbol
        if self.locks.is_locked(symbol):
            return
        if now_ms() - position.open_time < self.config.close_grace_seconds * 1000:
            return
        closed_at = self.recently_closed.get(symbol)
        if closed_at is not None and time.time() - closed_at < self.config.close_dedup_seconds:
            return

        if not self.locks.try_acquire(symbol):
            return
        self.recently_closed[symbol] = time.time()
        report.closing.append(symbol)
        log.info(f"{symbol} no longer open on venue, settling close")
        self.background.spawn(
            f"close:{symbol}", self._close_task(position, ExitType.TP_SL_TRAIL)
        )

    async def _on_present(self, position: Position, venue_pos: VenuePosition, report: TickReport):
        symbol = position.symbol
        position.mark_price = venue_pos.mark_price
        position.unrealized_pnl = venue_pos.unrealized_pnl

        if self.locks.is_locked(symbol):
            return

        # Venue holds levels the ledger never recorded (e.g. restored snapshot)
        if position.stop_loss_price is None and venue_pos.stop_loss is not None:
            position.stop_loss_price = venue_pos.stop_loss
        if position.trailing_distance is None and venue_pos.trailing_stop is not None:
            position.trailing_distance = venue_pos.trailing_stop

        restore_sl = venue_pos.stop_loss is None and position.stop_loss_price is not None
        restore_trailing = venue_pos.trailing_stop is None and position.trailing_distance is not None

        if restore_sl or restore_trailing:
            if symbol not in self._healing:
                self._healing.add(symbol)
                report.healing.append(symbol)
                self.background.spawn(
                    f"heal:{symbol}", self._heal(position, restore_sl, restore_trailing)
                )
        elif not position.is_protected and self.is_naked(venue_pos):
            await self._ensure(position, report)

        if self.time_exit_due(position) and self.locks.try_acquire(symbol):
            self.recently_closed[symbol] = time.time()
            report.time_exits.append(symbol)
            self.background.spawn(f"time_exit:{symbol}", self._time_exit_task(position))

    async def _heal(self, position: Position, restore_sl: bool, restore_trailing: bool):
        try:
            await self.protection.restore(position, restore_sl, restore_trailing)
        finally:
            self._healing.discard(position.symbol)

    # ==================== CLOSE PROCESSING ====================

    async def _close_task(self, position: Position, exit_type: ExitType):
        try:
            await asyncio.sleep(self.config.settle_delay_seconds)
            await self.settle_close(position, exit_type)
        finally:
            self.locks.release(position.symbol)

    async def settle_close(self, position: Position, exit_type: ExitType) -> ClosedTrade:
        """Match the close on the venue and move the position into PnL history."""
        close = await self.fetch_close_data(position)
        try:
            trade = self._build_trade(position, close, exit_type)
            # Removal and append happen together, with no await in between
            if self.ledger.get(position.symbol) is position:
                self.ledger.remove(position.symbol)
            self.pnl.append(trade)
        finally:
            if close.record is not None:
                self.pnl.release(close.record.order_id)

        log.info(
            f"TRADE: {position.symbol} closed ({exit_type.value}) | PnL: {trade.net_pnl:.4f} USDT | "
            f"Fees: {trade.fees.total:.6f} | Match: {close.tier or 'none'} | "
            f"Total: {self.pnl.total_pnl:.4f}"
        )
        return trade

    async def fetch_close_data(self, position: Position) -> CloseData:
        """
        Find the settlement record, then exact fees for both legs.
        The matched record id is reserved until the caller books it.
        """
        data = CloseData()
        symbol = position.symbol
        try:
            data.record, data.tier = await self.find_settlement(position)
        except UnmatchedSettlement as e:
            log.warning(str(e))

        if position.entry_order_id:
            data.fees.open, data.entry_is_maker = await self._execution_fees(
                symbol, position.entry_order_id
            )
        if data.record is not None:
            data.fees.close, data.exit_is_maker = await self._execution_fees(
                symbol, data.record.order_id
            )
        return data

    async def find_settlement(self, position: Position) -> Tuple[ClosedPnlRecord, str]:
        """
        Closed-PnL record for a vanished position, retried on the match policy.

        Raises:
            UnmatchedSettlement: nothing matched on any attempt
        """
        symbol = position.symbol
        for attempt in range(self.policy.attempts):
            if attempt > 0:
                await asyncio.sleep(self.policy.delay_seconds)
                log.debug(f"{symbol} retry {attempt + 1}/{self.policy.attempts} for closed PnL match")
            try:
                records = await self.gateway.list_closed_pnl(symbol, self.config.match_fetch_limit)
            except (TransientIOFailure, VenueRejection) as e:
                log.warning(f"Could not fetch closed PnL for {symbol}: {e}")
                continue

            not_before = None if self.policy.is_relaxed(attempt) else position.open_time
            match = match_record(records, position, self.pnl.unavailable_ids(), not_before)
            if match is not None and self.pnl.reserve(match[0].order_id):
                record, tier = match
                log.info(
                    f"{symbol} matched closed PnL ({tier}) | Entry: {record.avg_entry_price} "
                    f"| Exit: {record.avg_exit_price} | PnL: {record.closed_pnl}"
                )
                return record, tier

        raise UnmatchedSettlement(
            f"{symbol} no matching closed PnL record after {self.policy.attempts} attempts"
        )

    async def _execution_fees(self, symbol: str, order_id: str):
        """Summed fee and maker flag of the first fill."""
        try:
            executions = await self.gateway.list_executions(symbol, order_id)
        except (TransientIOFailure, VenueRejection) as e:
            log.warning(f"Could not fetch executions for {symbol} {order_id}: {e}")
            return 0.0, False
        if not executions:
            return 0.0, False
        return sum(e.exec_fee for e in executions), executions[0].is_maker

    def _build_trade(self, position: Position, close: CloseData, exit_type: ExitType) -> ClosedTrade:
        record = close.record
        if record is not None:
            exit_price = record.avg_exit_price or position.mark_price or position.entry_price
            estimate = position.local_pnl(exit_price) - close.fees.total
            self._check_disagreement(position.symbol, estimate, record.closed_pnl)
            return ClosedTrade(
                symbol=position.symbol,
                side=position.side,
                entry_price=record.avg_entry_price or position.entry_price,
                exit_price=exit_price,
                quantity=position.quantity,
                net_pnl=record.closed_pnl,
                fees=close.fees,
                exit_type=exit_type,
                entry_is_maker=close.entry_is_maker,
                exit_is_maker=close.exit_is_maker,
                close_order_id=record.order_id,
                entry_order_id=position.entry_order_id,
                open_time=position.open_time,
                local_estimate=estimate,
                dca_level=position.dca_level,
            )

        exit_price = position.mark_price or position.entry_price
        estimate = position.local_pnl(exit_price) - close.fees.total
        log.warning(
            f"{position.symbol} booked with local estimate "
            f"{estimate:.4f} at {exit_price}, pending backfill repair"
        )
        return ClosedTrade(
            symbol=position.symbol,
            side=position.side,
            entry_price=position.entry_price,
            exit_price=exit_price,
            quantity=position.quantity,
            net_pnl=estimate,
            fees=close.fees,
            exit_type=exit_type,
            entry_is_maker=close.entry_is_maker,
            entry_order_id=position.entry_order_id,
            open_time=position.open_time,
            pnl_resolved=False,
            local_estimate=estimate,
            dca_level=position.dca_level,
        )

    def _check_disagreement(self, symbol: str, estimate: float, venue_pnl: float):
        """Diagnostic only: the venue figure is authoritative."""
        scale = max(abs(venue_pnl), abs(estimate), 1e-9)
        if abs(estimate - venue_pnl) / scale > self.config.pnl_disagreement_pct:
            log.warning(
                f"{symbol} PnL disagreement: venue {venue_pnl:.4f} vs local estimate {estimate:.4f}"
            )

    # ==================== TIME EXIT ====================

    def time_exit_due(self, position: Position) -> bool:
        max_hold = self.config.max_hold_seconds
        if max_hold <= 0:
            return False
        if (now_ms() - position.open_time) / 1000 <= max_hold:
            return False
        if self._trailing_armed(position) and position.unrealized_pnl > 0:
            log.debug(f"{position.symbol} past max hold but trailing in profit, leaving it")
            return False
        return True

    def _trailing_armed(self, position: Position) -> bool:
        activation = position.trailing_activation_price
        mark = position.mark_price
        if not position.trailing_distance or not activation or not mark:
            return False
        if position.side is Side.BUY:
            return mark >= activation
        return mark <= activation

    async def _time_exit_task(self, position: Position):
        symbol = position.symbol
        try:
            held = (now_ms() - position.open_time) / 1000
            log.info(f"{symbol} held for {held:.0f}s, force-closing")
            if not await self._force_close(position):
                self.recently_closed.pop(symbol, None)
                return
            await asyncio.sleep(self.config.settle_delay_seconds)
            await self.settle_close(position, ExitType.TIME_EXIT)
        finally:
            self.locks.release(symbol)

    async def _force_close(self, position: Position) -> bool:
        """
        PostOnly limit close first when configured, market otherwise or as fallback.
        False when the position may still be open; the next tick retries.
        """
        symbol = position.symbol
        if self.config.time_exit_order_type == "Limit":
            price = await self._exit_price(position)
            if price is not None:
                closed = await self._limit_close(position, price)
                if closed is None:
                    return False
                if closed:
                    return True

        try:
            response = await self.gateway.close_position(
                symbol, position.side, position.quantity, "Market"
            )
        except (TransientIOFailure, VenueRejection) as e:
            log.error(f"Force-close failed for {symbol}: {e}")
            return False
        if not response.ok:
            log.error(f"Force-close failed for {symbol}: {response.message}")
            return False
        return True

    async def _exit_price(self, position: Position) -> Optional[float]:
        """Passive side of the book: ask for a long, bid for a short."""
        symbol = position.symbol
        try:
            top = await self.gateway.get_orderbook_top(symbol)
        except (TransientIOFailure, VenueRejection) as e:
            log.warning(f"Orderbook error for {symbol} on time exit: {e}")
            return None
        if top is None:
            return None
        raw = top.best_ask if position.side is Side.BUY else top.best_bid
        return self.registry.round_price(symbol, raw) if raw else None

    async def _limit_close(self, position: Position, price: float) -> Optional[bool]:
        """
        True when the limit close filled, False to fall back to market, None
        when the outcome is unknown. An unfilled order is always cancelled.
        """
        symbol = position.symbol
        try:
            response = await self.gateway.close_position(
                symbol, position.side, position.quantity, "Limit", price
            )
        except (TransientIOFailure, VenueRejection) as e:
            log.error(f"Limit close for {symbol} failed: {e}")
            return None
        if not response.ok:
            log.info(f"Limit close rejected for {symbol} ({response.message}), falling back to market")
            return False

        filled = False
        try:
            await asyncio.sleep(self.trading.fill_settle_seconds)
            filled = not await self._still_open(symbol)
        except (TransientIOFailure, VenueRejection) as e:
            log.error(f"Could not confirm limit close for {symbol}: {e}")
            return None
        finally:
            if not filled and response.order_id:
                await self._cancel(symbol, response.order_id)

        if filled:
            log.info(f"{symbol} limit-closed @ {price}")
            return True
        log.info(f"Limit close not filled for {symbol}, falling back to market")
        return False

    async def _cancel(self, symbol: str, order_id: str):
        try:
            response = await self.gateway.cancel_order(symbol, order_id)
        except (TransientIOFailure, VenueRejection) as e:
            log.error(f"Cancel of {order_id} for {symbol} failed: {e}")
            return
        if not response.ok:
            log.warning(f"Cancel of {order_id} for {symbol} rejected: {response.message}")

    async def _still_open(self, symbol: str) -> bool:
        positions = await self.gateway.list_open_positions()
        return any(p.symbol == symbol and p.size > 0 for p in positions)

    # ==================== BACKFILL ====================

    async def backfill(self) -> BackfillReport:
        """
        Sweep the venue's recent closed-PnL list: repair unresolved trades
        first, then add closes we never saw (e.g. while the process was down).
        """
        report = BackfillReport()
        try:
            records = await self.gateway.list_closed_pnl(None, self.config.backfill_limit)
        except (TransientIOFailure, VenueRejection) as e:
            log.error(f"Backfill fetch failed: {e}")
            return report

        self.last_backfill_at = time.time()
        report.fetched = len(records)

        for record in sorted(records, key=lambda r: r.created_time):
            if self._skip_record(record):
                continue

            trade = self._repairable(record)
            if trade is not None:
                fee, maker = await self._execution_fees(record.symbol, record.order_id)
                if trade.pnl_resolved or self.pnl.is_consumed(record.order_id):
                    continue
                estimate = trade.local_estimate if trade.local_estimate is not None else trade.net_pnl
                self.pnl.repair(trade, record, fee, maker)
                self._check_disagreement(record.symbol, estimate, record.closed_pnl)
                report.repaired += 1
                log.info(f"TRADE: Repaired {record.symbol} close with venue PnL {record.closed_pnl:.4f}")
                continue

            if self.pnl.has_bucket(record.symbol, record.created_time, self.config.bucket_seconds):
                continue

            fee, maker = await self._execution_fees(record.symbol, record.order_id)
            if self._skip_record(record):
                continue
            trade = ClosedTrade(
                symbol=record.symbol,
                side=record.position_side,
                entry_price=record.avg_entry_price,
                exit_price=record.avg_exit_price,
                quantity=record.qty,
                net_pnl=record.closed_pnl,
                fees=Fees(close=fee),
                exit_type=ExitType.RECONCILED,
                exit_is_maker=maker,
                close_order_id=record.order_id,
                open_time=record.created_time,
                closed_at=record.created_time,
            )
            if self.pnl.append(trade):
                report.added += 1
                log.info(f"TRADE: Backfilled {record.symbol} close | PnL: {record.closed_pnl:.4f}")

        if report.repaired or report.added:
            log.info(f"Backfill: {report.repaired} repaired, {report.added} added")
        return report

    def _skip_record(self, record: ClosedPnlRecord) -> bool:
        if self.pnl.is_consumed(record.order_id):
            return True
        if record.created_time < self.pnl.reset_timestamp:
            return True
        # Belongs to a live position whose close the tick will settle
        position = self.ledger.get(record.symbol)
        return position is not None and record.created_time >= position.open_time

    def _repairable(self, record: ClosedPnlRecord) -> Optional[ClosedTrade]:
        """Closest unresolved trade on the same symbol with a matching quantity."""
        window_ms = self.config.repair_window_seconds * 1000
        candidates = [
            t for t in self.pnl.unresolved()
            if t.symbol == record.symbol
            and abs(t.closed_at - record.created_time) <= window_ms
            and (t.quantity <= 0 or record.qty <= 0 or relative_diff(record.qty, t.quantity) < 0.01)
        ]
        if not candidates:
            return None
        return min(candidates, key=lambda t: abs(t.closed_at - record.created_time))

    # ==================== STATUS ====================

    async def drain_background(self):
        await self.background.drain()

    def status(self) -> Dict:
        return {
            "ticks": self.ticks,
            "last_tick_at": self.last_tick_at,
            "last_backfill_at": self.last_backfill_at,
            "healing": sorted(self._healing),
            "in_flight": len(self.background),
        }
