"""
Liquidation counter-trading bot orchestrator.

Wires the venue gateway, execution engine and reconciliation engine
together, restores state on startup and drives the periodic jobs.
"""

import asyncio
import signal
import time
from datetime import datetime
from typing import Any, Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config.settings import Settings, settings as default_settings
from liqtrader.exceptions import TransientIOFailure, VenueRejection
from liqtrader.executor import ExecutionEngine
from liqtrader.gateway import AsyncBybitGateway
from liqtrader.indicators import IndicatorService
from liqtrader.instruments import InstrumentRegistry, VolumeFilter
from liqtrader.ledger import PendingLocks, PositionLedger
from liqtrader.liquidation_feed import LiquidationFeed
from liqtrader.models import Position
from liqtrader.pnl_history import PnlHistory
from liqtrader.protection import ProtectionManager
from liqtrader.reconciler import Reconciler
from liqtrader.risk_manager import RiskManager
from liqtrader.utils.persistence_manager import PersistenceManager
from liqtrader.ws_trade import TradeChannel
from utils.logger import log

VENUE_ERRORS = (TransientIOFailure, VenueRejection)


class LiquidationBot:
    """
    Liquidation counter-trading bot.

    Features:
    - Startup restore + backfill before any new entry
    - Reconciliation tick, backfill sweep and balance refresh on a schedule
    - Periodic state snapshots
    - Graceful shutdown on SIGINT/SIGTERM
    """

    def __init__(
        self,
        gateway=None,
        trade_channel: Optional[TradeChannel] = None,
        persistence: Optional[PersistenceManager] = None,
        config: Optional[Settings] = None,
    ):
        self.config = config or default_settings
        cfg = self.config

        self.trade_channel = trade_channel
        if gateway is None:
            self.trade_channel = trade_channel or TradeChannel()
            gateway = AsyncBybitGateway(trade_channel=self.trade_channel, config=cfg.client)
        self.gateway = gateway
        self.persistence = persistence or PersistenceManager(cfg.persistence.data_dir)

        self.registry = InstrumentRegistry()
        self.volume_filter = VolumeFilter()
        self.ledger = PositionLedger()
        self.locks = PendingLocks()
        self.pnl = PnlHistory()
        self.risk = RiskManager(self.registry, cfg.trading, cfg.dca, cfg.protection)
        self.indicators = IndicatorService(self.gateway, cfg.indicators)
        self.protection = ProtectionManager(
            self.gateway, self.registry, self.risk, self.indicators, cfg.protection, cfg.dca
        )
        self.executor = ExecutionEngine(
            self.gateway,
            self.ledger,
            self.locks,
            self.registry,
            self.volume_filter,
            self.risk,
            self.indicators,
            self.protection,
            cfg.trading,
            cfg.dca,
        )
        self.reconciler = Reconciler(
            self.gateway,
            self.ledger,
            self.locks,
            self.protection,
            self.pnl,
            self.registry,
            cfg.reconcile,
            cfg.protection,
            cfg.trading,
            cfg.dca,
        )
        self.feed = LiquidationFeed(
            self.executor.on_liquidation,
            min_value_usd=cfg.trading.min_liq_value_usd,
            batch_size=cfg.client.liquidation_batch_size,
        )

        self.scheduler: Optional[AsyncIOScheduler] = None
        self.running = False
        self.start_time: Optional[datetime] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._tasks = []

    # ==================== STARTUP ====================

    async def initialize(self) -> bool:
        """
        Load venue metadata and restore state.

        Returns:
            True if the bot can start trading
        """
        log.info("=" * 70)
        log.info("Liquidation Counter-Trading Bot")
        log.info("=" * 70)
        log.info(f"Network: {self.config.exchange.network}")
        log.info(f"Position size: ${self.config.trading.position_size_usd} x{self.config.trading.leverage}")
        log.info(f"Max positions: {self.config.trading.max_positions}")
        log.info(f"DCA splits: {self.config.dca.splits}")
        log.info(f"Min liquidation: ${self.config.trading.min_liq_value_usd:,.0f}")

        try:
            await self.registry.refresh(self.gateway)
        except VENUE_ERRORS as e:
            log.error(f"Failed to load instruments: {e}")
            return False

        try:
            await self.volume_filter.refresh(self.gateway)
        except VENUE_ERRORS as e:
            log.warning(f"Turnover data unavailable, volume filter open: {e}")

        await self.refresh_balance()
        if not self.risk.has_balance:
            log.warning("Wallet balance unknown, entries skip until it refreshes")

        self.restore_state(self.persistence.load_state())
        await self.reconciler.backfill()

        self.feed.set_symbols(self.tradable_symbols())
        log.info("=" * 70)
        log.info("Initialization complete!")
        log.info("=" * 70)
        return True

    def tradable_symbols(self):
        return [s for s in self.registry.symbols if not self.registry.is_blocked(s)]

    async def run(self):
        """Run until stopped by a signal or stop()."""
        if not await self.initialize():
            return

        self.running = True
        self.start_time = datetime.now()
        self._stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self.stop)

        if self.trade_channel is not None:
            self._tasks.append(asyncio.create_task(self.trade_channel.connect(), name="trade_channel"))
        self._tasks.append(asyncio.create_task(self.feed.connect(), name="liquidation_feed"))
        self._start_scheduler()

        log.info("Bot is running. Press Ctrl+C to stop.")
        await self._stop_event.wait()
        await self.shutdown()

    def _start_scheduler(self):
        cfg = self.config
        self.scheduler = AsyncIOScheduler()
        jobs = (
            (self.reconcile_tick, cfg.reconcile.interval_seconds, "reconcile", "Reconciliation tick"),
            (self.backfill, cfg.reconcile.backfill_interval_seconds, "backfill", "PnL backfill sweep"),
            (self.refresh_balance, cfg.client.balance_refresh_seconds, "balance", "Balance refresh"),
            (self.save_state, cfg.persistence.save_interval_seconds, "save_state", "State snapshot"),
            (self.refresh_instruments, cfg.client.instrument_refresh_seconds, "instruments", "Instrument refresh"),
            (self.refresh_turnover, cfg.client.turnover_refresh_seconds, "turnover", "Turnover refresh"),
        )
        for func, seconds, job_id, name in jobs:
            self.scheduler.add_job(
                func,
                trigger=IntervalTrigger(seconds=seconds),
                id=job_id,
                name=name,
                max_instances=1,
                coalesce=True,
                replace_existing=True,
            )
        self.scheduler.start()
        log.info(f"Scheduler started with {len(jobs)} jobs")

    def stop(self):
        log.info("Stop requested, shutting down...")
        self.running = False
        if self._stop_event is not None:
            self._stop_event.set()

    async def shutdown(self):
        """Stop streams and jobs, let in-flight closes settle, save state."""
        self.running = False
        if self.scheduler and self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        self.feed.stop()
        if self.trade_channel is not None:
            self.trade_channel.stop()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)

        await self.executor.drain_background()
        await self.reconciler.drain_background()
        self.save_state()
        self._print_summary()
        log.info("Shutdown complete.")

    # ==================== JOBS ====================

    async def reconcile_tick(self):
        await self.reconciler.tick()

    async def backfill(self):
        await self.reconciler.backfill()

    async def refresh_balance(self):
        try:
            self.risk.update_balance(await self.gateway.get_wallet_balance())
        except VENUE_ERRORS as e:
            log.warning(f"Balance refresh failed: {e}")

    async def refresh_instruments(self):
        try:
            await self.registry.refresh(self.gateway)
        except VENUE_ERRORS as e:
            log.warning(f"Instrument refresh failed: {e}")
            return
        symbols = self.tradable_symbols()
        if symbols != self.feed.symbols:
            log.info(f"Tradable symbols changed ({len(self.feed.symbols)} -> {len(symbols)}), applies on reconnect")
            self.feed.set_symbols(symbols)

    async def refresh_turnover(self):
        try:
            await self.volume_filter.refresh(self.gateway)
        except VENUE_ERRORS as e:
            log.warning(f"Turnover refresh failed: {e}")

    # ==================== STATE ====================

    def export_state(self) -> Dict[str, Any]:
        state = {"positions": {p.symbol: p.to_dict() for p in self.ledger}}
        state.update(self.pnl.to_dict())
        state["trade_log"] = [e.to_dict() for e in self.executor.trade_log]
        state["saved_at"] = int(time.time() * 1000)
        return state

    def restore_state(self, state: Optional[Dict[str, Any]]) -> int:
        """Rebuild ledger, PnL history and trade log from a snapshot."""
        if not state:
            return 0
        restored = 0
        for data in (state.get("positions") or {}).values():
            position = Position.from_dict(data)
            if position.symbol in self.ledger or position.quantity <= 0:
                continue
            self.ledger.add(position)
            restored += 1
        self.pnl.load(state)
        self.executor.restore_trade_log(state.get("trade_log") or [])
        log.info(f"Restored {restored} open positions from snapshot")
        return restored

    def save_state(self) -> bool:
        return self.persistence.save_state(self.export_state())

    def reset_pnl(self):
        """Zero PnL history and the trade log; older venue records are ignored afterwards."""
        self.pnl.reset()
        self.executor.reset_trade_log()
        self.save_state()

    # ==================== STATUS ====================

    def status(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "network": self.config.exchange.network,
            "balance": self.risk.balance,
            "open_positions": [p.to_dict() for p in self.ledger],
            "pending": sorted(self.locks.snapshot()),
            "trade_channel_ready": bool(self.trade_channel and self.trade_channel.is_ready()),
            "feed": {
                "symbols": len(self.feed.symbols),
                "received": self.feed.received,
                "dispatched": self.feed.dispatched,
            },
            "reconciler": self.reconciler.status(),
        }

    def stats(self) -> Dict[str, Any]:
        stats = self.pnl.stats()
        stats["avg_exec_time_ms"] = round(self.executor.average_exec_time_ms(), 1)
        stats["decisions"] = len(self.executor.trade_log)
        return stats

    def _print_summary(self):
        log.info("=" * 70)
        log.info("PERFORMANCE SUMMARY")
        log.info("=" * 70)
        if self.start_time:
            log.info(f"Runtime: {datetime.now() - self.start_time}")
        stats = self.stats()
        log.info(f"Closed trades: {stats['closed_trades']} (win rate {stats['win_rate']}%)")
        log.info(f"Total P&L: ${stats['total_pnl']:.2f} | Fees: ${stats['total_fees']:.2f}")
        log.info(f"Avg decision latency: {stats['avg_exec_time_ms']}ms")
        log.info(f"Open positions: {len(self.ledger)}")
