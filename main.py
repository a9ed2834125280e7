#!/usr/bin/env python3
"""
Liquidation Counter-Trading Bot
Main entry point.

Usage:
    python main.py                    # Run with settings from .env
    python main.py --network mainnet  # Override the network
    python main.py --once             # Restore, reconcile once, backfill and exit
    python main.py --stats            # Print PnL stats from the saved snapshot
    python main.py --reset-pnl        # Zero PnL history and exit

Configuration:
    Copy .env.example to .env and fill in your API credentials.
"""

import argparse
import asyncio
import json
import sys

from config.settings import ExchangeConfig, settings
from liqtrader.bot import LiquidationBot
from liqtrader.bybit_client import BybitClient
from liqtrader.gateway import AsyncBybitGateway
from liqtrader.pnl_history import PnlHistory
from liqtrader.utils.persistence_manager import PersistenceManager
from liqtrader.ws_trade import TradeChannel
from utils.logger import log


async def run_once(bot: LiquidationBot) -> int:
    if not await bot.initialize():
        return 1
    report = await bot.reconciler.tick()
    await bot.reconciler.drain_background()
    await bot.reconciler.backfill()
    bot.save_state()
    log.info(
        f"Reconciled once: {len(report.adopted)} adopted, {len(report.closing)} closed, "
        f"{len(report.healing)} healed"
    )
    print(json.dumps(bot.stats(), indent=2))
    return 0


def print_stats(persistence: PersistenceManager) -> int:
    pnl = PnlHistory()
    pnl.load(persistence.load_state() or {})
    print(json.dumps(pnl.stats(), indent=2))
    return 0


def reset_pnl(persistence: PersistenceManager) -> int:
    """Zero the saved PnL history, keeping open positions."""
    state = persistence.load_state() or {}
    pnl = PnlHistory()
    pnl.load(state)
    pnl.reset()
    state.update(pnl.to_dict())
    state["trade_log"] = []
    return 0 if persistence.save_state(state) else 1


def parse_args():
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Liquidation Counter-Trading Bot (Bybit linear perpetuals)",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py --network testnet     # Paper money
  python main.py --once                # One reconciliation pass and exit
  python main.py --stats               # Show PnL stats

Configuration:
  Copy .env.example to .env and set your API credentials.
  Sizing, DCA splits and protection multipliers are read from .env as well.
        """
    )

    parser.add_argument(
        "--network",
        choices=sorted(ExchangeConfig.ENDPOINTS),
        help="Bybit network (overrides BYBIT_NETWORK)"
    )

    group = parser.add_mutually_exclusive_group()
    group.add_argument(
        "--once",
        action="store_true",
        help="Restore state, reconcile once, backfill and exit"
    )
    group.add_argument(
        "--stats",
        action="store_true",
        help="Print PnL stats from the saved snapshot and exit"
    )
    group.add_argument(
        "--reset-pnl",
        action="store_true",
        help="Zero PnL history (older venue records are ignored afterwards) and exit"
    )

    return parser.parse_args()


def main():
    """Main entry point."""
    args = parse_args()

    if args.network:
        settings.exchange.network = args.network
        log.info(f"Using {args.network} (command line override)")

    if args.stats or args.reset_pnl:
        persistence = PersistenceManager(settings.persistence.data_dir)
        sys.exit(print_stats(persistence) if args.stats else reset_pnl(persistence))

    if not settings.exchange.validate():
        log.error("Invalid API credentials. Please check your .env file.")
        log.error("Copy .env.example to .env and fill in your API key and secret.")
        sys.exit(1)

    client = BybitClient()
    if not client.test_connection():
        log.error("Could not reach Bybit. Check network and credentials.")
        sys.exit(1)

    channel = TradeChannel()
    gateway = AsyncBybitGateway(client=client, trade_channel=channel, config=settings.client)
    bot = LiquidationBot(gateway=gateway, trade_channel=channel)
    if args.once:
        sys.exit(asyncio.run(run_once(bot)))
    asyncio.run(bot.run())


if __name__ == "__main__":
    main()
