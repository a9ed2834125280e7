"""
Bybit public liquidation stream.
Subscribes to allLiquidation.{SYMBOL} for every tradable instrument and hands
qualifying events to the execution engine.
"""

import asyncio
import json
from typing import Any, Awaitable, Callable, Dict, List, Optional

import websockets
from websockets.exceptions import ConnectionClosed

from config.settings import settings
from liqtrader.background import BackgroundTasks
from liqtrader.models import LiquidationEvent, Side
from utils.logger import log

TOPIC_PREFIX = "allLiquidation."


def parse_liquidation(msg: Dict[str, Any]) -> List[LiquidationEvent]:
    """
    Events carried by one stream message. Bybit sends `data` as a list,
    older payloads as a single object; malformed items are dropped.
    """
    if not str(msg.get("topic", "")).startswith(TOPIC_PREFIX):
        return []
    data = msg.get("data")
    if isinstance(data, dict):
        data = [data]
    if not isinstance(data, list):
        return []

    events = []
    for item in data:
        try:
            event = LiquidationEvent(
                symbol=item["s"],
                liquidated_side=Side(item["S"]),
                price=float(item["p"]),
                quantity=float(item["v"]),
                timestamp=int(item.get("T") or msg.get("ts") or 0),
            )
        except (KeyError, TypeError, ValueError) as e:
            log.debug(f"Skipping malformed liquidation item {item}: {e}")
            continue
        if event.price > 0 and event.quantity > 0:
            events.append(event)
    return events


class LiquidationFeed:
    """
    Public WebSocket client for liquidations.

    Features:
    - Batched subscriptions (venue limits args per request)
    - Keepalive ping
    - Exponential reconnect backoff, reset after a successful connect
    - Each qualifying event is dispatched as its own task
    """

    def __init__(
        self,
        handler: Callable[[LiquidationEvent], Awaitable[Any]],
        symbols: Optional[List[str]] = None,
        url: Optional[str] = None,
        min_value_usd: Optional[float] = None,
        batch_size: Optional[int] = None,
    ):
        self.handler = handler
        self.symbols = list(symbols or [])
        self.url = url or settings.exchange.endpoints["ws_public"]
        self.min_value_usd = (
            min_value_usd if min_value_usd is not None else settings.trading.min_liq_value_usd
        )
        self.batch_size = batch_size or settings.client.liquidation_batch_size
        self.ping_interval = settings.client.ws_ping_seconds

        self.ws = None
        self.running = False
        self.reconnect_attempts = 0
        self.received = 0
        self.dispatched = 0
        self.background = BackgroundTasks()

    def set_symbols(self, symbols: List[str]):
        self.symbols = sorted(symbols)

    def subscription_batches(self) -> List[Dict[str, Any]]:
        topics = [f"{TOPIC_PREFIX}{s}" for s in self.symbols]
        return [
            {"op": "subscribe", "args": topics[i:i + self.batch_size]}
            for i in range(0, len(topics), self.batch_size)
        ]

    def reconnect_delay(self) -> float:
        return min(2 ** self.reconnect_attempts, 60)

    async def connect(self):
        """Connect with auto-reconnect until stopped."""
        self.running = True

        while self.running:
            try:
                log.info(f"Connecting liquidation feed: {self.url} ({len(self.symbols)} symbols)")
                async with websockets.connect(self.url, ping_interval=self.ping_interval) as ws:
                    self.ws = ws
                    self.reconnect_attempts = 0
                    for batch in self.subscription_batches():
                        await ws.send(json.dumps(batch))
                    log.info("Liquidation feed connected")
                    await self._listen()
            except (ConnectionClosed, OSError, asyncio.TimeoutError) as e:
                log.error(f"Liquidation feed error: {e}")
            finally:
                self.ws = None

            if not self.running:
                break
            delay = self.reconnect_delay()
            self.reconnect_attempts += 1
            log.info(f"Reconnecting liquidation feed in {delay}s...")
            await asyncio.sleep(delay)

    async def _listen(self):
        async for message in self.ws:
            try:
                msg = json.loads(message)
            except ValueError as e:
                log.error(f"Liquidation feed parse error: {e}")
                continue
            self.handle_message(msg)

    def handle_message(self, msg: Dict[str, Any]) -> int:
        """Dispatch qualifying events; returns how many were dispatched."""
        if msg.get("op") == "subscribe" and not msg.get("success", True):
            log.warning(f"Liquidation subscription rejected: {msg.get('ret_msg')}")
            return 0

        dispatched = 0
        for event in parse_liquidation(msg):
            self.received += 1
            if not event.qualifies(self.min_value_usd):
                continue
            log.info(
                f"Liquidation: {event.symbol} {event.liquidated_side.value} "
                f"${event.usd_value:,.0f} @ {event.price}"
            )
            self.background.spawn(f"liq:{event.symbol}", self.handler(event))
            dispatched += 1
        self.dispatched += dispatched
        return dispatched

    def stop(self):
        self.running = False
        log.info("Stopping liquidation feed...")
