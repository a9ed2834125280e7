"""
Async Venue Gateway.
Wraps the blocking REST client in worker threads and routes orders through
the websocket trade channel when it is ready.
"""

import asyncio
import random
from typing import List, Optional

from config.settings import ClientConfig, settings
from liqtrader.bybit_client import BybitClient
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
from liqtrader.exceptions import ChannelUnavailable, TransientIOFailure
from liqtrader.models import Side
from liqtrader.utils.balance_utils import parse_wallet_balance
from liqtrader.ws_trade import TradeChannel
from utils.logger import log


class AsyncBybitGateway:
    """
    VenueGateway implementation for Bybit.

    Reads retry with exponential backoff and jitter on TransientIOFailure.
    Writes are sent exactly once; a fast-channel timeout is resolved by
    looking the order up by its link id before resubmitting over REST.
    """

    def __init__(
        self,
        client: Optional[BybitClient] = None,
        trade_channel: Optional[TradeChannel] = None,
        config: Optional[ClientConfig] = None,
    ):
        self.client = client or BybitClient()
        self.trade_channel = trade_channel
        self.config = config or settings.client

    async def _read(self, fn, *args, **kwargs):
        attempts = max(1, self.config.read_retries)
        for attempt in range(attempts):
            try:
                return await asyncio.to_thread(fn, *args, **kwargs)
            except TransientIOFailure as e:
                if attempt == attempts - 1:
                    raise
                backoff = min(
                    self.config.backoff_max_seconds,
                    self.config.backoff_base_seconds * (2 ** attempt),
                ) + random.uniform(0, self.config.backoff_base_seconds)
                log.warning(
                    f"{fn.__name__} failed ({e}), retry {attempt + 1}/{attempts - 1} in {backoff:.1f}s"
                )
                await asyncio.sleep(backoff)

    async def _write(self, fn, *args, **kwargs) -> VenueResponse:
        return await asyncio.to_thread(fn, *args, **kwargs)

    # ==================== ORDERS ====================

    async def place_order(
        self,
        symbol: str,
        side: Side,
        qty: float,
        order_type: str = "Market",
        price: Optional[float] = None,
        time_in_force: str = "GTC",
        reduce_only: bool = False,
        order_link_id: Optional[str] = None,
    ) -> VenueResponse:
        order = dict(
            symbol=symbol, side=side, qty=qty, order_type=order_type, price=price,
            time_in_force=time_in_force, reduce_only=reduce_only, order_link_id=order_link_id,
        )

        if self.trade_channel is not None and self.trade_channel.is_ready():
            try:
                data = await self.trade_channel.place_order(self.client.build_order_body(**order))
                return VenueResponse.from_api_response(data)
            except ChannelUnavailable as e:
                log.warning(f"{symbol}: {e}, sending over REST")
            except TransientIOFailure as e:
                if not order_link_id:
                    raise
                log.warning(f"{symbol}: {e}, checking order {order_link_id} before REST resubmit")
                status = await self.get_order_status(symbol, order_link_id=order_link_id)
                if status is not None:
                    return VenueResponse(
                        ok=True,
                        result={"orderId": status.order_id, "orderLinkId": status.order_link_id},
                    )

        return await self._write(self.client.place_order, **order)

    async def cancel_order(self, symbol: str, order_id: str) -> VenueResponse:
        return await self._write(self.client.cancel_order, symbol, order_id)

    async def get_order_status(
        self, symbol: str, order_id: Optional[str] = None, order_link_id: Optional[str] = None,
    ) -> Optional[OrderStatus]:
        return await self._read(
            self.client.get_order, symbol, order_id=order_id, order_link_id=order_link_id
        )

    async def close_position(
        self, symbol: str, side: Side, qty: float,
        order_type: str = "Market", price: Optional[float] = None,
    ) -> VenueResponse:
        return await self._write(self.client.close_position, symbol, side, qty, order_type, price)

    # ==================== ACCOUNT SETTINGS ====================

    async def set_leverage(self, symbol: str, leverage: float) -> VenueResponse:
        return await self._write(self.client.set_leverage, symbol, leverage)

    async def switch_one_way_mode(self, symbol: str) -> VenueResponse:
        return await self._write(self.client.switch_one_way_mode, symbol)

    async def set_protection(
        self,
        symbol: str,
        stop_loss: Optional[float] = None,
        take_profit: Optional[float] = None,
        trailing_stop: Optional[float] = None,
        active_price: Optional[float] = None,
        tp_limit: bool = False,
    ) -> VenueResponse:
        return await self._write(
            self.client.set_trading_stop,
            symbol,
            stop_loss=stop_loss,
            take_profit=take_profit,
            trailing_stop=trailing_stop,
            active_price=active_price,
            tp_limit=tp_limit,
        )

    # ==================== READS ====================

    async def list_open_positions(self) -> List[VenuePosition]:
        return await self._read(self.client.get_positions)

    async def list_closed_pnl(self, symbol: Optional[str] = None, limit: int = 50) -> List[ClosedPnlRecord]:
        return await self._read(self.client.get_closed_pnl, symbol, limit)

    async def list_executions(self, symbol: str, order_id: str) -> List[Execution]:
        return await self._read(self.client.get_executions, symbol, order_id)

    async def get_orderbook_top(self, symbol: str) -> Optional[OrderBookTop]:
        return await self._read(self.client.get_orderbook_top, symbol)

    async def get_klines(self, symbol: str, interval: str, limit: int) -> List[Candle]:
        return await self._read(self.client.get_klines, symbol, interval, limit)

    async def get_instruments(self) -> List[InstrumentInfo]:
        return await self._read(self.client.get_instruments)

    async def get_tickers(self) -> List[Ticker]:
        return await self._read(self.client.get_tickers)

    async def get_wallet_balance(self) -> float:
        return parse_wallet_balance(await self._read(self.client.get_wallet_balance))
