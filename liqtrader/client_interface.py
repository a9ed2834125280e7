"""
Venue Gateway Protocol Interface.
Defines the async interface the engine talks to, and the venue-side records
it returns. AsyncBybitGateway implements it for live trading; tests use an
in-memory fake.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from liqtrader.models import Side


def _float(val, default: float = 0.0) -> float:
    """Bybit encodes numbers as strings, empty string meaning unset."""
    if val is None or val == "":
        return default
    try:
        return float(val)
    except (ValueError, TypeError):
        return default


def _optional_price(val) -> Optional[float]:
    price = _float(val)
    return price if price > 0 else None


def _bool(val) -> bool:
    return val is True or val == "true"


@dataclass
class VenueResponse:
    """Outcome of a write call (order, protection, leverage)."""

    ok: bool
    ret_code: int = 0
    message: str = ""
    result: Dict[str, Any] = field(default_factory=dict)

    @property
    def order_id(self) -> Optional[str]:
        return self.result.get("orderId") or None

    @property
    def order_link_id(self) -> Optional[str]:
        return self.result.get("orderLinkId") or None

    @classmethod
    def from_api_response(cls, data: Dict, ok_codes=(0,)) -> "VenueResponse":
        ret_code = int(data.get("retCode", -1))
        return cls(
            ok=ret_code in ok_codes,
            ret_code=ret_code,
            message=data.get("retMsg", ""),
            result=data.get("result") or {},
        )


@dataclass
class VenuePosition:
    """An open position as reported by the venue."""

    symbol: str
    side: Side
    size: float
    avg_price: float
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    trailing_stop: Optional[float] = None
    unrealized_pnl: float = 0.0
    mark_price: float = 0.0
    created_time: int = 0

    @classmethod
    def from_api_response(cls, data: Dict) -> "VenuePosition":
        return cls(
            symbol=data.get("symbol", ""),
            side=Side(data.get("side") or "Buy"),
            size=_float(data.get("size")),
            avg_price=_float(data.get("avgPrice")),
            stop_loss=_optional_price(data.get("stopLoss")),
            take_profit=_optional_price(data.get("takeProfit")),
            trailing_stop=_optional_price(data.get("trailingStop")),
            unrealized_pnl=_float(data.get("unrealisedPnl")),
            mark_price=_float(data.get("markPrice")),
            created_time=int(_float(data.get("createdTime"))),
        )


@dataclass
class ClosedPnlRecord:
    """
    A settled close from the venue's closed-PnL history.

    The venue reports the side of the closing order, so the position side is
    its opposite.
    """

    symbol: str
    order_id: str
    side: Side
    avg_entry_price: float
    avg_exit_price: float
    qty: float
    closed_pnl: float
    created_time: int

    @property
    def position_side(self) -> Side:
        return self.side.opposite

    @classmethod
    def from_api_response(cls, data: Dict) -> "ClosedPnlRecord":
        return cls(
            symbol=data.get("symbol", ""),
            order_id=data.get("orderId", ""),
            side=Side(data.get("side") or "Sell"),
            avg_entry_price=_float(data.get("avgEntryPrice")),
            avg_exit_price=_float(data.get("avgExitPrice")),
            qty=_float(data.get("qty")),
            closed_pnl=_float(data.get("closedPnl")),
            created_time=int(_float(data.get("createdTime"))),
        )


@dataclass
class Execution:
    """One fill of an order."""

    order_id: str
    exec_fee: float
    is_maker: bool
    exec_price: float = 0.0
    exec_qty: float = 0.0

    @classmethod
    def from_api_response(cls, data: Dict) -> "Execution":
        return cls(
            order_id=data.get("orderId", ""),
            exec_fee=_float(data.get("execFee")),
            is_maker=_bool(data.get("isMaker")),
            exec_price=_float(data.get("execPrice")),
            exec_qty=_float(data.get("execQty")),
        )


@dataclass
class OrderStatus:
    """Current state of a single order."""

    order_id: str
    order_link_id: str
    status: str
    avg_price: float = 0.0
    cum_exec_qty: float = 0.0

    @property
    def is_filled(self) -> bool:
        return self.status == "Filled"

    @classmethod
    def from_api_response(cls, data: Dict) -> "OrderStatus":
        return cls(
            order_id=data.get("orderId", ""),
            order_link_id=data.get("orderLinkId", ""),
            status=data.get("orderStatus", ""),
            avg_price=_float(data.get("avgPrice")),
            cum_exec_qty=_float(data.get("cumExecQty")),
        )


@dataclass
class OrderBookTop:
    best_bid: Optional[float]
    best_ask: Optional[float]

    @classmethod
    def from_api_response(cls, data: Dict) -> "OrderBookTop":
        bids = data.get("b") or []
        asks = data.get("a") or []
        return cls(
            best_bid=_optional_price(bids[0][0]) if bids else None,
            best_ask=_optional_price(asks[0][0]) if asks else None,
        )


@dataclass
class Candle:
    """OHLCV candle data."""

    timestamp: int
    open: float
    high: float
    low: float
    close: float
    volume: float

    @classmethod
    def from_api_response(cls, data) -> "Candle":
        # Array format: [start, open, high, low, close, volume, turnover]
        return cls(
            timestamp=int(_float(data[0])),
            open=_float(data[1]),
            high=_float(data[2]),
            low=_float(data[3]),
            close=_float(data[4]),
            volume=_float(data[5]),
        )


@dataclass
class InstrumentInfo:
    """Trading rules for one linear contract."""

    symbol: str
    tick_size: float
    qty_step: float
    min_qty: float
    max_leverage: float
    status: str = "Trading"
    is_pre_listing: bool = False

    @classmethod
    def from_api_response(cls, data: Dict) -> "InstrumentInfo":
        price_filter = data.get("priceFilter") or {}
        lot_filter = data.get("lotSizeFilter") or {}
        leverage_filter = data.get("leverageFilter") or {}
        return cls(
            symbol=data.get("symbol", ""),
            tick_size=_float(price_filter.get("tickSize"), 0.01),
            qty_step=_float(lot_filter.get("qtyStep"), 0.001),
            min_qty=_float(lot_filter.get("minOrderQty"), 0.001),
            max_leverage=_float(leverage_filter.get("maxLeverage"), 1.0),
            status=data.get("status", ""),
            is_pre_listing=_bool(data.get("isPreListing")),
        )


@dataclass
class Ticker:
    symbol: str
    last_price: float
    turnover_24h: float

    @classmethod
    def from_api_response(cls, data: Dict) -> "Ticker":
        return cls(
            symbol=data.get("symbol", ""),
            last_price=_float(data.get("lastPrice")),
            turnover_24h=_float(data.get("turnover24h")),
        )


@runtime_checkable
class VenueGateway(Protocol):
    """
    Async interface to the derivatives venue.

    Reads may be retried by the implementation; writes are one-shot and
    report rejections through VenueResponse.ok rather than raising.
    TransientIOFailure means the outcome of the call is unknown.
    """

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
        ...

    async def cancel_order(self, symbol: str, order_id: str) -> VenueResponse:
        ...

    async def get_order_status(
        self, symbol: str, order_id: Optional[str] = None,
        order_link_id: Optional[str] = None,
    ) -> Optional[OrderStatus]:
        ...

    async def set_leverage(self, symbol: str, leverage: float) -> VenueResponse:
        ...

    async def switch_one_way_mode(self, symbol: str) -> VenueResponse:
        ...

    async def set_protection(
        self,
        symbol: str,
        stop_loss: Optional[float] = None,
        take_profit: Optional[float] = None,
        trailing_stop: Optional[float] = None,
        active_price: Optional[float] = None,
        tp_limit: bool = False,
    ) -> VenueResponse:
        ...

    async def list_open_positions(self) -> List[VenuePosition]:
        ...

    async def list_closed_pnl(self, symbol: Optional[str] = None,
                              limit: int = 50) -> List[ClosedPnlRecord]:
        ...

    async def list_executions(self, symbol: str, order_id: str) -> List[Execution]:
        ...

    async def get_orderbook_top(self, symbol: str) -> Optional[OrderBookTop]:
        ...

    async def get_klines(self, symbol: str, interval: str, limit: int) -> List[Candle]:
        ...

    async def get_instruments(self) -> List[InstrumentInfo]:
        ...

    async def get_tickers(self) -> List[Ticker]:
        ...

    async def get_wallet_balance(self) -> float:
        ...

    async def close_position(
        self, symbol: str, side: Side, qty: float,
        order_type: str = "Market", price: Optional[float] = None,
    ) -> VenueResponse:
        ...
