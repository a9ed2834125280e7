"""
Domain model for the liquidation counter-trader.

Liquidation events come in from the feed, positions live in the ledger while
open, and closed trades are appended to the PnL history once the venue has
settled them.
"""

import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


def now_ms() -> int:
    return int(time.time() * 1000)


class Side(str, Enum):
    BUY = "Buy"
    SELL = "Sell"

    @property
    def opposite(self) -> "Side":
        return Side.SELL if self is Side.BUY else Side.BUY

    @property
    def direction(self) -> int:
        """+1 for long, -1 for short."""
        return 1 if self is Side.BUY else -1


class ExitType(str, Enum):
    TP_SL_TRAIL = "TP/SL/TRAIL"
    TIME_EXIT = "TIME_EXIT"
    RECONCILED = "RECONCILED"


class ExecutionStatus(str, Enum):
    SKIPPED = "SKIPPED"
    FILLED = "FILLED"
    FAILED = "FAILED"
    ERROR = "ERROR"


@dataclass(frozen=True)
class LiquidationEvent:
    """A single forced liquidation seen on the public feed."""

    symbol: str
    # Buy = a long was liquidated, Sell = a short was liquidated
    liquidated_side: Side
    price: float
    quantity: float
    timestamp: int = field(default_factory=now_ms)

    @property
    def usd_value(self) -> float:
        return self.price * self.quantity

    def qualifies(self, min_value_usd: float) -> bool:
        return self.usd_value >= min_value_usd

    @property
    def entry_side(self) -> Side:
        """Counter-trade direction: buy the flush after longs are liquidated, sell the squeeze."""
        return Side.BUY if self.liquidated_side is Side.BUY else Side.SELL


@dataclass
class Position:
    """A locally tracked open position (at most one per symbol)."""

    symbol: str
    side: Side
    entry_price: float
    quantity: float
    stop_loss_price: Optional[float] = None
    take_profit_price: Optional[float] = None
    trailing_distance: Optional[float] = None
    trailing_activation_price: Optional[float] = None
    open_time: int = field(default_factory=now_ms)
    dca_level: int = 0
    total_budget_notional: float = 0.0
    last_entry_price: float = 0.0
    entry_order_id: Optional[str] = None
    atr: Optional[float] = None
    tp_method: str = "pct"
    entry_order_mode: str = "Market"
    liq_usd_value: float = 0.0
    exec_time_ms: int = 0
    mark_price: Optional[float] = None
    unrealized_pnl: float = 0.0
    adopted: bool = False

    @property
    def notional(self) -> float:
        return self.entry_price * self.quantity

    @property
    def is_protected(self) -> bool:
        return self.stop_loss_price is not None or self.trailing_distance is not None

    def local_pnl(self, exit_price: float) -> float:
        """Gross PnL estimate at a given exit price."""
        return (exit_price - self.entry_price) * self.quantity * self.side.direction

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["side"] = self.side.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Position":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        known["side"] = Side(known["side"])
        return cls(**known)


@dataclass
class Fees:
    open: float = 0.0
    close: float = 0.0

    @property
    def total(self) -> float:
        return self.open + self.close


@dataclass
class ClosedTrade:
    """A settled round trip, net PnL taken from the venue when matched."""

    symbol: str
    side: Side
    entry_price: float
    exit_price: float
    quantity: float
    net_pnl: float
    fees: Fees = field(default_factory=Fees)
    exit_type: ExitType = ExitType.TP_SL_TRAIL
    entry_is_maker: bool = False
    exit_is_maker: bool = False
    close_order_id: Optional[str] = None
    entry_order_id: Optional[str] = None
    open_time: Optional[int] = None
    closed_at: int = field(default_factory=now_ms)
    pnl_resolved: bool = True
    local_estimate: Optional[float] = None
    dca_level: int = 0

    @property
    def gross_pnl(self) -> float:
        return self.net_pnl + self.fees.total

    @property
    def hold_seconds(self) -> Optional[float]:
        if self.open_time is None:
            return None
        return (self.closed_at - self.open_time) / 1000

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["side"] = self.side.value
        data["exit_type"] = self.exit_type.value
        data["fees"] = {"open": self.fees.open, "close": self.fees.close, "total": self.fees.total}
        data["gross_pnl"] = self.gross_pnl
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClosedTrade":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        known["side"] = Side(known["side"])
        known["exit_type"] = ExitType(known.get("exit_type", ExitType.TP_SL_TRAIL.value))
        fees = known.get("fees") or {}
        known["fees"] = Fees(open=fees.get("open", 0.0), close=fees.get("close", 0.0))
        return cls(**known)


@dataclass
class ExecutionResult:
    """Terminal outcome of one on_liquidation invocation."""

    status: ExecutionStatus
    reason: str = ""
    position: Optional[Position] = None
    exec_time_ms: int = 0

    @classmethod
    def skipped(cls, reason: str) -> "ExecutionResult":
        return cls(ExecutionStatus.SKIPPED, reason)

    @classmethod
    def failed(cls, reason: str) -> "ExecutionResult":
        return cls(ExecutionStatus.FAILED, reason)

    @classmethod
    def error(cls, reason: str) -> "ExecutionResult":
        return cls(ExecutionStatus.ERROR, reason)

    @classmethod
    def filled(cls, position: Position, reason: str = "") -> "ExecutionResult":
        return cls(ExecutionStatus.FILLED, reason, position)


@dataclass
class TradeLogEntry:
    """One decision record kept in the bounded trade log."""

    symbol: str
    liquidated_side: str
    liq_price: float
    liq_usd_value: float
    status: str
    detail: str
    exec_time_ms: int
    timing: Dict[str, int] = field(default_factory=dict)
    position: Optional[Dict[str, Any]] = None
    timestamp: int = field(default_factory=now_ms)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TradeLogEntry":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)
