"""
PnL history: closed trades (newest first), running total and the set of
venue close-order ids already accounted for.
"""

from typing import Any, Dict, List, Optional, Set

from liqtrader.client_interface import ClosedPnlRecord
from liqtrader.models import ClosedTrade, now_ms
from utils.logger import log


class PnlHistory:
    """Closed trades and the consumed close-order ids."""

    def __init__(self):
        self.trades: List[ClosedTrade] = []
        self.total_pnl: float = 0.0
        self.consumed_ids: Set[str] = set()
        # Matched by an in-flight close but not yet appended
        self.reserved_ids: Set[str] = set()
        self.reset_timestamp: int = 0

    def is_consumed(self, order_id: Optional[str]) -> bool:
        return bool(order_id) and (order_id in self.consumed_ids or order_id in self.reserved_ids)

    def unavailable_ids(self) -> Set[str]:
        return self.consumed_ids | self.reserved_ids

    def reserve(self, order_id: str) -> bool:
        if self.is_consumed(order_id):
            return False
        self.reserved_ids.add(order_id)
        return True

    def release(self, order_id: Optional[str]):
        if order_id:
            self.reserved_ids.discard(order_id)

    def append(self, trade: ClosedTrade) -> bool:
        """
        Record a closed trade. Refuses a close-order id that was already
        consumed by another trade.
        """
        if trade.close_order_id:
            if trade.close_order_id in self.consumed_ids:
                log.warning(f"Close order {trade.close_order_id} for {trade.symbol} already recorded")
                return False
            self.reserved_ids.discard(trade.close_order_id)
            self.consumed_ids.add(trade.close_order_id)

        self.trades.append(trade)
        self.trades.sort(key=lambda t: t.closed_at, reverse=True)
        self.total_pnl += trade.net_pnl
        return True

    def unresolved(self) -> List[ClosedTrade]:
        return [t for t in self.trades if not t.pnl_resolved]

    def repair(self, trade: ClosedTrade, record: ClosedPnlRecord,
               close_fee: float = 0.0, exit_is_maker: bool = False):
        """Replace a local estimate with the venue's settled figures, in place."""
        self.total_pnl -= trade.net_pnl
        trade.net_pnl = record.closed_pnl
        trade.exit_price = record.avg_exit_price or trade.exit_price
        if record.avg_entry_price:
            trade.entry_price = record.avg_entry_price
        trade.close_order_id = record.order_id
        trade.fees.close = close_fee
        trade.exit_is_maker = exit_is_maker
        trade.pnl_resolved = True
        self.total_pnl += trade.net_pnl
        self.consumed_ids.add(record.order_id)

    def has_bucket(self, symbol: str, timestamp: int, bucket_seconds: int) -> bool:
        """True when a trade on `symbol` closed in the same or an adjacent time bucket."""
        size = bucket_seconds * 1000
        bucket = timestamp // size
        return any(
            t.symbol == symbol and abs(t.closed_at // size - bucket) <= 1
            for t in self.trades
        )

    def stats(self) -> Dict[str, Any]:
        wins = [t for t in self.trades if t.net_pnl > 0]
        closed = len(self.trades)
        return {
            "closed_trades": closed,
            "wins": len(wins),
            "losses": closed - len(wins),
            "win_rate": round(len(wins) / closed * 100, 1) if closed else 0.0,
            "total_pnl": round(self.total_pnl, 4),
            "total_gross_pnl": round(sum(t.gross_pnl for t in self.trades), 4),
            "total_fees": round(sum(t.fees.total for t in self.trades), 4),
            "unresolved": len(self.unresolved()),
        }

    def reset(self):
        """Zero the history. Older venue records are ignored from here on."""
        self.trades = []
        self.total_pnl = 0.0
        self.reset_timestamp = now_ms()
        log.info("PnL data reset to zero")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pnl_history": [t.to_dict() for t in self.trades],
            "total_pnl": self.total_pnl,
            "consumed_close_ids": sorted(self.consumed_ids),
            "reset_timestamp": self.reset_timestamp,
        }

    def load(self, data: Dict[str, Any]):
        self.trades = [ClosedTrade.from_dict(t) for t in data.get("pnl_history") or []]
        self.trades.sort(key=lambda t: t.closed_at, reverse=True)
        self.total_pnl = float(data.get("total_pnl", sum(t.net_pnl for t in self.trades)))
        self.consumed_ids = set(data.get("consumed_close_ids") or [])
        self.consumed_ids.update(t.close_order_id for t in self.trades if t.close_order_id)
        self.reset_timestamp = int(data.get("reset_timestamp") or 0)
        log.info(
            f"Restored {len(self.trades)} PnL records ({len(self.consumed_ids)} close order IDs), "
            f"total {self.total_pnl:.4f}"
        )
