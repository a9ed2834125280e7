"""
Risk Management Module.
Shared loss budget across open positions and full-pyramid position sizing.
"""

from dataclasses import dataclass
from typing import Optional

from config.settings import DcaConfig, ProtectionConfig, TradingConfig, settings
from liqtrader.instruments import InstrumentRegistry
from liqtrader.models import Side
from utils.logger import log


@dataclass
class PositionSizing:
    """Result of sizing a single pyramid level."""

    symbol: str
    side: Side
    qty: float
    notional: float
    total_budget: float
    level: int


class RiskManager:
    """
    Sizes entries and derives stop distances from a shared risk budget.

    Key risk controls:
    - Full pyramid budget = max(position_size_usd x leverage, balance x min_position_pct)
    - Total loss budget = balance x total_risk_pct, split evenly across open positions
    - Stop distance is measured against the full-budget quantity so later DCA
      levels never widen the dollar risk
    """

    def __init__(
        self,
        registry: InstrumentRegistry,
        trading: Optional[TradingConfig] = None,
        dca: Optional[DcaConfig] = None,
        protection: Optional[ProtectionConfig] = None,
    ):
        self.registry = registry
        self.trading = trading or settings.trading
        self.dca = dca or settings.dca
        self.protection = protection or settings.protection
        self.balance: float = 0.0

    def update_balance(self, balance: float):
        if balance > 0 and balance != self.balance:
            log.debug(f"Balance updated: {self.balance:.2f} -> {balance:.2f}")
        if balance > 0:
            self.balance = balance

    @property
    def has_balance(self) -> bool:
        return self.balance > 0

    def total_budget(self) -> float:
        """Notional the full pyramid may reach."""
        return max(
            self.trading.position_size_usd * self.trading.leverage,
            self.balance * self.trading.min_position_pct / 100,
        )

    def size_level(self, symbol: str, side: Side, price: float, total_budget: float,
                   level: int) -> PositionSizing:
        """Quantity for one pyramid level, floored to the lot step."""
        notional = total_budget * self.dca.splits[level]
        qty = self.registry.round_qty(symbol, notional / price) if price > 0 else 0.0
        return PositionSizing(symbol, side, qty, notional, total_budget, level)

    def max_loss_per_position(self, open_count: int) -> float:
        total_risk = self.balance * self.trading.total_risk_pct / 100
        return total_risk / max(1, open_count)

    def stop_offset(self, symbol: str, price: float, total_budget: float, open_count: int) -> float:
        """
        Stop distance so a full-budget position loses at most its share of the
        risk budget. Clamped to [1 tick, max_sl_fraction x price].
        """
        full_qty = self.registry.round_qty(symbol, total_budget / price) if price > 0 else 0.0
        max_offset = price * self.protection.max_sl_fraction
        if full_qty <= 0:
            return max_offset
        offset = self.max_loss_per_position(open_count) / full_qty
        tick = self.registry.tick_size(symbol)
        if tick and offset < tick:
            offset = tick
        return min(offset, max_offset)

    def stop_price(self, symbol: str, side: Side, entry: float, offset: float) -> float:
        return self.registry.round_price(symbol, entry - side.direction * offset)
