"""
Protection Manager.

Computes stop-loss, take-profit and trailing-stop levels and attaches them
to venue positions. The SL/TP call and the trailing call are independent:
either may fail without affecting the other, and callers only ever see the
levels the venue confirmed.
"""

from dataclasses import dataclass
from typing import Iterable, Optional

from config.settings import DcaConfig, ProtectionConfig, settings
from liqtrader.exceptions import TransientIOFailure, VenueRejection
from liqtrader.indicators import IndicatorService
from liqtrader.instruments import InstrumentRegistry
from liqtrader.ledger import PendingLocks
from liqtrader.models import Position, Side
from liqtrader.risk_manager import RiskManager
from utils.logger import log


@dataclass
class ProtectionPlan:
    """Levels to submit for one position."""

    stop_loss: Optional[float]
    take_profit: Optional[float] = None
    trailing_distance: Optional[float] = None
    trailing_activation: Optional[float] = None
    tp_method: str = "pct"
    atr: Optional[float] = None


@dataclass
class ProtectionResult:
    """Levels the venue accepted."""

    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    trailing_distance: Optional[float] = None
    trailing_activation: Optional[float] = None

    @property
    def confirmed(self) -> bool:
        return self.stop_loss is not None or self.trailing_distance is not None

    def apply_to(self, position: Position):
        if self.stop_loss is not None:
            position.stop_loss_price = self.stop_loss
            position.take_profit_price = self.take_profit
        if self.trailing_distance is not None:
            position.trailing_distance = self.trailing_distance
            position.trailing_activation_price = self.trailing_activation
            position.take_profit_price = None


class ProtectionManager:
    """Plans, attaches, restores and tightens protective exits."""

    def __init__(
        self,
        gateway,
        registry: InstrumentRegistry,
        risk: RiskManager,
        indicators: IndicatorService,
        config: Optional[ProtectionConfig] = None,
        dca: Optional[DcaConfig] = None,
    ):
        self.gateway = gateway
        self.registry = registry
        self.risk = risk
        self.indicators = indicators
        self.config = config or settings.protection
        self.dca = dca or settings.dca

    # ==================== LEVELS ====================

    def _clamp_offset(self, symbol: str, price: float, offset: float) -> float:
        tick = self.registry.tick_size(symbol)
        if tick and offset < tick:
            offset = tick
        return min(offset, price * self.config.max_sl_fraction)

    def trailing_distance(self, symbol: str, atr: Optional[float]) -> Optional[float]:
        """ATR-based trailing distance, at least one tick. None without ATR."""
        if not atr or atr <= 0:
            return None
        distance = self.registry.round_price(symbol, atr * self.config.trailing_atr_multiplier)
        return distance or self.registry.tick_size(symbol) or None

    def trailing_activation(self, symbol: str, side: Side, fill: float, distance: float) -> float:
        """Activation past break-even: fill +/- (trail + estimated round-trip fees)."""
        fee_buffer = self.registry.round_price(symbol, fill * self.config.fee_buffer_pct)
        return self.registry.round_price(symbol, fill + side.direction * (distance + fee_buffer))

    def take_profit(self, symbol: str, side: Side, price: float, qty: float,
                    notional: float, atr: Optional[float]) -> float:
        """ATR or fixed-percent target, widened to the minimum profit floor."""
        if atr and atr > 0:
            offset = atr * self.config.tp_atr_multiplier
        else:
            offset = price * self.config.take_profit_pct / 100
        tp = self.registry.round_price(symbol, price + side.direction * offset)

        if qty > 0:
            min_offset = notional * (self.config.min_tp_pct / 100) / qty
            if abs(tp - price) < min_offset:
                widened = self.registry.round_price(symbol, price + side.direction * min_offset)
                log.debug(f"TP widened for {symbol}: {tp} -> {widened}")
                tp = widened
        return tp

    def risk_stop(self, symbol: str, side: Side, entry: float, total_budget: float,
                  open_count: int) -> float:
        offset = self.risk.stop_offset(symbol, entry, total_budget, open_count)
        return self.risk.stop_price(symbol, side, entry, offset)

    def plan(self, symbol: str, side: Side, entry: float, qty: float, notional: float,
             stop_loss: Optional[float], atr: Optional[float]) -> ProtectionPlan:
        """Trailing when ATR is known, otherwise a fixed take-profit."""
        trailing = self.trailing_distance(symbol, atr)
        if trailing:
            return ProtectionPlan(
                stop_loss=stop_loss,
                trailing_distance=trailing,
                trailing_activation=self.trailing_activation(symbol, side, entry, trailing),
                tp_method="atr",
                atr=atr,
            )
        return ProtectionPlan(
            stop_loss=stop_loss,
            take_profit=self.take_profit(symbol, side, entry, qty, notional, atr),
            tp_method="atr" if atr else "pct",
            atr=atr,
        )

    # ==================== VENUE CALLS ====================

    async def _set(self, symbol: str, what: str, **levels) -> bool:
        try:
            response = await self.gateway.set_protection(symbol, **levels)
        except (TransientIOFailure, VenueRejection) as e:
            log.error(f"Failed to set {what} for {symbol}: {e}")
            return False
        if not response.ok:
            log.error(f"Failed to set {what} for {symbol}: {response.message} ({response.ret_code})")
            return False
        return True

    async def attach(self, symbol: str, plan: ProtectionPlan) -> ProtectionResult:
        """SL (+TP) first, trailing second. Both are attempted."""
        result = ProtectionResult()

        if plan.stop_loss is not None or plan.take_profit is not None:
            tp_limit = plan.take_profit is not None and self.config.tp_order_type == "Limit"
            if await self._set(symbol, "SL/TP", stop_loss=plan.stop_loss,
                               take_profit=plan.take_profit, tp_limit=tp_limit):
                result.stop_loss = plan.stop_loss
                result.take_profit = plan.take_profit
                log.info(f"TRADE: SL set for {symbol} | SL: {plan.stop_loss} | TP: {plan.take_profit or '-'}")

        if plan.trailing_distance:
            if await self._set(symbol, "trailing stop", trailing_stop=plan.trailing_distance,
                               active_price=plan.trailing_activation):
                result.trailing_distance = plan.trailing_distance
                result.trailing_activation = plan.trailing_activation
                log.info(
                    f"TRADE: Trailing stop set for {symbol} | Trail: {plan.trailing_distance} "
                    f"| Activates @ {plan.trailing_activation}"
                )

        return result

    async def ensure(
        self,
        symbol: str,
        side: Side,
        entry: float,
        qty: float,
        total_budget: Optional[float] = None,
        open_count: int = 1,
    ) -> Optional[ProtectionResult]:
        """
        Protect a position that has no exits (adopted or found naked).

        Stop distance is ATR-based when available, otherwise the shared risk
        budget distance. Returns None when nothing was confirmed.
        """
        atr = await self.indicators.atr(symbol)
        if atr:
            offset = self._clamp_offset(symbol, entry, atr * self.config.sl_atr_multiplier)
            stop_loss = self.risk.stop_price(symbol, side, entry, offset)
        else:
            budget = total_budget or (entry * qty / self.dca.splits[0])
            stop_loss = self.risk_stop(symbol, side, entry, budget, open_count)

        plan = self.plan(symbol, side, entry, qty, entry * qty, stop_loss, atr)
        log.warning(f"Ensuring protection for {symbol} {side.value} {qty} @ {entry} | SL: {stop_loss}")
        result = await self.attach(symbol, plan)
        return result if result.confirmed else None

    async def restore(self, position: Position, restore_sl: bool,
                      restore_trailing: bool) -> ProtectionResult:
        """Re-submit exits the venue lost, using the levels the ledger holds."""
        plan = ProtectionPlan(
            stop_loss=position.stop_loss_price if restore_sl else None,
            take_profit=position.take_profit_price if restore_sl else None,
            trailing_distance=position.trailing_distance if restore_trailing else None,
            trailing_activation=position.trailing_activation_price if restore_trailing else None,
        )
        log.warning(
            f"Healing protection for {position.symbol} | SL: {plan.stop_loss} | Trail: {plan.trailing_distance}"
        )
        return await self.attach(position.symbol, plan)

    async def tighten_all(self, positions: Iterable[Position], open_count: int,
                          locks: Optional[PendingLocks] = None) -> int:
        """
        Recompute every stop against the current share of the risk budget.
        Symbols with an add or close in flight are left to that operation.
        """
        updated = 0
        for position in positions:
            if self.registry.get(position.symbol) is None:
                continue
            if locks is not None and locks.is_locked(position.symbol):
                log.debug(f"Skipping SL tighten for {position.symbol}: operation in flight")
                continue
            budget = position.total_budget_notional or position.notional
            new_sl = self.risk_stop(position.symbol, position.side, position.entry_price,
                                    budget, open_count)
            if new_sl == position.stop_loss_price:
                continue
            if await self._set(position.symbol, "tightened SL", stop_loss=new_sl):
                log.info(f"Tightened SL for {position.symbol}: {position.stop_loss_price} -> {new_sl}")
                position.stop_loss_price = new_sl
                updated += 1
        return updated
