"""
Instrument Registry and 24h turnover filter.

Holds tick size, lot step, minimum quantity and leverage cap per symbol, and
does all price/quantity rounding in Decimal so floating error never produces
an off-grid order.
"""

import time
from decimal import ROUND_FLOOR, ROUND_HALF_UP, Decimal
from typing import Dict, Iterable, Optional

from liqtrader.client_interface import InstrumentInfo, Ticker
from utils.logger import log


def _to_grid(value: float, step: float, rounding) -> float:
    if step <= 0:
        return value
    d_step = Decimal(str(step))
    units = (Decimal(str(value)) / d_step).to_integral_value(rounding=rounding)
    return float(units * d_step)


class InstrumentRegistry:
    """Trading rules per symbol, refreshed periodically from the venue."""

    def __init__(self):
        self._instruments: Dict[str, InstrumentInfo] = {}
        self.last_refresh: float = 0.0

    def load(self, instruments: Iterable[InstrumentInfo]) -> int:
        self._instruments = {inst.symbol: inst for inst in instruments}
        self.last_refresh = time.time()
        return len(self._instruments)

    async def refresh(self, gateway) -> int:
        count = self.load(await gateway.get_instruments())
        log.info(f"Loaded {count} instruments")
        return count

    def get(self, symbol: str) -> Optional[InstrumentInfo]:
        return self._instruments.get(symbol)

    def __contains__(self, symbol: str) -> bool:
        return symbol in self._instruments

    def __len__(self) -> int:
        return len(self._instruments)

    @property
    def symbols(self):
        return sorted(self._instruments)

    def is_blocked(self, symbol: str) -> bool:
        """Pre-listing contracts and anything not in Trading status are blocked."""
        inst = self._instruments.get(symbol)
        if inst is None:
            return False
        return inst.is_pre_listing or inst.status != "Trading"

    def tick_size(self, symbol: str) -> float:
        inst = self._instruments.get(symbol)
        return inst.tick_size if inst else 0.0

    def round_qty(self, symbol: str, qty: float) -> float:
        """Floor to the lot step."""
        inst = self._instruments.get(symbol)
        if inst is None:
            return qty
        return _to_grid(qty, inst.qty_step, ROUND_FLOOR)

    def round_price(self, symbol: str, price: float) -> float:
        """Round to the nearest tick."""
        inst = self._instruments.get(symbol)
        if inst is None:
            return price
        return _to_grid(price, inst.tick_size, ROUND_HALF_UP)


class VolumeFilter:
    """24h turnover per symbol. Symbols without data are never blocked."""

    def __init__(self):
        self._turnover: Dict[str, float] = {}
        self.last_refresh: float = 0.0

    def load(self, tickers: Iterable[Ticker]) -> int:
        self._turnover = {t.symbol: t.turnover_24h for t in tickers}
        self.last_refresh = time.time()
        return len(self._turnover)

    async def refresh(self, gateway) -> int:
        count = self.load(await gateway.get_tickers())
        log.info(f"Loaded 24h turnover for {count} symbols")
        return count

    def turnover(self, symbol: str) -> Optional[float]:
        return self._turnover.get(symbol)

    def passes(self, symbol: str, min_turnover: float) -> bool:
        turnover = self._turnover.get(symbol)
        return turnover is None or turnover >= min_turnover
