"""
Indicator Service.

ATR (average high-low range) sizes targets and trailing stops; a
volume-weighted VWAP band gates DCA adds. Both are cached per symbol with a
short TTL and return None when data is unavailable, so callers can fall
back to fixed-percentage logic.
"""

import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import numpy as np

from config.settings import IndicatorConfig, settings
from liqtrader.client_interface import Candle
from liqtrader.exceptions import TransientIOFailure, VenueRejection
from utils.logger import log


@dataclass
class VwapBand:
    vwap: float
    sd: float

    def lower(self, k: float) -> float:
        return self.vwap - k * self.sd

    def upper(self, k: float) -> float:
        return self.vwap + k * self.sd


def compute_atr(candles: List[Candle], period: int) -> Optional[float]:
    """Mean high-low range of the most recent `period` candles (oldest first input)."""
    if period <= 0 or len(candles) < period:
        return None
    recent = candles[-period:]
    highs = np.array([c.high for c in recent], dtype=float)
    lows = np.array([c.low for c in recent], dtype=float)
    return float(np.mean(highs - lows))


def compute_vwap_band(candles: List[Candle]) -> Optional[VwapBand]:
    """VWAP of typical price with volume-weighted standard deviation."""
    if not candles:
        return None
    highs = np.array([c.high for c in candles], dtype=float)
    lows = np.array([c.low for c in candles], dtype=float)
    closes = np.array([c.close for c in candles], dtype=float)
    volumes = np.array([c.volume for c in candles], dtype=float)

    total_volume = volumes.sum()
    if total_volume <= 0:
        return None

    typical = (highs + lows + closes) / 3
    vwap = float(np.sum(typical * volumes) / total_volume)
    sd = float(np.sqrt(np.sum(volumes * (typical - vwap) ** 2) / total_volume))
    return VwapBand(vwap=vwap, sd=sd)


class IndicatorService:
    """TTL-cached ATR and VWAP band lookups backed by venue klines."""

    def __init__(self, gateway, config: Optional[IndicatorConfig] = None):
        self.gateway = gateway
        self.config = config or settings.indicators
        self._atr_cache: Dict[str, Tuple[float, float]] = {}
        self._vwap_cache: Dict[str, Tuple[VwapBand, float]] = {}

    async def atr(self, symbol: str) -> Optional[float]:
        cached = self._atr_cache.get(symbol)
        if cached and time.time() - cached[1] < self.config.atr_cache_seconds:
            return cached[0]

        period = self.config.atr_period
        try:
            candles = await self.gateway.get_klines(symbol, self.config.atr_interval, period + 1)
        except (TransientIOFailure, VenueRejection) as e:
            log.error(f"ATR: failed to fetch klines for {symbol}: {e}")
            return None

        value = compute_atr(candles, period)
        if value is None:
            log.warning(f"ATR: not enough candles for {symbol}: got {len(candles)}, need {period}")
            return None

        self._atr_cache[symbol] = (value, time.time())
        return value

    async def vwap_band(self, symbol: str) -> Optional[VwapBand]:
        cached = self._vwap_cache.get(symbol)
        if cached and time.time() - cached[1] < self.config.vwap_cache_seconds:
            return cached[0]

        try:
            candles = await self.gateway.get_klines(
                symbol, self.config.vwap_interval, self.config.vwap_candles
            )
        except (TransientIOFailure, VenueRejection) as e:
            log.error(f"VWAP: failed to fetch klines for {symbol}: {e}")
            return None

        band = compute_vwap_band(candles)
        if band is not None:
            self._vwap_cache[symbol] = (band, time.time())
        return band
