"""
Configuration settings for the liquidation counter-trading bot.
Loads settings from environment variables with sensible defaults.
"""

import os
from dataclasses import dataclass, field
from typing import List
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass
class ExchangeConfig:
    """Bybit V5 API configuration."""

    api_key: str = field(default_factory=lambda: os.getenv("BYBIT_API_KEY", ""))
    api_secret: str = field(default_factory=lambda: os.getenv("BYBIT_API_SECRET", ""))
    network: str = field(default_factory=lambda: os.getenv("BYBIT_NETWORK", "testnet"))
    recv_window: str = "5000"

    ENDPOINTS = {
        "testnet": {
            "rest": "https://api-testnet.bybit.com",
            "ws_public": "wss://stream-testnet.bybit.com/v5/public/linear",
            "ws_private": "wss://stream-testnet.bybit.com/v5/private",
            "ws_trade": "wss://stream-testnet.bybit.com/v5/trade",
        },
        "demo": {
            "rest": "https://api-demo.bybit.com",
            "ws_public": "wss://stream.bybit.com/v5/public/linear",
            "ws_private": "wss://stream-demo.bybit.com/v5/private",
            "ws_trade": "wss://stream-demo.bybit.com/v5/trade",
        },
        "mainnet": {
            "rest": "https://api.bybit.com",
            "ws_public": "wss://stream.bybit.com/v5/public/linear",
            "ws_private": "wss://stream.bybit.com/v5/private",
            "ws_trade": "wss://stream.bybit.com/v5/trade",
        },
    }

    @property
    def endpoints(self) -> dict:
        """Endpoint set for the configured network."""
        return self.ENDPOINTS[self.network]

    @property
    def base_url(self) -> str:
        return self.endpoints["rest"]

    def validate(self) -> bool:
        """Validate that required credentials are set."""
        if not self.api_key or not self.api_secret:
            return False
        if self.api_key == "your_api_key_here":
            return False
        return True


@dataclass
class TradingConfig:
    """Entry sizing and gating configuration."""

    position_size_usd: float = field(
        default_factory=lambda: float(os.getenv("POSITION_SIZE_USD", "50"))
    )
    leverage: int = field(default_factory=lambda: int(os.getenv("LEVERAGE", "5")))
    max_positions: int = field(
        default_factory=lambda: int(os.getenv("MAX_POSITIONS", "5"))
    )
    # Floor on the full-pyramid budget as a percent of balance
    min_position_pct: float = field(
        default_factory=lambda: float(os.getenv("MIN_POSITION_PCT", "50"))
    )
    # Total loss budget shared across all open positions (percent of balance)
    total_risk_pct: float = field(
        default_factory=lambda: float(os.getenv("TOTAL_RISK_PCT", "5"))
    )
    min_liq_value_usd: float = field(
        default_factory=lambda: float(os.getenv("MIN_LIQ_VALUE_USD", "10000"))
    )
    min_turnover_24h: float = field(
        default_factory=lambda: float(os.getenv("MIN_TURNOVER_24H", "5000000"))
    )
    # Market or Limit (PostOnly at top of book)
    entry_order_type: str = field(
        default_factory=lambda: os.getenv("ENTRY_ORDER_TYPE", "Limit")
    )
    fill_settle_seconds: float = field(
        default_factory=lambda: float(os.getenv("FILL_SETTLE_SECONDS", "2"))
    )
    trade_log_size: int = 500


@dataclass
class DcaConfig:
    """Pyramiding schedule."""

    splits: List[float] = field(
        default_factory=lambda: [
            float(s) for s in os.getenv("DCA_SPLITS", "0.10,0.20,0.30,0.40").split(",")
        ]
    )
    vwap_sd_multiplier: float = field(
        default_factory=lambda: float(os.getenv("DCA_VWAP_SD_MULT", "2"))
    )

    def validate(self) -> bool:
        """Splits must be positive, ascending and sum to 1.0."""
        if not self.splits or any(s <= 0 for s in self.splits):
            return False
        if any(b < a for a, b in zip(self.splits, self.splits[1:])):
            return False
        return abs(sum(self.splits) - 1.0) <= 1e-6


@dataclass
class IndicatorConfig:
    """ATR and VWAP band settings."""

    atr_period: int = field(default_factory=lambda: int(os.getenv("ATR_PERIOD", "14")))
    atr_interval: str = field(default_factory=lambda: os.getenv("ATR_INTERVAL", "1"))
    atr_cache_seconds: float = 60.0
    vwap_interval: str = field(default_factory=lambda: os.getenv("VWAP_INTERVAL", "1"))
    vwap_candles: int = 50
    vwap_cache_seconds: float = 30.0


@dataclass
class ProtectionConfig:
    """Stop, target and trailing parameters."""

    take_profit_pct: float = field(
        default_factory=lambda: float(os.getenv("TAKE_PROFIT_PCT", "0.3"))
    )
    min_tp_pct: float = field(default_factory=lambda: float(os.getenv("MIN_TP_PCT", "1")))
    tp_atr_multiplier: float = field(
        default_factory=lambda: float(os.getenv("TP_ATR_MULT", "1.5"))
    )
    sl_atr_multiplier: float = field(
        default_factory=lambda: float(os.getenv("SL_ATR_MULT", "1"))
    )
    trailing_atr_multiplier: float = field(
        default_factory=lambda: float(os.getenv("TRAILING_ATR_MULT", "1.5"))
    )
    tp_order_type: str = field(default_factory=lambda: os.getenv("TP_ORDER_TYPE", "Limit"))
    # Round-trip fee estimate added to the trailing activation distance
    fee_buffer_pct: float = 0.0015
    max_sl_fraction: float = 0.9
    # True: naked only when both SL and trailing are missing remotely
    naked_requires_all_missing: bool = field(
        default_factory=lambda: _env_bool("NAKED_REQUIRES_ALL_MISSING", "true")
    )


@dataclass
class ReconcileConfig:
    """Reconciliation loop timing and PnL matching."""

    interval_seconds: float = field(
        default_factory=lambda: float(os.getenv("RECONCILE_INTERVAL", "2"))
    )
    close_grace_seconds: float = 15.0
    close_dedup_seconds: float = 10.0
    settle_delay_seconds: float = 2.0
    match_attempts: int = 5
    match_retry_delay_seconds: float = 2.0
    # Number of trailing attempts that drop the open-time filter
    match_relax_last: int = 2
    match_fetch_limit: int = 10
    backfill_interval_seconds: float = field(
        default_factory=lambda: float(os.getenv("BACKFILL_INTERVAL", "60"))
    )
    backfill_limit: int = 50
    bucket_seconds: int = 30
    repair_window_seconds: float = 600.0
    # Relative gap between local estimate and venue PnL worth a diagnostic
    pnl_disagreement_pct: float = 0.25
    # 0 disables time-based exits
    max_hold_seconds: float = field(
        default_factory=lambda: float(os.getenv("MAX_HOLD_SECONDS", "0"))
    )
    time_exit_order_type: str = field(
        default_factory=lambda: os.getenv("TIME_EXIT_ORDER_TYPE", "Limit")
    )


@dataclass
class ClientConfig:
    """Venue I/O retry settings (reads only)."""

    read_retries: int = 3
    backoff_base_seconds: float = 0.5
    backoff_max_seconds: float = 8.0
    ws_order_timeout_seconds: float = 5.0
    ws_max_reconnect_attempts: int = 3
    ws_ping_seconds: float = 20.0
    liquidation_batch_size: int = 10
    balance_refresh_seconds: float = 5.0
    instrument_refresh_seconds: float = 1800.0
    turnover_refresh_seconds: float = 300.0


@dataclass
class PersistenceConfig:
    """State snapshot settings."""

    data_dir: str = field(default_factory=lambda: os.getenv("DATA_DIR", "data"))
    save_interval_seconds: float = 10.0


@dataclass
class LoggingConfig:
    """Logging configuration."""

    level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))
    log_file: str = "logs/liqtrader.log"
    trade_log_file: str = "logs/trades.log"
    rotation: str = "10 MB"
    retention: str = "7 days"


@dataclass
class Settings:
    """Main settings container."""

    exchange: ExchangeConfig = field(default_factory=ExchangeConfig)
    trading: TradingConfig = field(default_factory=TradingConfig)
    dca: DcaConfig = field(default_factory=DcaConfig)
    indicators: IndicatorConfig = field(default_factory=IndicatorConfig)
    protection: ProtectionConfig = field(default_factory=ProtectionConfig)
    reconcile: ReconcileConfig = field(default_factory=ReconcileConfig)
    client: ClientConfig = field(default_factory=ClientConfig)
    persistence: PersistenceConfig = field(default_factory=PersistenceConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def __post_init__(self):
        """Validate settings after initialization."""
        self._validate_network()
        self._validate_order_types()
        self._validate_dca()

    def _validate_network(self):
        if self.exchange.network not in ExchangeConfig.ENDPOINTS:
            raise ValueError(
                f"Invalid network: {self.exchange.network}. "
                f"Expected one of {sorted(ExchangeConfig.ENDPOINTS)}"
            )

    def _validate_order_types(self):
        for name, value in (
            ("ENTRY_ORDER_TYPE", self.trading.entry_order_type),
            ("TP_ORDER_TYPE", self.protection.tp_order_type),
            ("TIME_EXIT_ORDER_TYPE", self.reconcile.time_exit_order_type),
        ):
            if value not in ("Market", "Limit"):
                raise ValueError(f"{name} must be Market or Limit, got {value}")

    def _validate_dca(self):
        """Validate that DCA splits ascend and sum to 1.0."""
        if not self.dca.validate():
            raise ValueError(
                f"DCA splits must be positive, ascending and sum to 1.0: {self.dca.splits}"
            )


# Global settings instance
settings = Settings()
