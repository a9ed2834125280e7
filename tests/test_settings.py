"""
Tests for configuration validation and environment overrides.
"""

import pytest

from config.settings import (
    DcaConfig,
    ExchangeConfig,
    ProtectionConfig,
    ReconcileConfig,
    Settings,
    TradingConfig,
)


class TestDcaConfig:
    def test_default_splits_valid(self):
        assert DcaConfig(splits=[0.10, 0.20, 0.30, 0.40]).validate()

    @pytest.mark.parametrize("splits", [
        [0.5, 0.3, 0.2],
        [0.2, 0.2, 0.2],
        [0.0, 0.5, 0.5],
        [],
    ])
    def test_invalid_splits(self, splits):
        assert not DcaConfig(splits=splits).validate()

    def test_splits_from_env(self, monkeypatch):
        monkeypatch.setenv("DCA_SPLITS", "0.25,0.75")
        assert DcaConfig().splits == [0.25, 0.75]


class TestSettings:
    def test_invalid_splits_rejected(self):
        with pytest.raises(ValueError, match="DCA splits"):
            Settings(dca=DcaConfig(splits=[0.5, 0.3, 0.2]))

    def test_invalid_network_rejected(self):
        with pytest.raises(ValueError, match="Invalid network"):
            Settings(exchange=ExchangeConfig(network="moon"))

    def test_invalid_order_type_rejected(self):
        with pytest.raises(ValueError, match="ENTRY_ORDER_TYPE"):
            Settings(trading=TradingConfig(entry_order_type="IOC"))
        with pytest.raises(ValueError, match="TIME_EXIT_ORDER_TYPE"):
            Settings(reconcile=ReconcileConfig(time_exit_order_type="Stop"))

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("POSITION_SIZE_USD", "75")
        monkeypatch.setenv("NAKED_REQUIRES_ALL_MISSING", "false")

        assert TradingConfig().position_size_usd == 75.0
        assert ProtectionConfig().naked_requires_all_missing is False

    def test_endpoints_follow_network(self):
        exchange = ExchangeConfig(network="mainnet")
        assert exchange.base_url == "https://api.bybit.com"
        assert exchange.endpoints["ws_public"].endswith("/v5/public/linear")

    def test_credentials_validation(self):
        assert not ExchangeConfig(api_key="", api_secret="").validate()
        assert not ExchangeConfig(api_key="your_api_key_here", api_secret="x").validate()
        assert ExchangeConfig(api_key="k", api_secret="s").validate()
