import pytest

from mtf_trading.config import (
    DEFAULT_CONFIG,
    RiskParameters,
    SystemConfig,
)


class TestSystemConfig:
    def test_defaults(self):
        assert DEFAULT_CONFIG.initial_capital == 10000.0
        assert DEFAULT_CONFIG.indicators.channel_ema_period == 20
        assert DEFAULT_CONFIG.indicators.atr_period == 10
        assert DEFAULT_CONFIG.risk.max_risk_per_trade == 0.02
        assert DEFAULT_CONFIG.pipeline.trend_timeframe == "4h"

    def test_save_and_load(self, tmp_path):
        config = SystemConfig(initial_capital=25000.0)
        config.risk.max_open_positions = 5
        config.pipeline.symbols = ["ETH-USD", "BTC-USD"]
        path = tmp_path / "nested" / "config.json"

        config.save(str(path))
        loaded = SystemConfig.load(str(path))

        assert loaded == config

    def test_to_dict_nests_sections(self):
        data = SystemConfig(initial_capital=5000.0).to_dict()
        assert data['initial_capital'] == 5000.0
        assert data['risk']['max_drawdown'] == 0.05

    def test_from_dict_ignores_unknown_keys(self):
        config = SystemConfig.from_dict({
            'mode': 'backtest',
            'risk': {'max_drawdown': 0.1, 'legacy_option': True},
            'signals': {'min_confidence': 0.8},
        })
        assert config.risk.max_drawdown == 0.1
        assert config.signals.min_confidence == 0.8
        assert config.execution.base_slippage == 0.0005


class TestRiskParameters:
    def test_defaults_valid(self):
        assert RiskParameters().is_valid

    @pytest.mark.parametrize("overrides", [
        {'max_risk_per_trade': 0.0},
        {'max_risk_per_trade': 0.06},
        {'max_drawdown': 0.6},
        {'min_kelly_fraction': 0.3, 'max_kelly_fraction': 0.2},
        {'max_open_positions': 0},
        {'trailing_stop_distance': 0.0},
    ])
    def test_invalid(self, overrides):
        params = RiskParameters(**overrides)
        assert not params.is_valid
        assert len(params.validate()) == 1
