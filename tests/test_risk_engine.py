from dataclasses import replace
from datetime import timedelta

import pytest

from mtf_trading.config import RiskParameters
from mtf_trading.errors import InvalidParameterError
from mtf_trading.features.indicators import VolatilityRegime
from mtf_trading.risk.models import (
    AccountState,
    ClosureReason,
    PerformanceStats,
    Position,
    PositionSide,
    RiskLevel,
    Severity,
    SystemState,
    Urgency,
)
from mtf_trading.risk.risk_engine import PositionSizer, RiskEngine
from mtf_trading.strategy.signals import (
    EntryEvidence,
    SignalDirection,
    SignalEvidence,
    SignalLevels,
    SignalState,
    TradingSignal,
)

from conftest import BASE_TIME, SYMBOL

NOW = BASE_TIME + timedelta(hours=1)


def make_signal(direction=SignalDirection.BUY, entry=100.0, stop=98.0, confidence=0.8,
                regime=VolatilityRegime.NORMAL, secondary=None):
    sign = -1 if direction == SignalDirection.SELL else 1
    risk = abs(entry - stop) if stop is not None else 0.0
    entry_ev = EntryEvidence(direction, entry, entry, entry, entry, 60.0, 0.0, regime,
                             True, True, True, True, regime != VolatilityRegime.EXTREME)
    levels = None
    if secondary is not None:
        levels = SignalLevels(entry, stop, secondary, entry, risk,
                              tuple(entry + sign * r * risk for r in (1, 2, 3)))
    return TradingSignal(
        id='sig-1',
        symbol=SYMBOL,
        direction=direction,
        entry_price=entry,
        timestamp=BASE_TIME,
        state=SignalState.EMITTED if direction != SignalDirection.NONE else SignalState.REJECTED,
        stop_loss=stop,
        take_profit=entry + sign * 2 * risk,
        confidence=confidence,
        evidence=SignalEvidence(entry=entry_ev, levels=levels),
        reason='' if direction != SignalDirection.NONE else 'Primary conditions not met: band_touch'
    )


def account(**kwargs):
    defaults = dict(total_equity=10000.0, available_equity=10000.0, peak_equity=10000.0)
    defaults.update(kwargs)
    return AccountState(**defaults)


@pytest.fixture
def engine():
    return RiskEngine(RiskParameters(), clock=lambda: NOW)


@pytest.fixture
def long_position(engine):
    levels = engine.calculate_stop_loss_levels(100.0, make_signal(secondary=90.0))
    return Position('pos-1', SYMBOL, PositionSide.LONG, 10.0, 100.0, BASE_TIME, levels)


@pytest.fixture
def short_position(engine):
    signal = make_signal(SignalDirection.SELL, stop=102.0, secondary=110.0)
    levels = engine.calculate_stop_loss_levels(100.0, signal)
    return Position('pos-2', SYMBOL, PositionSide.SHORT, 10.0, 100.0, BASE_TIME, levels)


class TestValidation:
    def test_clean_trade_passes(self, engine, healthy_account):
        result = engine.validate_trade(make_signal(), healthy_account)
        assert result.is_valid
        assert result.risk_score == 0
        assert result.risk_level == RiskLevel.LOW
        assert result.max_recommended_size == pytest.approx(0.02)
        assert [c.name for c in result.checks] == [
            'equity_floor', 'position_limits', 'drawdown', 'daily_loss', 'trade_frequency', 'signal_quality']

    def test_every_check_runs_when_first_fails(self, engine):
        result = engine.validate_trade(make_signal(), account(total_equity=500.0, available_equity=500.0))
        assert len(result.checks) == 6
        assert [c.name for c in result.failures] == ['equity_floor']
        assert result.risk_score == 30
        assert result.risk_level == RiskLevel.NORMAL

    def test_low_confidence_penalty(self, engine, healthy_account):
        result = engine.validate_trade(make_signal(confidence=0.65), healthy_account)
        assert not result.is_valid
        assert result.risk_score == pytest.approx(7.0)
        assert 'signal_quality' in result.reasons[0]

    def test_non_actionable_signal(self, engine, healthy_account):
        result = engine.validate_trade(make_signal(SignalDirection.NONE), healthy_account)
        assert not result.is_valid
        assert result.risk_score == 20
        assert result.risk_level == RiskLevel.NORMAL

    def test_drawdown_penalty_scales(self, engine):
        result = engine.validate_trade(make_signal(), account(current_drawdown=0.06))
        assert result.risk_score == pytest.approx(50.0)
        assert result.risk_level == RiskLevel.ELEVATED
        assert 'Monitor drawdown closely' in result.recommended_actions

    def test_stacked_failures_are_critical(self, engine):
        acct = account(total_equity=500.0, available_equity=500.0, open_positions=3, current_drawdown=0.06)
        result = engine.validate_trade(make_signal(), acct)
        assert result.risk_score == 100
        assert result.risk_level == RiskLevel.CRITICAL
        assert result.max_recommended_size == pytest.approx(0.01)
        assert 'Consider reducing position size' in result.recommended_actions
        assert 'Consider waiting for better market conditions' in result.recommended_actions

    def test_exposure_limit(self, engine):
        result = engine.validate_trade(make_signal(), account(total_exposure=0.15))
        assert [c.name for c in result.failures] == ['position_limits']

    def test_daily_profit_is_not_a_loss(self, engine):
        assert engine.validate_trade(make_signal(), account(daily_pnl=1000.0)).is_valid
        result = engine.validate_trade(make_signal(), account(daily_pnl=-600.0))
        assert [c.name for c in result.failures] == ['daily_loss']

    def test_trade_frequency(self, engine):
        recent = account(last_trade_time=NOW - timedelta(seconds=60))
        assert [c.name for c in engine.validate_trade(make_signal(), recent).failures] == ['trade_frequency']
        later = account(last_trade_time=NOW - timedelta(seconds=301))
        assert engine.validate_trade(make_signal(), later).is_valid

    def test_parameter_override(self, engine, healthy_account):
        strict = RiskParameters(min_signal_confidence=0.9)
        assert not engine.validate_trade(make_signal(), healthy_account, params=strict).is_valid


class TestSizing:
    def test_capped_at_equity_percentage(self, engine):
        sizing = engine.calculate_position_size(make_signal(entry=100.0, stop=98.0), 10000.0)
        assert sizing.is_valid
        assert sizing.fixed_fractional_size == pytest.approx(100.0)
        assert sizing.quantity * 100.0 <= 2500.0 + 1e-9
        assert sizing.quantity == pytest.approx(25.0)
        assert sizing.risk_amount == pytest.approx(50.0)

    @pytest.mark.parametrize("exposure,expected", [
        (0.0, 15.0),
        (0.10, 5.0),
        (0.14, 1.0),
    ])
    def test_capped_by_remaining_exposure(self, engine, exposure, expected):
        sizing = engine.calculate_position_size(make_signal(entry=100.0, stop=98.0), 10000.0,
                                                current_exposure=exposure)
        assert sizing.is_valid
        assert sizing.quantity == pytest.approx(expected)
        assert any('exposure capacity' in n for n in sizing.notes)

    def test_no_exposure_capacity_left(self, engine):
        sizing = engine.calculate_position_size(make_signal(entry=100.0, stop=98.0), 10000.0,
                                                current_exposure=0.15)
        assert not sizing.is_valid
        assert sizing.quantity == 0
        assert 'below exchange minimum' in sizing.reason

    def test_uncapped_fixed_fractional(self, engine):
        sizing = engine.calculate_position_size(make_signal(entry=100.0, stop=80.0), 10000.0)
        assert sizing.quantity == pytest.approx(10.0)
        assert sizing.risk_pct == pytest.approx(0.02)
        assert sizing.sizing_method == 'fixed_fractional'

    def test_drawdown_reduces_size(self, engine):
        sizing = engine.calculate_position_size(make_signal(entry=100.0, stop=80.0), 10000.0,
                                                current_drawdown=0.025)
        assert sizing.drawdown_adjustment == pytest.approx(0.75)
        assert sizing.quantity == pytest.approx(7.5)

    @pytest.mark.parametrize("regime,expected", [
        (VolatilityRegime.LOW, 11.0),
        (VolatilityRegime.HIGH, 8.5),
        (VolatilityRegime.EXTREME, 7.0),
    ])
    def test_volatility_scaling(self, engine, regime, expected):
        sizing = engine.calculate_position_size(make_signal(entry=100.0, stop=80.0, regime=regime), 10000.0)
        assert sizing.quantity == pytest.approx(expected)

    def test_kelly_used_when_smaller(self, engine):
        stats = PerformanceStats(trade_count=20, win_rate=0.35, average_win=200.0, average_loss=100.0)
        sizing = engine.calculate_position_size(make_signal(entry=100.0, stop=80.0), 10000.0,
                                                performance=stats)
        assert sizing.kelly_fraction == pytest.approx(0.025)
        assert sizing.sizing_method == 'kelly'
        assert sizing.quantity == pytest.approx(3.125)

    def test_kelly_ignored_without_history(self, engine):
        stats = PerformanceStats(trade_count=3, win_rate=0.35, average_win=200.0, average_loss=100.0)
        sizing = engine.calculate_position_size(make_signal(entry=100.0, stop=80.0), 10000.0,
                                                performance=stats)
        assert sizing.sizing_method == 'fixed_fractional'
        assert sizing.kelly_size is None
        assert any('Kelly' in n for n in sizing.notes)

    def test_zero_risk_distance_invalid(self, engine):
        sizing = engine.calculate_position_size(make_signal(entry=100.0, stop=100.0), 10000.0)
        assert not sizing.is_valid
        assert sizing.quantity == 0
        assert sizing.reason.startswith('InvalidParameter')

    def test_non_positive_equity_invalid(self, engine):
        assert not engine.calculate_position_size(make_signal(), 0.0).is_valid

    def test_ceiling_below_exchange_minimum(self, engine):
        sizing = engine.calculate_position_size(make_signal(entry=100000.0, stop=98000.0), 1.0)
        assert not sizing.is_valid
        assert 'minimum' in sizing.reason

    def test_short_side(self, engine):
        sizing = engine.calculate_position_size(
            make_signal(SignalDirection.SELL, entry=100.0, stop=120.0), 10000.0)
        assert sizing.quantity == pytest.approx(10.0)


class TestPositionSizer:
    def test_fixed_fractional(self):
        assert PositionSizer.fixed_fractional(10000, 0.02, 100, 98) == pytest.approx(100.0)
        assert PositionSizer.fixed_fractional(10000, 0.02, 100, 100) == 0.0

    def test_kelly_bounds(self):
        assert PositionSizer.kelly_fraction(0.6, 2.0) == pytest.approx(0.25)
        assert PositionSizer.kelly_fraction(0.3, 1.0) == 0.0
        assert PositionSizer.kelly_fraction(0.5, float('inf')) == 0.25
        assert PositionSizer.kelly_fraction(0.55, 1.0, max_fraction=1.0) == pytest.approx(0.1)

    def test_drawdown_multiplier_floor(self):
        assert PositionSizer.drawdown_multiplier(0.0, 0.05) == 1.0
        assert PositionSizer.drawdown_multiplier(0.2, 0.05) == pytest.approx(0.5)


class TestStops:
    def test_long_ladder(self, long_position):
        levels = long_position.stop_levels
        assert levels.side == PositionSide.LONG
        assert levels.initial_stop == pytest.approx(98.0)
        assert levels.breakeven_stop == pytest.approx(101.0)
        assert levels.emergency_stop == pytest.approx(96.0)
        assert levels.technical_stop == pytest.approx(90.0)
        assert [t.price for t in levels.profit_targets] == pytest.approx([102.0, 104.0, 106.0])
        assert [t.close_fraction for t in levels.profit_targets] == pytest.approx([0.25, 0.5, 0.25])
        assert levels.effective_stop() == pytest.approx(98.0)
        assert levels.trailing_stop is None

    def test_short_ladder(self, short_position):
        levels = short_position.stop_levels
        assert levels.breakeven_stop == pytest.approx(99.0)
        assert levels.emergency_stop == pytest.approx(104.0)
        assert [t.price for t in levels.profit_targets] == pytest.approx([98.0, 96.0, 94.0])
        assert levels.effective_stop() == pytest.approx(102.0)
        assert levels.is_breached(102.5)
        assert not levels.is_breached(101.0)

    def test_stop_on_wrong_side_falls_back(self, engine):
        levels = engine.calculate_stop_loss_levels(100.0, make_signal(stop=101.0))
        assert levels.initial_stop == pytest.approx(98.0)

    def test_invalid_inputs_raise(self, engine):
        with pytest.raises(InvalidParameterError):
            engine.calculate_stop_loss_levels(100.0, make_signal(SignalDirection.NONE))
        with pytest.raises(InvalidParameterError):
            engine.calculate_stop_loss_levels(0.0, make_signal())

    def test_long_trailing_only_tightens(self, engine, long_position):
        original = long_position.stop_levels
        assert engine.update_trailing_stop(long_position, 100.5).trailing_stop is None

        assert engine.update_trailing_stop(long_position, 102.0).trailing_stop == pytest.approx(101.49)
        assert engine.update_trailing_stop(long_position, 101.0).trailing_stop == pytest.approx(101.49)
        assert engine.update_trailing_stop(long_position, 104.0).trailing_stop == pytest.approx(103.48)

        assert long_position.stop_levels.trailing_active
        assert original.trailing_stop is None
        assert long_position.stop_levels.effective_stop() == pytest.approx(103.48)

    def test_short_trailing_only_tightens(self, engine, short_position):
        assert engine.update_trailing_stop(short_position, 97.0).trailing_stop == pytest.approx(97.485)
        assert engine.update_trailing_stop(short_position, 98.0).trailing_stop == pytest.approx(97.485)
        assert engine.update_trailing_stop(short_position, 95.0).trailing_stop == pytest.approx(95.475)

    def test_trailing_ignores_bad_price(self, engine, long_position):
        levels = engine.update_trailing_stop(long_position, float('nan'))
        assert levels is long_position.stop_levels
        assert long_position.current_price == 100.0

    def test_trailing_disabled(self, long_position):
        engine = RiskEngine(RiskParameters(use_trailing_stop=False))
        long_position.stop_levels = replace(long_position.stop_levels, trailing_enabled=False)
        assert engine.update_trailing_stop(long_position, 110.0).trailing_stop is None


class TestCircuitBreakers:
    def test_drawdown_at_limit_does_not_trip(self, engine, calm_market):
        result = engine.check_circuit_breakers(account(current_drawdown=0.05), calm_market, now=NOW)
        assert not result.triggered
        assert result.system_state == SystemState.NORMAL

    def test_drawdown_over_limit_is_emergency(self, engine, calm_market):
        result = engine.check_circuit_breakers(account(current_drawdown=0.06), calm_market, now=NOW)
        assert result.triggered
        assert result.trigger_names == ['MaxDrawdown']
        assert result.max_severity == Severity.CRITICAL
        assert result.system_state == SystemState.EMERGENCY
        assert result.cooldown == timedelta(minutes=60)
        assert result.reset_time == NOW + timedelta(minutes=60)

    def test_recomputed_on_every_check(self, engine, calm_market):
        tripped = engine.check_circuit_breakers(account(current_drawdown=0.06), calm_market, now=NOW)
        recovered = engine.check_circuit_breakers(account(current_drawdown=0.04), calm_market,
                                                  now=NOW + timedelta(minutes=1))
        assert tripped.triggered
        assert not recovered.triggered
        assert recovered.trigger_names == []

    def test_cooldown_hold(self, engine, calm_market):
        tripped = engine.check_circuit_breakers(account(current_drawdown=0.06), calm_market, now=NOW)

        cooling = RiskEngine.cooldown_hold(tripped, NOW + timedelta(minutes=10))
        assert cooling.triggered
        assert cooling.trigger_names == ['CooldownActive']
        assert cooling.system_state == SystemState.RESTRICTED
        assert cooling.cooldown == timedelta(minutes=50)
        assert 'MaxDrawdown' in cooling.triggers[0].description

        naive = (NOW + timedelta(minutes=10)).replace(tzinfo=None)
        assert RiskEngine.cooldown_hold(tripped, naive).cooldown == timedelta(minutes=50)
        assert RiskEngine.cooldown_hold(tripped, NOW + timedelta(minutes=60)) is None
        assert RiskEngine.cooldown_hold(None, NOW) is None

    def test_market_breakers_restrict(self, engine, healthy_account, calm_market):
        wild = replace(calm_market, volatility_regime=VolatilityRegime.EXTREME, liquidity=10.0)
        result = engine.check_circuit_breakers(healthy_account, wild, now=NOW)
        assert result.trigger_names == ['ExtremeVolatility', 'LowLiquidity']
        assert result.system_state == SystemState.RESTRICTED

    def test_daily_loss_breaker(self, engine, calm_market):
        result = engine.check_circuit_breakers(account(daily_pnl=-600.0), calm_market, now=NOW)
        assert result.trigger_names == ['MaxDailyLoss']
        assert result.max_severity == Severity.HIGH

    def test_fault_fails_closed(self, engine, calm_market):
        result = engine.check_circuit_breakers(None, calm_market, now=NOW)
        assert result.triggered
        assert result.trigger_names == ['CircuitBreakerFault']
        assert result.system_state == SystemState.EMERGENCY

    def test_disabled(self, calm_market):
        engine = RiskEngine(RiskParameters(use_circuit_breakers=False))
        assert not engine.check_circuit_breakers(account(current_drawdown=0.4), calm_market).triggered


class TestClosure:
    def test_stop_breach_first(self, engine, long_position, calm_market):
        market = replace(calm_market, current_price=97.0)
        result = engine.should_close_position(long_position, account(current_drawdown=0.06), market, now=NOW)
        assert result.should_close
        assert result.reason == ClosureReason.STOP_LOSS_HIT
        assert result.urgency == Urgency.HIGH
        assert result.close_fraction == 1.0

    def test_drawdown_protection(self, engine, long_position, calm_market):
        result = engine.should_close_position(long_position, account(current_drawdown=0.06), calm_market, now=NOW)
        assert result.reason == ClosureReason.DRAWDOWN_PROTECTION
        assert result.urgency == Urgency.EMERGENCY

    def test_extreme_volatility_halves(self, engine, long_position, calm_market):
        market = replace(calm_market, volatility_regime=VolatilityRegime.EXTREME)
        late = BASE_TIME + timedelta(hours=200)
        result = engine.should_close_position(long_position, account(), market, now=late)
        assert result.reason == ClosureReason.VOLATILITY_SPIKE
        assert result.close_fraction == 0.5

    def test_time_stop(self, engine, long_position, calm_market):
        result = engine.should_close_position(long_position, account(), calm_market,
                                              now=BASE_TIME + timedelta(hours=169))
        assert result.reason == ClosureReason.TIME_STOP
        assert result.urgency == Urgency.NORMAL

    def test_keep_open_with_risk_factors(self, engine, long_position, calm_market):
        market = replace(calm_market, volatility_regime=VolatilityRegime.HIGH, liquidity=30.0)
        result = engine.should_close_position(long_position, account(current_drawdown=0.046), market, now=NOW)
        assert not result.should_close
        assert result.reason == ClosureReason.KEEP_OPEN
        assert len(result.risk_factors) == 3

    def test_naive_open_time_is_utc(self, engine, long_position, calm_market):
        long_position.opened_at = BASE_TIME.replace(tzinfo=None)
        result = engine.should_close_position(long_position, account(), calm_market)
        assert result.reason == ClosureReason.KEEP_OPEN

        result = engine.should_close_position(long_position, account(), calm_market,
                                              now=BASE_TIME + timedelta(hours=169))
        assert result.reason == ClosureReason.TIME_STOP

    def test_evaluation_error_closes(self, engine, long_position):
        result = engine.should_close_position(long_position, account(), None, now=NOW)
        assert result.should_close
        assert result.reason == ClosureReason.EVALUATION_ERROR


class TestParameters:
    def test_invalid_update_rejected(self, engine):
        with pytest.raises(InvalidParameterError):
            engine.update_parameters(RiskParameters(max_risk_per_trade=0.2))
        assert engine.config.max_risk_per_trade == 0.02

    def test_valid_update_applies(self, engine):
        engine.update_parameters(RiskParameters(max_open_positions=5))
        assert engine.config.max_open_positions == 5
