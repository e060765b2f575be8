"""
Risk Engine Module
==================
Trade validation, position sizing, stop management and circuit breakers.

Core principle: "No emotional overrides once live"
Risk rules are enforced algorithmically without human intervention. Every
public method returns a typed result; internal faults are logged and turned
into the most conservative answer (reject, close, or breaker tripped).
"""

import numpy as np
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional
import logging
import threading

from ..data.candles import as_utc
from ..errors import InvalidParameterError
from ..features.indicators import VolatilityRegime
from ..strategy.signals import SignalDirection, TradingSignal
from .models import (
    AccountState,
    CircuitBreakerResult,
    CircuitBreakerTrigger,
    ClosureReason,
    MarketConditions,
    PerformanceStats,
    Position,
    PositionClosureResult,
    PositionSide,
    PositionSizing,
    ProfitTarget,
    RiskCheck,
    RiskLevel,
    RiskValidationResult,
    Severity,
    StopLossLevels,
    SystemState,
    Urgency,
)

logger = logging.getLogger(__name__)


# Size multipliers per volatility regime
VOLATILITY_SIZE_MULTIPLIERS = {
    VolatilityRegime.LOW: 1.1,
    VolatilityRegime.NORMAL: 1.0,
    VolatilityRegime.HIGH: 0.85,
    VolatilityRegime.EXTREME: 0.7,
}

# Partial-close ladder: (R multiple, fraction of position)
PROFIT_LADDER = ((1.0, 0.25), (2.0, 0.50), (3.0, 0.25))

# Hard ceiling on any recommended per-trade risk
MAX_RECOMMENDED_RISK = 0.05


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class PositionSizer:
    """Position sizing algorithms."""

    @staticmethod
    def fixed_fractional(capital: float, risk_pct: float, entry_price: float,
                         stop_loss_price: float) -> float:
        """
        Fixed Fractional position sizing.

        Risk a fixed percentage of capital per trade.
        """
        if entry_price <= 0 or stop_loss_price <= 0:
            return 0.0

        risk_per_unit = abs(entry_price - stop_loss_price)
        if risk_per_unit <= 0:
            return 0.0

        return max(capital * risk_pct / risk_per_unit, 0.0)

    @staticmethod
    def kelly_fraction(win_rate: float, win_loss_ratio: float, max_fraction: float = 0.25) -> float:
        """
        Kelly Criterion fraction f = (b*p - q) / b, clamped to [0, max_fraction].

        An infinite win/loss ratio (no losing trades) gives the cap.
        """
        if win_loss_ratio <= 0 or not 0 <= win_rate <= 1:
            return 0.0
        if np.isinf(win_loss_ratio):
            return max_fraction if win_rate > 0 else 0.0
        f = (win_loss_ratio * win_rate - (1 - win_rate)) / win_loss_ratio
        return float(np.clip(f, 0.0, max_fraction))

    @staticmethod
    def volatility_multiplier(regime: VolatilityRegime) -> float:
        return VOLATILITY_SIZE_MULTIPLIERS.get(regime, 1.0)

    @staticmethod
    def drawdown_multiplier(current_drawdown: float, max_drawdown: float,
                            max_reduction: float = 0.5) -> float:
        """Linear size reduction reaching ``max_reduction`` at the drawdown ceiling."""
        if max_drawdown <= 0 or current_drawdown <= 0:
            return 1.0
        return 1.0 - max_reduction * min(current_drawdown / max_drawdown, 1.0)


class RiskEngine:
    """
    Main risk engine.

    Responsibilities:
    - Pre-trade validation with a weighted risk score
    - Position sizing (fixed fractional, capped Kelly, volatility and drawdown scaling)
    - Stop-loss ladder and trailing stops
    - Circuit breakers (stateless; cooldown reported in the result)
    - Position closure decisions
    """

    def __init__(self, config=None, clock: Callable[[], datetime] = None):
        from ..config import RiskParameters
        self.config = config or RiskParameters()
        self.clock = clock or utc_now

        self._lock = threading.Lock()

    def update_parameters(self, params):
        """Swap in new risk parameters. Rejected if they fail validation."""
        problems = params.validate()
        if problems:
            raise InvalidParameterError('; '.join(problems))
        with self._lock:
            self.config = params
        logger.info("Risk parameters updated")

    def _params(self, params=None):
        if params is not None:
            return params
        with self._lock:
            return self.config

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate_trade(self, signal: TradingSignal, account: AccountState, params=None,
                       now: datetime = None) -> RiskValidationResult:
        """Run every check, sum the penalties of failing ones, and bucket the score."""
        p = self._params(params)
        now = now or self.clock()
        try:
            checks = (
                self._check_equity(account, p),
                self._check_position_limits(account, p),
                self._check_drawdown(account, p),
                self._check_daily_loss(account, p),
                self._check_trade_frequency(account, p, now),
                self._check_signal_quality(signal, p),
            )
        except Exception as e:
            logger.exception("Trade validation failed")
            fault = RiskCheck('evaluation_error', False, 100.0, 0.0, 0.0, str(e))
            return RiskValidationResult(False, 100.0, RiskLevel.CRITICAL, 0.0, (fault,),
                                        ('Halt trading until the validation fault is resolved',))

        score = min(100.0, sum(c.penalty for c in checks if not c.passed))
        level = self._determine_risk_level(score)
        max_size = min(p.max_risk_per_trade * max(0.1, 1 - score / 200), MAX_RECOMMENDED_RISK)

        actions = []
        if level in (RiskLevel.HIGH, RiskLevel.CRITICAL):
            actions.append('Consider reducing position size')
        if account.current_drawdown > 0.8 * p.max_drawdown:
            actions.append('Monitor drawdown closely')
        if score > 70:
            actions.append('Consider waiting for better market conditions')

        result = RiskValidationResult(
            is_valid=all(c.passed for c in checks),
            risk_score=score,
            risk_level=level,
            max_recommended_size=max_size,
            checks=checks,
            recommended_actions=tuple(actions)
        )
        if not result.is_valid:
            logger.info(f"{signal.symbol} trade rejected (score {score:.0f}): {'; '.join(result.reasons)}")
        return result

    def _check_equity(self, account: AccountState, p) -> RiskCheck:
        ok = account.total_equity > p.min_equity
        return RiskCheck('equity_floor', ok, 30.0, account.total_equity, p.min_equity,
                         'ok' if ok else f'Equity {account.total_equity:.2f} <= floor {p.min_equity:.2f}')

    def _check_position_limits(self, account: AccountState, p) -> RiskCheck:
        positions_ok = account.open_positions < p.max_open_positions
        exposure_ok = account.total_exposure < p.max_portfolio_exposure
        if positions_ok and exposure_ok:
            message = 'ok'
        elif not positions_ok:
            message = f'Open positions {account.open_positions} >= {p.max_open_positions}'
        else:
            message = f'Exposure {account.total_exposure:.1%} >= {p.max_portfolio_exposure:.1%}'
        return RiskCheck('position_limits', positions_ok and exposure_ok, 25.0,
                         account.total_exposure, p.max_portfolio_exposure, message)

    def _check_drawdown(self, account: AccountState, p) -> RiskCheck:
        dd = account.current_drawdown
        ok = dd <= p.max_drawdown
        return RiskCheck('drawdown', ok, min(50.0, dd * 1000), dd, p.max_drawdown,
                         'ok' if ok else f'Max drawdown exceeded: {dd:.1%} > {p.max_drawdown:.1%}')

    def _check_daily_loss(self, account: AccountState, p) -> RiskCheck:
        loss = account.daily_loss_pct
        ok = loss <= p.max_daily_loss
        return RiskCheck('daily_loss', ok, 20.0, loss, p.max_daily_loss,
                         'ok' if ok else f'Daily loss limit hit: {loss:.1%} > {p.max_daily_loss:.1%}')

    def _check_trade_frequency(self, account: AccountState, p, now: datetime) -> RiskCheck:
        interval = p.min_time_between_trades_seconds
        if account.last_trade_time is None:
            return RiskCheck('trade_frequency', True, 15.0, float('inf'), interval, 'ok')
        elapsed = (as_utc(now) - as_utc(account.last_trade_time)).total_seconds()
        ok = elapsed >= interval
        return RiskCheck('trade_frequency', ok, 15.0, elapsed, interval,
                         'ok' if ok else f'Only {elapsed:.0f}s since last trade, need {interval}s')

    def _check_signal_quality(self, signal: TradingSignal, p) -> RiskCheck:
        if not signal.is_actionable:
            return RiskCheck('signal_quality', False, 20.0, 0.0, p.min_signal_confidence,
                             f'No actionable signal: {signal.reason or signal.state.value}')
        conf = signal.confidence
        ok = conf >= p.min_signal_confidence
        return RiskCheck('signal_quality', ok, (1 - conf) * 20, conf, p.min_signal_confidence,
                         'ok' if ok else f'Confidence {conf:.0%} < {p.min_signal_confidence:.0%}')

    @staticmethod
    def _determine_risk_level(score: float) -> RiskLevel:
        if score < 20:
            return RiskLevel.LOW
        elif score < 40:
            return RiskLevel.NORMAL
        elif score < 60:
            return RiskLevel.ELEVATED
        elif score < 80:
            return RiskLevel.HIGH
        return RiskLevel.CRITICAL

    # ------------------------------------------------------------------
    # Sizing
    # ------------------------------------------------------------------

    def calculate_position_size(self, signal: TradingSignal, equity: float, params=None,
                                performance: PerformanceStats = None,
                                current_drawdown: float = 0.0,
                                current_exposure: float = None) -> PositionSizing:
        """
        Size a trade from its stop distance.

        Fixed fractional is the base; a capped Kelly size replaces it when
        it is smaller and enough trade history exists. The result is scaled
        for volatility regime and drawdown, then clamped between the
        exchange minimum and the equity-percentage ceiling. When
        ``current_exposure`` (fraction of equity already deployed) is given,
        the ceiling also shrinks to the remaining portfolio exposure capacity.
        """
        p = self._params(params)
        entry = signal.entry_price
        stop = signal.stop_loss
        if stop is None and entry > 0:
            offset = p.initial_stop_loss_pct if signal.direction != SignalDirection.SELL else -p.initial_stop_loss_pct
            stop = entry * (1 - offset)
        risk_pct = p.max_risk_per_trade

        problem = None
        if equity <= 0:
            problem = f'equity must be positive, got {equity}'
        elif entry <= 0 or stop is None or stop <= 0:
            problem = f'entry and stop must be positive, got entry={entry} stop={stop}'
        elif not 0 < risk_pct <= MAX_RECOMMENDED_RISK:
            problem = f'risk per trade must be in (0, {MAX_RECOMMENDED_RISK}], got {risk_pct}'
        elif entry == stop:
            problem = 'entry equals stop; risk distance is zero'
        if problem:
            logger.warning(f"{signal.symbol} sizing rejected: invalid parameter: {problem}")
            return PositionSizing(0.0, 0.0, 0.0, 0.0, is_valid=False,
                                  reason=f'InvalidParameter: {problem}')

        notes = []
        distance = abs(entry - stop)
        fixed = PositionSizer.fixed_fractional(equity, risk_pct, entry, stop)
        base = fixed
        method = 'fixed_fractional'

        kelly_f = 0.0
        kelly_size = None
        if p.use_kelly and performance is not None and performance.trade_count >= p.min_trades_for_kelly:
            kelly_f = PositionSizer.kelly_fraction(performance.win_rate, performance.win_loss_ratio,
                                                   p.max_kelly_fraction)
            if kelly_f < p.min_kelly_fraction:
                notes.append(f'Kelly fraction {kelly_f:.3f} below minimum {p.min_kelly_fraction:.3f}')
            kelly_size = equity * kelly_f * p.kelly_multiplier / distance
            if kelly_size < fixed:
                base = kelly_size
                method = 'kelly'
        elif p.use_kelly:
            notes.append('Insufficient trade history for Kelly sizing')

        vol_adj = PositionSizer.volatility_multiplier(signal.volatility_regime)
        dd_adj = PositionSizer.drawdown_multiplier(current_drawdown, p.max_drawdown,
                                                   p.max_drawdown_size_reduction)
        size = base * vol_adj * dd_adj

        ceiling = equity * p.max_position_pct / entry
        cap_note = f'Capped at {p.max_position_pct:.0%} of equity'
        if current_exposure is not None:
            capacity = max(0.0, p.max_portfolio_exposure - current_exposure) * equity / entry
            if capacity < ceiling:
                ceiling = capacity
                cap_note = (f'Capped by remaining exposure capacity '
                            f'({current_exposure:.1%} of {p.max_portfolio_exposure:.1%} used)')
        if ceiling < p.min_order_quantity:
            return PositionSizing(0.0, 0.0, 0.0, fixed, kelly_f, kelly_size, vol_adj, dd_adj, method,
                                  is_valid=False,
                                  reason=f'Position ceiling {ceiling:.6f} below exchange minimum {p.min_order_quantity}',
                                  notes=tuple(notes))
        if size > ceiling:
            notes.append(cap_note)
        elif size < p.min_order_quantity:
            notes.append(f'Raised to exchange minimum {p.min_order_quantity}')
        quantity = float(np.clip(size, p.min_order_quantity, ceiling))

        risk_amount = quantity * distance
        return PositionSizing(
            quantity=quantity,
            risk_amount=risk_amount,
            risk_pct=risk_amount / equity,
            fixed_fractional_size=fixed,
            kelly_fraction=kelly_f,
            kelly_size=kelly_size,
            volatility_adjustment=vol_adj,
            drawdown_adjustment=dd_adj,
            sizing_method=method,
            notes=tuple(notes)
        )

    # ------------------------------------------------------------------
    # Stops
    # ------------------------------------------------------------------

    def calculate_stop_loss_levels(self, entry_price: float, signal: TradingSignal,
                                   params=None) -> StopLossLevels:
        p = self._params(params)
        if entry_price <= 0:
            raise InvalidParameterError(f'entry_price must be positive, got {entry_price}')
        if signal.direction == SignalDirection.NONE:
            raise InvalidParameterError('cannot build stop levels for a signal without direction')

        long = signal.direction == SignalDirection.BUY
        side = PositionSide.LONG if long else PositionSide.SHORT
        sign = 1 if long else -1

        initial = signal.stop_loss
        if initial is None or initial <= 0 or sign * (entry_price - initial) <= 0:
            initial = entry_price * (1 - sign * p.initial_stop_loss_pct)
        distance = abs(entry_price - initial)

        technical = signal.secondary_stop
        if technical is not None and sign * (entry_price - technical) <= 0:
            technical = None

        targets = tuple(
            ProfitTarget(entry_price + sign * r * distance, r, fraction)
            for r, fraction in PROFIT_LADDER
        )

        return StopLossLevels(
            side=side,
            entry_price=entry_price,
            initial_stop=initial,
            breakeven_stop=entry_price * (1 + sign * p.breakeven_pct),
            emergency_stop=entry_price - sign * 2 * distance,
            technical_stop=technical,
            profit_targets=targets,
            trailing_enabled=p.use_trailing_stop,
            trailing_activation=p.trailing_stop_activation,
            trailing_distance=p.trailing_stop_distance,
            max_acceptable_risk=1.5 * distance
        )

    def update_trailing_stop(self, position: Position, current_price: float) -> StopLossLevels:
        """
        Tighten the trailing stop once unrealized profit reaches the activation
        threshold. The stop only ever moves in the position's favour.
        """
        levels = position.stop_levels
        if current_price <= 0 or not np.isfinite(current_price):
            logger.warning(f"{position.symbol} ignoring invalid price {current_price} for trailing stop")
            return levels
        position.current_price = current_price
        if not levels.trailing_enabled:
            return levels

        entry = position.entry_price
        if position.side == PositionSide.LONG:
            profit = (current_price - entry) / entry
            candidate = current_price * (1 - levels.trailing_distance)
            improves = levels.trailing_stop is None or candidate > levels.trailing_stop
        else:
            profit = (entry - current_price) / entry
            candidate = current_price * (1 + levels.trailing_distance)
            improves = levels.trailing_stop is None or candidate < levels.trailing_stop

        if profit >= levels.trailing_activation and improves:
            levels = replace(levels, trailing_stop=candidate)
            position.stop_levels = levels
            logger.debug(f"{position.symbol} trailing stop -> {candidate:.4f}")
        return levels

    # ------------------------------------------------------------------
    # Circuit breakers
    # ------------------------------------------------------------------

    def check_circuit_breakers(self, account: AccountState, market: MarketConditions,
                               params=None, now: datetime = None) -> CircuitBreakerResult:
        """
        Evaluate all enabled breakers against the given state. Any internal
        fault trips the breaker. Nothing is remembered between calls; callers
        that want to honour the cooldown keep the triggered result and pass it
        to ``cooldown_hold``.
        """
        p = self._params(params)
        now = now or self.clock()
        if not p.use_circuit_breakers:
            return CircuitBreakerResult(False)

        try:
            triggers = self._evaluate_breakers(account, market, p)
        except Exception as e:
            logger.exception("Circuit breaker evaluation failed; failing closed")
            triggers = [CircuitBreakerTrigger('CircuitBreakerFault', Severity.CRITICAL,
                                              f'Breaker evaluation error: {e}', 0.0, 0.0)]
        if not triggers:
            return CircuitBreakerResult(False)

        cooldown = timedelta(minutes=p.circuit_breaker_cooldown_minutes)
        critical = any(t.severity == Severity.CRITICAL for t in triggers)
        result = CircuitBreakerResult(
            triggered=True,
            triggers=tuple(triggers),
            cooldown=cooldown,
            reset_time=now + cooldown,
            system_state=SystemState.EMERGENCY if critical else SystemState.RESTRICTED
        )
        for t in triggers:
            logger.warning(f"Circuit breaker {t.name} ({t.severity.value}): {t.description}")
        return result

    @staticmethod
    def cooldown_hold(previous: Optional[CircuitBreakerResult], now: datetime) -> Optional[CircuitBreakerResult]:
        """
        A ``CooldownActive`` result while an earlier trip's reset time is
        still ahead of ``now``; None once it has passed.
        """
        if previous is None or not previous.triggered or previous.reset_time is None:
            return None
        reset_time = as_utc(previous.reset_time)
        now = as_utc(now)
        if now >= reset_time:
            return None
        trigger = CircuitBreakerTrigger(
            'CooldownActive', Severity.MEDIUM,
            f"Cooling down after {', '.join(previous.trigger_names)}", 0.0, 0.0)
        return CircuitBreakerResult(True, (trigger,), reset_time - now, reset_time, SystemState.RESTRICTED)

    def _evaluate_breakers(self, account: AccountState, market: MarketConditions, p) -> List[CircuitBreakerTrigger]:
        triggers = []
        if p.drawdown_breaker_enabled and account.current_drawdown > p.max_drawdown:
            triggers.append(CircuitBreakerTrigger(
                'MaxDrawdown', Severity.CRITICAL,
                f'Drawdown {account.current_drawdown:.1%} > {p.max_drawdown:.1%}',
                account.current_drawdown, p.max_drawdown))
        if p.daily_loss_breaker_enabled and account.daily_loss_pct > p.max_daily_loss:
            triggers.append(CircuitBreakerTrigger(
                'MaxDailyLoss', Severity.HIGH,
                f'Daily loss {account.daily_loss_pct:.1%} > {p.max_daily_loss:.1%}',
                account.daily_loss_pct, p.max_daily_loss))
        if p.volatility_breaker_enabled and market.volatility_regime == VolatilityRegime.EXTREME:
            triggers.append(CircuitBreakerTrigger(
                'ExtremeVolatility', Severity.MEDIUM,
                f'{market.symbol} volatility regime is extreme',
                market.volatility, 0.0))
        if p.liquidity_breaker_enabled and market.liquidity < p.min_liquidity:
            triggers.append(CircuitBreakerTrigger(
                'LowLiquidity', Severity.MEDIUM,
                f'{market.symbol} liquidity {market.liquidity:.0f} < {p.min_liquidity:.0f}',
                market.liquidity, p.min_liquidity))
        return triggers

    # ------------------------------------------------------------------
    # Closure
    # ------------------------------------------------------------------

    def should_close_position(self, position: Position, account: AccountState,
                              market: MarketConditions, params=None,
                              now: datetime = None) -> PositionClosureResult:
        """Ordered checks; the first that fires decides."""
        p = self._params(params)
        now = now or self.clock()
        try:
            price = market.current_price
            levels = position.stop_levels
            if levels.is_breached(price):
                return PositionClosureResult(
                    True, ClosureReason.STOP_LOSS_HIT, Urgency.HIGH, 1.0,
                    f'Price {price:.4f} breached stop {levels.effective_stop():.4f}')

            risk_factors = []
            dd = account.current_drawdown
            if dd > 0.9 * p.max_drawdown:
                risk_factors.append(f'Drawdown {dd:.1%} near limit {p.max_drawdown:.1%}')
            if dd > p.max_drawdown:
                return PositionClosureResult(
                    True, ClosureReason.DRAWDOWN_PROTECTION, Urgency.EMERGENCY, 1.0,
                    f'Drawdown {dd:.1%} exceeds {p.max_drawdown:.1%}', tuple(risk_factors))

            if market.volatility_regime == VolatilityRegime.EXTREME:
                return PositionClosureResult(
                    True, ClosureReason.VOLATILITY_SPIKE, Urgency.HIGH, 0.5,
                    'Extreme volatility: reduce position by half', tuple(risk_factors))

            age = as_utc(now) - as_utc(position.opened_at)
            if age > timedelta(hours=p.max_holding_hours):
                return PositionClosureResult(
                    True, ClosureReason.TIME_STOP, Urgency.NORMAL, 1.0,
                    f'Held {age} beyond {p.max_holding_hours:.0f}h', tuple(risk_factors))

            if market.volatility_regime == VolatilityRegime.HIGH:
                risk_factors.append('High volatility regime')
            if market.liquidity < p.min_liquidity * 2:
                risk_factors.append(f'Thin liquidity ({market.liquidity:.0f})')
            return PositionClosureResult(False, ClosureReason.KEEP_OPEN, Urgency.LOW, 0.0,
                                         'Keep position open', tuple(risk_factors))
        except Exception as e:
            logger.exception(f"Closure evaluation failed for position {position.id}")
            return PositionClosureResult(True, ClosureReason.EVALUATION_ERROR, Urgency.HIGH, 1.0,
                                         f'Closure evaluation error: {e}')
