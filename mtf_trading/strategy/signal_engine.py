"""
Signal Engine
=============
Multi-timeframe Keltner confluence state machine.

    IDLE -> PRIMARY_EVALUATED -> ENTRY_EVALUATED -> CONFLUENCE_CHECKED -> EMITTED
                 |                     |                    |
                 +---------------------+--------------------+--> REJECTED

The trend timeframe must show a band touch followed by a shallow pullback
inside the channel; the entry timeframe must then cross back over its EMA
with momentum; finally both timeframes must agree. Any failing stage
short-circuits to a rejected signal that carries the evidence gathered so
far. The engine keeps no candle state between evaluations.
"""

import numpy as np
from datetime import datetime
from typing import List, Optional, Sequence, Union
import logging
import uuid

from ..data.candles import Candle, candles_to_frame
from ..errors import InsufficientData, InsufficientDataError
from ..features.indicators import IndicatorEngine, TechnicalIndicators, VolatilityRegime
from .signals import (
    ConfluenceEvidence,
    EntryEvidence,
    EvaluationStage,
    PrimaryEvidence,
    SignalDirection,
    SignalEvidence,
    SignalLevels,
    SignalState,
    TimeframeSnapshot,
    TradingSignal,
)

logger = logging.getLogger(__name__)


class SignalEngine:
    """
    Evaluates a trend window and an entry window into one TradingSignal.

    ``evaluate`` builds per-timeframe snapshots from candles;
    ``evaluate_snapshots`` runs the state machine on snapshots directly.
    """

    def __init__(self, config=None, indicator_engine: IndicatorEngine = None):
        from ..config import SignalConfig
        self.config = config or SignalConfig()
        self.indicators = indicator_engine or IndicatorEngine()

    def update_config(self, config):
        """Swap configuration; evaluations already running keep the old snapshot."""
        self.config = config

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def required_candles(self, config=None) -> int:
        cfg = config or self.config
        ind = self.indicators.config
        longest = max(ind.channel_ema_period, ind.atr_period, ind.rsi_period,
                      cfg.trend_ema_period, cfg.entry_ema_period, cfg.entry_atr_period)
        return max(longest + 1, cfg.volume_lookback, 2 * cfg.structure_lookback, cfg.setup_guard_bars + 1)

    def build_snapshot(self, candles: Sequence[Candle], ema_period: int,
                       config=None) -> Union[TimeframeSnapshot, InsufficientData]:
        cfg = config or self.config
        required = self.required_candles(cfg)
        if len(candles) < required:
            return InsufficientData(f'{candles[-1].timeframe.value} window' if candles else 'window',
                                    required, len(candles))

        keltner = self.indicators.keltner(candles)
        if isinstance(keltner, InsufficientData):
            return keltner

        df = candles_to_frame(candles)
        try:
            ema = TechnicalIndicators.ema(df['close'], ema_period)
            atr = TechnicalIndicators.atr(df['high'], df['low'], df['close'], cfg.entry_atr_period)
        except InsufficientDataError as e:
            return e.as_result()

        tail = max(cfg.volume_lookback, 2 * cfg.structure_lookback, cfg.setup_guard_bars, 2)
        return TimeframeSnapshot(
            timeframe=candles[-1].timeframe,
            candles=tuple(candles[-tail:]),
            keltner=keltner,
            ema=float(ema.iloc[-1]),
            previous_ema=float(ema.iloc[-2]) if np.isfinite(ema.iloc[-2]) else float(ema.iloc[-1]),
            ema_slope=TechnicalIndicators.slope(ema.values, cfg.slope_lookback),
            atr=float(atr.iloc[-1]),
            volatility_regime=self.indicators.classify_volatility(atr.dropna().values),
            rsi=TechnicalIndicators.rsi(df['close'], self.indicators.config.rsi_period),
            average_volume=float(df['volume'].iloc[-cfg.volume_lookback:].mean())
        )

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def evaluate(self, symbol: str, trend_candles: Sequence[Candle],
                 entry_candles: Sequence[Candle]) -> TradingSignal:
        """Evaluate the latest closed trend/entry windows. Never raises."""
        cfg = self.config
        timestamp = entry_candles[-1].close_time if entry_candles else None
        price = entry_candles[-1].close if entry_candles else 0.0
        try:
            trend = self.build_snapshot(trend_candles, cfg.trend_ema_period, cfg)
            if isinstance(trend, InsufficientData):
                return self._reject(symbol, price, timestamp, EvaluationStage.DATA,
                                    f'Trend timeframe {trend.reason}', SignalEvidence(), [SignalState.IDLE])
            entry = self.build_snapshot(entry_candles, cfg.entry_ema_period, cfg)
            if isinstance(entry, InsufficientData):
                return self._reject(symbol, price, timestamp, EvaluationStage.DATA,
                                    f'Entry timeframe {entry.reason}', SignalEvidence(), [SignalState.IDLE])
            return self.evaluate_snapshots(symbol, trend, entry, config=cfg)
        except Exception as e:
            logger.exception(f"Signal evaluation failed for {symbol}")
            return self._reject(symbol, price, timestamp, EvaluationStage.ERROR,
                                f'Evaluation error: {e}', SignalEvidence(), [SignalState.IDLE])

    def evaluate_snapshots(self, symbol: str, trend: TimeframeSnapshot, entry: TimeframeSnapshot,
                           config=None) -> TradingSignal:
        cfg = config or self.config
        path = [SignalState.IDLE]
        timestamp = entry.latest.close_time
        price = entry.latest.close

        # Stage 1: trend timeframe
        primary = self.evaluate_primary(trend, SignalDirection.BUY, cfg)
        if not primary.passed and cfg.allow_short:
            short = self.evaluate_primary(trend, SignalDirection.SELL, cfg)
            if short.passed:
                primary = short
        path.append(SignalState.PRIMARY_EVALUATED)
        evidence = SignalEvidence(primary=primary)
        if not primary.passed:
            return self._reject(symbol, price, timestamp, EvaluationStage.PRIMARY,
                                f"Primary conditions not met: {', '.join(primary.failed_checks())}",
                                evidence, path)
        direction = primary.direction

        # Stage 2: entry timeframe
        entry_ev = self.evaluate_entry(entry, direction, cfg)
        path.append(SignalState.ENTRY_EVALUATED)
        evidence = SignalEvidence(primary=primary, entry=entry_ev)
        if not entry_ev.passed:
            return self._reject(symbol, price, timestamp, EvaluationStage.ENTRY,
                                f"Entry conditions not met: {', '.join(entry_ev.failed_checks())}",
                                evidence, path)

        # Stage 3: confluence
        confluence = self.check_confluence(trend, entry, direction, cfg)
        path.append(SignalState.CONFLUENCE_CHECKED)
        evidence = SignalEvidence(primary=primary, entry=entry_ev, confluence=confluence)
        if not confluence.required_passed:
            failed = [k for k, ok in confluence.required.items() if not ok]
            return self._reject(symbol, price, timestamp, EvaluationStage.CONFLUENCE,
                                f"Confluence not met: {', '.join(failed)}", evidence, path)
        if confluence.confidence < cfg.min_confidence:
            return self._reject(symbol, price, timestamp, EvaluationStage.CONFLUENCE,
                                f'Confluence confidence {confluence.confidence:.2f} below {cfg.min_confidence:.2f}',
                                evidence, path)

        levels = self.calculate_levels(trend, entry, direction, cfg)
        evidence = SignalEvidence(primary=primary, entry=entry_ev, confluence=confluence, levels=levels)
        path.append(SignalState.EMITTED)

        signal = TradingSignal(
            id=uuid.uuid4().hex[:12],
            symbol=symbol,
            direction=direction,
            entry_price=levels.entry,
            timestamp=timestamp,
            state=SignalState.EMITTED,
            stop_loss=levels.initial_stop,
            take_profit=levels.take_profit,
            confidence=confluence.confidence,
            evidence=evidence,
            path=tuple(path)
        )
        logger.info(f"{symbol} {direction.value.upper()} signal @ {levels.entry:.4f} "
                    f"stop={levels.initial_stop:.4f} tp={levels.take_profit:.4f} "
                    f"confidence={signal.confidence:.2f}")
        return signal

    def evaluate_primary(self, trend: TimeframeSnapshot, direction: SignalDirection,
                         config=None) -> PrimaryEvidence:
        cfg = config or self.config
        kc = trend.keltner
        latest = trend.latest
        guard = trend.candles[-cfg.setup_guard_bars:]
        position = kc.position(latest.close)

        if direction == SignalDirection.BUY:
            penetration = kc.position(latest.high)
            zone_position = position
            ema_bias = trend.ema < kc.middle
            against = sum(1 for c in guard if c.close < trend.ema)
        else:
            penetration = 1.0 - kc.position(latest.low)
            zone_position = 1.0 - position
            ema_bias = trend.ema > kc.middle
            against = sum(1 for c in guard if c.close > trend.ema)

        volume_ratio = latest.volume / trend.average_volume if trend.average_volume > 0 else 0.0

        return PrimaryEvidence(
            direction=direction,
            band_penetration=penetration,
            band_position=position,
            ema=trend.ema,
            channel_middle=kc.middle,
            closes_against_ema=against,
            volume_ratio=volume_ratio,
            band_touched=penetration >= cfg.band_touch_threshold,
            in_retracement_zone=cfg.retracement_zone_low <= zone_position <= cfg.retracement_zone_high,
            ema_bias_valid=ema_bias,
            setup_intact=against == 0,
            volume_confirmed=volume_ratio > cfg.min_volume_ratio
        )

    def evaluate_entry(self, entry: TimeframeSnapshot, direction: SignalDirection,
                       config=None) -> EntryEvidence:
        cfg = config or self.config
        prev, last = entry.previous, entry.latest

        if direction == SignalDirection.BUY:
            crossed = prev.close <= entry.previous_ema and last.close > entry.ema
            candle_ok = last.is_bullish
            rsi_ok = entry.rsi > cfg.rsi_threshold
            slope_ok = entry.ema_slope >= 0
        else:
            crossed = prev.close >= entry.previous_ema and last.close < entry.ema
            candle_ok = last.is_bearish
            rsi_ok = entry.rsi < cfg.rsi_threshold
            slope_ok = entry.ema_slope <= 0

        return EntryEvidence(
            direction=direction,
            previous_close=prev.close,
            latest_close=last.close,
            previous_ema=entry.previous_ema,
            ema=entry.ema,
            rsi=entry.rsi,
            ema_slope=entry.ema_slope,
            volatility_regime=entry.volatility_regime,
            crossed=crossed,
            candle_confirms=candle_ok,
            rsi_confirmed=rsi_ok,
            slope_confirmed=slope_ok,
            volatility_ok=entry.volatility_regime != VolatilityRegime.EXTREME
        )

    def check_confluence(self, trend: TimeframeSnapshot, entry: TimeframeSnapshot,
                         direction: SignalDirection, config=None) -> ConfluenceEvidence:
        cfg = config or self.config
        n = cfg.structure_lookback
        recent = entry.candles[-n:]
        prior = entry.candles[-2 * n:-n]
        latest = entry.latest

        if direction == SignalDirection.BUY:
            trend_aligned = trend.ema < trend.keltner.middle
            entry_aligned = entry.ema < entry.keltner.middle
            recent_extreme = min(c.low for c in recent)
            prior_extreme = min(c.low for c in prior) if prior else recent_extreme
            structure = bool(prior) and recent_extreme > prior_extreme
            support = latest.close >= trend.keltner.middle
            momentum_ok = entry.rsi < cfg.rsi_overbought
        else:
            trend_aligned = trend.ema > trend.keltner.middle
            entry_aligned = entry.ema > entry.keltner.middle
            recent_extreme = max(c.high for c in recent)
            prior_extreme = max(c.high for c in prior) if prior else recent_extreme
            structure = bool(prior) and recent_extreme < prior_extreme
            support = latest.close <= trend.keltner.middle
            momentum_ok = entry.rsi > cfg.rsi_oversold

        return ConfluenceEvidence(
            trend_ema_aligned=trend_aligned,
            entry_ema_aligned=entry_aligned,
            structure_confirmed=structure,
            recent_extreme=recent_extreme,
            prior_extreme=prior_extreme,
            support_confirmed=support,
            volume_participation=entry.average_volume > 0 and latest.volume >= entry.average_volume,
            momentum_not_stretched=momentum_ok
        )

    def calculate_levels(self, trend: TimeframeSnapshot, entry: TimeframeSnapshot,
                         direction: SignalDirection, config=None) -> SignalLevels:
        """Stops and 1R/2R/3R targets. Falls back to a percentage stop when the ATR stop collapses."""
        cfg = config or self.config
        price = entry.latest.close
        atr = entry.atr if np.isfinite(entry.atr) else 0.0

        if direction == SignalDirection.BUY:
            stop = min(trend.ema, price - cfg.stop_atr_multiple * atr)
            if not np.isfinite(stop) or stop >= price:
                stop = price * (1 - cfg.fallback_stop_pct)
            secondary = trend.keltner.lower
            risk = price - stop
            targets = (price + risk, price + 2 * risk, price + 3 * risk)
        else:
            stop = max(trend.ema, price + cfg.stop_atr_multiple * atr)
            if not np.isfinite(stop) or stop <= price:
                stop = price * (1 + cfg.fallback_stop_pct)
            secondary = trend.keltner.upper
            risk = stop - price
            targets = (price - risk, price - 2 * risk, price - 3 * risk)

        return SignalLevels(
            entry=price,
            initial_stop=stop,
            secondary_stop=secondary,
            trailing_reference=entry.keltner.middle,
            risk_distance=risk,
            targets=targets
        )

    def _reject(self, symbol: str, price: float, timestamp: Optional[datetime],
                stage: EvaluationStage, reason: str, evidence: SignalEvidence,
                path: List[SignalState]) -> TradingSignal:
        logger.debug(f"{symbol} no signal at {stage.value}: {reason}")
        return TradingSignal(
            id=uuid.uuid4().hex[:12],
            symbol=symbol,
            direction=SignalDirection.NONE,
            entry_price=price,
            timestamp=timestamp,
            state=SignalState.REJECTED,
            evidence=evidence,
            failed_stage=stage,
            reason=reason,
            path=tuple(path) + (SignalState.REJECTED,)
        )
