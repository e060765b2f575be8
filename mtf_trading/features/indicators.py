"""
Indicator Engine
================
EMA, ATR, Keltner channels, RSI and volatility-regime classification.

All series are indexed by candle close time. EMA is seeded with the SMA of
the first ``period`` closes and ATR with the mean of the first ``period``
true ranges (Wilder smoothing after that), so an incremental roll-forward
reproduces a full recomputation exactly.
"""

import pandas as pd
import numpy as np
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple, Union
import logging
import threading

from ..data.candles import Candle, Timeframe, candles_to_frame
from ..errors import InsufficientData, InsufficientDataError, InvalidParameterError

logger = logging.getLogger(__name__)


class VolatilityRegime(Enum):
    """Volatility regimes by percentile rank of ATR in its recent history."""
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    EXTREME = "extreme"


@dataclass(frozen=True)
class EMAPoint:
    timestamp: datetime
    period: int
    value: float


@dataclass(frozen=True)
class ATRPoint:
    timestamp: datetime
    period: int
    value: float


@dataclass(frozen=True)
class KeltnerPoint:
    """Keltner channel value at one candle close."""
    timestamp: datetime
    ema_period: int
    atr_period: int
    multiplier: float
    upper: float
    middle: float
    lower: float
    atr: float

    @property
    def width(self) -> float:
        return self.upper - self.lower

    def position(self, price: float) -> float:
        """Where ``price`` sits between the bands (0 = lower, 1 = upper). 0.5 on a flat channel."""
        if self.width <= 0:
            return 0.5
        return (price - self.lower) / self.width


def _check_period(period: int, name: str = 'period'):
    if not isinstance(period, (int, np.integer)) or period <= 0:
        raise InvalidParameterError(f'{name} must be a positive integer, got {period!r}')


class TechnicalIndicators:
    """Technical analysis indicators on pandas series."""

    @staticmethod
    def ema(prices: pd.Series, period: int) -> pd.Series:
        """
        Exponential Moving Average, smoothing factor 2/(period+1).

        Seeded with the SMA of the first ``period`` values; earlier entries
        are NaN.
        """
        _check_period(period)
        if len(prices) < period + 1:
            raise InsufficientDataError(f'EMA({period})', period + 1, len(prices))

        seed = pd.Series([prices.iloc[:period].mean()], index=prices.index[period - 1:period])
        seeded = pd.concat([seed, prices.iloc[period:]])
        ema = seeded.ewm(span=period, adjust=False).mean()
        return ema.reindex(prices.index)

    @staticmethod
    def true_range(high: pd.Series, low: pd.Series, close: pd.Series) -> pd.Series:
        """True range; the first bar has no previous close and is NaN."""
        prev_close = close.shift(1)

        tr1 = high - low
        tr2 = abs(high - prev_close)
        tr3 = abs(low - prev_close)

        true_range = pd.concat([tr1, tr2, tr3], axis=1).max(axis=1)
        true_range.iloc[0] = np.nan
        return true_range

    @staticmethod
    def atr(high: pd.Series, low: pd.Series, close: pd.Series, period: int = 14) -> pd.Series:
        """Average True Range with Wilder smoothing (alpha = 1/period)."""
        _check_period(period)
        if len(close) < period + 1:
            raise InsufficientDataError(f'ATR({period})', period + 1, len(close))

        tr = TechnicalIndicators.true_range(high, low, close).iloc[1:]
        seed = pd.Series([tr.iloc[:period].mean()], index=tr.index[period - 1:period])
        seeded = pd.concat([seed, tr.iloc[period:]])
        atr = seeded.ewm(alpha=1.0 / period, adjust=False).mean()
        return atr.reindex(close.index)

    @staticmethod
    def rsi(prices: pd.Series, period: int = 14) -> float:
        """Relative Strength Index of the latest bar from simple averages of the last ``period`` changes."""
        _check_period(period)
        if len(prices) < period + 1:
            return 50.0

        delta = prices.diff().iloc[-period:]
        avg_gain = delta.where(delta > 0, 0.0).mean()
        avg_loss = (-delta.where(delta < 0, 0.0)).mean()

        if avg_loss == 0:
            return 50.0 if avg_gain == 0 else 100.0
        rs = avg_gain / avg_loss
        return float(100 - (100 / (1 + rs)))

    @staticmethod
    def slope(values: Sequence[float], lookback: int = 10) -> float:
        """Least-squares slope per bar over the last ``lookback`` finite values."""
        arr = np.asarray(values, dtype=float)[-lookback:]
        arr = arr[np.isfinite(arr)]
        if len(arr) < 2:
            return 0.0
        return float(np.polyfit(np.arange(len(arr)), arr, 1)[0])

    @staticmethod
    def percentile_rank(history: Sequence[float], value: float) -> float:
        """Mid-rank percentile of ``value`` within ``history`` (ties count half, float noise is a tie)."""
        arr = np.asarray(history, dtype=float)
        arr = arr[np.isfinite(arr)]
        if len(arr) == 0:
            return 0.5
        equal = np.isclose(arr, value, rtol=1e-9, atol=1e-12)
        below = np.sum((arr < value) & ~equal)
        return float((below + 0.5 * np.sum(equal)) / len(arr))


def ema_update(prev_value: float, new_close: float, period: int) -> float:
    """Roll an EMA forward by one close."""
    _check_period(period)
    alpha = 2.0 / (period + 1)
    return prev_value + alpha * (new_close - prev_value)


def atr_update(prev_atr: float, true_range: float, period: int) -> float:
    """Roll a Wilder ATR forward by one true range."""
    _check_period(period)
    return (prev_atr * (period - 1) + true_range) / period


def candle_true_range(candle: Candle, prev_close: float) -> float:
    return max(candle.high - candle.low,
               abs(candle.high - prev_close),
               abs(candle.low - prev_close))


def validate_accuracy(calculated: float, reference: float, tolerance: float = 0.0001) -> bool:
    """Relative agreement check against a reference value (absolute when reference is 0)."""
    if not (np.isfinite(calculated) and np.isfinite(reference)):
        return False
    if reference == 0:
        return abs(calculated) <= tolerance
    return abs(calculated - reference) / abs(reference) <= tolerance


@dataclass
class SeriesState:
    """Cached indicator state for one (symbol, timeframe) series."""
    symbol: str
    timeframe: Timeframe
    ema_period: int
    atr_period: int
    ema: Optional[float] = None
    atr: Optional[float] = None
    last_close: Optional[float] = None
    last_close_time: Optional[datetime] = None
    warmup: List[Candle] = field(default_factory=list)

    @property
    def is_seeded(self) -> bool:
        return self.ema is not None and self.atr is not None


class IndicatorEngine:
    """
    Computes indicator points from candle windows.

    Window-based methods are pure. ``roll_forward`` keeps cached EMA/ATR
    state per series and serializes updates to one series behind its own
    lock, so different series can be updated in parallel.
    """

    def __init__(self, config=None):
        from ..config import IndicatorConfig
        self.config = config or IndicatorConfig()

        self._states: Dict[Tuple[str, Timeframe], SeriesState] = {}
        self._locks: Dict[Tuple[str, Timeframe], threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def update_config(self, config):
        self.config = config

    # ------------------------------------------------------------------
    # Window-based computation
    # ------------------------------------------------------------------

    def ema_series(self, candles: Sequence[Candle], period: int) -> pd.Series:
        df = candles_to_frame(candles)
        return TechnicalIndicators.ema(df['close'], period)

    def atr_series(self, candles: Sequence[Candle], period: int) -> pd.Series:
        df = candles_to_frame(candles)
        return TechnicalIndicators.atr(df['high'], df['low'], df['close'], period)

    def ema(self, candles: Sequence[Candle], period: int) -> Union[EMAPoint, InsufficientData]:
        try:
            series = self.ema_series(candles, period)
        except InsufficientDataError as e:
            return e.as_result()
        return EMAPoint(series.index[-1], period, float(series.iloc[-1]))

    def atr(self, candles: Sequence[Candle], period: int) -> Union[ATRPoint, InsufficientData]:
        try:
            series = self.atr_series(candles, period)
        except InsufficientDataError as e:
            return e.as_result()
        return ATRPoint(series.index[-1], period, float(series.iloc[-1]))

    def keltner(self, candles: Sequence[Candle], ema_period: int = None, atr_period: int = None,
                multiplier: float = None, dynamic: bool = None) -> Union[KeltnerPoint, InsufficientData]:
        """Keltner channel at the latest candle: EMA middle, bands at +/- multiplier x ATR."""
        cfg = self.config
        ema_period = ema_period or cfg.channel_ema_period
        atr_period = atr_period or cfg.atr_period
        multiplier = cfg.keltner_multiplier if multiplier is None else multiplier
        dynamic = cfg.dynamic_multiplier if dynamic is None else dynamic

        df = candles_to_frame(candles)
        try:
            middle = TechnicalIndicators.ema(df['close'], ema_period)
            atr = TechnicalIndicators.atr(df['high'], df['low'], df['close'], atr_period)
        except InsufficientDataError as e:
            return e.as_result()

        if dynamic:
            multiplier = self.dynamic_multiplier(atr, df['close'])

        return self._keltner_point(df.index[-1], ema_period, atr_period, multiplier,
                                   float(middle.iloc[-1]), float(atr.iloc[-1]))

    @staticmethod
    def _keltner_point(timestamp, ema_period, atr_period, multiplier, middle, atr) -> KeltnerPoint:
        return KeltnerPoint(
            timestamp=timestamp,
            ema_period=ema_period,
            atr_period=atr_period,
            multiplier=multiplier,
            upper=middle + multiplier * atr,
            middle=middle,
            lower=middle - multiplier * atr,
            atr=atr
        )

    def dynamic_multiplier(self, atr: pd.Series, close: pd.Series) -> float:
        """
        Band multiplier scaled by where the latest ATR/close ratio ranks in
        recent history, linearly between the configured bounds.
        """
        cfg = self.config
        ratio = (atr / close.replace(0, np.nan)).dropna().iloc[-cfg.multiplier_lookback:]
        if len(ratio) < cfg.min_regime_history:
            return float(np.clip(cfg.keltner_multiplier, cfg.min_multiplier, cfg.max_multiplier))
        pct = TechnicalIndicators.percentile_rank(ratio.values, ratio.iloc[-1])
        return cfg.min_multiplier + pct * (cfg.max_multiplier - cfg.min_multiplier)

    def classify_volatility(self, atr_history: Sequence[float]) -> VolatilityRegime:
        """Regime of the latest ATR by its percentile rank in ``atr_history``."""
        cfg = self.config
        arr = np.asarray(atr_history, dtype=float)
        arr = arr[np.isfinite(arr)][-cfg.volatility_history:]
        if len(arr) < cfg.min_regime_history:
            return VolatilityRegime.NORMAL

        pct = TechnicalIndicators.percentile_rank(arr, arr[-1])
        if pct <= cfg.low_volatility_percentile:
            return VolatilityRegime.LOW
        if pct < cfg.high_volatility_percentile:
            return VolatilityRegime.NORMAL
        if pct < cfg.extreme_volatility_percentile:
            return VolatilityRegime.HIGH
        return VolatilityRegime.EXTREME

    def volatility_regime(self, candles: Sequence[Candle], atr_period: int = None) -> VolatilityRegime:
        try:
            atr = self.atr_series(candles, atr_period or self.config.atr_period)
        except InsufficientDataError:
            return VolatilityRegime.NORMAL
        return self.classify_volatility(atr.dropna().values)

    def rsi(self, candles: Sequence[Candle], period: int = None) -> float:
        closes = pd.Series([c.close for c in candles], dtype=float)
        return TechnicalIndicators.rsi(closes, period or self.config.rsi_period)

    # ------------------------------------------------------------------
    # Incremental state
    # ------------------------------------------------------------------

    def _series_lock(self, key) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    def roll_forward(self, candle: Candle) -> Union[KeltnerPoint, InsufficientData]:
        """
        Advance the cached channel for ``candle``'s series by one closed bar.

        The first ``max(ema_period, atr_period) + 1`` candles seed the state
        from a full computation; after that EMA and ATR are updated in O(1).
        Candles at or before the last processed close time are ignored.
        """
        key = (candle.symbol, candle.timeframe)
        with self._series_lock(key):
            cfg = self.config
            state = self._states.get(key)
            if state is None:
                state = SeriesState(candle.symbol, candle.timeframe,
                                    cfg.channel_ema_period, cfg.atr_period)
                self._states[key] = state

            if state.last_close_time is not None and candle.close_time <= state.last_close_time:
                logger.debug(f"roll_forward ignoring out-of-order candle {key} at {candle.close_time}")
            elif state.is_seeded:
                tr = candle_true_range(candle, state.last_close)
                state.ema = ema_update(state.ema, candle.close, state.ema_period)
                state.atr = atr_update(state.atr, tr, state.atr_period)
                state.last_close = candle.close
                state.last_close_time = candle.close_time
            else:
                state.warmup.append(candle)
                state.last_close = candle.close
                state.last_close_time = candle.close_time
                required = max(state.ema_period, state.atr_period) + 1
                if len(state.warmup) < required:
                    return InsufficientData('Keltner', required, len(state.warmup))
                state.ema = float(self.ema_series(state.warmup, state.ema_period).iloc[-1])
                state.atr = float(self.atr_series(state.warmup, state.atr_period).iloc[-1])
                state.warmup = []

            if not state.is_seeded:
                required = max(state.ema_period, state.atr_period) + 1
                return InsufficientData('Keltner', required, len(state.warmup))
            return self._keltner_point(state.last_close_time, state.ema_period, state.atr_period,
                                       cfg.keltner_multiplier, state.ema, state.atr)

    def series_state(self, symbol: str, timeframe: Timeframe) -> Optional[SeriesState]:
        return self._states.get((symbol, timeframe))

    def reset(self, symbol: str = None):
        with self._registry_lock:
            if symbol is None:
                self._states.clear()
            else:
                for key in [k for k in self._states if k[0] == symbol]:
                    del self._states[key]
