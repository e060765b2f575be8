from dataclasses import replace
from datetime import datetime, timedelta, timezone

import numpy as np
import pytest

from mtf_trading.config import RiskParameters, SystemConfig
from mtf_trading.data.candles import Candle, Timeframe
from mtf_trading.features.indicators import KeltnerPoint, VolatilityRegime
from mtf_trading.risk.models import AccountState, MarketConditions
from mtf_trading.strategy.signals import TimeframeSnapshot

BASE_TIME = datetime(2024, 3, 4, 0, 0, tzinfo=timezone.utc)
SYMBOL = "BTC-USD"


def make_candle(o, h, l, c, v=100.0, i=0, timeframe=Timeframe.H4, symbol=SYMBOL):
    open_time = BASE_TIME + i * timeframe.duration
    return Candle(symbol, timeframe, open_time, open_time + timeframe.duration,
                  float(o), float(h), float(l), float(c), float(v))


def make_series(closes, timeframe=Timeframe.M5, symbol=SYMBOL, spread=0.5, volumes=None, start=0):
    """Candles whose open is the previous close and whose range pads the body by ``spread``."""
    candles = []
    prev = closes[0]
    for k, close in enumerate(closes):
        o = prev
        h = max(o, close) + spread
        l = min(o, close) - spread
        v = volumes[k] if volumes is not None else 100.0
        candles.append(make_candle(o, h, l, close, v, i=start + k, timeframe=timeframe, symbol=symbol))
        prev = close
    return candles


def random_walk(n, seed=7, start=100.0, vol=0.01):
    rng = np.random.default_rng(seed)
    returns = rng.normal(0, vol, n)
    return list(start * np.exp(np.cumsum(returns)))


def rising_trend_candles(n=80):
    """H4 ramp of +1 per bar with a fixed 6-point true range; the last bar closes at 90% of the channel on 2x volume."""
    closes = [100.0 + k for k in range(n)]
    volumes = [100.0] * (n - 1) + [200.0]
    return make_series(closes, timeframe=Timeframe.H4, spread=2.5, volumes=volumes)


def pullback_entry_candles(start=0):
    """
    M5 ramp of +0.5 per bar, one bar dipping under the 50 EMA, then a bullish
    bar closing back above it. Every bar has a true range of exactly 16, so
    the ATR is flat and the volatility regime stays normal.
    """
    tf = Timeframe.M5
    candles = []
    prev = 150.0
    for k in range(58):
        close = 150.0 + 0.5 * k
        candles.append(make_candle(prev, close, close - 16.0, close, i=start + k, timeframe=tf))
        prev = close
    candles.append(make_candle(178.5, 179.0, 163.0, 165.0, i=start + 58, timeframe=tf))
    candles.append(make_candle(165.0, 180.0, 164.0, 176.0, v=150.0, i=start + 59, timeframe=tf))
    return candles


def mirror_candle(c, axis=200.0):
    return Candle(c.symbol, c.timeframe, c.open_time, c.close_time,
                  axis - c.open, axis - c.low, axis - c.high, axis - c.close, c.volume)


def mirror_snapshot(s, axis=200.0):
    """Reflect a snapshot's prices around ``axis`` to get the opposite-direction setup."""
    kc = s.keltner
    return replace(
        s,
        candles=tuple(mirror_candle(c, axis) for c in s.candles),
        keltner=replace(kc, upper=axis - kc.lower, middle=axis - kc.middle, lower=axis - kc.upper),
        ema=axis - s.ema,
        previous_ema=axis - s.previous_ema,
        ema_slope=-s.ema_slope,
        rsi=100.0 - s.rsi
    )


def bullish_trend_snapshot(**overrides):
    """Trend timeframe: upper-band touch, close at 90% of the channel, EMA under the middle."""
    candles = [make_candle(102.5, 104, 102, 103.5, i=i) for i in range(15)]
    for k, close in enumerate([104, 105, 106, 107]):
        candles.append(make_candle(close - 1, close + 1, close - 1.5, close, i=15 + k))
    candles.append(make_candle(105, 110, 104, 108, v=200, i=19))
    ts = candles[-1].close_time
    snapshot = TimeframeSnapshot(
        timeframe=Timeframe.H4,
        candles=tuple(candles),
        keltner=KeltnerPoint(ts, 20, 10, 2.0, upper=110.0, middle=100.0, lower=90.0, atr=5.0),
        ema=98.0,
        previous_ema=97.8,
        ema_slope=0.2,
        atr=5.0,
        volatility_regime=VolatilityRegime.NORMAL,
        rsi=62.0,
        average_volume=100.0
    )
    return replace(snapshot, **overrides)


def bullish_entry_snapshot(**overrides):
    """Entry timeframe: close crosses back above the EMA on a bullish bar after a higher low."""
    tf = Timeframe.M5
    candles = [make_candle(107.2, 107.6, 106.0 + 0.1 * i, 107.0, i=i, timeframe=tf) for i in range(5)]
    candles += [make_candle(107.3, 107.7, 107.1, 107.4, i=5 + i, timeframe=tf) for i in range(3)]
    candles.append(make_candle(107.5, 107.6, 107.0, 107.3, i=8, timeframe=tf))
    candles.append(make_candle(107.4, 108.1, 107.2, 108.0, v=150, i=9, timeframe=tf))
    ts = candles[-1].close_time
    snapshot = TimeframeSnapshot(
        timeframe=tf,
        candles=tuple(candles),
        keltner=KeltnerPoint(ts, 20, 10, 2.0, upper=109.5, middle=108.2, lower=106.9, atr=0.65),
        ema=107.5,
        previous_ema=107.5,
        ema_slope=0.02,
        atr=0.3,
        volatility_regime=VolatilityRegime.NORMAL,
        rsi=60.0,
        average_volume=100.0
    )
    return replace(snapshot, **overrides)


@pytest.fixture
def trend_snapshot():
    return bullish_trend_snapshot()


@pytest.fixture
def entry_snapshot():
    return bullish_entry_snapshot()


@pytest.fixture
def risk_params():
    return RiskParameters()


@pytest.fixture
def healthy_account():
    return AccountState(total_equity=10000.0, available_equity=10000.0, peak_equity=10000.0)


@pytest.fixture
def calm_market():
    return MarketConditions(SYMBOL, current_price=100.0, volatility=0.005, liquidity=90.0,
                            bid_ask_spread=0.0005, volatility_regime=VolatilityRegime.NORMAL)


@pytest.fixture
def system_config():
    return SystemConfig()


@pytest.fixture
def fixed_clock():
    now = BASE_TIME + timedelta(days=1, hours=10)
    return lambda: now
