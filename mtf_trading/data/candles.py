"""
Candle Data
===========
Closed OHLCV bars, timeframes, and the in-memory candle store that feeds
the indicator and signal engines.
"""

import pandas as pd
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Deque, Dict, Iterable, List, Optional, Tuple
import logging
import threading

from ..errors import InvalidParameterError

logger = logging.getLogger(__name__)


def as_utc(ts: datetime) -> datetime:
    """Naive timestamps are taken as UTC; aware ones are converted to UTC."""
    if ts.tzinfo is None or ts.tzinfo.utcoffset(ts) is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


class Timeframe(Enum):
    """Supported bar intervals."""
    M1 = "1m"
    M5 = "5m"
    M15 = "15m"
    M30 = "30m"
    H1 = "1h"
    H4 = "4h"
    D1 = "1d"

    @property
    def duration(self) -> timedelta:
        unit = self.value[-1]
        amount = int(self.value[:-1])
        if unit == 'm':
            return timedelta(minutes=amount)
        if unit == 'h':
            return timedelta(hours=amount)
        return timedelta(days=amount)


@dataclass(frozen=True)
class Candle:
    """A closed price bar. Immutable once constructed; times are stored in UTC."""
    symbol: str
    timeframe: Timeframe
    open_time: datetime
    close_time: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float

    def __post_init__(self):
        object.__setattr__(self, 'open_time', as_utc(self.open_time))
        object.__setattr__(self, 'close_time', as_utc(self.close_time))
        if self.close_time <= self.open_time:
            raise InvalidParameterError(
                f'{self.symbol} candle close_time {self.close_time} must be after open_time {self.open_time}'
            )
        if self.high < max(self.open, self.close) or self.low > min(self.open, self.close):
            raise InvalidParameterError(
                f'{self.symbol} candle OHLC out of range: o={self.open} h={self.high} l={self.low} c={self.close}'
            )
        if self.volume < 0:
            raise InvalidParameterError(f'{self.symbol} candle volume must be non-negative')

    @property
    def is_bullish(self) -> bool:
        return self.close > self.open

    @property
    def is_bearish(self) -> bool:
        return self.close < self.open

    @property
    def body_size(self) -> float:
        return abs(self.close - self.open)

    @property
    def range(self) -> float:
        return self.high - self.low

    @property
    def upper_shadow(self) -> float:
        return self.high - max(self.open, self.close)

    @property
    def lower_shadow(self) -> float:
        return min(self.open, self.close) - self.low

    def to_dict(self) -> dict:
        return {
            'symbol': self.symbol,
            'timeframe': self.timeframe.value,
            'open_time': self.open_time,
            'close_time': self.close_time,
            'open': self.open,
            'high': self.high,
            'low': self.low,
            'close': self.close,
            'volume': self.volume
        }


def candles_to_frame(candles: Iterable[Candle]) -> pd.DataFrame:
    """OHLCV frame indexed by candle close time."""
    rows = [c.to_dict() for c in candles]
    if not rows:
        return pd.DataFrame(columns=['open', 'high', 'low', 'close', 'volume'])
    df = pd.DataFrame(rows).set_index('close_time')
    return df[['open', 'high', 'low', 'close', 'volume']].astype(float)


def candles_from_frame(df: pd.DataFrame, symbol: str, timeframe: Timeframe,
                       time_column: Optional[str] = None) -> List[Candle]:
    """
    Build candles from an OHLCV frame.

    The index (or ``time_column``) is taken as the bar open time; close time
    is open time plus the timeframe duration. Column names are matched
    case-insensitively. Rows with missing prices are dropped.
    """
    frame = df.rename(columns={c: str(c).lower() for c in df.columns})
    if time_column:
        frame = frame.set_index(time_column.lower())
    frame = frame.dropna(subset=['open', 'high', 'low', 'close'])

    if 'volume' not in frame.columns:
        frame['volume'] = 0.0
    frame['volume'] = frame['volume'].fillna(0.0)

    duration = timeframe.duration
    candles = []
    for ts, row in frame.iterrows():
        open_time = pd.Timestamp(ts).to_pydatetime()
        candles.append(Candle(
            symbol=symbol,
            timeframe=timeframe,
            open_time=open_time,
            close_time=open_time + duration,
            open=float(row['open']),
            high=float(row['high']),
            low=float(row['low']),
            close=float(row['close']),
            volume=float(row['volume'])
        ))
    return candles


class CandleStore:
    """
    Bounded in-memory store of closed candles per (symbol, timeframe).

    One producer appends per series; readers take copies of the tail via
    ``window``. Out-of-order or duplicate bars are ignored.
    """

    def __init__(self, capacity: int = 1000):
        if capacity < 1:
            raise InvalidParameterError('capacity must be positive')
        self.capacity = capacity
        self._series: Dict[Tuple[str, Timeframe], Deque[Candle]] = {}
        self._lock = threading.RLock()

    def append(self, candle: Candle) -> bool:
        """Append a closed candle. Returns False if it was stale."""
        key = (candle.symbol, candle.timeframe)
        with self._lock:
            series = self._series.get(key)
            if series is None:
                series = deque(maxlen=self.capacity)
                self._series[key] = series
            if series and candle.close_time <= series[-1].close_time:
                logger.debug(f"Ignoring stale candle {key} at {candle.close_time}")
                return False
            series.append(candle)
            return True

    def extend(self, candles: Iterable[Candle]) -> int:
        return sum(1 for c in candles if self.append(c))

    def window(self, symbol: str, timeframe: Timeframe, n: int) -> List[Candle]:
        """Last ``n`` closed candles, oldest first."""
        with self._lock:
            series = self._series.get((symbol, timeframe))
            if not series:
                return []
            return list(series)[-n:]

    def latest(self, symbol: str, timeframe: Timeframe) -> Optional[Candle]:
        with self._lock:
            series = self._series.get((symbol, timeframe))
            return series[-1] if series else None

    def size(self, symbol: str, timeframe: Timeframe) -> int:
        with self._lock:
            return len(self._series.get((symbol, timeframe), ()))

    def clear(self):
        with self._lock:
            self._series.clear()
