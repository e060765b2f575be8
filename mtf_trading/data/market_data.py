"""
Market Data Loaders
===================
Historical candle loading from Yahoo Finance or CSV files.
"""

import pandas as pd
import yfinance as yf
from typing import List
import logging

from .candles import Candle, Timeframe, candles_from_frame

logger = logging.getLogger(__name__)


# Longest history Yahoo serves for each intraday interval
_MAX_PERIOD = {
    Timeframe.M1: "7d",
    Timeframe.M5: "60d",
    Timeframe.M15: "60d",
    Timeframe.M30: "60d",
    Timeframe.H1: "730d",
    Timeframe.D1: "max",
}


def fetch_candles(symbol: str, timeframe: Timeframe, period: str = None) -> List[Candle]:
    """
    Download closed candles from Yahoo Finance.

    Yahoo has no 4h interval, so H4 bars are resampled from 1h bars. The
    last row is dropped because Yahoo includes the still-forming bar.
    """
    interval = "1h" if timeframe == Timeframe.H4 else timeframe.value
    period = period or _MAX_PERIOD.get(timeframe, "730d")

    ticker = yf.Ticker(symbol)
    df = ticker.history(period=period, interval=interval)
    if df.empty:
        logger.warning(f"No data returned for {symbol} {timeframe.value}")
        return []

    df = df.rename(columns={
        'Open': 'open',
        'High': 'high',
        'Low': 'low',
        'Close': 'close',
        'Volume': 'volume'
    })[['open', 'high', 'low', 'close', 'volume']]

    if timeframe == Timeframe.H4:
        df = df.resample('4h').agg({
            'open': 'first',
            'high': 'max',
            'low': 'min',
            'close': 'last',
            'volume': 'sum'
        }).dropna()

    df = df.iloc[:-1]
    candles = candles_from_frame(df, symbol, timeframe)
    logger.info(f"Loaded {len(candles)} {timeframe.value} candles for {symbol}")
    return candles


def load_csv(filepath: str, symbol: str, timeframe: Timeframe,
             time_column: str = 'timestamp') -> List[Candle]:
    """Load candles from a CSV with a timestamp column and OHLCV columns."""
    df = pd.read_csv(filepath, parse_dates=[time_column])
    candles = candles_from_frame(df, symbol, timeframe, time_column=time_column)
    logger.info(f"Loaded {len(candles)} {timeframe.value} candles for {symbol} from {filepath}")
    return candles
