"""
Data Module
===========
"""
from .candles import (
    Candle,
    CandleStore,
    Timeframe,
    as_utc,
    candles_from_frame,
    candles_to_frame
)
from .market_data import fetch_candles, load_csv

__all__ = [
    'Candle',
    'CandleStore',
    'Timeframe',
    'as_utc',
    'candles_from_frame',
    'candles_to_frame',
    'fetch_candles',
    'load_csv'
]
