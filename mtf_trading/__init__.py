"""
Multi-Timeframe Keltner Trading Core
====================================

A risk-controlled decision pipeline that correlates a slow "trend"
timeframe with a fast "entry" timeframe using Keltner channels.

PRINCIPLES:
- Quantitative models: every decision comes from indicator math
- Confluence: a trade needs agreement between both timeframes
- Fail closed: any fault in a risk check blocks or closes, never opens
- No emotional overrides: risk rules are enforced algorithmically

PIPELINE:
    ┌─────────────┐
    │  CANDLES    │  ← closed OHLCV bars per (symbol, timeframe)
    └────┬────────┘
         ↓
    ┌──────────────┐
    │ INDICATORS   │  ← EMA, ATR, Keltner, RSI, volatility regime
    └────┬─────────┘
         ↓
    ┌──────────────┐
    │ SIGNAL       │  ← primary → entry → confluence state machine
    └────┬─────────┘
         ↓
    ┌──────────────┐
    │ RISK ENGINE  │  ← validation, sizing, stops, circuit breakers
    └────┬─────────┘
         ↓
    ┌──────────────┐
    │ EXECUTION    │  ← order type, slippage, fill quality
    └────┬─────────┘
         ↓
    ┌──────────────┐
    │ LEDGER       │  ← positions, drawdown, trade history
    └──────────────┘

USAGE:
    # Replay CSV candles
    python -m mtf_trading.pipeline --symbol BTC-USD --trend-csv h4.csv --entry-csv m5.csv

    # Programmatic usage
    from mtf_trading import TradingPipeline, SystemConfig

    config = SystemConfig()
    config.initial_capital = 10000

    pipeline = TradingPipeline(config)
    decision = pipeline.on_candle(candle)
"""

from .config import (
    SystemConfig,
    IndicatorConfig,
    SignalConfig,
    RiskParameters,
    ExecutionConfig,
    PipelineConfig,
    LoggingConfig
)
from .errors import InsufficientData, InsufficientDataError, InvalidParameterError
from .data import Candle, CandleStore, Timeframe
from .features import IndicatorEngine, VolatilityRegime, KeltnerPoint
from .strategy import SignalEngine, TradingSignal, SignalDirection, SignalState
from .risk import RiskEngine, AccountLedger, AccountState, MarketConditions
from .execution import ExecutionAdvisor
from .pipeline import TradingPipeline, PipelineRunner, TradeDecision

__version__ = "1.0.0"

__all__ = [
    'SystemConfig',
    'IndicatorConfig',
    'SignalConfig',
    'RiskParameters',
    'ExecutionConfig',
    'PipelineConfig',
    'LoggingConfig',
    'InsufficientData',
    'InsufficientDataError',
    'InvalidParameterError',
    'Candle',
    'CandleStore',
    'Timeframe',
    'IndicatorEngine',
    'VolatilityRegime',
    'KeltnerPoint',
    'SignalEngine',
    'TradingSignal',
    'SignalDirection',
    'SignalState',
    'RiskEngine',
    'AccountLedger',
    'AccountState',
    'MarketConditions',
    'ExecutionAdvisor',
    'TradingPipeline',
    'PipelineRunner',
    'TradeDecision'
]
