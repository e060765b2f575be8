"""
Strategy Module
===============
"""
from .signal_engine import SignalEngine
from .signals import (
    TradingSignal,
    SignalDirection,
    SignalState,
    EvaluationStage,
    TimeframeSnapshot,
    PrimaryEvidence,
    EntryEvidence,
    ConfluenceEvidence,
    SignalLevels,
    SignalEvidence
)

__all__ = [
    'SignalEngine',
    'TradingSignal',
    'SignalDirection',
    'SignalState',
    'EvaluationStage',
    'TimeframeSnapshot',
    'PrimaryEvidence',
    'EntryEvidence',
    'ConfluenceEvidence',
    'SignalLevels',
    'SignalEvidence'
]
