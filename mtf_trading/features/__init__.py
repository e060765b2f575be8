"""
Indicator Module
================
"""
from .indicators import (
    IndicatorEngine,
    TechnicalIndicators,
    VolatilityRegime,
    EMAPoint,
    ATRPoint,
    KeltnerPoint,
    SeriesState,
    ema_update,
    atr_update,
    validate_accuracy
)

__all__ = [
    'IndicatorEngine',
    'TechnicalIndicators',
    'VolatilityRegime',
    'EMAPoint',
    'ATRPoint',
    'KeltnerPoint',
    'SeriesState',
    'ema_update',
    'atr_update',
    'validate_accuracy'
]
