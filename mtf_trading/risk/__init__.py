"""
Risk Engine Module
==================
"""
from .risk_engine import RiskEngine, PositionSizer
from .account import AccountLedger
from .models import (
    AccountState,
    CircuitBreakerResult,
    CircuitBreakerTrigger,
    ClosureReason,
    MarketAnomaly,
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
    TradeRecord,
    Urgency
)

__all__ = [
    'RiskEngine',
    'PositionSizer',
    'AccountLedger',
    'AccountState',
    'CircuitBreakerResult',
    'CircuitBreakerTrigger',
    'ClosureReason',
    'MarketAnomaly',
    'MarketConditions',
    'PerformanceStats',
    'Position',
    'PositionClosureResult',
    'PositionSide',
    'PositionSizing',
    'ProfitTarget',
    'RiskCheck',
    'RiskLevel',
    'RiskValidationResult',
    'Severity',
    'StopLossLevels',
    'SystemState',
    'TradeRecord',
    'Urgency'
]
