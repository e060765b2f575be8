"""
Execution Module
================
"""
from .execution_advisor import (
    ExecutionAdvisor,
    Order,
    OrderType,
    OrderSide,
    OrderStatus,
    TimeInForce,
    ExecutionResult,
    ExecutionQuality,
    ExecutionAnalysis,
    SlippageEstimate,
    OrderRecommendation,
    OrderAlternative,
    CancelDecision,
    CancelReason,
    OrderValidation
)

__all__ = [
    'ExecutionAdvisor',
    'Order',
    'OrderType',
    'OrderSide',
    'OrderStatus',
    'TimeInForce',
    'ExecutionResult',
    'ExecutionQuality',
    'ExecutionAnalysis',
    'SlippageEstimate',
    'OrderRecommendation',
    'OrderAlternative',
    'CancelDecision',
    'CancelReason',
    'OrderValidation'
]
