"""
Error Taxonomy
==============
Exceptions and typed failure results shared across the pipeline.

Indicator math raises these at the call boundary. The engines catch them
and turn them into typed results, so a bad window never takes down the
pipeline.
"""

from dataclasses import dataclass


class TradingCoreError(Exception):
    """Base class for all errors raised by the trading core."""


class InvalidParameterError(TradingCoreError, ValueError):
    """A caller passed an argument outside its valid domain."""


class InsufficientDataError(TradingCoreError):
    """Not enough candles to compute an indicator."""

    def __init__(self, indicator: str, required: int, available: int):
        self.indicator = indicator
        self.required = required
        self.available = available
        super().__init__(
            f'{indicator} requires {required} candles, got {available}'
        )

    def as_result(self) -> 'InsufficientData':
        return InsufficientData(self.indicator, self.required, self.available)


@dataclass(frozen=True)
class InsufficientData:
    """Typed "not enough data" result returned by the indicator engine."""
    indicator: str
    required: int
    available: int

    @property
    def reason(self) -> str:
        return f'{self.indicator}: insufficient data ({self.available}/{self.required} candles)'
