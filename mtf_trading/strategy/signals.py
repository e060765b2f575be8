"""
Signal Types
============
Trading signals, per-timeframe snapshots and the typed evidence recorded by
each stage of the confluence state machine.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Tuple

from ..data.candles import Candle, Timeframe
from ..features.indicators import KeltnerPoint, VolatilityRegime


class SignalDirection(Enum):
    BUY = "buy"
    SELL = "sell"
    NONE = "none"


class SignalState(Enum):
    """States of one signal evaluation."""
    IDLE = "idle"
    PRIMARY_EVALUATED = "primary_evaluated"
    ENTRY_EVALUATED = "entry_evaluated"
    CONFLUENCE_CHECKED = "confluence_checked"
    EMITTED = "emitted"
    REJECTED = "rejected"


class EvaluationStage(Enum):
    """Stage a rejected evaluation failed in."""
    DATA = "data"
    PRIMARY = "primary"
    ENTRY = "entry"
    CONFLUENCE = "confluence"
    ERROR = "error"


@dataclass(frozen=True)
class TimeframeSnapshot:
    """Indicator values for one timeframe at its latest closed candle."""
    timeframe: Timeframe
    candles: Tuple[Candle, ...]  # Recent tail, oldest first
    keltner: KeltnerPoint
    ema: float
    previous_ema: float
    ema_slope: float
    atr: float
    volatility_regime: VolatilityRegime
    rsi: float
    average_volume: float

    @property
    def latest(self) -> Candle:
        return self.candles[-1]

    @property
    def previous(self) -> Candle:
        return self.candles[-2]


def _failed(checks: Dict[str, bool]) -> List[str]:
    return [name for name, ok in checks.items() if not ok]


@dataclass(frozen=True)
class PrimaryEvidence:
    """Trend-timeframe setup checks."""
    direction: SignalDirection
    band_penetration: float
    band_position: float
    ema: float
    channel_middle: float
    closes_against_ema: int
    volume_ratio: float
    band_touched: bool
    in_retracement_zone: bool
    ema_bias_valid: bool
    setup_intact: bool
    volume_confirmed: bool

    @property
    def checks(self) -> Dict[str, bool]:
        return {
            'band_touch': self.band_touched,
            'retracement_zone': self.in_retracement_zone,
            'ema_bias': self.ema_bias_valid,
            'setup_intact': self.setup_intact,
            'volume': self.volume_confirmed,
        }

    @property
    def passed(self) -> bool:
        return all(self.checks.values())

    def failed_checks(self) -> List[str]:
        return _failed(self.checks)


@dataclass(frozen=True)
class EntryEvidence:
    """Entry-timeframe trigger checks."""
    direction: SignalDirection
    previous_close: float
    latest_close: float
    previous_ema: float
    ema: float
    rsi: float
    ema_slope: float
    volatility_regime: VolatilityRegime
    crossed: bool
    candle_confirms: bool
    rsi_confirmed: bool
    slope_confirmed: bool
    volatility_ok: bool

    @property
    def checks(self) -> Dict[str, bool]:
        return {
            'ema_cross': self.crossed,
            'candle_direction': self.candle_confirms,
            'rsi': self.rsi_confirmed,
            'ema_slope': self.slope_confirmed,
            'volatility_filter': self.volatility_ok,
        }

    @property
    def passed(self) -> bool:
        return all(self.checks.values())

    def failed_checks(self) -> List[str]:
        return _failed(self.checks)


@dataclass(frozen=True)
class ConfluenceEvidence:
    """Cross-timeframe agreement. Required factors gate; all factors count toward confidence."""
    trend_ema_aligned: bool
    entry_ema_aligned: bool
    structure_confirmed: bool
    recent_extreme: float
    prior_extreme: float
    support_confirmed: bool
    volume_participation: bool
    momentum_not_stretched: bool

    @property
    def required(self) -> Dict[str, bool]:
        return {
            'ema_alignment': self.trend_ema_aligned and self.entry_ema_aligned,
            'market_structure': self.structure_confirmed,
        }

    @property
    def factors(self) -> Dict[str, bool]:
        factors = dict(self.required)
        factors.update({
            'support': self.support_confirmed,
            'volume_participation': self.volume_participation,
            'momentum': self.momentum_not_stretched,
        })
        return factors

    @property
    def validated_factors(self) -> int:
        return sum(self.factors.values())

    @property
    def total_factors(self) -> int:
        return len(self.factors)

    @property
    def confidence(self) -> float:
        return self.validated_factors / self.total_factors

    @property
    def required_passed(self) -> bool:
        return all(self.required.values())

    def failed_checks(self) -> List[str]:
        return _failed(self.factors)


@dataclass(frozen=True)
class SignalLevels:
    """Price levels derived for an emitted signal."""
    entry: float
    initial_stop: float
    secondary_stop: float
    trailing_reference: float
    risk_distance: float
    targets: Tuple[float, float, float]  # 1R, 2R, 3R

    @property
    def take_profit(self) -> float:
        return self.targets[1]


@dataclass(frozen=True)
class SignalEvidence:
    primary: Optional[PrimaryEvidence] = None
    entry: Optional[EntryEvidence] = None
    confluence: Optional[ConfluenceEvidence] = None
    levels: Optional[SignalLevels] = None


@dataclass(frozen=True)
class TradingSignal:
    """Outcome of one signal evaluation. Rejections carry direction NONE and a reason."""
    id: str
    symbol: str
    direction: SignalDirection
    entry_price: float
    timestamp: datetime
    state: SignalState
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    confidence: float = 0.0
    evidence: SignalEvidence = field(default_factory=SignalEvidence)
    failed_stage: Optional[EvaluationStage] = None
    reason: str = ""
    path: Tuple[SignalState, ...] = ()

    @property
    def is_actionable(self) -> bool:
        return self.state == SignalState.EMITTED and self.direction != SignalDirection.NONE

    @property
    def secondary_stop(self) -> Optional[float]:
        levels = self.evidence.levels
        return levels.secondary_stop if levels else None

    @property
    def volatility_regime(self) -> VolatilityRegime:
        entry = self.evidence.entry
        return entry.volatility_regime if entry else VolatilityRegime.NORMAL

    @property
    def risk_reward_ratio(self) -> float:
        if self.stop_loss is None or self.take_profit is None:
            return 0.0
        risk = abs(self.entry_price - self.stop_loss)
        if risk == 0:
            return 0.0
        return abs(self.take_profit - self.entry_price) / risk

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'symbol': self.symbol,
            'direction': self.direction.value,
            'entry_price': self.entry_price,
            'stop_loss': self.stop_loss,
            'take_profit': self.take_profit,
            'confidence': self.confidence,
            'timestamp': self.timestamp.isoformat() if self.timestamp else None,
            'state': self.state.value,
            'failed_stage': self.failed_stage.value if self.failed_stage else None,
            'reason': self.reason,
        }
