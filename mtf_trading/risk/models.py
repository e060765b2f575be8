"""
Risk Models
===========
Account, position, stop-level and result types shared by the risk engine,
the account ledger and the execution advisor.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

from ..features.indicators import VolatilityRegime


class RiskLevel(Enum):
    """Risk levels bucketed from a 0-100 risk score."""
    LOW = "low"
    NORMAL = "normal"
    ELEVATED = "elevated"
    HIGH = "high"
    CRITICAL = "critical"


class Severity(Enum):
    """Circuit-breaker and anomaly severity."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {Severity.LOW: 1, Severity.MEDIUM: 2, Severity.HIGH: 3, Severity.CRITICAL: 4}


class Urgency(Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"
    EMERGENCY = "emergency"

    @property
    def rank(self) -> int:
        return _URGENCY_RANK[self]


_URGENCY_RANK = {Urgency.LOW: 1, Urgency.NORMAL: 2, Urgency.HIGH: 3,
                 Urgency.CRITICAL: 4, Urgency.EMERGENCY: 5}


class SystemState(Enum):
    NORMAL = "normal"
    RESTRICTED = "restricted"
    EMERGENCY = "emergency"


class PositionSide(Enum):
    LONG = "long"
    SHORT = "short"


class ClosureReason(Enum):
    KEEP_OPEN = "keep_open"
    STOP_LOSS_HIT = "stop_loss_hit"
    DRAWDOWN_PROTECTION = "drawdown_protection"
    VOLATILITY_SPIKE = "volatility_spike"
    TIME_STOP = "time_stop"
    EVALUATION_ERROR = "evaluation_error"


@dataclass(frozen=True)
class AccountState:
    """Point-in-time view of the account, produced by the ledger."""
    total_equity: float
    available_equity: float
    open_positions: int = 0
    total_exposure: float = 0.0  # Fraction of equity
    current_drawdown: float = 0.0
    max_drawdown: float = 0.0
    daily_pnl: float = 0.0  # Realized today
    unrealized_pnl: float = 0.0
    last_trade_time: Optional[datetime] = None
    peak_equity: float = 0.0

    @property
    def daily_loss_pct(self) -> float:
        if self.total_equity <= 0:
            return 0.0
        return max(0.0, -self.daily_pnl) / self.total_equity


@dataclass(frozen=True)
class MarketAnomaly:
    kind: str
    severity: Severity
    description: str = ""


@dataclass(frozen=True)
class MarketConditions:
    """Current market state for one symbol."""
    symbol: str
    current_price: float
    volatility: float  # ATR / price
    liquidity: float  # 0-100 score
    bid_ask_spread: float = 0.0  # Fraction of price
    volatility_regime: VolatilityRegime = VolatilityRegime.NORMAL
    timestamp: Optional[datetime] = None
    anomalies: Tuple[MarketAnomaly, ...] = ()

    @property
    def market_risk_score(self) -> float:
        """0-100 blend of volatility, illiquidity, spread and anomalies."""
        score = min(self.volatility * 1000, 40.0)
        score += (100 - max(0.0, min(self.liquidity, 100.0))) * 0.3
        score += min(self.bid_ask_spread * 1000, 15.0)
        score += sum(5.0 * a.severity.rank for a in self.anomalies)
        return min(score, 100.0)

    def is_suitable_for_trading(self, min_liquidity: float = 40.0, max_spread: float = 0.02) -> bool:
        return (self.liquidity >= min_liquidity
                and self.bid_ask_spread <= max_spread
                and self.volatility_regime != VolatilityRegime.EXTREME
                and not any(a.severity.rank >= Severity.HIGH.rank for a in self.anomalies))


@dataclass(frozen=True)
class RiskCheck:
    """One validation check. A failing check contributes its penalty to the risk score."""
    name: str
    passed: bool
    penalty: float
    value: float
    threshold: float
    message: str


@dataclass(frozen=True)
class RiskValidationResult:
    is_valid: bool
    risk_score: float
    risk_level: RiskLevel
    max_recommended_size: float  # Risk fraction of equity
    checks: Tuple[RiskCheck, ...] = ()
    recommended_actions: Tuple[str, ...] = ()

    @property
    def failures(self) -> List[RiskCheck]:
        return [c for c in self.checks if not c.passed]

    @property
    def reasons(self) -> List[str]:
        return [f'{c.name}: {c.message}' for c in self.failures]


@dataclass(frozen=True)
class PositionSizing:
    """Sizing result. ``quantity`` is 0 when ``is_valid`` is False."""
    quantity: float
    risk_amount: float
    risk_pct: float
    fixed_fractional_size: float
    kelly_fraction: float = 0.0
    kelly_size: Optional[float] = None
    volatility_adjustment: float = 1.0
    drawdown_adjustment: float = 1.0
    sizing_method: str = "fixed_fractional"
    is_valid: bool = True
    reason: str = ""
    notes: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ProfitTarget:
    price: float
    r_multiple: float
    close_fraction: float


@dataclass(frozen=True)
class StopLossLevels:
    """Stop ladder for one position. Replaced, never mutated, by trailing updates."""
    side: PositionSide
    entry_price: float
    initial_stop: float
    breakeven_stop: float
    emergency_stop: float
    technical_stop: Optional[float] = None
    trailing_stop: Optional[float] = None
    profit_targets: Tuple[ProfitTarget, ...] = ()
    trailing_enabled: bool = True
    trailing_activation: float = 0.01
    trailing_distance: float = 0.005
    max_acceptable_risk: float = 0.0

    @property
    def risk_distance(self) -> float:
        return abs(self.entry_price - self.initial_stop)

    @property
    def trailing_active(self) -> bool:
        return self.trailing_stop is not None

    def effective_stop(self) -> float:
        """Most restrictive active stop: highest for longs, lowest for shorts."""
        stops = [s for s in (self.initial_stop, self.emergency_stop,
                             self.technical_stop, self.trailing_stop) if s is not None]
        return max(stops) if self.side == PositionSide.LONG else min(stops)

    def is_breached(self, price: float) -> bool:
        stop = self.effective_stop()
        return price <= stop if self.side == PositionSide.LONG else price >= stop


@dataclass
class Position:
    """An open or closed position."""
    id: str
    symbol: str
    side: PositionSide
    size: float
    entry_price: float
    opened_at: datetime
    stop_levels: StopLossLevels
    current_price: float = 0.0
    signal_id: Optional[str] = None
    closed_at: Optional[datetime] = None
    exit_price: Optional[float] = None
    realized_pnl: float = 0.0

    def __post_init__(self):
        if not self.current_price:
            self.current_price = self.entry_price

    @property
    def is_open(self) -> bool:
        return self.closed_at is None

    @property
    def market_value(self) -> float:
        return self.size * self.current_price

    @property
    def unrealized_pnl(self) -> float:
        if not self.is_open:
            return 0.0
        if self.side == PositionSide.LONG:
            return (self.current_price - self.entry_price) * self.size
        return (self.entry_price - self.current_price) * self.size

    @property
    def unrealized_pnl_pct(self) -> float:
        """Unrealized P&L as a fraction of cost basis."""
        cost = self.size * self.entry_price
        return self.unrealized_pnl / cost if cost > 0 else 0.0


@dataclass(frozen=True)
class CircuitBreakerTrigger:
    name: str
    severity: Severity
    description: str
    value: float
    threshold: float


@dataclass(frozen=True)
class CircuitBreakerResult:
    triggered: bool
    triggers: Tuple[CircuitBreakerTrigger, ...] = ()
    cooldown: timedelta = timedelta(0)
    reset_time: Optional[datetime] = None
    system_state: SystemState = SystemState.NORMAL

    @property
    def max_severity(self) -> Optional[Severity]:
        if not self.triggers:
            return None
        return max((t.severity for t in self.triggers), key=lambda s: s.rank)

    @property
    def trigger_names(self) -> List[str]:
        return [t.name for t in self.triggers]


@dataclass(frozen=True)
class PositionClosureResult:
    should_close: bool
    reason: ClosureReason
    urgency: Urgency
    close_fraction: float = 0.0
    description: str = ""
    risk_factors: Tuple[str, ...] = ()


@dataclass(frozen=True)
class TradeRecord:
    """A closed trade."""
    position_id: str
    symbol: str
    side: PositionSide
    size: float
    entry_price: float
    exit_price: float
    pnl: float
    opened_at: datetime
    closed_at: datetime

    @property
    def is_win(self) -> bool:
        return self.pnl > 0

    @property
    def holding_time(self) -> timedelta:
        return self.closed_at - self.opened_at


def merge_partial_closes(trades: Sequence[TradeRecord]) -> List[TradeRecord]:
    """
    One record per position: partial closes are summed into a single trade
    with a size-weighted exit price and the last close time.
    """
    merged: Dict[str, TradeRecord] = {}
    for t in trades:
        prev = merged.get(t.position_id)
        if prev is None:
            merged[t.position_id] = t
            continue
        size = prev.size + t.size
        exit_price = (prev.exit_price * prev.size + t.exit_price * t.size) / size
        merged[t.position_id] = TradeRecord(
            t.position_id, t.symbol, t.side, size, t.entry_price, exit_price,
            prev.pnl + t.pnl, prev.opened_at, max(prev.closed_at, t.closed_at))
    return sorted(merged.values(), key=lambda r: r.closed_at)


@dataclass(frozen=True)
class PerformanceStats:
    """Closed-trade statistics; feeds Kelly sizing."""
    trade_count: int = 0
    win_rate: float = 0.0
    average_win: float = 0.0
    average_loss: float = 0.0  # Positive magnitude
    profit_factor: float = 0.0
    total_pnl: float = 0.0
    max_drawdown: float = 0.0

    @property
    def win_loss_ratio(self) -> float:
        if self.average_loss <= 0:
            return float('inf') if self.average_win > 0 else 0.0
        return self.average_win / self.average_loss

    @classmethod
    def from_trades(cls, trades: Sequence[TradeRecord], starting_equity: float = 0.0) -> 'PerformanceStats':
        if not trades:
            return cls()
        wins = [t.pnl for t in trades if t.pnl > 0]
        losses = [-t.pnl for t in trades if t.pnl < 0]
        gross_win = sum(wins)
        gross_loss = sum(losses)

        # Drawdown of the realized equity curve
        equity = peak = starting_equity
        max_dd = 0.0
        for t in trades:
            equity += t.pnl
            peak = max(peak, equity)
            if peak > 0:
                max_dd = max(max_dd, (peak - equity) / peak)

        return cls(
            trade_count=len(trades),
            win_rate=len(wins) / len(trades),
            average_win=gross_win / len(wins) if wins else 0.0,
            average_loss=gross_loss / len(losses) if losses else 0.0,
            profit_factor=gross_win / gross_loss if gross_loss > 0 else (float('inf') if gross_win > 0 else 0.0),
            total_pnl=gross_win - gross_loss,
            max_drawdown=max_dd
        )
