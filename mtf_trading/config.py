"""
Configuration Management
========================
Central configuration for the multi-timeframe trading core.

Every engine takes its own section and reads it as a snapshot at the start
of each evaluation, so a new section can be swapped in between evaluations.
"""

from dataclasses import dataclass, field, asdict, fields
from typing import List, Dict, Optional
import json
import os


@dataclass
class IndicatorConfig:
    """Indicator engine configuration."""
    # Keltner channel
    channel_ema_period: int = 20
    atr_period: int = 10
    keltner_multiplier: float = 2.0

    # Dynamic multiplier bounds
    dynamic_multiplier: bool = False
    min_multiplier: float = 1.5
    max_multiplier: float = 2.5
    multiplier_lookback: int = 50

    # Volatility regime (percentile rank of latest ATR in its history)
    volatility_history: int = 50
    min_regime_history: int = 20
    low_volatility_percentile: float = 0.25
    high_volatility_percentile: float = 0.75
    extreme_volatility_percentile: float = 0.95

    # Momentum
    rsi_period: int = 14

    # Accuracy check tolerance against a reference implementation
    accuracy_tolerance: float = 0.0001


@dataclass
class SignalConfig:
    """Signal engine (confluence state machine) configuration."""
    # Trend and entry EMAs, separate from the channel middle EMA
    trend_ema_period: int = 50
    entry_ema_period: int = 50
    entry_atr_period: int = 14

    # Primary timeframe checks
    band_touch_threshold: float = 0.99
    retracement_zone_low: float = 0.85
    retracement_zone_high: float = 0.95
    setup_guard_bars: int = 5
    volume_lookback: int = 20
    min_volume_ratio: float = 1.0

    # Entry timeframe checks
    rsi_threshold: float = 50.0
    slope_lookback: int = 10

    # Confluence
    structure_lookback: int = 5
    rsi_overbought: float = 70.0
    rsi_oversold: float = 30.0
    min_confidence: float = 0.6

    # Levels
    stop_atr_multiple: float = 2.0
    fallback_stop_pct: float = 0.02  # Used when the ATR stop collapses onto entry

    allow_short: bool = True


@dataclass
class RiskParameters:
    """Risk engine configuration."""
    # Per-trade and portfolio limits
    max_risk_per_trade: float = 0.02  # Risk 2% of equity per trade
    max_portfolio_exposure: float = 0.15
    max_daily_loss: float = 0.05  # Stop trading at 5% daily loss
    max_drawdown: float = 0.05  # Breaker at 5% drawdown
    max_open_positions: int = 3
    min_equity: float = 1000.0
    min_time_between_trades_seconds: int = 300
    min_signal_confidence: float = 0.7

    # Kelly sizing
    use_kelly: bool = True
    kelly_multiplier: float = 0.25
    min_kelly_fraction: float = 0.05
    max_kelly_fraction: float = 0.25
    min_trades_for_kelly: int = 10

    # Position bounds
    max_position_pct: float = 0.25  # Notional ceiling as fraction of equity
    min_order_quantity: float = 0.001  # Exchange minimum
    max_drawdown_size_reduction: float = 0.5

    # Stops
    initial_stop_loss_pct: float = 0.02
    breakeven_pct: float = 0.01
    use_trailing_stop: bool = True
    trailing_stop_activation: float = 0.01  # Arm after 1% unrealized profit
    trailing_stop_distance: float = 0.005
    max_holding_hours: float = 168.0  # 7 days

    # Circuit breakers
    use_circuit_breakers: bool = True
    drawdown_breaker_enabled: bool = True
    daily_loss_breaker_enabled: bool = True
    volatility_breaker_enabled: bool = True
    liquidity_breaker_enabled: bool = True
    min_liquidity: float = 20.0
    circuit_breaker_cooldown_minutes: int = 60

    def validate(self) -> List[str]:
        """Return a list of problems; empty when the parameters are usable."""
        problems = []
        if not 0 < self.max_risk_per_trade <= 0.05:
            problems.append(f'max_risk_per_trade must be in (0, 0.05], got {self.max_risk_per_trade}')
        if not 0 < self.max_portfolio_exposure <= 1:
            problems.append(f'max_portfolio_exposure must be in (0, 1], got {self.max_portfolio_exposure}')
        if not 0 < self.max_daily_loss <= 0.2:
            problems.append(f'max_daily_loss must be in (0, 0.2], got {self.max_daily_loss}')
        if not 0 < self.max_drawdown <= 0.5:
            problems.append(f'max_drawdown must be in (0, 0.5], got {self.max_drawdown}')
        if not 0 <= self.min_kelly_fraction <= self.max_kelly_fraction <= 1:
            problems.append('kelly bounds must satisfy 0 <= min <= max <= 1')
        if not 0 < self.kelly_multiplier <= 1:
            problems.append(f'kelly_multiplier must be in (0, 1], got {self.kelly_multiplier}')
        if not 0 < self.max_position_pct <= 1:
            problems.append(f'max_position_pct must be in (0, 1], got {self.max_position_pct}')
        if self.max_open_positions < 1:
            problems.append('max_open_positions must be at least 1')
        if self.trailing_stop_distance <= 0 or self.trailing_stop_activation < 0:
            problems.append('trailing stop activation/distance must be non-negative and distance positive')
        if self.min_order_quantity < 0:
            problems.append('min_order_quantity must be non-negative')
        return problems

    @property
    def is_valid(self) -> bool:
        return not self.validate()


@dataclass
class ExecutionConfig:
    """Execution advisor configuration."""
    base_slippage: float = 0.0005
    max_slippage_cap: float = 0.05
    expected_slippage_ratio: float = 0.6
    worst_case_slippage_ratio: float = 1.5

    # Order-size buckets (quantity) and their multipliers
    order_size_thresholds: List[float] = field(default_factory=lambda: [0.1, 1.0, 10.0])
    order_size_multipliers: List[float] = field(default_factory=lambda: [1.0, 1.1, 1.3, 1.5])

    # Session hours (UTC)
    active_session_hours: List[int] = field(default_factory=lambda: [8, 16])
    quiet_session_hours: List[int] = field(default_factory=lambda: [0, 6])

    # Order type selection
    high_volatility_threshold: float = 0.05
    low_liquidity_threshold: float = 50.0

    # Execution quality
    slow_fill_seconds: int = 300

    # Cancellation
    volatility_change_alert: float = 0.02
    volatility_spike_cancel: float = 0.05
    liquidity_drop_alert: float = 20.0
    liquidity_floor: float = 30.0
    spread_widening_alert: float = 0.005
    stale_order_minutes: int = 30
    order_timeout_minutes: int = 120

    # Pre-submission checks
    max_spread: float = 0.02
    min_trading_liquidity: float = 40.0


@dataclass
class PipelineConfig:
    """Pipeline wiring configuration."""
    symbols: List[str] = field(default_factory=lambda: ["BTC-USD"])
    trend_timeframe: str = "4h"
    entry_timeframe: str = "5m"
    window_size: int = 200  # Candles handed to the signal engine per timeframe
    store_capacity: int = 1000  # Candles retained per series
    queue_size: int = 16
    evaluation_timeout_seconds: float = 5.0
    default_liquidity: float = 100.0


@dataclass
class LoggingConfig:
    """Logging configuration."""
    log_level: str = "INFO"
    log_file: Optional[str] = None
    log_format: str = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


@dataclass
class SystemConfig:
    """Master system configuration."""
    initial_capital: float = 10000.0

    indicators: IndicatorConfig = field(default_factory=IndicatorConfig)
    signals: SignalConfig = field(default_factory=SignalConfig)
    risk: RiskParameters = field(default_factory=RiskParameters)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def save(self, filepath: str):
        """Save configuration to JSON file."""
        directory = os.path.dirname(filepath)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(filepath, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)

    @classmethod
    def load(cls, filepath: str) -> 'SystemConfig':
        """Load configuration from JSON file."""
        with open(filepath, 'r') as f:
            data = json.load(f)
        return cls.from_dict(data)

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> 'SystemConfig':
        """Create from dictionary. Unknown keys are ignored, missing keys keep defaults."""
        return cls(
            initial_capital=data.get('initial_capital', 10000.0),
            indicators=_section(IndicatorConfig, data.get('indicators')),
            signals=_section(SignalConfig, data.get('signals')),
            risk=_section(RiskParameters, data.get('risk')),
            execution=_section(ExecutionConfig, data.get('execution')),
            pipeline=_section(PipelineConfig, data.get('pipeline')),
            logging=_section(LoggingConfig, data.get('logging')),
        )


def _section(section_cls, values: Optional[Dict]):
    known = {f.name for f in fields(section_cls)}
    return section_cls(**{k: v for k, v in (values or {}).items() if k in known})


# Default configuration instance
DEFAULT_CONFIG = SystemConfig()
