"""
Execution Module
================
Execution-quality advice: slippage estimates, order-type selection,
post-fill quality analysis and cancellation of stale orders.

Order placement itself belongs to the broker adapter outside this package;
the advisor only decides *how* an order should be sent.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Dict, Optional, Tuple
import logging
import uuid

from ..data.candles import as_utc
from ..risk.models import AccountState, MarketConditions, RiskLevel, Urgency
from ..strategy.signals import SignalDirection, TradingSignal

logger = logging.getLogger(__name__)


class OrderType(Enum):
    """Order types."""
    MARKET = "market"
    LIMIT = "limit"
    STOP = "stop"
    STOP_LIMIT = "stop_limit"


class OrderSide(Enum):
    """Order side."""
    BUY = "buy"
    SELL = "sell"


class OrderStatus(Enum):
    """Order status."""
    PENDING = "pending"
    SUBMITTED = "submitted"
    PARTIAL = "partial"
    FILLED = "filled"
    CANCELLED = "cancelled"
    REJECTED = "rejected"


class TimeInForce(Enum):
    GTC = "gtc"
    IOC = "ioc"
    FOK = "fok"


class ExecutionQuality(Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    AVERAGE = "average"
    POOR = "poor"
    TERRIBLE = "terrible"


class CancelReason(Enum):
    NONE = "none"
    VOLATILITY_TOO_HIGH = "volatility_too_high"
    LIQUIDITY_TOO_LOW = "liquidity_too_low"
    TIMEOUT_REACHED = "timeout_reached"
    EVALUATION_ERROR = "evaluation_error"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Order:
    """Represents a trading order."""
    symbol: str
    side: OrderSide
    order_type: OrderType
    quantity: float
    price: Optional[float] = None  # For limit orders
    reference_price: Optional[float] = None  # Market price when the order was built
    stop_price: Optional[float] = None
    time_in_force: TimeInForce = TimeInForce.GTC
    status: OrderStatus = OrderStatus.PENDING
    order_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    created_at: datetime = field(default_factory=_utc_now)
    notes: str = ""

    @property
    def is_active(self) -> bool:
        """Check if order is still active."""
        return self.status in [OrderStatus.PENDING, OrderStatus.SUBMITTED, OrderStatus.PARTIAL]

    @property
    def working_price(self) -> Optional[float]:
        return self.price or self.reference_price

    def to_dict(self) -> dict:
        return {
            'order_id': self.order_id,
            'symbol': self.symbol,
            'side': self.side.value,
            'type': self.order_type.value,
            'quantity': self.quantity,
            'price': self.price,
            'stop_price': self.stop_price,
            'tif': self.time_in_force.value,
            'status': self.status.value,
            'created': self.created_at
        }


@dataclass(frozen=True)
class ExecutionResult:
    """Fill report for one order."""
    order_id: str
    filled_quantity: float
    average_price: float
    submitted_at: datetime
    completed_at: datetime
    commission: float = 0.0

    @property
    def duration(self) -> timedelta:
        return self.completed_at - self.submitted_at


@dataclass(frozen=True)
class SlippageEstimate:
    max_slippage: float
    expected_slippage: float
    worst_case_slippage: float
    recommended_limit_price: Optional[float]
    primary_reason: str
    factors: Dict[str, float] = field(default_factory=dict)


@dataclass(frozen=True)
class OrderAlternative:
    order_type: OrderType
    price: Optional[float]
    score: float
    reason: str


@dataclass(frozen=True)
class OrderRecommendation:
    order_type: OrderType
    price: Optional[float]
    time_in_force: TimeInForce
    confidence: float
    reasoning: str
    alternatives: Tuple[OrderAlternative, ...] = ()


@dataclass(frozen=True)
class ExecutionAnalysis:
    slippage: float
    quality: ExecutionQuality
    execution_seconds: float
    issues: Tuple[str, ...] = ()

    @property
    def is_good(self) -> bool:
        return self.quality in (ExecutionQuality.EXCELLENT, ExecutionQuality.GOOD)


@dataclass(frozen=True)
class CancelDecision:
    should_cancel: bool
    reason: CancelReason
    urgency_score: float
    notes: Tuple[str, ...] = ()


@dataclass(frozen=True)
class OrderValidation:
    is_valid: bool
    risk_level: RiskLevel
    errors: Tuple[str, ...] = ()
    warnings: Tuple[str, ...] = ()


class ExecutionAdvisor:
    """Chooses order parameters and judges execution quality."""

    def __init__(self, config=None, clock: Callable[[], datetime] = None):
        from ..config import ExecutionConfig
        self.config = config or ExecutionConfig()
        self.clock = clock or _utc_now

    def update_config(self, config):
        self.config = config

    # ------------------------------------------------------------------
    # Slippage
    # ------------------------------------------------------------------

    @staticmethod
    def _liquidity_factor(liquidity: float) -> float:
        if liquidity >= 80:
            return 1.0
        elif liquidity >= 60:
            return 1.5
        elif liquidity >= 40:
            return 2.0
        elif liquidity >= 20:
            return 3.0
        return 5.0

    @staticmethod
    def _volatility_factor(volatility: float) -> float:
        if volatility <= 0.01:
            return 1.0
        elif volatility <= 0.02:
            return 1.2
        elif volatility <= 0.05:
            return 1.5
        elif volatility <= 0.10:
            return 2.0
        return 3.0

    def _size_factor(self, quantity: float) -> float:
        cfg = self.config
        for threshold, multiplier in zip(cfg.order_size_thresholds, cfg.order_size_multipliers):
            if quantity <= threshold:
                return multiplier
        return cfg.order_size_multipliers[-1]

    def _time_factor(self, when: datetime) -> float:
        hour = when.astimezone(timezone.utc).hour if when.tzinfo else when.hour
        start, end = self.config.active_session_hours
        quiet_start, quiet_end = self.config.quiet_session_hours
        if start <= hour <= end:
            return 1.0
        if quiet_start <= hour <= quiet_end:
            return 1.5
        return 1.2

    def calculate_max_slippage(self, order: Order, liquidity: float, volatility: float,
                               now: datetime = None) -> SlippageEstimate:
        """Base slippage scaled by liquidity, volatility, order size and session; capped."""
        cfg = self.config
        factors = {
            'liquidity': self._liquidity_factor(liquidity),
            'volatility': self._volatility_factor(volatility),
            'order_size': self._size_factor(order.quantity),
            'time_of_day': self._time_factor(now or self.clock()),
        }
        product = 1.0
        for value in factors.values():
            product *= value

        max_slippage = min(cfg.base_slippage * product, cfg.max_slippage_cap)
        expected = max_slippage * cfg.expected_slippage_ratio
        worst = max_slippage * cfg.worst_case_slippage_ratio

        price = order.working_price
        limit = None
        if price:
            limit = price * (1 + expected) if order.side == OrderSide.BUY else price * (1 - expected)

        primary = max(factors, key=factors.get)
        if factors[primary] <= 1.0:
            primary = 'normal_conditions'

        return SlippageEstimate(max_slippage, expected, worst, limit, primary, factors)

    # ------------------------------------------------------------------
    # Order type
    # ------------------------------------------------------------------

    def recommend_order_type(self, signal: TradingSignal, market: MarketConditions,
                             urgency: Urgency = Urgency.NORMAL) -> OrderRecommendation:
        cfg = self.config
        entry = signal.entry_price

        if urgency.rank >= Urgency.HIGH.rank or market.volatility > cfg.high_volatility_threshold:
            why = 'high urgency' if urgency.rank >= Urgency.HIGH.rank else 'high volatility'
            return OrderRecommendation(
                OrderType.MARKET, None, TimeInForce.IOC, 0.9,
                f'Market order for immediate execution ({why})',
                (OrderAlternative(OrderType.LIMIT, entry, 0.6, 'Limit at entry may miss the move'),)
            )

        if market.liquidity < cfg.low_liquidity_threshold:
            return OrderRecommendation(
                OrderType.LIMIT, entry, TimeInForce.GTC, 0.85,
                f'Limit order at entry to control slippage in thin liquidity ({market.liquidity:.0f})',
                (OrderAlternative(OrderType.MARKET, None, 0.4, 'Market order risks heavy slippage'),)
            )

        return OrderRecommendation(
            OrderType.LIMIT, entry, TimeInForce.GTC, 0.8,
            'Limit order at entry under normal conditions',
            (OrderAlternative(OrderType.MARKET, None, 0.7, 'Market order acceptable in liquid market'),)
        )

    # ------------------------------------------------------------------
    # Post-trade
    # ------------------------------------------------------------------

    @staticmethod
    def _quality_bucket(slippage: float) -> ExecutionQuality:
        if slippage <= 0.001:
            return ExecutionQuality.EXCELLENT
        elif slippage <= 0.005:
            return ExecutionQuality.GOOD
        elif slippage <= 0.01:
            return ExecutionQuality.AVERAGE
        elif slippage <= 0.02:
            return ExecutionQuality.POOR
        return ExecutionQuality.TERRIBLE

    def analyze_execution_quality(self, order: Order, result: ExecutionResult,
                                  expected_price: float) -> ExecutionAnalysis:
        if expected_price <= 0 or result.average_price <= 0:
            return ExecutionAnalysis(float('nan'), ExecutionQuality.TERRIBLE, 0.0,
                                     (f'InvalidParameter: expected={expected_price} fill={result.average_price}',))

        slippage = abs(result.average_price - expected_price) / expected_price
        seconds = result.duration.total_seconds()
        issues = []
        if slippage > 0.01:
            issues.append(f'High slippage: {slippage:.2%}')
        if seconds > self.config.slow_fill_seconds:
            issues.append(f'Slow execution: {seconds:.0f}s')
        if result.filled_quantity < order.quantity:
            issues.append(f'Partial fill: {result.filled_quantity:.6g}/{order.quantity:.6g}')

        analysis = ExecutionAnalysis(slippage, self._quality_bucket(slippage), seconds, tuple(issues))
        logger.info(f"{order.symbol} execution {analysis.quality.value}: slippage {slippage:.3%} in {seconds:.1f}s")
        return analysis

    def should_cancel_order(self, pending: Order, current: MarketConditions,
                            original: MarketConditions, now: datetime = None) -> CancelDecision:
        """
        Cancel on a volatility spike, a liquidity collapse, or a timeout.
        Spread widening only adds urgency. A fault while evaluating cancels
        the order.
        """
        if not pending.is_active:
            return CancelDecision(False, CancelReason.NONE, 0.0, ('Order no longer active',))
        try:
            return self._cancel_decision(pending, current, original, now)
        except Exception as e:
            logger.exception(f"Cancel evaluation failed for {pending.symbol} order {pending.order_id}")
            return CancelDecision(True, CancelReason.EVALUATION_ERROR, 100.0,
                                  (f'Cancel evaluation error: {e}',))

    def _cancel_decision(self, pending: Order, current: MarketConditions,
                         original: MarketConditions, now: Optional[datetime]) -> CancelDecision:
        cfg = self.config
        now = now or self.clock()
        urgency = 50.0
        notes = []
        reason = CancelReason.NONE

        vol_change = current.volatility - original.volatility
        if abs(vol_change) > cfg.volatility_change_alert:
            urgency += 20
            notes.append(f'Volatility changed {vol_change:+.2%}')
        if vol_change > cfg.volatility_spike_cancel:
            reason = CancelReason.VOLATILITY_TOO_HIGH

        liquidity_drop = original.liquidity - current.liquidity
        if liquidity_drop > cfg.liquidity_drop_alert:
            urgency += 15
            notes.append(f'Liquidity dropped {liquidity_drop:.0f} points')
        if reason == CancelReason.NONE and current.liquidity < cfg.liquidity_floor and liquidity_drop > 0:
            reason = CancelReason.LIQUIDITY_TOO_LOW

        widening = current.bid_ask_spread - original.bid_ask_spread
        if widening > cfg.spread_widening_alert:
            urgency += 10
            notes.append(f'Spread widened {widening:.2%}')

        age = as_utc(now) - as_utc(pending.created_at)
        if age > timedelta(minutes=cfg.stale_order_minutes):
            urgency += 5
            notes.append(f'Order age {age}')
        if reason == CancelReason.NONE and age > timedelta(minutes=cfg.order_timeout_minutes):
            reason = CancelReason.TIMEOUT_REACHED

        decision = CancelDecision(reason != CancelReason.NONE, reason, min(urgency, 100.0), tuple(notes))
        if decision.should_cancel:
            logger.info(f"Cancel {pending.symbol} order {pending.order_id}: {reason.value}")
        return decision

    # ------------------------------------------------------------------
    # Pre-submission
    # ------------------------------------------------------------------

    def validate_order(self, order: Order, market: MarketConditions,
                       account: AccountState) -> OrderValidation:
        cfg = self.config
        errors = []
        warnings = []

        if order.quantity <= 0:
            errors.append('Quantity must be positive')
        if order.order_type in (OrderType.LIMIT, OrderType.STOP_LIMIT) and not order.price:
            errors.append('Limit order requires a price')

        price = order.working_price or market.current_price
        if order.price and market.current_price > 0:
            deviation = abs(order.price - market.current_price) / market.current_price
            if deviation > 0.1:
                errors.append(f'Price {order.price:.4f} is {deviation:.1%} away from market')
            elif deviation > 0.02:
                warnings.append(f'Price {deviation:.1%} away from market')

        if order.side == OrderSide.BUY and order.quantity * price > account.available_equity:
            errors.append(f'Order value {order.quantity * price:.2f} exceeds available equity '
                          f'{account.available_equity:.2f}')

        if market.bid_ask_spread > cfg.max_spread:
            warnings.append(f'Wide spread {market.bid_ask_spread:.2%}')
        if not market.is_suitable_for_trading(cfg.min_trading_liquidity, cfg.max_spread):
            warnings.append('Market conditions not suitable for trading')

        score = market.market_risk_score
        if score < 20:
            level = RiskLevel.LOW
        elif score < 40:
            level = RiskLevel.NORMAL
        elif score < 60:
            level = RiskLevel.ELEVATED
        elif score < 80:
            level = RiskLevel.HIGH
        else:
            level = RiskLevel.CRITICAL

        return OrderValidation(not errors, level, tuple(errors), tuple(warnings))

    def build_entry_order(self, signal: TradingSignal, quantity: float,
                          recommendation: OrderRecommendation) -> Order:
        """Order for an emitted signal following a recommendation."""
        side = OrderSide.BUY if signal.direction == SignalDirection.BUY else OrderSide.SELL
        return Order(
            symbol=signal.symbol,
            side=side,
            order_type=recommendation.order_type,
            quantity=quantity,
            price=recommendation.price,
            reference_price=signal.entry_price,
            time_in_force=recommendation.time_in_force,
            created_at=signal.timestamp or self.clock(),
            notes=recommendation.reasoning
        )
