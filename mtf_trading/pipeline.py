"""
Trading Pipeline
================
Wires the components into one decision flow per closed candle:
    CANDLES → INDICATORS → SIGNAL → RISK → EXECUTION ADVICE → (broker) → LEDGER

Concurrency:
- one producer per (symbol, timeframe) series appends candles
- one evaluation slot per symbol; a newer entry candle supersedes a stale
  in-flight evaluation, whose result is discarded
- the account ledger is the only writer of account state; fills are
  re-validated under its lock
- no stage waits forever: slot and queue waits time out and yield no result
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple
import logging
import queue
import threading

from .config import LoggingConfig, SystemConfig
from .data.candles import Candle, CandleStore, Timeframe
from .errors import InsufficientData
from .execution.execution_advisor import ExecutionAdvisor, Order, OrderRecommendation, SlippageEstimate
from .features.indicators import IndicatorEngine
from .risk.account import AccountLedger
from .risk.models import (
    CircuitBreakerResult,
    MarketConditions,
    Position,
    PositionClosureResult,
    PositionSide,
    PositionSizing,
    RiskValidationResult,
    StopLossLevels,
    Urgency,
)
from .risk.risk_engine import RiskEngine
from .strategy.signal_engine import SignalEngine
from .strategy.signals import SignalDirection, TradingSignal

logger = logging.getLogger(__name__)


def configure_logging(config: LoggingConfig = None):
    """Configure root logging from a LoggingConfig."""
    config = config or LoggingConfig()
    handlers = [logging.StreamHandler()]
    if config.log_file:
        handlers.append(logging.FileHandler(config.log_file))
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format=config.log_format,
        handlers=handlers,
        force=True
    )


@dataclass(frozen=True)
class TradeDecision:
    """Everything the pipeline decided for one entry-timeframe candle."""
    symbol: str
    timestamp: datetime
    market: MarketConditions
    circuit_breaker: CircuitBreakerResult
    signal: Optional[TradingSignal] = None
    validation: Optional[RiskValidationResult] = None
    sizing: Optional[PositionSizing] = None
    stop_levels: Optional[StopLossLevels] = None
    recommendation: Optional[OrderRecommendation] = None
    slippage: Optional[SlippageEstimate] = None
    order: Optional[Order] = None

    @property
    def approved(self) -> bool:
        return self.order is not None

    @property
    def reason(self) -> str:
        if self.circuit_breaker.triggered:
            return f"Circuit breaker: {', '.join(self.circuit_breaker.trigger_names)}"
        if self.signal is not None and not self.signal.is_actionable:
            return self.signal.reason
        if self.validation is not None and not self.validation.is_valid:
            return '; '.join(self.validation.reasons)
        if self.sizing is not None and not self.sizing.is_valid:
            return self.sizing.reason
        return 'approved' if self.approved else ''


class EvaluationGate:
    """
    Single-flight evaluation per symbol.

    ``begin`` hands out a generation token; a later ``begin`` for the same
    symbol makes earlier tokens stale. ``run`` waits (bounded) for the
    symbol's slot, skips stale work, and discards results that went stale
    while running.
    """

    def __init__(self, timeout: float = 5.0):
        self.timeout = timeout
        self._generations: Dict[str, int] = {}
        self._slots: Dict[str, threading.Lock] = {}
        self._lock = threading.Lock()

    def begin(self, symbol: str) -> int:
        with self._lock:
            token = self._generations.get(symbol, 0) + 1
            self._generations[symbol] = token
            if symbol not in self._slots:
                self._slots[symbol] = threading.Lock()
            return token

    def is_current(self, symbol: str, token: int) -> bool:
        with self._lock:
            return self._generations.get(symbol) == token

    def run(self, symbol: str, token: int, fn: Callable[[], object]):
        with self._lock:
            slot = self._slots.get(symbol)
        if slot is None:
            return None
        if not slot.acquire(timeout=self.timeout):
            logger.warning(f"{symbol} evaluation slot busy for {self.timeout}s; dropping evaluation {token}")
            return None
        try:
            if not self.is_current(symbol, token):
                logger.debug(f"{symbol} evaluation {token} superseded before start")
                return None
            result = fn()
            if not self.is_current(symbol, token):
                logger.debug(f"{symbol} evaluation {token} superseded; result discarded")
                return None
            return result
        finally:
            slot.release()


class TradingPipeline:
    """
    Main decision pipeline.

    1. ``on_candle``: store, and on entry-timeframe closes
       run breakers (honouring the last trip's cooldown) → signal →
       validation → sizing → stops → order advice
    2. ``on_fill``: open the position through the ledger with a re-check
    3. ``on_price``: trail stops and close positions that should be closed
    """

    def __init__(self, config: SystemConfig = None, store: CandleStore = None,
                 ledger: AccountLedger = None, clock: Callable[[], datetime] = None):
        self.config = config or SystemConfig()
        pcfg = self.config.pipeline

        self.store = store or CandleStore(pcfg.store_capacity)
        self.indicators = IndicatorEngine(self.config.indicators)
        self.signal_engine = SignalEngine(self.config.signals, self.indicators)
        self.risk_engine = RiskEngine(self.config.risk, clock=clock)
        self.ledger = ledger or AccountLedger(self.config.initial_capital, clock=clock)
        self.advisor = ExecutionAdvisor(self.config.execution, clock=clock)
        self.gate = EvaluationGate(pcfg.evaluation_timeout_seconds)

        self.trend_timeframe = Timeframe(pcfg.trend_timeframe)
        self.entry_timeframe = Timeframe(pcfg.entry_timeframe)

        # Last tripped breaker result for the account; blocks entries until its reset time
        self._last_trip: Optional[CircuitBreakerResult] = None
        self._trip_lock = threading.Lock()

    def update_config(self, config: SystemConfig):
        """Hot-swap configuration. Evaluations in flight finish on the old snapshot."""
        if config.risk is not self.config.risk:
            self.risk_engine.update_parameters(config.risk)
        self.indicators.update_config(config.indicators)
        self.signal_engine.update_config(config.signals)
        self.advisor.update_config(config.execution)
        self.config = config
        logger.info("Pipeline configuration updated")

    # ------------------------------------------------------------------
    # Candles
    # ------------------------------------------------------------------

    def ingest(self, candle: Candle) -> Optional[int]:
        """Store a closed candle. Returns an evaluation token for new entry-timeframe closes."""
        if not self.store.append(candle):
            return None
        if candle.timeframe != self.entry_timeframe:
            return None
        return self.gate.begin(candle.symbol)

    def evaluate(self, candle: Candle, token: int,
                 market: MarketConditions = None) -> Optional[TradeDecision]:
        return self.gate.run(candle.symbol, token, lambda: self._decide(candle, market))

    def on_candle(self, candle: Candle, market: MarketConditions = None) -> Optional[TradeDecision]:
        token = self.ingest(candle)
        if token is None:
            return None
        return self.evaluate(candle, token, market)

    def _decide(self, candle: Candle, market: Optional[MarketConditions]) -> TradeDecision:
        symbol = candle.symbol
        now = candle.close_time
        params = self.risk_engine.config
        size = self.config.pipeline.window_size

        trend_window = self.store.window(symbol, self.trend_timeframe, size)
        entry_window = self.store.window(symbol, self.entry_timeframe, size)
        market = market or self.market_conditions(symbol, entry_window)
        account = self.ledger.snapshot()

        breaker = self._circuit_breaker(account, market, params, now)
        if breaker.triggered:
            return TradeDecision(symbol, now, market, breaker)

        signal = self.signal_engine.evaluate(symbol, trend_window, entry_window)
        decision = TradeDecision(symbol, now, market, breaker, signal)
        if not signal.is_actionable:
            return decision

        validation = self.risk_engine.validate_trade(signal, account, params, now)
        if not validation.is_valid:
            return TradeDecision(symbol, now, market, breaker, signal, validation)

        sizing = self.risk_engine.calculate_position_size(
            signal, account.total_equity, params,
            performance=self.ledger.performance_stats(),
            current_drawdown=account.current_drawdown,
            current_exposure=account.total_exposure
        )
        if not sizing.is_valid:
            return TradeDecision(symbol, now, market, breaker, signal, validation, sizing)

        stops = self.risk_engine.calculate_stop_loss_levels(signal.entry_price, signal, params)
        recommendation = self.advisor.recommend_order_type(signal, market, Urgency.NORMAL)
        order = self.advisor.build_entry_order(signal, sizing.quantity, recommendation)
        slippage = self.advisor.calculate_max_slippage(order, market.liquidity, market.volatility, now)

        logger.info(f"{symbol} trade approved: {signal.direction.value} {sizing.quantity:.6g} "
                    f"@ {signal.entry_price:.4f} via {recommendation.order_type.value}")
        return TradeDecision(symbol, now, market, breaker, signal, validation, sizing,
                             stops, recommendation, slippage, order)

    def _circuit_breaker(self, account, market, params, now: datetime) -> CircuitBreakerResult:
        """Fresh breaker check; while clear, an earlier trip still blocks until its reset time."""
        result = self.risk_engine.check_circuit_breakers(account, market, params, now)
        with self._trip_lock:
            if result.triggered:
                self._last_trip = result
                return result
            held = RiskEngine.cooldown_hold(self._last_trip, now)
            if held is None:
                self._last_trip = None
                return result
            return held

    def reset_circuit_breakers(self):
        """Clear a pending cooldown."""
        with self._trip_lock:
            self._last_trip = None
        logger.info("Circuit breaker cooldown cleared")

    def market_conditions(self, symbol: str, entry_window: List[Candle]) -> MarketConditions:
        """Market snapshot derived from the entry window when no live feed supplies one."""
        price = entry_window[-1].close if entry_window else 0.0
        volatility = 0.0
        atr = self.indicators.atr(entry_window, self.config.signals.entry_atr_period)
        if not isinstance(atr, InsufficientData) and price > 0:
            volatility = atr.value / price
        return MarketConditions(
            symbol=symbol,
            current_price=price,
            volatility=volatility,
            liquidity=self.config.pipeline.default_liquidity,
            volatility_regime=self.indicators.volatility_regime(entry_window,
                                                                self.config.signals.entry_atr_period),
            timestamp=entry_window[-1].close_time if entry_window else None
        )

    # ------------------------------------------------------------------
    # Fills and position management
    # ------------------------------------------------------------------

    def on_fill(self, decision: TradeDecision, fill_price: float, quantity: float = None,
                filled_at: datetime = None) -> Optional[Position]:
        """Open the filled position, re-validating against the ledger's current state."""
        if not decision.approved:
            logger.warning(f"{decision.symbol} fill ignored for unapproved decision")
            return None
        signal = decision.signal
        params = self.risk_engine.config
        filled_at = filled_at or decision.timestamp
        stops = self.risk_engine.calculate_stop_loss_levels(fill_price, signal, params)
        side = PositionSide.LONG if signal.direction == SignalDirection.BUY else PositionSide.SHORT

        def revalidate(state):
            return self.risk_engine.validate_trade(signal, state, params, filled_at)

        return self.ledger.open_position(
            symbol=signal.symbol,
            side=side,
            size=quantity or decision.sizing.quantity,
            entry_price=fill_price,
            stop_levels=stops,
            signal_id=signal.id,
            opened_at=filled_at,
            revalidate=revalidate
        )

    def on_price(self, symbol: str, price: float, market: MarketConditions = None,
                 now: datetime = None) -> List[Tuple[Position, PositionClosureResult]]:
        """Trail stops and evaluate closure for each open position in ``symbol``."""
        params = self.risk_engine.config
        market = market or MarketConditions(symbol, price, 0.0, self.config.pipeline.default_liquidity)
        self.ledger.mark_to_market({symbol: price})

        results = []
        for position in self.ledger.open_positions(symbol):
            self.ledger.update_position(
                position.id, lambda p: self.risk_engine.update_trailing_stop(p, price))
            closure = self.risk_engine.should_close_position(
                position, self.ledger.snapshot(), market, params, now)
            if closure.should_close:
                self.ledger.close_position(position.id, price, now, closure.close_fraction)
            results.append((position, closure))
        return results


class PipelineRunner:
    """
    Bounded per-symbol queues with one worker thread per symbol.

    Candles are ingested on the caller's thread, so stores and evaluation
    tokens stay in arrival order; evaluations run on the symbol's worker.
    A full queue drops the trigger, since a newer candle supersedes it anyway.
    """

    _STOP = object()

    def __init__(self, pipeline: TradingPipeline,
                 on_decision: Callable[[TradeDecision], None] = None,
                 queue_size: int = None, put_timeout: float = 1.0):
        self.pipeline = pipeline
        self.on_decision = on_decision
        self.queue_size = queue_size or pipeline.config.pipeline.queue_size
        self.put_timeout = put_timeout

        self._queues: Dict[str, queue.Queue] = {}
        self._workers: Dict[str, threading.Thread] = {}
        self._lock = threading.Lock()
        self._stopped = False

    def submit(self, candle: Candle, market: MarketConditions = None) -> bool:
        """Ingest a candle and queue an evaluation if it closes an entry bar."""
        if self._stopped:
            return False
        token = self.pipeline.ingest(candle)
        if token is None:
            return False
        q = self._queue_for(candle.symbol)
        try:
            q.put((candle, token, market), timeout=self.put_timeout)
        except queue.Full:
            logger.warning(f"{candle.symbol} evaluation queue full; dropping trigger {token}")
            return False
        return True

    def _queue_for(self, symbol: str) -> queue.Queue:
        with self._lock:
            q = self._queues.get(symbol)
            if q is None:
                q = queue.Queue(maxsize=self.queue_size)
                worker = threading.Thread(target=self._work, args=(symbol, q),
                                          name=f'eval-{symbol}', daemon=True)
                self._queues[symbol] = q
                self._workers[symbol] = worker
                worker.start()
            return q

    def _work(self, symbol: str, q: queue.Queue):
        while True:
            item = q.get()
            try:
                if item is self._STOP:
                    return
                candle, token, market = item
                decision = self.pipeline.evaluate(candle, token, market)
                if decision is not None and self.on_decision is not None:
                    self.on_decision(decision)
            except Exception:
                logger.exception(f"{symbol} worker failed on evaluation")
            finally:
                q.task_done()

    def join(self):
        """Block until every queued evaluation has been processed."""
        with self._lock:
            queues = list(self._queues.values())
        for q in queues:
            q.join()

    def stop(self, timeout: float = 5.0):
        self._stopped = True
        with self._lock:
            items = list(self._queues.items())
        for symbol, q in items:
            q.put(self._STOP)
        for symbol, _ in items:
            self._workers[symbol].join(timeout=timeout)


def replay(pipeline: TradingPipeline, candles: List[Candle]) -> List[TradeDecision]:
    """Paper replay: approved decisions fill at their entry price; entry closes drive position checks."""
    decisions = []
    for candle in sorted(candles, key=lambda c: (c.close_time, c.timeframe != pipeline.trend_timeframe)):
        decision = pipeline.on_candle(candle)
        if candle.timeframe == pipeline.entry_timeframe:
            pipeline.on_price(candle.symbol, candle.close, now=candle.close_time)
        if decision is None:
            continue
        decisions.append(decision)
        if decision.approved:
            pipeline.on_fill(decision, decision.signal.entry_price, filled_at=candle.close_time)
    return decisions


def main():
    """Replay historical candles through the pipeline."""
    import argparse
    from .data.market_data import fetch_candles, load_csv

    parser = argparse.ArgumentParser(description='Multi-timeframe Keltner trading pipeline')
    parser.add_argument('--config', type=str, help='Path to config file')
    parser.add_argument('--symbol', type=str, help='Symbol to replay')
    parser.add_argument('--capital', type=float, help='Initial capital')
    parser.add_argument('--trend-csv', type=str, help='Trend timeframe candles (CSV)')
    parser.add_argument('--entry-csv', type=str, help='Entry timeframe candles (CSV)')
    parser.add_argument('--log-level', type=str, help='Logging level')

    args = parser.parse_args()

    config = SystemConfig.load(args.config) if args.config else SystemConfig()
    if args.capital:
        config.initial_capital = args.capital
    if args.log_level:
        config.logging.log_level = args.log_level
    configure_logging(config.logging)

    problems = config.risk.validate()
    if problems:
        logger.error(f"Invalid risk parameters: {'; '.join(problems)}")
        return

    pipeline = TradingPipeline(config)
    symbol = args.symbol or config.pipeline.symbols[0]

    if args.trend_csv and args.entry_csv:
        candles = (load_csv(args.trend_csv, symbol, pipeline.trend_timeframe)
                   + load_csv(args.entry_csv, symbol, pipeline.entry_timeframe))
    else:
        candles = (fetch_candles(symbol, pipeline.trend_timeframe)
                   + fetch_candles(symbol, pipeline.entry_timeframe))

    decisions = replay(pipeline, candles)
    stats = pipeline.ledger.performance_stats()
    account = pipeline.ledger.snapshot()

    print("\n" + "=" * 50)
    print("REPLAY RESULTS")
    print("=" * 50)
    print(f"evaluations: {len(decisions)}")
    print(f"approved: {sum(1 for d in decisions if d.approved)}")
    print(f"trades: {stats.trade_count}")
    print(f"win_rate: {stats.win_rate:.4f}")
    print(f"total_pnl: {stats.total_pnl:.4f}")
    print(f"equity: {account.total_equity:.4f}")
    print(f"max_drawdown: {account.max_drawdown:.4f}")


if __name__ == "__main__":
    main()
