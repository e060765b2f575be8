"""
Account Ledger
==============
Single owner of mutable account state.

All mutations run under one lock. Readers get a frozen AccountState
snapshot. Opening a position can re-run risk validation inside the same
lock, so the check and the mutation see the same state.
"""

from datetime import date, datetime, timezone
from typing import Callable, Dict, List, Optional
import logging
import threading
import uuid

from ..data.candles import as_utc
from ..errors import InvalidParameterError
from .models import (
    AccountState,
    PerformanceStats,
    Position,
    PositionSide,
    RiskValidationResult,
    StopLossLevels,
    TradeRecord,
    merge_partial_closes,
)

logger = logging.getLogger(__name__)


class AccountLedger:
    """Tracks equity, open positions, drawdown and closed trades."""

    def __init__(self, initial_equity: float, clock: Callable[[], datetime] = None):
        if initial_equity <= 0:
            raise InvalidParameterError(f'initial_equity must be positive, got {initial_equity}')
        self.initial_equity = initial_equity
        self.clock = clock or (lambda: datetime.now(timezone.utc))

        self._lock = threading.RLock()
        self._realized_pnl = 0.0
        self._peak_equity = initial_equity
        self._max_drawdown = 0.0
        self._daily_realized = 0.0
        self._trading_day: Optional[date] = None
        self._last_trade_time: Optional[datetime] = None
        self._positions: Dict[str, Position] = {}
        self._trades: List[TradeRecord] = []

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def snapshot(self) -> AccountState:
        with self._lock:
            equity = self._equity()
            exposure = sum(p.market_value for p in self._positions.values())
            return AccountState(
                total_equity=equity,
                available_equity=equity - exposure,
                open_positions=len(self._positions),
                total_exposure=exposure / equity if equity > 0 else 0.0,
                current_drawdown=self._drawdown(equity),
                max_drawdown=self._max_drawdown,
                daily_pnl=self._daily_realized,
                unrealized_pnl=self._unrealized(),
                last_trade_time=self._last_trade_time,
                peak_equity=self._peak_equity
            )

    def open_positions(self, symbol: str = None) -> List[Position]:
        with self._lock:
            return [p for p in self._positions.values() if symbol is None or p.symbol == symbol]

    def get_position(self, position_id: str) -> Optional[Position]:
        with self._lock:
            return self._positions.get(position_id)

    @property
    def trades(self) -> List[TradeRecord]:
        with self._lock:
            return list(self._trades)

    def performance_stats(self) -> PerformanceStats:
        with self._lock:
            return PerformanceStats.from_trades(merge_partial_closes(self._trades), self.initial_equity)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def open_position(self, symbol: str, side: PositionSide, size: float, entry_price: float,
                      stop_levels: StopLossLevels, signal_id: str = None,
                      opened_at: datetime = None,
                      revalidate: Callable[[AccountState], RiskValidationResult] = None) -> Optional[Position]:
        """
        Record a filled entry. When ``revalidate`` is given it runs against a
        fresh snapshot under the ledger lock; a failing result leaves the
        account untouched and returns None.
        """
        if size <= 0 or entry_price <= 0:
            raise InvalidParameterError(f'size and entry_price must be positive, got {size}, {entry_price}')

        with self._lock:
            opened_at = as_utc(opened_at or self.clock())
            self._roll_day(opened_at)
            if revalidate is not None:
                result = revalidate(self.snapshot())
                if not result.is_valid:
                    logger.warning(f"{symbol} fill rejected at re-check: {'; '.join(result.reasons)}")
                    return None

            position = Position(
                id=uuid.uuid4().hex[:12],
                symbol=symbol,
                side=side,
                size=size,
                entry_price=entry_price,
                opened_at=opened_at,
                stop_levels=stop_levels,
                signal_id=signal_id
            )
            self._positions[position.id] = position
            self._last_trade_time = opened_at
            logger.info(f"Opened {side.value} {symbol} x{size:.6g} @ {entry_price:.4f} ({position.id})")
            return position

    def close_position(self, position_id: str, exit_price: float, closed_at: datetime = None,
                       fraction: float = 1.0) -> Optional[TradeRecord]:
        """Close all or ``fraction`` of a position and book the realized P&L."""
        if exit_price <= 0 or not 0 < fraction <= 1:
            raise InvalidParameterError(f'invalid close: price={exit_price} fraction={fraction}')

        with self._lock:
            position = self._positions.get(position_id)
            if position is None:
                logger.warning(f"close_position: unknown position {position_id}")
                return None
            closed_at = as_utc(closed_at or self.clock())
            self._roll_day(closed_at)

            size = position.size * fraction
            sign = 1 if position.side == PositionSide.LONG else -1
            pnl = sign * (exit_price - position.entry_price) * size

            self._realized_pnl += pnl
            self._daily_realized += pnl
            self._last_trade_time = closed_at
            position.realized_pnl += pnl
            position.current_price = exit_price

            if fraction >= 1.0:
                position.closed_at = closed_at
                position.exit_price = exit_price
                del self._positions[position_id]
            else:
                position.size -= size

            record = TradeRecord(position.id, position.symbol, position.side, size,
                                 position.entry_price, exit_price, pnl, position.opened_at, closed_at)
            self._trades.append(record)
            self._update_drawdown()
            logger.info(f"Closed {fraction:.0%} of {position.symbol} ({position_id}) @ {exit_price:.4f} "
                        f"pnl={pnl:+.2f}")
            return record

    def update_position(self, position_id: str, fn: Callable[[Position], object]):
        """Run ``fn`` against an open position under the ledger lock and return its result."""
        with self._lock:
            position = self._positions.get(position_id)
            if position is None:
                return None
            result = fn(position)
            self._update_drawdown()
            return result

    def mark_to_market(self, prices: Dict[str, float]):
        """Update open positions with latest prices and refresh drawdown."""
        with self._lock:
            for position in self._positions.values():
                price = prices.get(position.symbol)
                if price is not None and price > 0:
                    position.current_price = price
            self._update_drawdown()

    def reset_daily(self, day: date = None):
        with self._lock:
            self._daily_realized = 0.0
            self._trading_day = day or self.clock().date()
            logger.info(f"Daily P&L reset for {self._trading_day}")

    # ------------------------------------------------------------------
    # Internals (lock held)
    # ------------------------------------------------------------------

    def _unrealized(self) -> float:
        return sum(p.unrealized_pnl for p in self._positions.values())

    def _equity(self) -> float:
        return self.initial_equity + self._realized_pnl + self._unrealized()

    def _drawdown(self, equity: float) -> float:
        if self._peak_equity <= 0:
            return 0.0
        return max(0.0, (self._peak_equity - equity) / self._peak_equity)

    def _update_drawdown(self):
        equity = self._equity()
        self._peak_equity = max(self._peak_equity, equity)
        self._max_drawdown = max(self._max_drawdown, self._drawdown(equity))

    def _roll_day(self, when: datetime):
        day = when.date()
        if self._trading_day is None:
            self._trading_day = day
        elif day != self._trading_day:
            self.reset_daily(day)
