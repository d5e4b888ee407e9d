"""Position Tracking and State Management.

Tracks replicated positions per token and the daily balance used by the
daily loss limit. State lives for the life of the process only.
"""

import time
from dataclasses import dataclass, field
from typing import Optional

import structlog

from polycopy.detection.trades import Side

logger = structlog.get_logger(__name__)


@dataclass
class Position:
    """An open long position in an outcome token."""
    token_id: str
    size: float  # Number of tokens
    avg_price: float
    value_usd: float  # Notional at average entry price
    opened_at: float = field(default_factory=time.time)
    last_updated: float = field(default_factory=time.time)


class PositionTracker:
    """Tracks all open positions."""

    def __init__(self):
        # token_id -> Position
        self._positions: dict[str, Position] = {}
        self._fills = 0

        logger.info("position_tracker_initialized")

    def apply_fill(self, params):
        """Apply a confirmed replica order.

        Buys average in. Sells reduce size and value at the existing average
        price; the position is removed once nothing is left. A sell with no
        open position changes nothing.
        """
        self._fills += 1
        if params.side == Side.BUY:
            self._buy(params.token_id, params.size, params.price)
        else:
            self._sell(params.token_id, params.size)

    def _buy(self, token_id: str, size: float, price: float):
        order_value = size * price
        position = self._positions.get(token_id)

        if position is None:
            self._positions[token_id] = Position(
                token_id=token_id,
                size=size,
                avg_price=price,
                value_usd=order_value,
            )
            logger.info("position_opened", token_id=token_id[:20], size=size, price=price)
            return

        position.size += size
        position.value_usd += order_value
        position.avg_price = position.value_usd / position.size
        position.last_updated = time.time()
        logger.info(
            "position_increased",
            token_id=token_id[:20],
            new_size=position.size,
            avg_price=position.avg_price
        )

    def _sell(self, token_id: str, size: float):
        position = self._positions.get(token_id)
        if position is None:
            logger.warning("no_position_to_reduce", token_id=token_id[:20])
            return

        position.size -= size
        position.value_usd = max(0.0, position.value_usd - size * position.avg_price)
        position.last_updated = time.time()

        if position.size <= 0:
            del self._positions[token_id]
            logger.info("position_closed", token_id=token_id[:20])
        else:
            logger.info(
                "position_reduced",
                token_id=token_id[:20],
                remaining_size=position.size
            )

    def get_position(self, token_id: str) -> Optional[Position]:
        return self._positions.get(token_id)

    def get_position_value(self, token_id: str) -> float:
        """Current notional of a token position in USD."""
        position = self._positions.get(token_id)
        if position:
            return position.value_usd
        return 0.0

    def get_all_positions(self) -> dict[str, Position]:
        return self._positions.copy()

    def get_open_position_count(self) -> int:
        return len(self._positions)

    def get_total_exposure(self) -> float:
        return sum(p.value_usd for p in self._positions.values())

    def get_metrics(self) -> dict:
        return {
            "open_positions": self.get_open_position_count(),
            "total_exposure_usd": self.get_total_exposure(),
            "fills": self._fills,
        }


@dataclass
class DailyStats:
    """Balance movement for one UTC calendar day."""
    date: str
    starting_balance: float
    current_balance: float
    total_loss: float = 0.0
    total_profit: float = 0.0
    trades_count: int = 0

    @property
    def pnl(self) -> float:
        return self.current_balance - self.starting_balance


class DailyStatsTracker:
    """Holds the current day's stats and rolls them over at midnight UTC."""

    def __init__(self):
        self.stats: Optional[DailyStats] = None

    def needs_rollover(self, today: str) -> bool:
        return self.stats is None or self.stats.date != today

    def roll(self, today: str, balance: float) -> DailyStats:
        self.stats = DailyStats(
            date=today,
            starting_balance=balance,
            current_balance=balance,
        )
        logger.info("daily_stats_reset", date=today, starting_balance=balance)
        return self.stats

    def record(self, side: Side, order_value: float):
        """Debit buys, credit sells, and recompute loss/profit."""
        if self.stats is None:
            return

        stats = self.stats
        stats.trades_count += 1
        if side == Side.BUY:
            stats.current_balance -= order_value
        else:
            stats.current_balance += order_value

        pnl = stats.pnl
        stats.total_loss = max(0.0, -pnl)
        stats.total_profit = max(0.0, pnl)

    @property
    def total_loss(self) -> float:
        return self.stats.total_loss if self.stats else 0.0
