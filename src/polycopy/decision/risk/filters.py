"""Risk Management Filters.

Market whitelist/blacklist, liquidity floor, daily loss ceiling, per-order
value cap and per-token position limit.
"""

from dataclasses import dataclass
from typing import Optional

import structlog

logger = structlog.get_logger(__name__)

# Best price levels per side counted toward liquidity
LIQUIDITY_DEPTH = 5


@dataclass
class RiskCheckResult:
    """Result of a risk check."""
    approved: bool
    reason: str = ""


APPROVED = RiskCheckResult(approved=True)


def measure_liquidity(order_book, depth: int = LIQUIDITY_DEPTH) -> float:
    """Average USD depth of the best levels on each side of a book."""
    bid_liquidity = sum(level.price * level.size for level in order_book.bids[:depth])
    ask_liquidity = sum(level.price * level.size for level in order_book.asks[:depth])
    return (bid_liquidity + ask_liquidity) / 2


class RiskManager:
    """Manages risk controls for copy-trading."""

    def __init__(self, config: dict):
        self.config = config
        risk = config.get("risk", {})
        filters = config.get("filters", {})

        # Limits
        self.max_position_size = risk.get("max_position_size", 1000)
        self.max_order_value = risk.get("max_order_value", 500)
        self.max_daily_loss = risk.get("max_daily_loss", 100)
        # Share of an order's value assumed lost when projecting daily loss
        self.daily_loss_fraction = config.get("daily_loss_fraction", 0.1)

        # Market filters
        self.whitelist = set(filters.get("whitelist_markets") or [])
        self.blacklist = set(filters.get("blacklist_markets") or [])
        self.min_liquidity = filters.get("min_market_liquidity") or 0

        logger.info(
            "risk_manager_initialized",
            max_position=self.max_position_size,
            max_order=self.max_order_value,
            max_daily_loss=self.max_daily_loss
        )

    @property
    def liquidity_filter_enabled(self) -> bool:
        return self.min_liquidity > 0

    def check_market_filters(self, token_id: str, market_id: str) -> RiskCheckResult:
        """Check the market against black- and whitelists.

        Lists may hold condition ids or token ids.
        """
        identifiers = {i for i in (token_id, market_id) if i}

        if identifiers & self.blacklist:
            return RiskCheckResult(
                approved=False,
                reason=f"Market {market_id or token_id} is blacklisted"
            )
        if self.whitelist and not identifiers & self.whitelist:
            return RiskCheckResult(
                approved=False,
                reason=f"Market {market_id or token_id} is not whitelisted"
            )
        return APPROVED

    def check_liquidity(self, liquidity: Optional[float]) -> RiskCheckResult:
        if not self.liquidity_filter_enabled:
            return APPROVED
        if liquidity is None:
            return RiskCheckResult(approved=False, reason="Market liquidity unavailable")
        if liquidity < self.min_liquidity:
            return RiskCheckResult(
                approved=False,
                reason=f"Liquidity ${liquidity:.2f} below minimum ${self.min_liquidity}"
            )
        return APPROVED

    def check_daily_loss(self, order_value: float, cumulative_loss: float) -> RiskCheckResult:
        """Reject if the order could push today's loss past the ceiling."""
        projected = cumulative_loss + order_value * self.daily_loss_fraction
        if projected > self.max_daily_loss:
            return RiskCheckResult(
                approved=False,
                reason=(
                    f"Projected daily loss ${projected:.2f} exceeds "
                    f"limit ${self.max_daily_loss}"
                )
            )
        return APPROVED

    def check_order_value(self, order_value: float) -> RiskCheckResult:
        if order_value > self.max_order_value:
            return RiskCheckResult(
                approved=False,
                reason=f"Order value ${order_value:.2f} above maximum ${self.max_order_value}"
            )
        return APPROVED

    def check_position_limit(self, current_value: float, order_value: float) -> RiskCheckResult:
        new_total = current_value + order_value
        if new_total > self.max_position_size:
            return RiskCheckResult(
                approved=False,
                reason=(
                    f"Position ${new_total:.2f} would exceed "
                    f"limit ${self.max_position_size}"
                )
            )
        return APPROVED
