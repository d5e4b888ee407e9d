"""Copy Decision Engine.

Receives detected trades, applies market filters and risk limits, sizes a
replica order and sends it to the execution service. Positions and daily
stats change only after the execution service confirms an order.
"""

import asyncio
import dataclasses
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

import structlog

from polycopy.decision import metrics
from polycopy.decision.market_cache import MarketMetadataCache
from polycopy.decision.risk.filters import RiskCheckResult, RiskManager, measure_liquidity
from polycopy.decision.sizing.strategies import CopyStrategy, OrderParams, PositionSizer
from polycopy.decision.state.positions import DailyStatsTracker, PositionTracker
from polycopy.detection.trades import DetectedTrade
from polycopy.errors import ConfigurationError, ExecutionError, MarketDataUnavailable

logger = structlog.get_logger(__name__)


class DecisionState(str, Enum):
    RECEIVED = "RECEIVED"
    FILTERED = "FILTERED"
    SIZED = "SIZED"
    SIZE_REJECTED = "SIZE_REJECTED"
    EXECUTED = "EXECUTED"
    EXECUTION_FAILED = "EXECUTION_FAILED"


@dataclass
class CopyDecision:
    """Terminal outcome of processing one detected trade."""
    state: DecisionState
    trade: DetectedTrade
    params: Optional[OrderParams] = None
    reason: str = ""
    error: Optional[Exception] = None
    response: Optional[dict] = None

    @property
    def executed(self) -> bool:
        return self.state == DecisionState.EXECUTED


def utc_today() -> str:
    return datetime.now(timezone.utc).date().isoformat()


def _is_failure(response) -> bool:
    if isinstance(response, dict):
        return bool(response.get("error")) or response.get("success") is False
    return False


class CopyDecisionEngine:
    """Decides whether and how to replicate each detected trade."""

    def __init__(
        self,
        config: dict,
        executor,
        market_data,
        directory=None,
        user_wallet: Optional[str] = None,
        market_cache: Optional[MarketMetadataCache] = None,
        today: Callable[[], str] = utc_today
    ):
        self.config = config
        self.executor = executor
        self.market_data = market_data
        self.user_wallet = user_wallet
        self._today = today

        # Components
        self.position_sizer = PositionSizer(config)
        self.risk_manager = RiskManager(config)
        self.position_tracker = PositionTracker()
        self.daily_stats = DailyStatsTracker()
        self.market_cache = market_cache or MarketMetadataCache(
            market_data,
            directory,
            ttl_seconds=config.get("cache_ttl_seconds", 3600)
        )

        # Per-token serialization of evaluate/size/execute; a lock lives
        # only while some trade on its token holds or waits for it
        self._token_locks: dict[str, asyncio.Lock] = {}
        self._token_lock_users: dict[str, int] = {}

        # Metrics
        self.metrics = {
            "trades_received": 0,
            "orders_sent": 0,
            "trades_filtered": 0,
            "orders_rejected": 0,
            "orders_failed": 0,
        }

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def process_trade(
        self,
        trade: DetectedTrade,
        overrides: Optional[dict] = None
    ) -> CopyDecision:
        """Evaluate, size and execute one trade.

        Args:
            trade: The detected trade to replicate
            overrides: Per-wallet strategy settings

        Returns:
            The terminal decision; execution failures are reported in the
            decision rather than raised
        """
        token_id = trade.token_id
        lock = self._token_locks.setdefault(token_id, asyncio.Lock())
        self._token_lock_users[token_id] = self._token_lock_users.get(token_id, 0) + 1
        try:
            async with lock:
                started = time.monotonic()
                decision = await self._process(trade, overrides)
                metrics.DECISION_TIME.observe(time.monotonic() - started)
                metrics.DECISIONS.labels(state=decision.state.value).inc()
                return decision
        finally:
            self._token_lock_users[token_id] -= 1
            if not self._token_lock_users[token_id]:
                del self._token_lock_users[token_id]
                del self._token_locks[token_id]

    async def _process(self, trade: DetectedTrade, overrides: Optional[dict]) -> CopyDecision:
        self.metrics["trades_received"] += 1
        metrics.TRADES_RECEIVED.inc()

        logger.info(
            "processing_trade",
            wallet=trade.wallet[:10],
            token_id=trade.token_id[:20],
            side=trade.side.value,
            price=trade.price,
            size=trade.size
        )

        check = await self._evaluate(trade)
        if not check.approved:
            self.metrics["trades_filtered"] += 1
            logger.info("trade_filtered", reason=check.reason, token_id=trade.token_id[:20])
            return CopyDecision(DecisionState.FILTERED, trade, reason=check.reason)

        try:
            params, reason = await self._size(trade, overrides)
        except ConfigurationError as e:
            self.metrics["orders_rejected"] += 1
            logger.warning("order_sizing_failed", token_id=trade.token_id[:20], error=str(e))
            return CopyDecision(DecisionState.SIZE_REJECTED, trade, reason=str(e), error=e)

        if params is None:
            self.metrics["orders_rejected"] += 1
            logger.info("order_rejected", reason=reason, token_id=trade.token_id[:20])
            return CopyDecision(DecisionState.SIZE_REJECTED, trade, reason=reason)

        try:
            response = await self.execute(params, trade)
        except ExecutionError as e:
            self.metrics["orders_failed"] += 1
            logger.error(
                "order_execution_failed",
                token_id=params.token_id[:20],
                side=params.side.value,
                size=params.size,
                price=params.price,
                error=str(e)
            )
            return CopyDecision(
                DecisionState.EXECUTION_FAILED, trade, params=params, reason=str(e), error=e
            )

        return CopyDecision(DecisionState.EXECUTED, trade, params=params, response=response)

    async def evaluate(self, trade: DetectedTrade, overrides: Optional[dict] = None) -> bool:
        """True if the trade passes market filters and risk limits.

        Limits apply to the source trade's value, so per-wallet strategy
        overrides do not change the outcome.
        """
        return (await self._evaluate(trade)).approved

    async def _evaluate(self, trade: DetectedTrade) -> RiskCheckResult:
        metadata = await self.market_cache.get(trade.token_id)
        if metadata is None:
            return RiskCheckResult(False, f"No market metadata for token {trade.token_id}")

        check = self.risk_manager.check_market_filters(trade.token_id, metadata.market_id)
        if not check.approved:
            return check

        if self.risk_manager.liquidity_filter_enabled:
            liquidity = await self.get_market_liquidity(trade.token_id)
            check = self.risk_manager.check_liquidity(liquidity)
            if not check.approved:
                return check

        price = await self._reference_price(trade)
        if price is None:
            return RiskCheckResult(False, f"No price available for token {trade.token_id}")
        order_value = price * trade.size

        stats = await self._ensure_daily_stats()
        check = self.risk_manager.check_daily_loss(order_value, stats.total_loss)
        if not check.approved:
            return check

        return self.risk_manager.check_order_value(order_value)

    async def size(
        self,
        trade: DetectedTrade,
        overrides: Optional[dict] = None
    ) -> Optional[OrderParams]:
        """Replica order for a trade, or None if it cannot or should not be sized.

        Raises:
            ConfigurationError: the strategy produced a non-positive order
        """
        params, _ = await self._size(trade, overrides)
        return params

    async def _size(
        self,
        trade: DetectedTrade,
        overrides: Optional[dict]
    ) -> tuple[Optional[OrderParams], str]:
        strategy_config = self.position_sizer.strategy_config(overrides)

        price = await self._reference_price(trade)
        if price is None:
            return None, f"No price available for token {trade.token_id}"
        if not trade.price_known:
            trade = dataclasses.replace(trade, price=price)

        if strategy_config.strategy == CopyStrategy.PERCENTAGE:
            balance = await self.get_balance()
            if not balance or balance <= 0:
                return None, "Balance unavailable for percentage sizing"
            strategy_config.current_balance = balance

        if strategy_config.strategy == CopyStrategy.ADAPTIVE:
            market_price = await self.get_market_price(trade.token_id)
            if not market_price or market_price <= 0:
                return None, "Market price unavailable for adaptive sizing"
            strategy_config.current_market_price = market_price

        params = self.position_sizer.calculate_order(
            token_id=trade.token_id,
            price=trade.price,
            size=trade.size,
            side=trade.side,
            config=strategy_config
        )

        current_value = self.position_tracker.get_position_value(trade.token_id)
        check = self.risk_manager.check_position_limit(current_value, params.value)
        if not check.approved:
            return None, check.reason

        return params, ""

    async def execute(self, params: OrderParams, trade: DetectedTrade) -> dict:
        """Submit the replica order and record it once confirmed.

        Raises:
            ExecutionError: metadata missing, submission failed, or the
                execution service reported an error
        """
        metadata = await self.market_cache.get(trade.token_id)
        if metadata is None:
            raise ExecutionError("Market metadata not found", params)

        # Roll the day over before submitting so nothing awaits between
        # confirmation and the state updates
        await self._ensure_daily_stats()

        logger.info(
            "placing_order",
            token_id=params.token_id[:20],
            side=params.side.value,
            size=params.size,
            price=params.price
        )

        try:
            response = await self.executor.place_order(
                token_id=params.token_id,
                price=params.price,
                size=params.size,
                side=params.side.value,
                tick_size=metadata.tick_size,
                neg_risk=metadata.neg_risk
            )
        except ExecutionError:
            raise
        except Exception as e:
            raise ExecutionError(f"Order submission failed: {e}", params) from e

        if _is_failure(response):
            raise ExecutionError(f"Order failed: {response}", params, response)

        self.position_tracker.apply_fill(params)
        self.daily_stats.record(params.side, params.value)

        self.metrics["orders_sent"] += 1
        metrics.ORDERS_SENT.inc()
        metrics.ORDER_VALUE.observe(params.value)
        self._update_gauges()

        logger.info(
            "order_placed",
            token_id=params.token_id[:20],
            side=params.side.value,
            size=params.size,
            price=params.price
        )
        return response

    # ------------------------------------------------------------------
    # Market data
    # ------------------------------------------------------------------

    async def _reference_price(self, trade: DetectedTrade) -> Optional[float]:
        """The trade's own price, or the market price for price-less events."""
        if trade.price_known:
            return trade.price
        price = await self.get_market_price(trade.token_id)
        if price is None or price <= 0:
            return None
        return price

    async def get_balance(self) -> Optional[float]:
        if not self.user_wallet:
            return None
        try:
            return await self.market_data.get_balance(self.user_wallet)
        except MarketDataUnavailable as e:
            logger.warning("balance_unavailable", wallet=self.user_wallet[:10], error=str(e))
            return None

    async def get_market_price(self, token_id: str) -> Optional[float]:
        try:
            return await self.market_data.get_best_bid_ask(token_id)
        except MarketDataUnavailable as e:
            logger.warning("market_price_unavailable", token_id=token_id[:20], error=str(e))
            return None

    async def get_market_liquidity(self, token_id: str) -> Optional[float]:
        try:
            book = await self.market_data.get_order_book(token_id)
        except MarketDataUnavailable as e:
            logger.warning("order_book_unavailable", token_id=token_id[:20], error=str(e))
            return None
        return measure_liquidity(book) if book is not None else None

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    async def _ensure_daily_stats(self):
        today = self._today()
        if self.daily_stats.needs_rollover(today):
            balance = await self.get_balance()
            self.daily_stats.roll(today, balance or 0.0)
        return self.daily_stats.stats

    def _update_gauges(self):
        metrics.OPEN_POSITIONS.set(self.position_tracker.get_open_position_count())
        metrics.TOTAL_EXPOSURE.set(self.position_tracker.get_total_exposure())
        stats = self.daily_stats.stats
        if stats:
            metrics.DAILY_BALANCE.set(stats.current_balance)
            metrics.DAILY_LOSS.set(stats.total_loss)

    @property
    def positions(self) -> dict:
        return self.position_tracker.get_all_positions()

    def get_metrics(self) -> dict:
        stats = self.daily_stats.stats
        return {
            **self.metrics,
            **self.position_tracker.get_metrics(),
            "daily_balance": stats.current_balance if stats else None,
            "daily_loss": stats.total_loss if stats else 0.0,
            "cached_markets": len(self.market_cache),
        }
