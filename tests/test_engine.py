"""Tests for the copy decision engine."""
import asyncio

import pytest

from polycopy.decision.engine import CopyDecisionEngine, DecisionState
from polycopy.detection.trades import DetectedTrade, EventKind, Side
from polycopy.errors import ConfigurationError, ExecutionError, MarketDataUnavailable

from conftest import BLOCK_TIME, TOKEN_ID, WALLET, tx_hash

TOKEN = str(TOKEN_ID)


def make_trade(price=0.5, size=4.0, side=Side.BUY, event=EventKind.ORDER_FILLED, token_id=TOKEN):
    return DetectedTrade(
        wallet=WALLET,
        token_id=token_id,
        price=price,
        size=size,
        side=side,
        event=event,
        tx_hash=tx_hash(1),
        log_index=0,
        block_number=10,
        timestamp=BLOCK_TIME,
    )


@pytest.fixture
def day():
    return ["2026-01-01"]


@pytest.fixture
def make_engine(decision_config, executor, market_data, day):
    def factory(user_wallet=WALLET, **settings):
        config = dict(decision_config, **settings)
        return CopyDecisionEngine(
            config,
            executor=executor,
            market_data=market_data,
            user_wallet=user_wallet,
            today=lambda: day[0],
        )
    return factory


class TestEvaluate:
    """Test filter and risk gates."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("strategy", ["exact", "scaled", "percentage", "adaptive"])
    async def test_max_order_value_rejects_under_every_strategy(
        self, make_engine, decision_config, executor, strategy
    ):
        engine = make_engine(
            copy_strategy=strategy,
            scale_factor=0.01,
            risk=dict(decision_config["risk"], max_order_value=5.0),
        )

        decision = await engine.process_trade(make_trade(price=0.6, size=10))

        assert decision.state == DecisionState.FILTERED
        assert "above maximum" in decision.reason
        executor.place_order.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_order_at_max_value_passes(self, make_engine, decision_config):
        engine = make_engine(risk=dict(decision_config["risk"], max_order_value=5.0))

        assert await engine.evaluate(make_trade(price=0.5, size=10))

    @pytest.mark.asyncio
    async def test_missing_metadata_filters(self, make_engine, market_data, executor):
        market_data.get_order_book.side_effect = MarketDataUnavailable("404")
        engine = make_engine()

        decision = await engine.process_trade(make_trade())

        assert decision.state == DecisionState.FILTERED
        executor.place_order.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_blacklisted_market(self, make_engine, decision_config):
        engine = make_engine(filters=dict(decision_config["filters"], blacklist_markets=["0xcondition"]))

        assert not await engine.evaluate(make_trade())

    @pytest.mark.asyncio
    async def test_low_liquidity(self, make_engine, decision_config):
        engine = make_engine(filters=dict(decision_config["filters"], min_market_liquidity=1000))

        assert not await engine.evaluate(make_trade())

    @pytest.mark.asyncio
    async def test_projected_daily_loss(self, make_engine):
        engine = make_engine(risk={
            "max_position_size": 10000,
            "max_order_value": 10000,
            "max_daily_loss": 100,
        })

        # 1010 * 0.1 = 101 > 100
        decision = await engine.process_trade(make_trade(price=0.5, size=2020))

        assert decision.state == DecisionState.FILTERED
        assert "daily loss" in decision.reason

    @pytest.mark.asyncio
    async def test_unpriced_trade_without_market_price(self, make_engine, market_data):
        market_data.get_best_bid_ask.return_value = None
        engine = make_engine()

        decision = await engine.process_trade(make_trade(price=0, event=EventKind.TRANSFER_SINGLE))

        assert decision.state == DecisionState.FILTERED


class TestSize:
    """Test sizing inside the engine."""

    @pytest.mark.asyncio
    async def test_unpriced_trade_uses_market_price(self, make_engine, market_data):
        market_data.get_best_bid_ask.return_value = 0.4
        engine = make_engine()

        params = await engine.size(make_trade(price=0, size=5, event=EventKind.TRANSFER_SINGLE))

        assert params.price == 0.4
        assert params.size == 5

    @pytest.mark.asyncio
    async def test_percentage_uses_balance(self, make_engine, market_data):
        market_data.get_balance.return_value = 1000.0
        engine = make_engine(copy_strategy="percentage", percentage_of_balance=0.05)

        params = await engine.size(make_trade(price=0.5, size=4))

        assert params.size == pytest.approx(100.0)

    @pytest.mark.asyncio
    async def test_percentage_without_wallet_is_rejected(self, make_engine):
        engine = make_engine(user_wallet=None, copy_strategy="percentage")

        decision = await engine.process_trade(make_trade())

        assert decision.state == DecisionState.SIZE_REJECTED
        assert "Balance" in decision.reason

    @pytest.mark.asyncio
    async def test_adaptive_uses_market_price(self, make_engine, market_data):
        market_data.get_best_bid_ask.return_value = 0.5
        engine = make_engine(copy_strategy="adaptive")

        params = await engine.size(make_trade(price=0.6, size=4))

        assert params.price == pytest.approx(0.505)

    @pytest.mark.asyncio
    async def test_wallet_override_applies(self, make_engine):
        engine = make_engine()

        params = await engine.size(make_trade(size=100), {"copy_strategy": "scaled", "scale_factor": 0.01})

        assert params.size == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_invalid_override_is_size_rejected(self, make_engine):
        engine = make_engine()

        decision = await engine.process_trade(make_trade(), {"copy_strategy": "scaled", "scale_factor": 2})

        assert decision.state == DecisionState.SIZE_REJECTED
        assert isinstance(decision.error, ConfigurationError)

    @pytest.mark.asyncio
    async def test_position_limit(self, make_engine, decision_config, executor):
        engine = make_engine(risk=dict(decision_config["risk"], max_position_size=3.0))

        decision = await engine.process_trade(make_trade(price=0.5, size=8))

        assert decision.state == DecisionState.SIZE_REJECTED
        assert "exceed" in decision.reason
        executor.place_order.assert_not_awaited()


class TestExecute:
    """Test order execution and state updates."""

    @pytest.mark.asyncio
    async def test_executed_trade_updates_state(self, make_engine, executor):
        engine = make_engine()

        decision = await engine.process_trade(make_trade(price=0.5, size=4))

        assert decision.state == DecisionState.EXECUTED
        assert decision.executed
        executor.place_order.assert_awaited_once_with(
            token_id=TOKEN,
            price=0.5,
            size=4,
            side="BUY",
            tick_size="0.01",
            neg_risk=True,
        )
        assert engine.position_tracker.get_position_value(TOKEN) == pytest.approx(2.0)
        stats = engine.daily_stats.stats
        assert stats.starting_balance == 1000.0
        assert stats.current_balance == pytest.approx(998.0)
        assert stats.total_loss == pytest.approx(2.0)

    @pytest.mark.asyncio
    async def test_rejected_order_leaves_state_unchanged(self, make_engine, executor):
        executor.place_order.return_value = {"success": False, "error": "not enough balance"}
        engine = make_engine()

        decision = await engine.process_trade(make_trade())

        assert decision.state == DecisionState.EXECUTION_FAILED
        assert isinstance(decision.error, ExecutionError)
        assert decision.error.response == {"success": False, "error": "not enough balance"}
        assert engine.positions == {}
        assert engine.daily_stats.stats.trades_count == 0

    @pytest.mark.asyncio
    async def test_executor_exception_becomes_execution_error(self, make_engine, executor):
        executor.place_order.side_effect = ConnectionResetError("socket closed")
        engine = make_engine()

        with pytest.raises(ExecutionError) as exc_info:
            await engine.execute((await engine.size(make_trade())), make_trade())

        assert isinstance(exc_info.value.__cause__, ConnectionResetError)
        assert TOKEN in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_execute_without_metadata_raises(self, make_engine, market_data):
        engine = make_engine()
        params = await engine.size(make_trade())
        market_data.get_order_book.side_effect = MarketDataUnavailable("404")

        with pytest.raises(ExecutionError):
            await engine.execute(params, make_trade(token_id="999"))

    @pytest.mark.asyncio
    async def test_sell_closes_position(self, make_engine):
        engine = make_engine()

        await engine.process_trade(make_trade(price=0.5, size=4, side=Side.BUY))
        decision = await engine.process_trade(make_trade(price=0.6, size=4, side=Side.SELL))

        assert decision.state == DecisionState.EXECUTED
        assert engine.positions == {}
        assert engine.daily_stats.stats.total_profit == pytest.approx(0.4)

    @pytest.mark.asyncio
    async def test_daily_stats_roll_over(self, make_engine, market_data, day):
        engine = make_engine()
        await engine.process_trade(make_trade())

        day[0] = "2026-01-02"
        market_data.get_balance.return_value = 500.0
        await engine.process_trade(make_trade())

        stats = engine.daily_stats.stats
        assert stats.date == "2026-01-02"
        assert stats.starting_balance == 500.0
        assert stats.trades_count == 1

    @pytest.mark.asyncio
    async def test_same_token_trades_are_serialized(self, make_engine, decision_config, executor):
        async def slow_fill(**kwargs):
            await asyncio.sleep(0.01)
            return {"success": True}

        executor.place_order.side_effect = slow_fill
        engine = make_engine(risk=dict(decision_config["risk"], max_position_size=5.0))

        first, second = await asyncio.gather(
            engine.process_trade(make_trade(price=0.5, size=8)),
            engine.process_trade(make_trade(price=0.5, size=8)),
        )

        assert first.state == DecisionState.EXECUTED
        assert second.state == DecisionState.SIZE_REJECTED
        assert executor.place_order.await_count == 1
        assert engine._token_locks == {}

    @pytest.mark.asyncio
    async def test_token_locks_are_released(self, make_engine):
        engine = make_engine()

        await engine.process_trade(make_trade())
        await engine.process_trade(make_trade(token_id="42"))

        assert engine._token_locks == {}
        assert engine._token_lock_users == {}

    @pytest.mark.asyncio
    async def test_metrics(self, make_engine):
        engine = make_engine()

        await engine.process_trade(make_trade())

        metrics = engine.get_metrics()
        assert metrics["orders_sent"] == 1
        assert metrics["open_positions"] == 1
        assert metrics["cached_markets"] == 1
