"""Shared test fixtures for the Polymarket copy trader."""
from unittest.mock import AsyncMock

import pytest

from polycopy.clients.market_data import BookLevel, OrderBook
from polycopy.detection.onchain.events import (
    ORDER_FILLED_TOPIC,
    ORDERS_MATCHED_TOPIC,
    TRANSFER_SINGLE_TOPIC,
    pad_address,
)
from polycopy.detection.onchain.scanner import EXCHANGE, ContractSpec
from polycopy.errors import ChainQueryError

WALLET = "0x" + "aa" * 20
OTHER_WALLET = "0x" + "bb" * 20
EXCHANGE_ADDRESS = "0x" + "c1" * 20
LEGACY_ADDRESS = "0x" + "c2" * 20
TOKEN_ID = 123456789
BLOCK_TIME = 1_700_000_000


def encode_words(*words) -> str:
    return "0x" + "".join(f"{w:064x}" for w in words)


def tx_hash(n: int) -> str:
    return "0x" + f"{n:064x}"


def fill_log(
    maker,
    taker,
    maker_asset_id,
    taker_asset_id,
    maker_amount,
    taker_amount,
    block=10,
    log_index=0,
    tx=1,
    address=EXCHANGE_ADDRESS,
):
    """OrderFilled log as returned by eth_getLogs."""
    return {
        "address": address,
        "topics": [ORDER_FILLED_TOPIC, tx_hash(999), pad_address(maker), pad_address(taker)],
        "data": encode_words(maker_asset_id, taker_asset_id, maker_amount, taker_amount, 0),
        "transactionHash": tx_hash(tx),
        "logIndex": log_index,
        "blockNumber": block,
    }


def matched_log(
    taker_order_maker,
    maker_asset_id,
    taker_asset_id,
    maker_amount,
    taker_amount,
    block=10,
    log_index=0,
    tx=1,
    address=EXCHANGE_ADDRESS,
):
    return {
        "address": address,
        "topics": [ORDERS_MATCHED_TOPIC, tx_hash(998), pad_address(taker_order_maker)],
        "data": encode_words(maker_asset_id, taker_asset_id, maker_amount, taker_amount),
        "transactionHash": tx_hash(tx),
        "logIndex": log_index,
        "blockNumber": block,
    }


def transfer_log(sender, recipient, token_id, value, block=10, log_index=0, tx=1, address=EXCHANGE_ADDRESS):
    return {
        "address": address,
        "topics": [
            TRANSFER_SINGLE_TOPIC,
            pad_address(OTHER_WALLET),
            pad_address(sender),
            pad_address(recipient),
        ],
        "data": encode_words(token_id, value),
        "transactionHash": tx_hash(tx),
        "logIndex": log_index,
        "blockNumber": block,
    }


class FakeChain:
    """In-memory chain source honoring address, topic and block filters."""

    def __init__(self, head: int = 100):
        self.head = head
        self.logs: dict[str, list] = {}
        self.failing: set[str] = set()
        self.failing_blocks: set[int] = set()
        self.head_error = None
        self.log_calls = []

    def add_log(self, log):
        self.logs.setdefault(log["address"], []).append(log)

    async def get_block_number(self) -> int:
        if self.head_error:
            raise self.head_error
        return self.head

    async def get_logs(self, address, topics, from_block, to_block):
        self.log_calls.append((address, from_block, to_block))
        if address in self.failing:
            raise ChainQueryError(
                "eth_getLogs failed: upstream timeout",
                contract=address,
                from_block=from_block,
                to_block=to_block,
            )

        position = len(topics) - 1
        wanted = set(topics[-1])
        return [
            log for log in self.logs.get(address, [])
            if log["topics"][0] == topics[0]
            and len(log["topics"]) > position
            and log["topics"][position] in wanted
            and from_block <= log["blockNumber"] <= to_block
        ]

    async def get_block(self, number):
        if number in self.failing_blocks:
            raise ChainQueryError(f"eth_getBlockByNumber failed for block {number}")
        return {"number": number, "timestamp": BLOCK_TIME + number}


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def contracts():
    return [ContractSpec(EXCHANGE_ADDRESS, EXCHANGE)]


@pytest.fixture
def scanner_config():
    """Scanner settings with polling effectively disabled."""
    return {
        "window_size": 1000,
        "lookback_blocks": 1000,
        "poll_interval": 3600,
        "error_backoff": 0,
    }


@pytest.fixture
def order_book():
    return OrderBook(
        token_id=str(TOKEN_ID),
        bids=[BookLevel(0.49, 100), BookLevel(0.48, 200)],
        asks=[BookLevel(0.51, 100), BookLevel(0.52, 200)],
        tick_size="0.01",
        neg_risk=True,
        market_id="0xcondition",
    )


@pytest.fixture
def market_data(order_book):
    """Market data source with a known book, midpoint and balance."""
    source = AsyncMock()
    source.get_order_book.return_value = order_book
    source.get_best_bid_ask.return_value = 0.5
    source.get_balance.return_value = 1000.0
    return source


@pytest.fixture
def executor():
    client = AsyncMock()
    client.place_order.return_value = {"success": True, "orderID": "0xorder"}
    return client


@pytest.fixture
def decision_config():
    """Decision settings for testing."""
    return {
        "copy_strategy": "exact",
        "scale_factor": 1.0,
        "percentage_of_balance": 0.05,
        "daily_loss_fraction": 0.1,
        "min_order_value": None,
        "risk": {
            "max_position_size": 1000.0,
            "max_order_value": 500.0,
            "max_daily_loss": 100.0,
            "max_slippage": 0.02,
        },
        "filters": {
            "whitelist_markets": [],
            "blacklist_markets": [],
            "min_market_liquidity": 0,
        },
    }
