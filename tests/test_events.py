"""Tests for exchange event decoding."""
import pytest

from polycopy.detection.onchain.events import (
    ZERO_ADDRESS,
    Fill,
    Matched,
    Transfer,
    Unknown,
    build_trade,
    decode_log,
    log_key,
    normalize_size,
)
from polycopy.detection.trades import EventKind, Side
from polycopy.errors import DecodeError

from conftest import (
    EXCHANGE_ADDRESS,
    OTHER_WALLET,
    TOKEN_ID,
    WALLET,
    encode_words,
    fill_log,
    matched_log,
    transfer_log,
    tx_hash,
)


class TestDecodeLog:
    """Test decode_log."""

    def test_order_filled(self):
        log = fill_log(WALLET, OTHER_WALLET, TOKEN_ID, 0, 10_000_000, 5_000_000)

        event = decode_log(log)

        assert isinstance(event, Fill)
        assert event.maker == WALLET
        assert event.taker == OTHER_WALLET
        assert event.maker_asset_id == TOKEN_ID
        assert event.maker_amount == 10_000_000

    def test_orders_matched(self):
        event = decode_log(matched_log(WALLET, 0, TOKEN_ID, 3_000_000, 6_000_000))

        assert isinstance(event, Matched)
        assert event.taker_order_maker == WALLET
        assert event.taker_asset_id == TOKEN_ID

    def test_transfer_single(self):
        event = decode_log(transfer_log(WALLET, OTHER_WALLET, TOKEN_ID, 2_000_000))

        assert isinstance(event, Transfer)
        assert event.sender == WALLET
        assert event.recipient == OTHER_WALLET
        assert event.value == 2_000_000

    def test_accepts_bytes_topics_and_data(self):
        log = fill_log(WALLET, OTHER_WALLET, TOKEN_ID, 0, 10_000_000, 5_000_000)
        log["topics"] = [bytes.fromhex(t[2:]) for t in log["topics"]]
        log["data"] = bytes.fromhex(log["data"][2:])

        assert isinstance(decode_log(log), Fill)

    def test_unknown_signature(self):
        log = fill_log(WALLET, OTHER_WALLET, TOKEN_ID, 0, 1, 1)
        log["topics"][0] = tx_hash(42)

        event = decode_log(log)

        assert isinstance(event, Unknown)
        assert event.topic == tx_hash(42)

    def test_short_data_raises(self):
        log = fill_log(WALLET, OTHER_WALLET, TOKEN_ID, 0, 1, 1)
        log["data"] = encode_words(1, 2)

        with pytest.raises(DecodeError):
            decode_log(log)

    def test_missing_topics_raises(self):
        log = fill_log(WALLET, OTHER_WALLET, TOKEN_ID, 0, 1, 1)
        log["topics"] = log["topics"][:2]

        with pytest.raises(DecodeError):
            decode_log(log)

    def test_no_topics_raises(self):
        with pytest.raises(DecodeError):
            decode_log({"topics": [], "data": "0x"})


class TestBuildTrade:
    """Test turning decoded events into trades."""

    def test_maker_is_seller_of_maker_asset(self):
        log = fill_log(WALLET, OTHER_WALLET, TOKEN_ID, 0, 10_000_000, 5_000_000)

        trade = build_trade(decode_log(log), log, {WALLET})

        assert trade.wallet == WALLET
        assert trade.side == Side.SELL
        assert trade.token_id == str(TOKEN_ID)
        assert trade.price == pytest.approx(0.5)
        assert trade.size == pytest.approx(10.0)
        assert trade.event == EventKind.ORDER_FILLED
        assert trade.contract == EXCHANGE_ADDRESS

    def test_taker_is_buyer_of_taker_asset(self):
        log = fill_log(OTHER_WALLET, WALLET, 0, TOKEN_ID, 5_000_000, 10_000_000)

        trade = build_trade(decode_log(log), log, {WALLET})

        assert trade.side == Side.BUY
        assert trade.token_id == str(TOKEN_ID)
        assert trade.price == pytest.approx(0.5)
        assert trade.size == pytest.approx(10.0)

    def test_maker_preferred_when_both_watched(self):
        log = fill_log(WALLET, OTHER_WALLET, TOKEN_ID, 0, 10_000_000, 5_000_000)

        trade = build_trade(decode_log(log), log, {WALLET, OTHER_WALLET})

        assert trade.wallet == WALLET
        assert trade.side == Side.SELL

    def test_unwatched_fill_returns_none(self):
        log = fill_log(OTHER_WALLET, OTHER_WALLET, TOKEN_ID, 0, 1, 1)

        assert build_trade(decode_log(log), log, {WALLET}) is None

    def test_zero_amount_gives_zero_price(self):
        log = fill_log(WALLET, OTHER_WALLET, TOKEN_ID, 0, 0, 5_000_000)

        trade = build_trade(decode_log(log), log, {WALLET})

        assert trade.price == 0
        assert not trade.price_known

    def test_orders_matched_is_buy(self):
        log = matched_log(WALLET, 0, TOKEN_ID, 3_000_000, 6_000_000, log_index=4)

        trade = build_trade(decode_log(log), log, {WALLET})

        assert trade.side == Side.BUY
        assert trade.token_id == str(TOKEN_ID)
        assert trade.size == pytest.approx(6.0)
        assert trade.price == pytest.approx(0.5)
        assert trade.event == EventKind.ORDERS_MATCHED
        assert trade.log_index == 4

    def test_transfer_from_watched_is_sell_without_price(self):
        log = transfer_log(WALLET, OTHER_WALLET, TOKEN_ID, 2_000_000)

        trade = build_trade(decode_log(log), log, {WALLET})

        assert trade.side == Side.SELL
        assert trade.price == 0
        assert trade.size == pytest.approx(2.0)
        assert trade.event == EventKind.TRANSFER_SINGLE

    def test_mint_to_watched_is_buy(self):
        log = transfer_log(ZERO_ADDRESS, WALLET, TOKEN_ID, 2_000_000)

        trade = build_trade(decode_log(log), log, {WALLET})

        assert trade.side == Side.BUY
        assert trade.wallet == WALLET

    def test_zero_address_never_matches(self):
        log = transfer_log(ZERO_ADDRESS, OTHER_WALLET, TOKEN_ID, 1)

        assert build_trade(decode_log(log), log, {ZERO_ADDRESS}) is None

    def test_unknown_event_returns_none(self):
        log = fill_log(WALLET, OTHER_WALLET, TOKEN_ID, 0, 1, 1)

        assert build_trade(Unknown(topic="0x00"), log, {WALLET}) is None

    def test_missing_position_fields_raise(self):
        log = fill_log(WALLET, OTHER_WALLET, TOKEN_ID, 0, 1, 1)
        del log["blockNumber"]

        with pytest.raises(DecodeError):
            build_trade(decode_log(log), log, {WALLET})


class TestNormalization:
    """Test the raw amount scale heuristic."""

    @pytest.mark.parametrize("raw, expected", [
        (2 * 10 ** 18, 2.0),
        (5_000_000, 5.0),
        (500, 500.0),
        (1_000_000, 1_000_000.0),
    ])
    def test_normalize_size(self, raw, expected):
        assert normalize_size(raw) == pytest.approx(expected)

    def test_log_key(self):
        log = fill_log(WALLET, OTHER_WALLET, TOKEN_ID, 0, 1, 1, tx=7, log_index=3)

        assert log_key(log) == (tx_hash(7), 3)

    def test_log_key_missing_fields(self):
        with pytest.raises(DecodeError):
            log_key({"logIndex": 1})
