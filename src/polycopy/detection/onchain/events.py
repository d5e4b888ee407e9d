"""CTF Exchange and Conditional Token event decoding.

Logs are decoded by trying each known event signature in a fixed priority
order. The result is one of ``Fill``, ``Matched``, ``Transfer`` or
``Unknown``; ``build_trade`` turns the first three into a DetectedTrade for
whichever watched wallet takes part.
"""

from dataclasses import dataclass
from typing import Optional, Union

from web3 import Web3

from polycopy.detection.trades import DetectedTrade, EventKind, Side
from polycopy.errors import DecodeError

ORDER_FILLED_TOPIC = Web3.to_hex(Web3.keccak(
    text="OrderFilled(bytes32,address,address,uint256,uint256,uint256,uint256,uint256)"
))
ORDERS_MATCHED_TOPIC = Web3.to_hex(Web3.keccak(
    text="OrdersMatched(bytes32,address,uint256,uint256,uint256,uint256)"
))
TRANSFER_SINGLE_TOPIC = Web3.to_hex(Web3.keccak(
    text="TransferSingle(address,address,address,uint256,uint256)"
))

ZERO_ADDRESS = "0x" + "0" * 40

# Prices are carried as 18-decimal fixed point before normalization
PRICE_SCALE = 10 ** 18

WORD = 32


@dataclass(frozen=True)
class Fill:
    """OrderFilled: both legs of a two-party fill."""
    maker: str
    taker: str
    maker_asset_id: int
    taker_asset_id: int
    maker_amount: int
    taker_amount: int
    fee: int = 0


@dataclass(frozen=True)
class Matched:
    """OrdersMatched: one acting party (the taker order's maker)."""
    taker_order_maker: str
    maker_asset_id: int
    taker_asset_id: int
    maker_amount: int
    taker_amount: int


@dataclass(frozen=True)
class Transfer:
    """TransferSingle: token movement without an embedded price."""
    operator: str
    sender: str
    recipient: str
    token_id: int
    value: int


@dataclass(frozen=True)
class Unknown:
    topic: str


DecodedEvent = Union[Fill, Matched, Transfer, Unknown]


def to_hex(value) -> str:
    """Lower-case 0x-prefixed hex for HexBytes, bytes or str."""
    if isinstance(value, str):
        value = value.lower()
        return value if value.startswith("0x") else "0x" + value
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    raise DecodeError(f"Cannot convert {type(value).__name__} to hex")


def pad_address(address: str) -> str:
    """Left-pad an address to a 32-byte topic."""
    return "0x" + address.lower()[2:].rjust(64, "0")


def topic_to_address(topic) -> str:
    value = to_hex(topic)
    if len(value) != 66:
        raise DecodeError(f"Topic is not 32 bytes: {value[:20]}")
    return "0x" + value[-40:]


def _data_bytes(data) -> bytes:
    if isinstance(data, str):
        try:
            return bytes.fromhex(data[2:] if data.startswith("0x") else data)
        except ValueError as e:
            raise DecodeError(f"Invalid hex data: {e}") from e
    return bytes(data)


def _words(data, count: int) -> list[int]:
    """Decode the first ``count`` uint256 words of log data."""
    raw = _data_bytes(data)
    if len(raw) < count * WORD:
        raise DecodeError(f"Expected {count * WORD} data bytes, got {len(raw)}")
    return [
        int.from_bytes(raw[i * WORD:(i + 1) * WORD], "big")
        for i in range(count)
    ]


def _topics(log, count: int) -> list:
    topics = log.get("topics") or []
    if len(topics) < count:
        raise DecodeError(f"Expected {count} topics, got {len(topics)}")
    return topics


def _decode_order_filled(log) -> Fill:
    # topics: signature, orderHash, maker, taker
    topics = _topics(log, 4)
    maker_asset, taker_asset, maker_amount, taker_amount, fee = _words(log["data"], 5)
    return Fill(
        maker=topic_to_address(topics[2]),
        taker=topic_to_address(topics[3]),
        maker_asset_id=maker_asset,
        taker_asset_id=taker_asset,
        maker_amount=maker_amount,
        taker_amount=taker_amount,
        fee=fee,
    )


def _decode_orders_matched(log) -> Matched:
    # topics: signature, takerOrderHash, takerOrderMaker
    topics = _topics(log, 3)
    maker_asset, taker_asset, maker_amount, taker_amount = _words(log["data"], 4)
    return Matched(
        taker_order_maker=topic_to_address(topics[2]),
        maker_asset_id=maker_asset,
        taker_asset_id=taker_asset,
        maker_amount=maker_amount,
        taker_amount=taker_amount,
    )


def _decode_transfer_single(log) -> Transfer:
    # topics: signature, operator, from, to
    topics = _topics(log, 4)
    token_id, value = _words(log["data"], 2)
    return Transfer(
        operator=topic_to_address(topics[1]),
        sender=topic_to_address(topics[2]),
        recipient=topic_to_address(topics[3]),
        token_id=token_id,
        value=value,
    )


# Priority order matters when a log could match more than one shape
_DECODERS = (
    (ORDER_FILLED_TOPIC, _decode_order_filled),
    (ORDERS_MATCHED_TOPIC, _decode_orders_matched),
    (TRANSFER_SINGLE_TOPIC, _decode_transfer_single),
)


def decode_log(log) -> DecodedEvent:
    """Decode a raw log into a tagged event.

    Raises:
        DecodeError: the log has a known signature but an unexpected shape
    """
    topics = log.get("topics") or []
    if not topics:
        raise DecodeError("Log has no topics")

    signature = to_hex(topics[0])
    for topic, decoder in _DECODERS:
        if signature == topic:
            try:
                return decoder(log)
            except (KeyError, TypeError) as e:
                raise DecodeError(f"Malformed {topic[:10]} log: {e}") from e
    return Unknown(topic=signature)


def normalize_price(raw_price: int) -> float:
    """18-decimal fixed point price to USD."""
    return raw_price / PRICE_SCALE


def normalize_size(raw_size: int) -> float:
    """Raw token amount to whole tokens.

    On-chain amounts arrive either 18- or 6-decimal scaled; the scale is
    inferred from magnitude.
    """
    if raw_size > 1e15:
        return raw_size / 1e18
    if raw_size > 1e6:
        return raw_size / 1e6
    return float(raw_size)


def _raw_price(numerator: int, denominator: int) -> int:
    if denominator == 0:
        return 0
    return numerator * PRICE_SCALE // denominator


def _resolve(event: DecodedEvent, watched: set[str]) -> Optional[tuple]:
    """Return (wallet, side, token_id, raw_size, raw_price, kind) or None."""
    if isinstance(event, Fill):
        if event.maker in watched:
            # Maker gives up the maker asset
            return (
                event.maker, Side.SELL, event.maker_asset_id, event.maker_amount,
                _raw_price(event.taker_amount, event.maker_amount),
                EventKind.ORDER_FILLED,
            )
        if event.taker in watched:
            return (
                event.taker, Side.BUY, event.taker_asset_id, event.taker_amount,
                _raw_price(event.maker_amount, event.taker_amount),
                EventKind.ORDER_FILLED,
            )
        return None

    if isinstance(event, Matched):
        if event.taker_order_maker not in watched:
            return None
        return (
            event.taker_order_maker, Side.BUY, event.taker_asset_id, event.taker_amount,
            _raw_price(event.maker_amount, event.taker_amount),
            EventKind.ORDERS_MATCHED,
        )

    if isinstance(event, Transfer):
        if event.sender != ZERO_ADDRESS and event.sender in watched:
            wallet, side = event.sender, Side.SELL
        elif event.recipient != ZERO_ADDRESS and event.recipient in watched:
            wallet, side = event.recipient, Side.BUY
        else:
            return None
        return (
            wallet, side, event.token_id, event.value, 0,
            EventKind.TRANSFER_SINGLE,
        )

    return None


def build_trade(
    event: DecodedEvent,
    log,
    watched: set[str],
    timestamp: int = 0
) -> Optional[DetectedTrade]:
    """Build a normalized trade for the watched party of an event.

    Returns None when no watched wallet takes part or the event is unknown.
    """
    resolved = _resolve(event, watched)
    if resolved is None:
        return None

    wallet, side, token_id, raw_size, raw_price, kind = resolved
    try:
        tx_hash = to_hex(log["transactionHash"])
        log_index = int(log["logIndex"])
        block_number = int(log["blockNumber"])
    except (KeyError, TypeError, ValueError) as e:
        raise DecodeError(f"Log is missing position fields: {e}") from e

    return DetectedTrade(
        wallet=wallet,
        token_id=str(token_id),
        price=normalize_price(raw_price),
        size=normalize_size(raw_size),
        side=side,
        event=kind,
        tx_hash=tx_hash,
        log_index=log_index,
        block_number=block_number,
        timestamp=timestamp,
        contract=str(log.get("address", "")).lower(),
    )


def log_key(log) -> tuple[str, int]:
    """Identity of a log across overlapping queries."""
    try:
        return to_hex(log["transactionHash"]), int(log["logIndex"])
    except (KeyError, TypeError, ValueError) as e:
        raise DecodeError(f"Log is missing identity fields: {e}") from e
