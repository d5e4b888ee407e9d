"""Normalized trade records produced by detection."""

from dataclasses import dataclass
from enum import Enum


class Side(str, Enum):
    """Trade direction from the watched wallet's perspective."""
    BUY = "BUY"
    SELL = "SELL"


class EventKind(str, Enum):
    """On-chain event a trade was decoded from."""
    ORDER_FILLED = "OrderFilled"
    ORDERS_MATCHED = "OrdersMatched"
    TRANSFER_SINGLE = "TransferSingle"


@dataclass(frozen=True)
class DetectedTrade:
    """A trade made by a watched wallet.

    Price is in USD per token and size in tokens. A price of 0 is a sentinel
    for events that carry no price (transfers); use ``price_known`` rather
    than comparing against zero.
    """
    wallet: str
    token_id: str
    price: float
    size: float
    side: Side
    event: EventKind
    tx_hash: str
    log_index: int
    block_number: int
    timestamp: int
    contract: str = ""

    @property
    def price_known(self) -> bool:
        return self.price > 0

    @property
    def notional(self) -> float:
        return self.price * self.size

    def to_dict(self) -> dict:
        return {
            "wallet": self.wallet,
            "token_id": self.token_id,
            "price": self.price,
            "size": self.size,
            "side": self.side.value,
            "event": self.event.value,
            "tx_hash": self.tx_hash,
            "log_index": self.log_index,
            "block_number": self.block_number,
            "timestamp": self.timestamp,
            "contract": self.contract,
        }
