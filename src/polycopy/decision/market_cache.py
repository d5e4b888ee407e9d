"""Market metadata cache.

Read-through cache of tick size, neg-risk flag and condition id per token.
Freshness is tracked for the cache as a whole: once the oldest entry is
older than the TTL, the next read drops everything.
"""

import time
from dataclasses import dataclass
from typing import Callable, Optional

import structlog

from polycopy.clients.market_data import DEFAULT_TICK_SIZE

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class MarketMetadata:
    token_id: str
    tick_size: str = DEFAULT_TICK_SIZE
    neg_risk: bool = False
    market_id: str = ""
    populated_at: float = 0.0

    @property
    def condition_id(self) -> str:
        return self.market_id


class MarketMetadataCache:
    """Token id -> MarketMetadata, populated from the order book first and
    the market directory second."""

    def __init__(
        self,
        market_data,
        directory=None,
        ttl_seconds: float = 3600,
        clock: Callable[[], float] = time.monotonic
    ):
        self.market_data = market_data
        self.directory = directory
        self.ttl_seconds = ttl_seconds
        self._clock = clock

        self._entries: dict[str, MarketMetadata] = {}
        self._oldest_populated_at: Optional[float] = None

        self.metrics = {
            "hits": 0,
            "misses": 0,
            "order_book_lookups": 0,
            "directory_lookups": 0,
        }

    def __len__(self) -> int:
        return len(self._entries)

    def invalidate(self):
        self._entries.clear()
        self._oldest_populated_at = None

    async def get(self, token_id: str) -> Optional[MarketMetadata]:
        """Metadata for a token, or None if no source knows it."""
        if not token_id or token_id == "0" or not token_id.strip():
            return None

        now = self._clock()
        if (
            self._oldest_populated_at is not None
            and now - self._oldest_populated_at >= self.ttl_seconds
        ):
            logger.debug("market_cache_expired", entries=len(self._entries))
            self.invalidate()

        cached = self._entries.get(token_id)
        if cached is not None:
            self.metrics["hits"] += 1
            return cached

        self.metrics["misses"] += 1
        metadata = await self._from_order_book(token_id, now)
        if metadata is None:
            metadata = await self._from_directory(token_id, now)
        if metadata is None:
            logger.info("market_metadata_not_found", token_id=token_id[:20])
            return None

        self._entries[token_id] = metadata
        if self._oldest_populated_at is None:
            self._oldest_populated_at = now
        return metadata

    async def _from_order_book(self, token_id: str, now: float) -> Optional[MarketMetadata]:
        self.metrics["order_book_lookups"] += 1
        try:
            book = await self.market_data.get_order_book(token_id)
        except Exception as e:
            logger.debug("order_book_metadata_lookup_failed", token_id=token_id[:20], error=str(e))
            return None
        if book is None:
            return None

        logger.info("market_metadata_found", token_id=token_id[:20], source="order_book")
        return MarketMetadata(
            token_id=token_id,
            tick_size=book.tick_size or DEFAULT_TICK_SIZE,
            neg_risk=bool(book.neg_risk),
            market_id=book.market_id or "",
            populated_at=now,
        )

    async def _from_directory(self, token_id: str, now: float) -> Optional[MarketMetadata]:
        if self.directory is None:
            return None

        self.metrics["directory_lookups"] += 1
        try:
            markets = await self.directory.list_active_markets()
        except Exception as e:
            logger.debug("directory_metadata_lookup_failed", token_id=token_id[:20], error=str(e))
            return None

        for market in markets:
            if token_id in market.token_ids:
                logger.info("market_metadata_found", token_id=token_id[:20], source="directory")
                return MarketMetadata(
                    token_id=token_id,
                    tick_size=market.tick_size or DEFAULT_TICK_SIZE,
                    neg_risk=bool(market.neg_risk),
                    market_id=market.market_id,
                    populated_at=now,
                )
        return None
