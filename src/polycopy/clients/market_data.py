"""Market data adapters for the decision engine.

CLOB REST for order books and prices, Gamma for the market directory
fallback, and the USDC contract for the trading wallet's balance.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Optional

import aiohttp
import orjson
import structlog
from web3 import AsyncWeb3, AsyncHTTPProvider

from polycopy.errors import MarketDataUnavailable

logger = structlog.get_logger(__name__)

DEFAULT_TICK_SIZE = "0.001"
USDC_DECIMALS = 6

USDC_ABI = [
    {
        "constant": True,
        "inputs": [{"name": "_owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "balance", "type": "uint256"}],
        "type": "function",
    }
]


@dataclass
class BookLevel:
    price: float
    size: float


@dataclass
class OrderBook:
    """Order book snapshot, best levels first on both sides."""
    token_id: str
    bids: list[BookLevel] = field(default_factory=list)
    asks: list[BookLevel] = field(default_factory=list)
    tick_size: str = DEFAULT_TICK_SIZE
    neg_risk: bool = False
    market_id: str = ""

    @classmethod
    def from_api(cls, token_id: str, data: dict) -> "OrderBook":
        bids = [BookLevel(float(b["price"]), float(b["size"])) for b in data.get("bids") or []]
        asks = [BookLevel(float(a["price"]), float(a["size"])) for a in data.get("asks") or []]
        bids.sort(key=lambda level: level.price, reverse=True)
        asks.sort(key=lambda level: level.price)
        return cls(
            token_id=data.get("asset_id") or token_id,
            bids=bids,
            asks=asks,
            tick_size=str(data.get("tick_size") or DEFAULT_TICK_SIZE),
            neg_risk=bool(data.get("neg_risk", False)),
            market_id=data.get("market") or "",
        )


@dataclass
class DirectoryMarket:
    """Active market as listed by the Gamma directory."""
    market_id: str
    token_ids: list[str]
    tick_size: str = DEFAULT_TICK_SIZE
    neg_risk: bool = False

    @classmethod
    def from_gamma(cls, data: dict) -> "DirectoryMarket":
        token_ids = data.get("clobTokenIds") or []
        if isinstance(token_ids, str):
            # Gamma returns this field as a JSON-encoded string
            try:
                token_ids = orjson.loads(token_ids)
            except orjson.JSONDecodeError:
                token_ids = []

        tick_size = data.get("orderPriceMinTickSize") or data.get("tickSize") or DEFAULT_TICK_SIZE
        return cls(
            market_id=data.get("conditionId") or str(data.get("id", "")),
            token_ids=[str(t) for t in token_ids],
            tick_size=str(tick_size),
            neg_risk=bool(data.get("negRisk", False)),
        )


class UsdcBalanceReader:
    """Reads a wallet's USDC balance from the token contract."""

    def __init__(self, rpc_url: str, usdc_address: str):
        self.w3 = AsyncWeb3(AsyncHTTPProvider(rpc_url))
        self.contract = self.w3.eth.contract(
            address=AsyncWeb3.to_checksum_address(usdc_address),
            abi=USDC_ABI
        )

    async def get_balance(self, address: str) -> float:
        try:
            raw = await self.contract.functions.balanceOf(
                AsyncWeb3.to_checksum_address(address)
            ).call()
        except Exception as e:
            raise MarketDataUnavailable(f"USDC balance lookup failed for {address}: {e}") from e
        return raw / 10 ** USDC_DECIMALS


class _HttpClient:
    """Shared aiohttp session handling."""

    def __init__(self, timeout: float = 10):
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.session: Optional[aiohttp.ClientSession] = None

    async def start(self):
        if self.session is None:
            self.session = aiohttp.ClientSession(
                timeout=self.timeout,
                headers={"Accept": "application/json"}
            )

    async def stop(self):
        if self.session:
            await self.session.close()
            self.session = None

    async def _request(self, method: str, url: str, **kwargs):
        await self.start()
        try:
            async with self.session.request(method, url, **kwargs) as resp:
                if resp.status != 200:
                    text = await resp.text()
                    raise MarketDataUnavailable(
                        f"{method} {url} returned {resp.status}: {text[:200]}"
                    )
                return orjson.loads(await resp.read())
        except (aiohttp.ClientError, asyncio.TimeoutError, orjson.JSONDecodeError) as e:
            raise MarketDataUnavailable(f"{method} {url} failed: {e}") from e


class PolymarketDataSource(_HttpClient):
    """Order books, prices and wallet balance."""

    def __init__(
        self,
        clob_url: str = "https://clob.polymarket.com",
        balance_reader: Optional[UsdcBalanceReader] = None,
        timeout: float = 10
    ):
        super().__init__(timeout)
        self.clob_url = clob_url.rstrip("/")
        self.balance_reader = balance_reader

    async def get_order_book(self, token_id: str) -> OrderBook:
        data = await self._request("GET", f"{self.clob_url}/book", params={"token_id": token_id})
        if not isinstance(data, dict):
            raise MarketDataUnavailable("Unexpected order book payload", token_id=token_id)
        try:
            return OrderBook.from_api(token_id, data)
        except (KeyError, TypeError, ValueError) as e:
            raise MarketDataUnavailable(f"Malformed order book: {e}", token_id=token_id) from e

    async def get_best_bid_ask(self, token_id: str) -> Optional[float]:
        """Current reference price for a token (book midpoint)."""
        data = await self._request("GET", f"{self.clob_url}/midpoint", params={"token_id": token_id})
        try:
            return float(data.get("mid"))
        except (AttributeError, TypeError, ValueError):
            return None

    async def get_balance(self, address: str) -> Optional[float]:
        if self.balance_reader is None or not address:
            return None
        return await self.balance_reader.get_balance(address)


class GammaMarketDirectory(_HttpClient):
    """Active market listing used when the order book lookup misses."""

    def __init__(
        self,
        gamma_url: str = "https://gamma-api.polymarket.com",
        limit: int = 1000,
        timeout: float = 10
    ):
        super().__init__(timeout)
        self.gamma_url = gamma_url.rstrip("/")
        self.limit = limit

    async def list_active_markets(self) -> list[DirectoryMarket]:
        data = await self._request(
            "GET",
            f"{self.gamma_url}/markets",
            params={"active": "true", "closed": "false", "limit": str(self.limit)}
        )
        if not isinstance(data, list):
            return []

        markets = []
        for item in data:
            try:
                markets.append(DirectoryMarket.from_gamma(item))
            except (AttributeError, TypeError) as e:
                logger.debug("skipping_directory_market", error=str(e))
        return markets
