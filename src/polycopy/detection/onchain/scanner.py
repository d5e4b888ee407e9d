"""On-chain Block Log Scanner.

Scans Polymarket exchange contracts on Polygon for fills, matches and
conditional token transfers involving watched wallets. Runs a bounded-window
backfill on start, then tails new blocks by polling the chain head.
"""

import asyncio
import dataclasses
import time
from dataclasses import dataclass
from typing import Optional

import structlog
from web3 import Web3

from polycopy.detection import metrics
from polycopy.detection.broadcast import Observer, TradeBroadcaster
from polycopy.detection.onchain.events import (
    ORDER_FILLED_TOPIC,
    ORDERS_MATCHED_TOPIC,
    TRANSFER_SINGLE_TOPIC,
    build_trade,
    decode_log,
    log_key,
    pad_address,
)
from polycopy.detection.trades import DetectedTrade
from polycopy.errors import ChainQueryError, ConfigurationError, DecodeError

logger = structlog.get_logger(__name__)

EXCHANGE = "exchange"
CONDITIONAL_TOKENS = "conditional_tokens"

# (event signature, indexed topic position holding the watched address)
ROLE_QUERIES = {
    EXCHANGE: (
        (ORDER_FILLED_TOPIC, 2),    # maker
        (ORDER_FILLED_TOPIC, 3),    # taker
        (ORDERS_MATCHED_TOPIC, 2),  # takerOrderMaker
    ),
    CONDITIONAL_TOKENS: (
        (TRANSFER_SINGLE_TOPIC, 2),  # from
        (TRANSFER_SINGLE_TOPIC, 3),  # to
    ),
}


@dataclass(frozen=True)
class ContractSpec:
    address: str
    kind: str = EXCHANGE


def contracts_from_config(contracts: dict, scan_transfers: bool = False) -> list[ContractSpec]:
    """Build the scanned contract list from the ``contracts`` config section."""
    specs = [
        ContractSpec(contracts[name].lower(), EXCHANGE)
        for name in ("ctf_exchange", "ctf_exchange_legacy")
        if contracts.get(name)
    ]
    if scan_transfers and contracts.get("conditional_tokens"):
        specs.append(ContractSpec(contracts["conditional_tokens"].lower(), CONDITIONAL_TOKENS))
    return specs


def build_topics(signature: str, position: int, padded_wallets: list[str]) -> list:
    """Topic filter matching any watched wallet at one indexed position."""
    return [signature] + [None] * (position - 1) + [padded_wallets]


class BlockLogScanner:
    """Turns exchange contract logs into DetectedTrades, once each."""

    def __init__(
        self,
        chain,
        contracts: list[ContractSpec],
        config: Optional[dict] = None,
        broadcaster: Optional[TradeBroadcaster] = None
    ):
        config = config or {}
        self.chain = chain
        self.contracts = list(contracts)

        self.window_size = int(config.get("window_size", 1000))
        self.lookback_blocks = int(config.get("lookback_blocks", 1000))
        self.poll_interval = float(config.get("poll_interval", 1.0))
        self.error_backoff = float(config.get("error_backoff", 5.0))

        self.broadcaster = broadcaster or TradeBroadcaster()
        self.tracked_wallets: set[str] = set()

        # Last fully scanned block
        self.cursor: Optional[int] = None
        self.running = False

        self._scan_lock = asyncio.Lock()
        self._poll_task: Optional[asyncio.Task] = None

        # Metrics
        self.metrics = {
            "windows_scanned": 0,
            "trades_detected": 0,
            "logs_skipped": 0,
            "errors": 0,
        }

    # ------------------------------------------------------------------
    # Wallets and observers
    # ------------------------------------------------------------------

    def configure(self, wallets: list[str]) -> list[str]:
        """Replace the tracked wallet set.

        Invalid addresses are skipped individually.

        Returns:
            The rejected addresses
        """
        accepted, rejected = self._validate(wallets)
        self.tracked_wallets = accepted
        metrics.WATCHED_WALLETS.set(len(self.tracked_wallets))
        logger.info("scanner_wallets_configured", tracked=len(accepted), rejected=len(rejected))
        return rejected

    def add_wallets(self, wallets: list[str]) -> list[str]:
        accepted, rejected = self._validate(wallets)
        self.tracked_wallets |= accepted
        metrics.WATCHED_WALLETS.set(len(self.tracked_wallets))
        return rejected

    def remove_wallets(self, wallets: list[str]):
        for wallet in wallets:
            self.tracked_wallets.discard(wallet.strip().lower())
        metrics.WATCHED_WALLETS.set(len(self.tracked_wallets))

    @staticmethod
    def _validate(wallets: list[str]) -> tuple[set[str], list[str]]:
        accepted: set[str] = set()
        rejected: list[str] = []
        for wallet in wallets:
            candidate = wallet.strip() if isinstance(wallet, str) else ""
            if candidate and Web3.is_address(candidate):
                accepted.add(candidate.lower())
            else:
                logger.warning("invalid_wallet_address", address=str(wallet)[:42])
                rejected.append(wallet)
        return accepted, rejected

    def subscribe(self, on_trade: Optional[Observer] = None, on_error: Optional[Observer] = None):
        """Register trade and/or error observers."""
        self.broadcaster.subscribe(on_trade, on_error)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, from_block: Optional[int] = None):
        """Backfill from ``from_block`` to the current head, then tail.

        Raises:
            ConfigurationError: no wallets tracked or RPC unreachable
        """
        if self.running:
            logger.warning("scanner_already_running")
            return

        if not self.tracked_wallets:
            raise ConfigurationError("No wallets to track. Add wallets before starting.")
        if not self.contracts:
            raise ConfigurationError("No exchange contracts configured")

        try:
            head = await self.chain.get_block_number()
        except Exception as e:
            raise ConfigurationError(f"RPC endpoint unreachable: {e}") from e

        if from_block is None:
            from_block = max(0, head - self.lookback_blocks)

        self.cursor = from_block - 1
        self.running = True
        self.broadcaster.open()

        logger.info(
            "scanner_started",
            from_block=from_block,
            head=head,
            wallets=len(self.tracked_wallets),
            contracts=len(self.contracts)
        )

        # Backfill
        try:
            await self.on_new_block(head)
        except BaseException:
            self.running = False
            self.broadcaster.close()
            raise

        if self.running:
            self._poll_task = asyncio.create_task(self._poll_blocks(), name="block_poller")

    async def stop(self):
        """Stop scanning. Safe to call repeatedly and from observers."""
        if not self.running and self._poll_task is None:
            return

        logger.info("stopping_block_scanner", cursor=self.cursor)
        self.running = False
        self.broadcaster.close()

        task, self._poll_task = self._poll_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    # ------------------------------------------------------------------
    # Scanning
    # ------------------------------------------------------------------

    async def on_new_block(self, height: int):
        """Scan everything after the cursor up to ``height``.

        Calls arriving while a scan is in flight wait for it and then only
        scan what is still beyond the cursor.
        """
        async with self._scan_lock:
            if not self.running or self.cursor is None:
                return

            start = self.cursor + 1
            while self.running and start <= height:
                end = min(start + self.window_size - 1, height)
                await self._scan_window(start, end)
                if not self.running:
                    break
                self.cursor = end
                metrics.SCANNER_CURSOR.set(end)
                start = end + 1

    async def _poll_blocks(self):
        """Poll for new blocks and hand each new head to on_new_block."""
        while self.running:
            await asyncio.sleep(self.poll_interval)
            if not self.running:
                break
            try:
                height = await self.chain.get_block_number()
                if self.cursor is not None and height > self.cursor:
                    await self.on_new_block(height)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.metrics["errors"] += 1
                logger.error("block_polling_error", cursor=self.cursor, error=str(e))
                if not isinstance(e, ChainQueryError):
                    e = ChainQueryError(f"Block polling failed: {e}")
                await self.broadcaster.publish_error(e)
                await asyncio.sleep(self.error_backoff)

    async def _scan_window(self, from_block: int, to_block: int):
        """Scan one window across all contracts and publish its trades."""
        started = time.monotonic()
        watched = set(self.tracked_wallets)
        if not watched:
            # An empty topic list matches every log on the node
            logger.debug("window_skipped_no_wallets", from_block=from_block, to_block=to_block)
            return

        padded = [pad_address(w) for w in sorted(watched)]
        block_times: dict[int, int] = {}

        batches = await asyncio.gather(*(
            self._scan_contract(contract, from_block, to_block, padded, watched, block_times)
            for contract in self.contracts
        ))

        trades = sorted(
            (trade for batch in batches for trade in batch),
            key=lambda t: (t.block_number, t.log_index)
        )

        for trade in trades:
            if not self.running:
                return
            self.metrics["trades_detected"] += 1
            metrics.TRADES_DETECTED.labels(event=trade.event.value).inc()
            logger.info(
                "trade_detected",
                wallet=trade.wallet[:10],
                side=trade.side.value,
                token_id=trade.token_id[:20],
                price=trade.price,
                size=trade.size,
                event_kind=trade.event.value,
                block=trade.block_number
            )
            await self.broadcaster.publish(trade)

        self.metrics["windows_scanned"] += 1
        metrics.WINDOWS_SCANNED.inc()
        metrics.WINDOW_SCAN_TIME.observe(time.monotonic() - started)
        logger.debug(
            "window_scanned",
            from_block=from_block,
            to_block=to_block,
            trades=len(trades)
        )

    async def _scan_contract(
        self,
        contract: ContractSpec,
        from_block: int,
        to_block: int,
        padded: list[str],
        watched: set[str],
        block_times: dict[int, int]
    ) -> list[DetectedTrade]:
        """Query, dedupe and decode one contract's logs for a window.

        A chain failure skips this contract for the window and is reported
        to error observers.
        """
        try:
            logs = await self._query_logs(contract, from_block, to_block, padded)

            trades = []
            for log in self._dedupe(logs):
                try:
                    trade = build_trade(decode_log(log), log, watched)
                except DecodeError as e:
                    self.metrics["logs_skipped"] += 1
                    metrics.LOGS_SKIPPED.inc()
                    logger.debug("log_decode_skipped", contract=contract.address[:10], error=str(e))
                    continue
                if trade is None:
                    continue

                timestamp = await self._block_timestamp(
                    trade.block_number, block_times, contract, from_block, to_block
                )
                trades.append(dataclasses.replace(trade, timestamp=timestamp))
            return trades

        except ChainQueryError as e:
            self.metrics["errors"] += 1
            metrics.CHAIN_QUERY_ERRORS.inc()
            logger.error(
                "window_skipped_after_chain_error",
                contract=contract.address[:10],
                from_block=from_block,
                to_block=to_block,
                error=str(e)
            )
            await self.broadcaster.publish_error(e)
            return []

    async def _query_logs(
        self,
        contract: ContractSpec,
        from_block: int,
        to_block: int,
        padded: list[str]
    ) -> list:
        queries = ROLE_QUERIES[contract.kind]
        results = await asyncio.gather(*(
            self.chain.get_logs(
                contract.address,
                build_topics(signature, position, padded),
                from_block,
                to_block
            )
            for signature, position in queries
        ), return_exceptions=True)

        logs = []
        for result in results:
            if isinstance(result, ChainQueryError):
                raise result
            if isinstance(result, BaseException):
                raise ChainQueryError(
                    f"Log query failed: {result}",
                    contract=contract.address,
                    from_block=from_block,
                    to_block=to_block
                ) from result
            logs.extend(result)
        return logs

    def _dedupe(self, logs: list) -> list:
        """Union role query results by (transaction hash, log index)."""
        unique = {}
        for log in logs:
            try:
                key = log_key(log)
            except DecodeError:
                self.metrics["logs_skipped"] += 1
                metrics.LOGS_SKIPPED.inc()
                continue
            if key in unique:
                metrics.DUPLICATE_LOGS.inc()
                continue
            unique[key] = log
        return list(unique.values())

    async def _block_timestamp(
        self,
        block_number: int,
        cache: dict[int, int],
        contract: ContractSpec,
        from_block: int,
        to_block: int
    ) -> int:
        if block_number in cache:
            return cache[block_number]

        try:
            block = await self.chain.get_block(block_number)
        except ChainQueryError:
            raise
        except Exception as e:
            raise ChainQueryError(
                f"Block {block_number} lookup failed: {e}",
                contract=contract.address,
                from_block=from_block,
                to_block=to_block
            ) from e

        timestamp = (block or {}).get("timestamp") or int(time.time())
        cache[block_number] = int(timestamp)
        return cache[block_number]

    def get_metrics(self) -> dict:
        return {
            **self.metrics,
            "cursor": self.cursor,
            "tracked_wallets": len(self.tracked_wallets),
            "running": self.running,
        }
