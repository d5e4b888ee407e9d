"""Trade Router.

Owns the watched wallet list and connects the block scanner to the decision
engine through a bounded queue. Trades from disabled wallets never reach
the queue.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Optional

import structlog
from web3 import Web3

from polycopy.decision import metrics
from polycopy.decision.engine import CopyDecision, CopyDecisionEngine, DecisionState
from polycopy.detection.broadcast import Observer, TradeBroadcaster
from polycopy.detection.onchain.scanner import BlockLogScanner
from polycopy.detection.trades import DetectedTrade
from polycopy.errors import ConfigurationError

logger = structlog.get_logger(__name__)

# Per-wallet settings that override the engine's strategy
OVERRIDE_KEYS = ("copy_strategy", "scale_factor", "percentage_of_balance", "max_slippage")


@dataclass
class WatchedWallet:
    address: str
    enabled: bool = True
    overrides: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"address": self.address, "enabled": self.enabled, **self.overrides}


def _canonical(address: str) -> str:
    return address.strip().lower() if isinstance(address, str) else ""


class TradeRouter:
    """Routes detected trades from watched wallets to the decision engine."""

    def __init__(
        self,
        scanner: BlockLogScanner,
        engine: CopyDecisionEngine,
        config: Optional[dict] = None
    ):
        config = config or {}
        self.scanner = scanner
        self.engine = engine
        self.queue_size = int(config.get("queue_size", 1000))

        self._wallets: dict[str, WatchedWallet] = {}
        self._queue: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None
        self._busy = False
        self._scanner_subscribed = False
        self.broadcaster = TradeBroadcaster()
        self.running = False

        # Metrics
        self.metrics = {
            "trades_routed": 0,
            "trades_ignored": 0,
            "trades_dropped": 0,
            "decisions": 0,
        }

    # ------------------------------------------------------------------
    # Wallets
    # ------------------------------------------------------------------

    def add_wallet(self, address: str, enabled: bool = True, **overrides) -> WatchedWallet:
        """Watch a wallet, replacing any existing entry for it.

        Raises:
            ConfigurationError: the address is not a valid EVM address
        """
        canonical = _canonical(address)
        if not canonical or not Web3.is_address(canonical):
            raise ConfigurationError(f"Invalid wallet address {address!r}", address=address)

        wallet = WatchedWallet(canonical, bool(enabled), self._clean_overrides(overrides))
        self._wallets[canonical] = wallet

        if self.running:
            self._sync_scanner(wallet)

        logger.info("wallet_added", wallet=canonical[:10], enabled=wallet.enabled)
        return wallet

    def update_wallet(self, address: str, **changes) -> WatchedWallet:
        """Change a watched wallet's enabled flag or overrides.

        Raises:
            ConfigurationError: the wallet is not watched
        """
        canonical = _canonical(address)
        wallet = self._wallets.get(canonical)
        if wallet is None:
            raise ConfigurationError(f"Wallet {address} is not tracked", address=address)

        if "enabled" in changes:
            wallet.enabled = bool(changes.pop("enabled"))
        for key, value in self._clean_overrides(changes, keep_none=True).items():
            if value is None:
                wallet.overrides.pop(key, None)
            else:
                wallet.overrides[key] = value

        if self.running:
            self._sync_scanner(wallet)

        logger.info("wallet_updated", wallet=canonical[:10], enabled=wallet.enabled)
        return wallet

    def remove_wallet(self, address: str) -> bool:
        canonical = _canonical(address)
        wallet = self._wallets.pop(canonical, None)
        if wallet is None:
            return False

        self.scanner.remove_wallets([canonical])
        logger.info("wallet_removed", wallet=canonical[:10])
        return True

    def get_wallet(self, address: str) -> Optional[WatchedWallet]:
        return self._wallets.get(_canonical(address))

    @property
    def wallets(self) -> list[WatchedWallet]:
        return list(self._wallets.values())

    @staticmethod
    def _clean_overrides(values: dict, keep_none: bool = False) -> dict:
        unknown = set(values) - set(OVERRIDE_KEYS)
        if unknown:
            raise ConfigurationError(
                "Unknown wallet settings: " + ", ".join(sorted(unknown))
            )
        return {k: v for k, v in values.items() if keep_none or v is not None}

    def _sync_scanner(self, wallet: WatchedWallet):
        if wallet.enabled:
            self.scanner.add_wallets([wallet.address])
        else:
            self.scanner.remove_wallets([wallet.address])

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def subscribe(self, on_decision: Optional[Observer] = None, on_error: Optional[Observer] = None):
        """Register observers for engine decisions and for errors."""
        self.broadcaster.subscribe(on_decision, on_error)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, from_block: Optional[int] = None):
        """Start the engine worker and the scanner.

        Raises:
            ConfigurationError: no enabled wallets, or the scanner failed to start
        """
        if self.running:
            logger.warning("router_already_running")
            return

        enabled = [w.address for w in self._wallets.values() if w.enabled]
        self.scanner.configure(enabled)

        if not self._scanner_subscribed:
            self.scanner.subscribe(self.on_trade, self._on_scanner_error)
            self._scanner_subscribed = True

        self._queue = asyncio.Queue(maxsize=self.queue_size)
        self.broadcaster.open()
        self.running = True
        self._worker = asyncio.create_task(self._process_queue(), name="decision_worker")

        logger.info("starting_trade_router", wallets=len(enabled), queue_size=self.queue_size)

        try:
            await self.scanner.start(from_block)
        except Exception:
            await self.stop()
            raise

    async def stop(self):
        """Stop the scanner, then the engine worker.

        A trade already handed to the engine is allowed to finish; queued
        trades are dropped.
        """
        if not self.running and self._worker is None:
            return

        logger.info("stopping_trade_router")
        self.running = False
        await self.scanner.stop()

        worker, self._worker = self._worker, None
        if worker is not None and worker is not asyncio.current_task():
            # A busy worker exits after its current trade
            if not self._busy:
                worker.cancel()
            try:
                await worker
            except asyncio.CancelledError:
                pass

        self.broadcaster.close()
        metrics.QUEUE_DEPTH.set(0)
        logger.info("trade_router_stopped", **self.metrics)

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    def on_trade(self, trade: DetectedTrade):
        """Queue a trade for the engine if its wallet is enabled."""
        wallet = self._wallets.get(trade.wallet)
        if wallet is None or not wallet.enabled:
            self.metrics["trades_ignored"] += 1
            logger.debug("trade_ignored", wallet=trade.wallet[:10])
            return

        if not self.running or self._queue is None:
            return

        try:
            self._queue.put_nowait((trade, dict(wallet.overrides)))
        except asyncio.QueueFull:
            self.metrics["trades_dropped"] += 1
            metrics.TRADES_DROPPED.inc()
            logger.warning(
                "decision_queue_full",
                wallet=trade.wallet[:10],
                token_id=trade.token_id[:20],
                tx=trade.tx_hash[:12]
            )
            return

        self.metrics["trades_routed"] += 1
        metrics.QUEUE_DEPTH.set(self._queue.qsize())

    async def _on_scanner_error(self, error: Exception):
        await self.broadcaster.publish_error(error)

    async def _process_queue(self):
        """Hand queued trades to the engine one at a time."""
        while self.running:
            trade, overrides = await self._queue.get()
            metrics.QUEUE_DEPTH.set(self._queue.qsize())
            self._busy = True
            try:
                decision = await self.engine.process_trade(trade, overrides)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    "trade_processing_error",
                    wallet=trade.wallet[:10],
                    token_id=trade.token_id[:20],
                    error=str(e)
                )
                await self.broadcaster.publish_error(e)
            else:
                await self._publish_decision(decision)
            finally:
                self._busy = False
                self._queue.task_done()

    async def _publish_decision(self, decision: CopyDecision):
        self.metrics["decisions"] += 1
        await self.broadcaster.publish(decision)
        if decision.state == DecisionState.EXECUTION_FAILED and decision.error is not None:
            await self.broadcaster.publish_error(decision.error)

    def get_metrics(self) -> dict:
        return {
            **self.metrics,
            "queue_depth": self._queue.qsize() if self._queue else 0,
            "wallets": len(self._wallets),
            "scanner": self.scanner.get_metrics(),
            "engine": self.engine.get_metrics(),
        }
