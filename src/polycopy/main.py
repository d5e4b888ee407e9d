#!/usr/bin/env python3
"""Copy Trader Entry Point.

Scans Polygon for trades by watched wallets, decides whether to copy each
one, and sends replica orders to the execution service.
"""

import argparse
import asyncio
import signal
import sys
from typing import Optional

import structlog
from dotenv import load_dotenv

from polycopy.clients.executor import IPCOrderExecutor
from polycopy.clients.market_data import GammaMarketDirectory, PolymarketDataSource, UsdcBalanceReader
from polycopy.config import load_config, load_wallets
from polycopy.decision.engine import CopyDecision, CopyDecisionEngine, DecisionState
from polycopy.decision.market_cache import MarketMetadataCache
from polycopy.detection.metrics import start_metrics_server
from polycopy.detection.onchain.chain import Web3ChainSource
from polycopy.detection.onchain.scanner import BlockLogScanner, contracts_from_config
from polycopy.errors import CopyTraderError
from polycopy.logging_setup import configure_logging
from polycopy.router import OVERRIDE_KEYS, TradeRouter

logger = structlog.get_logger(__name__)


class CopyTraderService:
    """Main copy trader orchestrator."""

    def __init__(self, config: dict, wallets: list[dict]):
        self.config = config
        self.running = False
        self._stopped = asyncio.Event()

        network = config["network"]
        market_data_config = config["market_data"]
        timeout = market_data_config.get("request_timeout", 10)

        # Collaborators
        self.chain = Web3ChainSource(network["polygon_rpc"])
        self.market_data = PolymarketDataSource(
            clob_url=market_data_config["clob_url"],
            balance_reader=UsdcBalanceReader(network["polygon_rpc"], config["contracts"]["usdc"]),
            timeout=timeout
        )
        self.directory = GammaMarketDirectory(market_data_config["gamma_url"], timeout=timeout)
        self.executor = IPCOrderExecutor(
            socket_path=config["ipc"]["execution_socket"],
            response_timeout=config["ipc"].get("response_timeout", 30)
        )

        # Components
        scanner_config = config["scanner"]
        self.scanner = BlockLogScanner(
            self.chain,
            contracts_from_config(config["contracts"], scanner_config.get("scan_transfers", False)),
            scanner_config
        )
        self.engine = CopyDecisionEngine(
            config["decision"],
            executor=self.executor,
            market_data=self.market_data,
            user_wallet=network.get("user_wallet") or None,
            market_cache=MarketMetadataCache(
                self.market_data,
                self.directory,
                ttl_seconds=market_data_config.get("cache_ttl_seconds", 3600)
            )
        )
        self.router = TradeRouter(self.scanner, self.engine, config["router"])

        for wallet in wallets:
            overrides = {k: wallet.get(k) for k in OVERRIDE_KEYS if wallet.get(k) is not None}
            try:
                self.router.add_wallet(wallet["address"], wallet.get("enabled", True), **overrides)
            except CopyTraderError as e:
                logger.warning("wallet_skipped", error=str(e))

        self.router.subscribe(self._on_decision, self._on_error)

    def _on_decision(self, decision: CopyDecision):
        if decision.state == DecisionState.EXECUTED:
            logger.info(
                "trade_copied",
                wallet=decision.trade.wallet[:10],
                token_id=decision.params.token_id[:20],
                side=decision.params.side.value,
                size=decision.params.size,
                price=decision.params.price
            )

    def _on_error(self, error: Exception):
        logger.warning("copy_trader_error", error_type=type(error).__name__, error=str(error))

    async def start(self, from_block: Optional[int] = None):
        """Start all components and run until shut down."""
        logger.info(
            "starting_copy_trader",
            wallets=len(self.router.wallets),
            strategy=self.config["decision"]["copy_strategy"]
        )
        self.running = True

        # Handle shutdown signals
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda: asyncio.create_task(self.shutdown()))

        if not await self.chain.is_connected():
            logger.warning("rpc_not_connected", rpc=self.chain.rpc_url[:40])

        await self.executor.connect()
        await self.router.start(from_block)
        await self._stopped.wait()

    async def shutdown(self):
        """Graceful shutdown."""
        if not self.running:
            return
        logger.info("shutting_down_copy_trader")
        self.running = False

        await self.router.stop()
        await self.executor.close()
        await self.market_data.stop()
        await self.directory.stop()

        logger.info("copy_trader_stopped", **self.engine.get_metrics())
        self._stopped.set()


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Polymarket copy trader")
    parser.add_argument("--config", help="Path to config.yaml")
    parser.add_argument("--wallets", help="Path to wallets.json")
    parser.add_argument("--from-block", type=int, help="First block to backfill from")
    return parser.parse_args(argv)


async def main(argv=None):
    """Main entry point."""
    load_dotenv()
    args = parse_args(argv)

    config = load_config(args.config)
    configure_logging(config["logging"].get("level", "INFO"))
    wallets = load_wallets(args.wallets)

    if config["metrics"].get("enabled", True):
        start_metrics_server(config["metrics"].get("port", 9091))

    service = CopyTraderService(config, wallets)
    try:
        await service.start(args.from_block)
    finally:
        await service.shutdown()


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("copy_trader_interrupted")
        sys.exit(0)
    except CopyTraderError as e:
        logger.error("copy_trader_failed", error=str(e))
        sys.exit(1)


if __name__ == "__main__":
    run()
