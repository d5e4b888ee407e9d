"""Polygon RPC access for the block scanner."""

from typing import Optional

import aiohttp
import structlog
from web3 import AsyncWeb3, AsyncHTTPProvider

from polycopy.errors import ChainQueryError

logger = structlog.get_logger(__name__)


class Web3ChainSource:
    """Thin async wrapper over the RPC calls the scanner needs.

    Every RPC failure surfaces as ChainQueryError so the scanner can decide
    whether to skip a window or give up.
    """

    def __init__(self, rpc_url: str, request_timeout: float = 30.0):
        self.rpc_url = rpc_url
        self.w3 = AsyncWeb3(AsyncHTTPProvider(
            rpc_url,
            request_kwargs={"timeout": aiohttp.ClientTimeout(total=request_timeout)}
        ))

    async def is_connected(self) -> bool:
        try:
            return await self.w3.is_connected()
        except Exception as e:
            logger.warning("rpc_connection_check_failed", error=str(e))
            return False

    async def get_block_number(self) -> int:
        try:
            return await self.w3.eth.block_number
        except Exception as e:
            raise ChainQueryError(f"eth_blockNumber failed: {e}") from e

    async def get_logs(
        self,
        address: str,
        topics: list,
        from_block: int,
        to_block: int
    ) -> list:
        """Fetch logs; each topic slot may be None, a topic, or an OR-list."""
        try:
            logs = await self.w3.eth.get_logs({
                "address": AsyncWeb3.to_checksum_address(address),
                "topics": topics,
                "fromBlock": from_block,
                "toBlock": to_block,
            })
        except Exception as e:
            raise ChainQueryError(
                f"eth_getLogs failed: {e}",
                contract=address,
                from_block=from_block,
                to_block=to_block
            ) from e
        return list(logs)

    async def get_block(self, number: int) -> dict:
        try:
            block = await self.w3.eth.get_block(number)
        except Exception as e:
            raise ChainQueryError(
                f"eth_getBlockByNumber failed: {e}",
                from_block=number,
                to_block=number
            ) from e
        return {"number": number, "timestamp": block.get("timestamp")}

    async def get_chain_id(self) -> Optional[int]:
        try:
            return await self.w3.eth.chain_id
        except Exception as e:
            logger.warning("chain_id_lookup_failed", error=str(e))
            return None
