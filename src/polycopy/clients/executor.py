"""Order executor client.

Signing and submission live in the separate execution service. Orders are
sent to it as newline-delimited JSON over a Unix domain socket; each request
gets one JSON line back.
"""

import asyncio
import time
from typing import Optional

import orjson
import structlog

from polycopy.errors import ExecutionError

logger = structlog.get_logger(__name__)


class IPCOrderExecutor:
    """Sends ORDER_REQUEST messages to the execution service."""

    def __init__(
        self,
        socket_path: str,
        response_timeout: float = 30.0,
        max_retries: int = 10,
        retry_delay: float = 1.0
    ):
        self.socket_path = socket_path
        self.response_timeout = response_timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay

        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._lock = asyncio.Lock()

        # Metrics
        self.metrics = {
            "orders_sent": 0,
            "orders_failed": 0,
        }

    async def connect(self) -> bool:
        """Connect to the execution service IPC socket."""
        for attempt in range(self.max_retries):
            try:
                self._reader, self._writer = await asyncio.open_unix_connection(
                    self.socket_path
                )
                logger.info("connected_to_execution_service", socket=self.socket_path)
                return True
            except (FileNotFoundError, ConnectionRefusedError):
                logger.warning(
                    "execution_service_not_available",
                    attempt=attempt + 1,
                    max_retries=self.max_retries
                )
                await asyncio.sleep(self.retry_delay)

        logger.error("failed_to_connect_to_execution_service")
        return False

    async def place_order(
        self,
        token_id: str,
        price: float,
        size: float,
        side: str,
        tick_size: str,
        neg_risk: bool
    ) -> dict:
        """Submit one order and wait for the service's response.

        Raises:
            ExecutionError: not connected, or the socket failed mid-request

        A cancelled request drops the connection, so its late response is
        never read as the answer to a later order.
        """
        request = {
            "type": "ORDER_REQUEST",
            "timestamp": time.time() * 1000,
            "token_id": token_id,
            "price": price,
            "size": size,
            "side": side,
            "tick_size": tick_size,
            "neg_risk": neg_risk,
        }

        async with self._lock:
            if not self._writer:
                await self.connect()
                if not self._writer:
                    self.metrics["orders_failed"] += 1
                    raise ExecutionError(
                        f"Execution service unavailable at {self.socket_path}"
                    )

            try:
                self._writer.write(orjson.dumps(request) + b"\n")
                await self._writer.drain()
                line = await asyncio.wait_for(
                    self._read_response(), timeout=self.response_timeout
                )
            except (OSError, asyncio.TimeoutError, asyncio.IncompleteReadError) as e:
                self.metrics["orders_failed"] += 1
                await self._reset()
                raise ExecutionError(f"Order request to execution service failed: {e}") from e
            except asyncio.CancelledError:
                # The unread response would be handed to the next request
                await self._reset()
                raise

        try:
            response = orjson.loads(line)
        except orjson.JSONDecodeError as e:
            self.metrics["orders_failed"] += 1
            raise ExecutionError(f"Invalid execution response: {line[:100]!r}") from e

        self.metrics["orders_sent"] += 1
        logger.info(
            "order_request_sent",
            token_id=token_id[:20],
            side=side,
            size=size,
            price=price
        )
        return response

    async def _read_response(self) -> bytes:
        # Blank lines are heartbeats
        while True:
            line = await self._reader.readline()
            if not line:
                raise asyncio.IncompleteReadError(b"", None)
            line = line.strip()
            if line:
                return line

    async def _reset(self):
        writer, self._writer, self._reader = self._writer, None, None
        if writer:
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                pass

    async def close(self):
        await self._reset()
        logger.info("execution_client_closed")
