"""Observer fan-out for detected trades and errors.

Each observer is called in turn; one that raises is logged and skipped so
the rest still receive the message. Once closed, nothing is delivered.
"""

import inspect
from typing import Any, Callable, Optional

import structlog

logger = structlog.get_logger(__name__)

Observer = Callable[[Any], Any]


def _observer_name(observer: Observer) -> str:
    return getattr(observer, "__qualname__", None) or repr(observer)


class TradeBroadcaster:
    """Delivers messages to registered trade and error observers."""

    def __init__(self):
        self._message_observers: list[Observer] = []
        self._error_observers: list[Observer] = []
        self.closed = False

        # Metrics
        self.metrics = {
            "messages_published": 0,
            "errors_published": 0,
            "observer_failures": 0,
        }

    def subscribe(
        self,
        on_message: Optional[Observer] = None,
        on_error: Optional[Observer] = None
    ):
        """Register observers; either may be sync or async."""
        if on_message is not None:
            self._message_observers.append(on_message)
        if on_error is not None:
            self._error_observers.append(on_error)

    def clear(self):
        self._message_observers.clear()
        self._error_observers.clear()

    @property
    def observer_count(self) -> int:
        return len(self._message_observers) + len(self._error_observers)

    def open(self):
        self.closed = False

    def close(self):
        self.closed = True

    async def publish(self, message) -> int:
        """Deliver a message to every observer.

        Returns:
            Number of observers that accepted the message
        """
        delivered = 0
        for observer in list(self._message_observers):
            if self.closed:
                break
            try:
                await self._call(observer, message)
                delivered += 1
            except Exception as e:
                self.metrics["observer_failures"] += 1
                logger.warning(
                    "observer_failed",
                    observer=_observer_name(observer),
                    error=str(e)
                )
                await self.publish_error(e)

        self.metrics["messages_published"] += 1
        return delivered

    async def publish_error(self, error: Exception) -> int:
        delivered = 0
        for observer in list(self._error_observers):
            if self.closed:
                break
            try:
                await self._call(observer, error)
                delivered += 1
            except Exception as e:
                self.metrics["observer_failures"] += 1
                logger.warning(
                    "error_observer_failed",
                    observer=_observer_name(observer),
                    error=str(e)
                )

        self.metrics["errors_published"] += 1
        return delivered

    @staticmethod
    async def _call(observer: Observer, payload):
        result = observer(payload)
        if inspect.isawaitable(result):
            await result
