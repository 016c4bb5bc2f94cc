"""Base channel transport: the pub/sub boundary statesync is built on"""

import asyncio
import enum
import uuid
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Set

from ..messages import ChannelEnvelope
from ..utils.errors import TransportError
from ..utils.logging import get_logger

logger = get_logger(__name__)

Predicate = Callable[[ChannelEnvelope], bool]
Handler = Callable[[ChannelEnvelope], Any]


class ConnectionState(enum.Enum):
    """Connection state for transport"""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSING = "closing"
    CLOSED = "closed"
    ERROR = "error"


@dataclass
class MessageHandler:
    """A registered inbound message handler"""
    handler_id: str
    predicate: Predicate
    callback: Handler
    once: bool = False


def generate_origin() -> str:
    return f"origin-{uuid.uuid4().hex[:12]}"


class ChannelTransport(ABC):
    """Abstract base class for channel transports

    Subclasses implement connection handling and the wire side of
    subscribe/unsubscribe/publish. Inbound channel messages are handed to
    ``_dispatch`` which runs every matching handler.
    """

    def __init__(self, origin: Optional[str] = None):
        self._origin = origin or generate_origin()
        self.state = ConnectionState.DISCONNECTED
        self._handlers: Dict[str, MessageHandler] = {}
        self._subscriptions: Counter = Counter()
        self._stats = {
            "messages_sent": 0,
            "messages_received": 0,
            "errors": 0,
            "connected_at": None,
            "disconnected_at": None
        }

    @property
    def origin(self) -> str:
        """Identifier peers see in the ``from`` field of our messages"""
        return self._origin

    @property
    def subscriptions(self) -> Set[str]:
        return set(self._subscriptions)

    @abstractmethod
    async def connect(self) -> None:
        """Establish transport connection"""

    @abstractmethod
    async def disconnect(self) -> None:
        """Close transport connection"""

    @abstractmethod
    async def _send_subscribe(self, channel: str) -> None:
        """Wire side of subscribe"""

    @abstractmethod
    async def _send_unsubscribe(self, channel: str) -> None:
        """Wire side of unsubscribe"""

    @abstractmethod
    async def _send_publish(self, channel: str, data: Any, exclude_sender: bool) -> None:
        """Wire side of publish"""

    async def subscribe(self, channel: str) -> None:
        """Subscribe to a channel

        Subscriptions are counted; only the first one for a channel goes
        over the wire.
        """
        if self._subscriptions[channel] == 0:
            await self._guarded("subscribe", self._send_subscribe(channel))
        self._subscriptions[channel] += 1
        logger.debug("channel_subscribed", origin=self.origin, channel=channel)

    async def unsubscribe(self, channel: str) -> None:
        """Drop one subscription to a channel; the last one goes over the wire"""
        if self._subscriptions[channel] <= 1:
            await self._guarded("unsubscribe", self._send_unsubscribe(channel))
            self._subscriptions.pop(channel, None)
        else:
            self._subscriptions[channel] -= 1
        logger.debug("channel_unsubscribed", origin=self.origin, channel=channel)

    async def publish(self, channel: str, data: Any, exclude_sender: bool = False) -> None:
        """Publish ``data`` on ``channel``. Any failure raises TransportError."""
        await self._guarded("publish", self._send_publish(channel, data, exclude_sender))
        self._stats["messages_sent"] += 1

    async def _guarded(self, operation: str, coro) -> None:
        if self.state != ConnectionState.CONNECTED:
            coro.close()
            raise TransportError(
                f"Cannot {operation} in state: {self.state.value}",
                operation=operation,
            )
        try:
            await coro
        except TransportError:
            self._stats["errors"] += 1
            raise
        except Exception as e:
            self._stats["errors"] += 1
            raise TransportError(f"{operation} failed: {e}", cause=e) from e

    def on_message(self, predicate: Predicate, callback: Handler, once: bool = False) -> str:
        """Register a handler for envelopes matching ``predicate``

        Returns:
            handler id for ``off``
        """
        handler_id = f"h-{uuid.uuid4().hex[:12]}"
        self._handlers[handler_id] = MessageHandler(
            handler_id=handler_id,
            predicate=predicate,
            callback=callback,
            once=once,
        )
        logger.debug("handler_registered", origin=self.origin, handler_id=handler_id, once=once)
        return handler_id

    def off(self, handler_id: str) -> bool:
        """Remove a handler. Returns True if it was registered."""
        removed = self._handlers.pop(handler_id, None) is not None
        if removed:
            logger.debug("handler_removed", origin=self.origin, handler_id=handler_id)
        return removed

    def handler_count(self) -> int:
        return len(self._handlers)

    async def _dispatch(self, envelope: ChannelEnvelope) -> None:
        """Run every handler whose predicate matches the envelope"""
        self._stats["messages_received"] += 1

        for handler in list(self._handlers.values()):
            if handler.handler_id not in self._handlers:
                continue
            try:
                if not handler.predicate(envelope):
                    continue
                if handler.once:
                    self._handlers.pop(handler.handler_id, None)
                result = handler.callback(envelope)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                self._stats["errors"] += 1
                logger.error(
                    "handler_error",
                    origin=self.origin,
                    handler_id=handler.handler_id,
                    channel=envelope.channel_id,
                    error=str(e),
                    exc_info=True,
                )

    def _mark_connected(self) -> None:
        self.state = ConnectionState.CONNECTED
        self._stats["connected_at"] = datetime.now()
        logger.info("transport_connected", origin=self.origin, transport=type(self).__name__)

    def _mark_closed(self) -> None:
        self.state = ConnectionState.CLOSED
        self._stats["disconnected_at"] = datetime.now()
        self._subscriptions.clear()
        logger.info("transport_closed", origin=self.origin, transport=type(self).__name__)

    async def __aenter__(self) -> "ChannelTransport":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.disconnect()

    def get_stats(self) -> Dict[str, Any]:
        """Get transport statistics"""
        return {
            **self._stats,
            "origin": self.origin,
            "state": self.state.value,
            "handlers": len(self._handlers),
            "subscriptions": sorted(self._subscriptions),
        }
