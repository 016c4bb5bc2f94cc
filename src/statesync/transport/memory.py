"""In-process channel routing

``ChannelHub`` plays the role of a pub/sub server for transports living in
the same process: it tracks channel subscribers and fans published data out
as channel envelopes. Payloads are JSON round-tripped on publish so that
receivers never share objects with the sender, just like a real wire.
"""

import json
from collections import defaultdict
from typing import Any, Dict, Optional, Set

from .base import ChannelTransport, ConnectionState
from ..messages import ChannelEnvelope
from ..utils.errors import TransportError
from ..utils.logging import get_logger

logger = get_logger(__name__)


class ChannelHub:
    """Routes published data to every transport subscribed to a channel"""

    def __init__(self, name: str = "hub"):
        self.name = name
        self._transports: Dict[str, "MemoryTransport"] = {}
        self._channels: Dict[str, Set[str]] = defaultdict(set)
        self._stats = {
            "published": 0,
            "delivered": 0,
        }

    def attach(self, transport: "MemoryTransport") -> None:
        if transport.origin in self._transports:
            raise TransportError(f"Origin already attached to hub: {transport.origin}")
        self._transports[transport.origin] = transport

    def detach(self, transport: "MemoryTransport") -> None:
        self._transports.pop(transport.origin, None)
        for subscribers in self._channels.values():
            subscribers.discard(transport.origin)

    def add_subscriber(self, channel: str, origin: str) -> None:
        self._channels[channel].add(origin)

    def remove_subscriber(self, channel: str, origin: str) -> None:
        subscribers = self._channels.get(channel)
        if subscribers is not None:
            subscribers.discard(origin)
            if not subscribers:
                del self._channels[channel]

    def subscribers(self, channel: str) -> Set[str]:
        return set(self._channels.get(channel, ()))

    async def route(
        self,
        channel: str,
        data: Any,
        from_origin: str,
        exclude_sender: bool = False
    ) -> int:
        """Deliver ``data`` to the channel's subscribers; returns the fan-out"""
        try:
            packed = json.dumps(data)
        except (TypeError, ValueError) as e:
            raise TransportError(f"Payload is not serializable: {e}", cause=e) from e

        self._stats["published"] += 1
        delivered = 0

        for origin in sorted(self._channels.get(channel, ())):
            if exclude_sender and origin == from_origin:
                continue
            transport = self._transports.get(origin)
            if transport is None:
                continue
            envelope = ChannelEnvelope(
                channel_id=channel,
                data=json.loads(packed),
                from_origin=from_origin,
            )
            await transport._deliver(envelope)
            delivered += 1

        self._stats["delivered"] += delivered
        logger.debug(
            "hub_routed",
            hub=self.name,
            channel=channel,
            from_origin=from_origin,
            delivered=delivered,
        )
        return delivered

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self._stats,
            "transports": len(self._transports),
            "channels": {channel: len(subs) for channel, subs in self._channels.items()},
        }


class MemoryTransport(ChannelTransport):
    """Transport attached to a ``ChannelHub``"""

    def __init__(self, hub: ChannelHub, origin: Optional[str] = None):
        super().__init__(origin)
        self.hub = hub

    async def connect(self) -> None:
        if self.state == ConnectionState.CONNECTED:
            return
        self.hub.attach(self)
        self._mark_connected()

    async def disconnect(self) -> None:
        if self.state in (ConnectionState.DISCONNECTED, ConnectionState.CLOSED):
            return
        self.hub.detach(self)
        self._mark_closed()

    async def _send_subscribe(self, channel: str) -> None:
        self.hub.add_subscriber(channel, self.origin)

    async def _send_unsubscribe(self, channel: str) -> None:
        self.hub.remove_subscriber(channel, self.origin)

    async def _send_publish(self, channel: str, data: Any, exclude_sender: bool) -> None:
        await self.hub.route(channel, data, self.origin, exclude_sender)

    async def _deliver(self, envelope: ChannelEnvelope) -> None:
        if self.state != ConnectionState.CONNECTED:
            return
        await self._dispatch(envelope)

    def __repr__(self) -> str:
        return f"MemoryTransport(origin={self.origin!r}, state={self.state.value})"


__all__ = ['ChannelHub', 'MemoryTransport']
