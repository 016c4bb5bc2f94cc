"""
Two-way synchronization of one cell.

Each participant runs a ``Publisher`` and a ``Subscriber`` for the same
state id. They share a ``VersionAllocator`` and a ``ConflictResolver``:

- local edits get the next version and are recorded as the current
  provenance before they go out
- remote updates are applied only if their ``(version, timestamp, origin)``
  is strictly greater than the current provenance, and their version is
  fed back into the allocator

Remote updates land through ``Cell.apply`` and are never re-published, so
two peers editing the same cell do not echo each other.
"""

from typing import Any, Callable, Dict, Optional

from ..cell import Cell
from ..messages import now_ms
from ..transport.base import ChannelTransport
from ..utils.logging import get_logger
from .publisher import Publisher
from .resolver import ConflictResolver
from .subscriber import Subscriber, UpdateCallback
from .versions import VersionAllocator

logger = get_logger(__name__)


class TwoWaySync:
    """Publisher and subscriber sharing LWW state for one cell"""

    def __init__(
        self,
        transport: ChannelTransport,
        cell: Cell,
        state_id: str,
        channel: str = "statesync",
        on_update: Optional[UpdateCallback] = None,
        answer_requests: bool = True,
        clock: Callable[[], int] = now_ms,
    ):
        self.transport = transport
        self.cell = cell
        self.state_id = state_id
        self.channel = channel
        self.allocator = VersionAllocator(state_id)
        self.resolver = ConflictResolver(state_id, allocator=self.allocator)
        self.publisher = Publisher(
            transport,
            cell,
            state_id,
            channel=channel,
            allocator=self.allocator,
            resolver=self.resolver,
            answer_requests=answer_requests,
            exclude_sender=True,
            clock=clock,
        )
        self.subscriber = Subscriber(
            transport,
            cell,
            state_id,
            channel=channel,
            on_update=on_update,
            resolver=self.resolver,
        )

    async def start(self) -> "TwoWaySync":
        await self.publisher.start()
        try:
            await self.subscriber.start()
        except Exception:
            await self.publisher.stop()
            raise
        logger.info("two_way_sync_started", state_id=self.state_id, origin=self.transport.origin)
        return self

    async def stop(self) -> None:
        await self.subscriber.stop()
        await self.publisher.stop()
        logger.info("two_way_sync_stopped", state_id=self.state_id)

    async def flush(self) -> None:
        await self.publisher.flush()

    async def request_current(self) -> bool:
        return await self.subscriber.request_current()

    def publish_current(self):
        return self.publisher.publish_current()

    @property
    def version(self) -> int:
        return self.allocator.current()

    def get_stats(self) -> Dict[str, Any]:
        last = self.resolver.last_applied
        return {
            "state_id": self.state_id,
            "version": self.allocator.current(),
            "provenance": str(last) if last else None,
            "publisher": self.publisher.get_stats(),
            "subscriber": self.subscriber.get_stats(),
        }


__all__ = ['TwoWaySync']
