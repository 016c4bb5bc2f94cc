"""
Publisher side of state synchronization.

A ``Publisher`` watches a cell and turns every local change into a versioned
``SyncMessage`` on a channel. Versions and timestamps are stamped on the
writing thread; one sender task hands messages to the transport in order.
Delivery is at-most-once: transport failures are logged and the message is
dropped.
"""

import asyncio
import enum
import threading
from typing import Any, Callable, Dict, Optional

from ..cell import Cell, Change, ChangeSource
from ..messages import ChannelEnvelope, SyncMessage, is_current_request, now_ms
from ..transport.base import ChannelTransport
from ..utils.errors import DuplicateRegistrationError, SyncError, TransportError, error_context
from ..utils.logging import get_logger
from .resolver import ConflictResolver
from .versions import VersionAllocator

logger = get_logger(__name__)

WATCH_PREFIX = "statesync.publisher"


class PublisherState(enum.Enum):
    IDLE = "idle"
    PUBLISHING = "publishing"
    STOPPED = "stopped"


class Publisher:
    """Emits local changes of a cell as sync messages"""

    def __init__(
        self,
        transport: ChannelTransport,
        cell: Cell,
        state_id: str,
        channel: str = "statesync",
        allocator: Optional[VersionAllocator] = None,
        resolver: Optional[ConflictResolver] = None,
        answer_requests: bool = True,
        exclude_sender: bool = False,
        clock: Callable[[], int] = now_ms,
    ):
        """
        Initialize publisher.

        Args:
            transport: Connected channel transport
            cell: Cell whose local changes are published
            state_id: Identifier of the state on the channel
            channel: Channel to publish on
            allocator: Version counter, shared with a subscriber in two-way mode
            resolver: Records local provenance in two-way mode
            answer_requests: Re-publish the current value on request
            exclude_sender: Ask the transport not to echo messages back
            clock: Millisecond timestamp source
        """
        self.transport = transport
        self.cell = cell
        self.state_id = state_id
        self.channel = channel
        self.allocator = allocator or VersionAllocator(state_id)
        self.resolver = resolver
        self.answer_requests = answer_requests
        self.exclude_sender = exclude_sender
        self.clock = clock

        self.state = PublisherState.IDLE
        self._watch_id = (WATCH_PREFIX, state_id)
        self._started = False
        self._lock = threading.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._queue: Optional[asyncio.Queue] = None
        self._sender_task: Optional[asyncio.Task] = None
        self._handler_id: Optional[str] = None
        self._stats = {
            "enqueued": 0,
            "published": 0,
            "dropped": 0,
            "requests_answered": 0,
        }

    async def start(self) -> "Publisher":
        """Subscribe to the channel and begin publishing local changes.

        Raises:
            SyncError: this publisher was already started
            DuplicateRegistrationError: the cell already has a publisher for state_id
        """
        if self._started:
            raise SyncError(f"Publisher for {self.state_id} already started")
        if self.cell.has_watch(self._watch_id):
            raise DuplicateRegistrationError(self.state_id)

        with error_context("publisher", "start", state_id=self.state_id, channel=self.channel):
            await self.transport.subscribe(self.channel)

        self._started = True
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        self._sender_task = asyncio.create_task(self._send_loop())
        self.cell.add_watch(self._watch_id, self._on_change)

        if self.answer_requests:
            self._handler_id = self.transport.on_message(self._is_request, self._on_request)

        logger.info(
            "publisher_started",
            state_id=self.state_id,
            channel=self.channel,
            origin=self.transport.origin,
        )
        return self

    async def stop(self) -> None:
        """Stop publishing. Queued messages are discarded."""
        if self.state is PublisherState.STOPPED:
            return

        self.state = PublisherState.STOPPED
        self.cell.remove_watch(self._watch_id)
        if self._handler_id is not None:
            self.transport.off(self._handler_id)
            self._handler_id = None

        if self._sender_task is not None:
            self._sender_task.cancel()
            try:
                await self._sender_task
            except asyncio.CancelledError:
                pass
            self._sender_task = None

        if self._queue is not None:
            while not self._queue.empty():
                self._queue.get_nowait()
                self._queue.task_done()
                self._stats["dropped"] += 1

        if self._started:
            try:
                await self.transport.unsubscribe(self.channel)
            except TransportError as e:
                logger.warning("publisher_unsubscribe_failed", state_id=self.state_id, error=str(e))

        logger.info("publisher_stopped", state_id=self.state_id, **self._stats)

    def publish_current(self) -> Optional[SyncMessage]:
        """Queue the current value under the current version.

        Returns the queued message, or None once stopped.
        """
        if not self._started or self.state is PublisherState.STOPPED:
            return None
        with self._lock:
            message = self._stamp(self.cell.get(), self.allocator.current())
            self._enqueue(message)
        return message

    async def flush(self) -> None:
        """Wait until every queued message was handed to the transport"""
        if self._queue is not None and self.state is not PublisherState.STOPPED:
            await self._queue.join()

    @property
    def version(self) -> int:
        return self.allocator.current()

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self._stats,
            "state_id": self.state_id,
            "state": self.state.value,
            "version": self.allocator.current(),
            "queued": self._queue.qsize() if self._queue else 0,
        }

    def _on_change(self, change: Change) -> None:
        if change.source is not ChangeSource.LOCAL or not change.changed:
            return
        if self.state is PublisherState.STOPPED:
            return
        with self._lock:
            self._enqueue(self._stamp(change.new, self.allocator.next()))

    def _stamp(self, value: Any, version: int) -> SyncMessage:
        message = SyncMessage(
            state_id=self.state_id,
            value=value,
            version=version,
            timestamp=self.clock(),
        )
        if self.resolver is not None:
            self.resolver.record_local(message.provenance(self.transport.origin))
        return message

    def _enqueue(self, message: SyncMessage) -> None:
        # Caller holds self._lock, so enqueue order equals version order
        self._stats["enqueued"] += 1
        if self._on_loop_thread():
            self._queue.put_nowait(message)
        else:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, message)

    def _on_loop_thread(self) -> bool:
        try:
            return asyncio.get_running_loop() is self._loop
        except RuntimeError:
            return False

    async def _send_loop(self) -> None:
        while True:
            message = await self._queue.get()
            try:
                self.state = PublisherState.PUBLISHING
                await self._send(message)
            finally:
                self._queue.task_done()
                if self.state is PublisherState.PUBLISHING:
                    self.state = PublisherState.IDLE

    async def _send(self, message: SyncMessage) -> None:
        try:
            await self.transport.publish(
                self.channel,
                message.to_dict(),
                exclude_sender=self.exclude_sender,
            )
        except TransportError as e:
            self._stats["dropped"] += 1
            logger.warning(
                "sync_message_dropped",
                state_id=self.state_id,
                version=message.version,
                error=str(e),
            )
            return

        self._stats["published"] += 1
        logger.debug(
            "sync_message_published",
            state_id=self.state_id,
            channel=self.channel,
            version=message.version,
        )

    def _is_request(self, envelope: ChannelEnvelope) -> bool:
        return (
            envelope.channel_id == self.channel
            and is_current_request(envelope.data)
            and envelope.state_id == self.state_id
        )

    def _on_request(self, envelope: ChannelEnvelope) -> None:
        if self.publish_current() is not None:
            self._stats["requests_answered"] += 1
            logger.debug(
                "current_value_requested",
                state_id=self.state_id,
                requester=envelope.from_origin,
            )

    def __repr__(self) -> str:
        return f"Publisher(state_id={self.state_id!r}, channel={self.channel!r}, state={self.state.value})"


__all__ = ['Publisher', 'PublisherState']
