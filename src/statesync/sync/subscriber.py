"""Subscriber side of state synchronization"""

import enum
from typing import Any, Callable, Dict, Optional

from ..cell import Cell
from ..messages import (
    STATE_ID,
    ChannelEnvelope,
    SyncMessage,
    current_request,
    is_sync_payload,
)
from ..transport.base import ChannelTransport
from ..utils.errors import SyncError, TransportError, ValidationError, error_context
from ..utils.logging import get_logger
from .resolver import ConflictResolver

logger = get_logger(__name__)

UpdateCallback = Callable[[Any, Any], Any]


class SubscriberState(enum.Enum):
    IDLE = "idle"
    APPLYING = "applying"
    STOPPED = "stopped"


class Subscriber:
    """Mirrors a remote state into a local cell.

    Matching messages are written with ``Cell.apply`` so a publisher watching
    the same cell does not send them back out. Without a resolver every
    message is applied in arrival order; with one, only updates that win the
    last-write-wins comparison are.
    """

    def __init__(
        self,
        transport: ChannelTransport,
        cell: Cell,
        state_id: str,
        channel: str = "statesync",
        on_update: Optional[UpdateCallback] = None,
        resolver: Optional[ConflictResolver] = None,
    ):
        self.transport = transport
        self.cell = cell
        self.state_id = state_id
        self.channel = channel
        self.on_update = on_update
        self.resolver = resolver

        self.state = SubscriberState.IDLE
        self.last_version: Optional[int] = None
        self._started = False
        self._handler_id: Optional[str] = None
        self._stats = {
            "applied": 0,
            "discarded": 0,
            "malformed": 0,
        }

    async def start(self) -> "Subscriber":
        """Subscribe to the channel and start applying matching messages"""
        if self._started:
            raise SyncError(f"Subscriber for {self.state_id} already started")

        with error_context("subscriber", "start", state_id=self.state_id, channel=self.channel):
            await self.transport.subscribe(self.channel)

        self._started = True
        self._handler_id = self.transport.on_message(self._matches, self._on_message)
        logger.info(
            "subscriber_started",
            state_id=self.state_id,
            channel=self.channel,
            origin=self.transport.origin,
        )
        return self

    async def stop(self) -> None:
        """Stop applying messages; no ``on_update`` call happens afterwards"""
        if self.state is SubscriberState.STOPPED:
            return

        self.state = SubscriberState.STOPPED
        if self._handler_id is not None:
            self.transport.off(self._handler_id)
            self._handler_id = None

        if self._started:
            try:
                await self.transport.unsubscribe(self.channel)
            except TransportError as e:
                logger.warning("subscriber_unsubscribe_failed", state_id=self.state_id, error=str(e))

        logger.info("subscriber_stopped", state_id=self.state_id, **self._stats)

    async def request_current(self) -> bool:
        """Ask publishers to re-send the current value.

        Best effort: returns once the request was handed to the transport,
        without waiting for an answer. Returns False if it could not be sent.
        """
        if not self._started or self.state is SubscriberState.STOPPED:
            return False
        try:
            await self.transport.publish(self.channel, current_request(self.state_id))
        except TransportError as e:
            logger.warning("current_request_failed", state_id=self.state_id, error=str(e))
            return False
        logger.debug("current_value_request_sent", state_id=self.state_id)
        return True

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self._stats,
            "state_id": self.state_id,
            "state": self.state.value,
            "last_version": self.last_version,
        }

    def _matches(self, envelope: ChannelEnvelope) -> bool:
        return (
            envelope.channel_id == self.channel
            and is_sync_payload(envelope.data)
            and envelope.data.get(STATE_ID) == self.state_id
        )

    def _on_message(self, envelope: ChannelEnvelope) -> None:
        if self.state is SubscriberState.STOPPED:
            return

        try:
            message = SyncMessage.from_dict(envelope.data)
        except ValidationError as e:
            self._stats["malformed"] += 1
            logger.warning(
                "sync_message_malformed",
                state_id=self.state_id,
                field=e.field,
                error=str(e),
            )
            return

        if self.resolver is not None:
            provenance = message.provenance(envelope.from_origin or "")
            if not self.resolver.check(provenance):
                self._stats["discarded"] += 1
                return

        self.state = SubscriberState.APPLYING
        try:
            old = self.cell.apply(message.value)
            self.last_version = message.version
            self._stats["applied"] += 1
            logger.debug(
                "sync_message_applied",
                state_id=self.state_id,
                version=message.version,
                from_origin=envelope.from_origin,
            )
            if self.on_update is not None:
                self._call_on_update(old, message.value)
        finally:
            if self.state is SubscriberState.APPLYING:
                self.state = SubscriberState.IDLE

    def _call_on_update(self, old: Any, new: Any) -> None:
        try:
            self.on_update(old, new)
        except Exception as e:
            logger.error(
                "on_update_failed",
                state_id=self.state_id,
                error=str(e),
                exc_info=True,
            )

    def __repr__(self) -> str:
        return f"Subscriber(state_id={self.state_id!r}, channel={self.channel!r}, state={self.state.value})"


__all__ = ['Subscriber', 'SubscriberState']
