"""WebSocket transport for JSON-framed channel servers

The event names follow sente-lite (``chsk/handshake``, ``sente-lite/publish``
and so on), but frames are JSON arrays ``[event-id, data]``. Servers that
frame events as EDN, such as the nbb sente-lite server, are not supported:
their frames are logged and dropped, so ``connect`` times out waiting for the
handshake.

The server sends ``chsk/handshake`` with the connection uid first; that uid
becomes this transport's origin, since it is what the server puts in the
``from`` field of routed messages. Reconnection is left to the caller.
"""

import asyncio
import json
from typing import Any, Dict, Optional

import aiohttp

from .base import ChannelTransport, ConnectionState
from ..messages import CHANNEL_ID, ChannelEnvelope
from ..utils.errors import TransportError, ValidationError
from ..utils.logging import get_logger

logger = get_logger(__name__)

EVENT_HANDSHAKE = "chsk/handshake"
EVENT_WS_PING = "chsk/ws-ping"
EVENT_WS_PONG = "chsk/ws-pong"
EVENT_SUBSCRIBE = "sente-lite/subscribe"
EVENT_UNSUBSCRIBE = "sente-lite/unsubscribe"
EVENT_PUBLISH = "sente-lite/publish"
EVENT_CHANNEL_MSG = "sente-lite/channel-msg"


def pack(event_id: str, data: Any = None) -> str:
    """Serialize an event vector"""
    if data is None:
        return json.dumps([event_id])
    return json.dumps([event_id, data])


def unpack(raw: str) -> Optional[tuple]:
    """Parse an event vector; None for anything that is not one"""
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        return None
    if not isinstance(parsed, list) or not parsed or not isinstance(parsed[0], str):
        return None
    return parsed[0], (parsed[1] if len(parsed) > 1 else None)


class WebSocketTransport(ChannelTransport):
    """Channel transport over a single aiohttp WebSocket connection"""

    def __init__(
        self,
        url: str,
        origin: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
        connect_timeout: float = 10.0,
        heartbeat_interval: Optional[float] = 30.0,
    ):
        super().__init__(origin)
        self.url = url
        self.headers = headers or {}
        self.connect_timeout = connect_timeout
        self.heartbeat_interval = heartbeat_interval
        self._session: Optional[aiohttp.ClientSession] = None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._handshake: Optional[asyncio.Future] = None

    async def connect(self) -> None:
        """Open the socket and wait for the server handshake"""
        if self.state == ConnectionState.CONNECTED:
            return

        self.state = ConnectionState.CONNECTING
        logger.info("websocket_connecting", url=self.url)

        try:
            self._session = aiohttp.ClientSession(headers=self.headers)
            self._ws = await asyncio.wait_for(
                self._session.ws_connect(self.url),
                self.connect_timeout,
            )
            self._handshake = asyncio.get_running_loop().create_future()
            self._reader_task = asyncio.create_task(self._read_loop())
            await asyncio.wait_for(self._handshake, self.connect_timeout)
            if self._reader_task.done():
                raise TransportError("Connection closed right after handshake")
        except Exception as e:
            self.state = ConnectionState.ERROR
            await self._close_resources()
            if isinstance(e, asyncio.TimeoutError):
                reason = f"timed out after {self.connect_timeout}s"
            else:
                reason = str(e) or type(e).__name__
            raise TransportError(f"Failed to connect to {self.url}: {reason}", cause=e) from e

        self._mark_connected()
        if self.heartbeat_interval:
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

    async def disconnect(self) -> None:
        """Close the socket"""
        if self.state in (ConnectionState.DISCONNECTED, ConnectionState.CLOSED):
            await self._close_resources()
            return

        self.state = ConnectionState.CLOSING
        await self._close_resources()
        self._mark_closed()

    async def _close_resources(self) -> None:
        for task in (self._heartbeat_task, self._reader_task):
            if task is not None and not task.done() and task is not asyncio.current_task():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._heartbeat_task = None
        self._reader_task = None

        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._ws = None
        self._session = None

    async def _send_event(self, event_id: str, data: Any = None) -> None:
        if self._ws is None or self._ws.closed:
            raise TransportError("WebSocket not open")
        await self._ws.send_str(pack(event_id, data))

    async def _send_subscribe(self, channel: str) -> None:
        await self._send_event(EVENT_SUBSCRIBE, {CHANNEL_ID: channel})

    async def _send_unsubscribe(self, channel: str) -> None:
        await self._send_event(EVENT_UNSUBSCRIBE, {CHANNEL_ID: channel})

    async def _send_publish(self, channel: str, data: Any, exclude_sender: bool) -> None:
        await self._send_event(EVENT_PUBLISH, {
            CHANNEL_ID: channel,
            "data": data,
            "exclude-sender?": exclude_sender,
        })

    async def _read_loop(self) -> None:
        """Background task reading frames until the socket closes"""
        try:
            async for msg in self._ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    await self._handle_frame(msg.data)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    logger.error("websocket_error", url=self.url, error=str(self._ws.exception()))
                    break
        except asyncio.CancelledError:
            raise
        except aiohttp.ClientError as e:
            logger.error("websocket_read_failed", url=self.url, error=str(e))

        if self._handshake is not None and not self._handshake.done():
            self._handshake.set_exception(TransportError("Connection closed before handshake"))
        if self.state == ConnectionState.CONNECTED:
            logger.info("websocket_closed_by_peer", url=self.url)
            await self._close_resources()
            self._mark_closed()

    async def _handle_frame(self, raw: str) -> None:
        event = unpack(raw)
        if event is None:
            logger.warning("websocket_frame_invalid", url=self.url, raw=raw[:200])
            return

        event_id, data = event

        if event_id == EVENT_HANDSHAKE:
            if isinstance(data, list) and data and data[0] is not None:
                self._origin = str(data[0])
            if self._handshake is not None and not self._handshake.done():
                self._handshake.set_result(self._origin)
            logger.debug("websocket_handshake", origin=self._origin)

        elif event_id == EVENT_WS_PING:
            await self._send_event(EVENT_WS_PONG)

        elif event_id == EVENT_CHANNEL_MSG:
            try:
                envelope = ChannelEnvelope.from_dict(data or {})
            except (ValidationError, AttributeError) as e:
                logger.warning("websocket_envelope_invalid", error=str(e))
                return
            await self._dispatch(envelope)

        else:
            logger.debug("websocket_event_ignored", event_id=event_id)

    async def _heartbeat_loop(self) -> None:
        while self.state == ConnectionState.CONNECTED:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                await self._send_event(EVENT_WS_PING)
            except (TransportError, aiohttp.ClientError, ConnectionError) as e:
                logger.warning("websocket_heartbeat_failed", error=str(e))
                return

    def __repr__(self) -> str:
        return f"WebSocketTransport(url={self.url!r}, origin={self.origin!r}, state={self.state.value})"


__all__ = ['WebSocketTransport', 'pack', 'unpack']
