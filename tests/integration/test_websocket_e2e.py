"""
WebSocket transport against a minimal JSON-framed channel server.
"""

import asyncio
import itertools
import json
from collections import defaultdict

import pytest
from aiohttp import WSMsgType, web
from aiohttp.test_utils import TestServer as AiohttpTestServer

from statesync.cell import Cell
from statesync.sync import Publisher, Subscriber, TwoWaySync
from statesync.transport.base import ConnectionState
from statesync.transport.websocket import WebSocketTransport
from statesync.utils.errors import TransportError


class ChannelServer:
    """Routes sente-lite channel events between connected sockets."""

    def __init__(self):
        self.sockets = {}
        self.channels = defaultdict(set)
        self.pongs = 0
        self._ids = itertools.count(1)

    async def handle(self, request):
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        uid = f"uid-{next(self._ids)}"
        self.sockets[uid] = ws
        await ws.send_str(json.dumps(["chsk/handshake", [uid, None, True]]))

        async for msg in ws:
            if msg.type != WSMsgType.TEXT:
                continue
            event = json.loads(msg.data)
            event_id, data = event[0], (event[1] if len(event) > 1 else None)

            if event_id == "sente-lite/subscribe":
                self.channels[data["channel-id"]].add(uid)
            elif event_id == "sente-lite/unsubscribe":
                self.channels[data["channel-id"]].discard(uid)
            elif event_id == "chsk/ws-ping":
                await ws.send_str(json.dumps(["chsk/ws-pong"]))
            elif event_id == "chsk/ws-pong":
                self.pongs += 1
            elif event_id == "sente-lite/publish":
                channel = data["channel-id"]
                frame = json.dumps(["sente-lite/channel-msg", {
                    "channel-id": channel,
                    "data": data["data"],
                    "from": uid,
                }])
                for target in sorted(self.channels[channel]):
                    if data.get("exclude-sender?") and target == uid:
                        continue
                    await self.sockets[target].send_str(frame)

        self.sockets.pop(uid, None)
        for members in self.channels.values():
            members.discard(uid)
        return ws

    async def ping_all(self):
        for ws in list(self.sockets.values()):
            await ws.send_str(json.dumps(["chsk/ws-ping"]))

    async def drop_all(self):
        for ws in list(self.sockets.values()):
            await ws.close()

    async def handle_silent(self, request):
        """Accepts the socket but never sends a handshake."""
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        async for _ in ws:
            pass
        return ws

    async def handle_edn(self, request):
        """Handshakes in EDN, like the nbb reference server."""
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        await ws.send_str('[:chsk/handshake ["conn-1" nil {:server-time 0} true]]')
        async for _ in ws:
            pass
        return ws


@pytest.fixture
async def channel_server():
    server = ChannelServer()
    app = web.Application()
    app.router.add_get("/chsk", server.handle)
    app.router.add_get("/silent", server.handle_silent)
    app.router.add_get("/edn", server.handle_edn)
    test_server = AiohttpTestServer(app)
    await test_server.start_server()
    server.url = str(test_server.make_url("/chsk"))
    server.silent_url = str(test_server.make_url("/silent"))
    server.edn_url = str(test_server.make_url("/edn"))
    yield server
    await test_server.close()


async def eventually(predicate, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


class TestWebSocketTransport:
    """Test the aiohttp transport end to end."""

    @pytest.mark.asyncio
    async def test_handshake_assigns_origin(self, channel_server):
        transport = WebSocketTransport(channel_server.url, heartbeat_interval=None)
        await transport.connect()

        assert transport.state is ConnectionState.CONNECTED
        assert transport.origin.startswith("uid-")

        await transport.disconnect()
        assert transport.state is ConnectionState.CLOSED

    @pytest.mark.asyncio
    async def test_answers_server_ping(self, channel_server):
        async with WebSocketTransport(channel_server.url, heartbeat_interval=None):
            await channel_server.ping_all()
            await eventually(lambda: channel_server.pongs == 1)

    @pytest.mark.asyncio
    async def test_one_way_sync(self, channel_server):
        source, mirror = Cell(0), Cell()
        updates = []

        async with WebSocketTransport(channel_server.url, heartbeat_interval=None) as a, \
                WebSocketTransport(channel_server.url, heartbeat_interval=None) as b:
            publisher = await Publisher(a, source, "counter", channel="ws").start()
            subscriber = await Subscriber(
                b, mirror, "counter", channel="ws",
                on_update=lambda old, new: updates.append(new),
            ).start()
            await eventually(lambda: len(channel_server.channels["ws"]) == 2)

            for value in (1, 2, 3):
                source.reset(value)
            await publisher.flush()
            await eventually(lambda: len(updates) == 3)

            assert updates == [1, 2, 3]
            assert mirror.get() == 3

            await subscriber.stop()
            await publisher.stop()

    @pytest.mark.asyncio
    async def test_two_way_sync(self, channel_server):
        cell_a, cell_b = Cell("x"), Cell("x")

        async with WebSocketTransport(channel_server.url, heartbeat_interval=None) as a, \
                WebSocketTransport(channel_server.url, heartbeat_interval=None) as b:
            sync_a = await TwoWaySync(a, cell_a, "s", channel="ws").start()
            sync_b = await TwoWaySync(b, cell_b, "s", channel="ws").start()
            await eventually(lambda: len(channel_server.channels["ws"]) == 2)

            cell_a.reset("from-a")
            await sync_a.flush()
            await eventually(lambda: cell_b.get() == "from-a")

            cell_b.reset("from-b")
            await sync_b.flush()
            await eventually(lambda: cell_a.get() == "from-b")

            assert sync_a.version == sync_b.version == 2

            await sync_a.stop()
            await sync_b.stop()

    @pytest.mark.asyncio
    async def test_connect_failure(self):
        transport = WebSocketTransport("ws://127.0.0.1:9/chsk", connect_timeout=1.0)

        with pytest.raises(TransportError):
            await transport.connect()

        assert transport.state is ConnectionState.ERROR

    @pytest.mark.asyncio
    async def test_server_close_releases_session(self, channel_server):
        transport = WebSocketTransport(channel_server.url, heartbeat_interval=None)
        await transport.connect()

        await channel_server.drop_all()
        await eventually(lambda: transport.state is ConnectionState.CLOSED)

        assert transport._session is None
        assert transport._ws is None
        await transport.disconnect()
        assert transport.state is ConnectionState.CLOSED

    @pytest.mark.asyncio
    async def test_missing_handshake_reports_timeout(self, channel_server):
        transport = WebSocketTransport(
            channel_server.silent_url, connect_timeout=0.2, heartbeat_interval=None,
        )

        with pytest.raises(TransportError, match="timed out after 0.2s"):
            await transport.connect()

        assert transport.state is ConnectionState.ERROR
        assert transport._session is None

    @pytest.mark.asyncio
    async def test_edn_server_is_not_understood(self, channel_server):
        transport = WebSocketTransport(
            channel_server.edn_url, connect_timeout=0.2, heartbeat_interval=None,
        )

        with pytest.raises(TransportError, match="timed out"):
            await transport.connect()

        assert transport.state is ConnectionState.ERROR
