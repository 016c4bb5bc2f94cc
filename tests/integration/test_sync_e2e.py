"""
End-to-end synchronization scenarios over an in-process hub.
"""

import pytest

from statesync.cell import Cell
from statesync.messages import SyncMessage
from statesync.registry import Ref
from statesync.sync import Publisher, Subscriber, TwoWaySync
from statesync.transport.memory import MemoryTransport

CHANNEL = "state"


@pytest.fixture
async def transport_c(hub):
    transport = MemoryTransport(hub, origin="peer-c")
    await transport.connect()
    yield transport
    await transport.disconnect()


class TestOneWaySync:
    """Test one publisher mirrored by subscribers."""

    @pytest.mark.asyncio
    async def test_convergence(self, transport_a, transport_b, transport_c):
        source = Cell({"count": 0})
        mirror_b, mirror_c = Cell(), Cell()
        updates = []

        publisher = await Publisher(transport_a, source, "user/prefs", channel=CHANNEL).start()
        sub_b = await Subscriber(
            transport_b, mirror_b, "user/prefs", channel=CHANNEL,
            on_update=lambda old, new: updates.append((old, new)),
        ).start()
        sub_c = await Subscriber(transport_c, mirror_c, "user/prefs", channel=CHANNEL).start()

        source.swap(lambda v: {**v, "count": 1})
        source.swap(lambda v: {**v, "items": ["apple"]})
        source.swap(lambda v: {**v, "items": ["apple", "banana"], "count": 2})
        await publisher.flush()

        assert mirror_b.get() == mirror_c.get() == source.get()
        assert updates == [
            (None, {"count": 1}),
            ({"count": 1}, {"count": 1, "items": ["apple"]}),
            ({"count": 1, "items": ["apple"]}, {"count": 2, "items": ["apple", "banana"]}),
        ]
        assert sub_b.last_version == 3

        for participant in (sub_b, sub_c, publisher):
            await participant.stop()

    @pytest.mark.asyncio
    async def test_late_subscriber_requests_current(self, transport_a, transport_b):
        source = Cell(0)
        publisher = await Publisher(transport_a, source, "counter", channel=CHANNEL).start()
        source.reset(41)
        source.reset(42)
        await publisher.flush()

        mirror = Cell()
        subscriber = await Subscriber(transport_b, mirror, "counter", channel=CHANNEL).start()
        assert await subscriber.request_current() is True
        await publisher.flush()

        assert mirror.get() == 42
        assert subscriber.last_version == 2
        assert publisher.version == 2

        await subscriber.stop()
        await publisher.stop()

    @pytest.mark.asyncio
    async def test_requests_ignored_when_disabled(self, transport_a, transport_b):
        source = Cell("value")
        publisher = await Publisher(
            transport_a, source, "s", channel=CHANNEL, answer_requests=False
        ).start()
        mirror = Cell()
        subscriber = await Subscriber(transport_b, mirror, "s", channel=CHANNEL).start()

        await subscriber.request_current()
        await publisher.flush()

        assert mirror.get() is None
        await subscriber.stop()
        await publisher.stop()

    @pytest.mark.asyncio
    async def test_registry_cell_drives_resolved_listeners(self, registry, transport_a, transport_b):
        registry.register("remote/prefs", None)
        registry.register("active/prefs", Ref("remote/prefs"))
        seen = []
        registry.watch_resolved("active/prefs", "ui", lambda old, new: seen.append(new))

        source = Cell("a")
        publisher = await Publisher(transport_a, source, "prefs", channel=CHANNEL).start()
        subscriber = await Subscriber(
            transport_b, registry.cell("remote/prefs"), "prefs", channel=CHANNEL
        ).start()

        source.reset("b")
        source.reset("c")
        await publisher.flush()

        assert registry.resolve_ref("active/prefs") == "c"
        assert seen == ["b", "c"]

        await subscriber.stop()
        await publisher.stop()


class TestTwoWaySync:
    """Test two writers with last-write-wins."""

    @pytest.mark.asyncio
    async def test_edits_flow_both_ways(self, hub, transport_a, transport_b, clock):
        cell_a, cell_b = Cell(0), Cell(0)
        sync_a = await TwoWaySync(transport_a, cell_a, "n", channel=CHANNEL, clock=clock).start()
        sync_b = await TwoWaySync(transport_b, cell_b, "n", channel=CHANNEL, clock=clock).start()

        cell_a.reset(1)
        await sync_a.flush()
        assert cell_b.get() == 1

        clock.advance()
        cell_b.reset(2)
        await sync_b.flush()
        assert cell_a.get() == 2

        assert sync_a.version == sync_b.version == 2
        # Applied updates are never re-published
        assert hub.get_stats()["published"] == 2

        await sync_a.stop()
        await sync_b.stop()

    @pytest.mark.asyncio
    async def test_concurrent_edits_converge(self, transport_a, transport_b, clock):
        cell_a, cell_b = Cell("init"), Cell("init")
        sync_a = await TwoWaySync(transport_a, cell_a, "s", channel=CHANNEL, clock=clock).start()
        sync_b = await TwoWaySync(transport_b, cell_b, "s", channel=CHANNEL, clock=clock).start()

        # Same version, same timestamp: the higher origin wins everywhere
        cell_a.reset("from-a")
        cell_b.reset("from-b")
        await sync_a.flush()
        await sync_b.flush()

        assert cell_a.get() == cell_b.get() == "from-b"
        assert sync_a.resolver.last_applied == sync_b.resolver.last_applied

        await sync_a.stop()
        await sync_b.stop()

    @pytest.mark.asyncio
    async def test_later_timestamp_wins_version_tie(self, transport_a, transport_b, clock):
        cell_a, cell_b = Cell(0), Cell(0)
        sync_a = await TwoWaySync(transport_a, cell_a, "s", channel=CHANNEL, clock=clock).start()
        sync_b = await TwoWaySync(transport_b, cell_b, "s", channel=CHANNEL, clock=clock).start()

        cell_b.reset("early-b")
        clock.advance(10)
        cell_a.reset("late-a")
        await sync_b.flush()
        await sync_a.flush()

        assert cell_a.get() == cell_b.get() == "late-a"

        await sync_a.stop()
        await sync_b.stop()

    @pytest.mark.asyncio
    async def test_replay_is_idempotent(self, transport_b, transport_c):
        cell = Cell(0)
        updates = []
        sync_b = await TwoWaySync(
            transport_b, cell, "s", channel=CHANNEL,
            on_update=lambda old, new: updates.append(new),
        ).start()

        message = SyncMessage("s", "v5", 5, 100).to_dict()
        await transport_c.publish(CHANNEL, message)
        await transport_c.publish(CHANNEL, message)
        await transport_c.publish(CHANNEL, SyncMessage("s", "v4", 4, 999).to_dict())

        assert cell.get() == "v5"
        assert updates == ["v5"]
        assert sync_b.subscriber.get_stats()["discarded"] == 2

        # Next local edit outranks what was seen
        cell.reset("local")
        assert sync_b.version == 6

        await sync_b.stop()

    @pytest.mark.asyncio
    async def test_stop_detaches(self, transport_a, transport_b):
        cell_a, cell_b = Cell(0), Cell(0)
        sync_a = await TwoWaySync(transport_a, cell_a, "s", channel=CHANNEL).start()
        sync_b = await TwoWaySync(transport_b, cell_b, "s", channel=CHANNEL).start()

        await sync_b.stop()
        cell_a.reset(1)
        await sync_a.flush()
        cell_b.reset(2)

        assert cell_b.get() == 2
        assert cell_a.get() == 1
        assert transport_b.handler_count() == 0

        await sync_a.stop()
