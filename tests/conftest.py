"""
Pytest configuration and shared fixtures for statesync tests.
"""

import sys
from pathlib import Path

import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from statesync.cell import Cell
from statesync.registry import Registry
from statesync.transport.memory import ChannelHub, MemoryTransport


class ManualClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start: int = 1_700_000_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int = 1) -> int:
        self.now += ms
        return self.now


@pytest.fixture
def registry() -> Registry:
    return Registry()


@pytest.fixture
def cell() -> Cell:
    return Cell(0, name="test/cell")


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def hub() -> ChannelHub:
    return ChannelHub("test-hub")


@pytest.fixture
async def transport_a(hub):
    transport = MemoryTransport(hub, origin="peer-a")
    await transport.connect()
    yield transport
    await transport.disconnect()


@pytest.fixture
async def transport_b(hub):
    transport = MemoryTransport(hub, origin="peer-b")
    await transport.connect()
    yield transport
    await transport.disconnect()
