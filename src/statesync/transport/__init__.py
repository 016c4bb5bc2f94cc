"""Channel transports"""

from .base import ChannelTransport, ConnectionState
from .memory import ChannelHub, MemoryTransport
from .websocket import WebSocketTransport

__all__ = [
    'ChannelTransport',
    'ConnectionState',
    'ChannelHub',
    'MemoryTransport',
    'WebSocketTransport',
]
