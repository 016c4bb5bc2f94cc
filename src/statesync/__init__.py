"""
statesync - named-reference registry and state synchronization over pub/sub.

A ``Registry`` stores values and references between named keys. The
``sync`` package keeps a ``Cell`` consistent across processes by publishing
versioned snapshots on a channel, either one-way (one publisher, many
subscribers) or two-way with last-write-wins conflict resolution.
"""

__version__ = "0.1.0"

from .cell import Cell, Change, ChangeSource
from .registry import CATEGORY_NAME_PATTERN, UNRESOLVED, Ref, Registry, build_registry
from .messages import ChannelEnvelope, Provenance, SyncMessage
from .sync import (
    ConflictResolver,
    Publisher,
    Subscriber,
    TwoWaySync,
    VersionAllocator,
)
from .transport import ChannelHub, ChannelTransport, MemoryTransport, WebSocketTransport
from .utils.errors import (
    CycleError,
    DuplicateKeyError,
    DuplicateRegistrationError,
    InvalidKeyError,
    KeyNotFoundError,
    RegistryError,
    StaleUpdateError,
    StateSyncError,
    SyncError,
    TransportError,
)

__all__ = [
    'Cell',
    'Change',
    'ChangeSource',
    'Registry',
    'Ref',
    'UNRESOLVED',
    'CATEGORY_NAME_PATTERN',
    'build_registry',
    'ChannelEnvelope',
    'Provenance',
    'SyncMessage',
    'VersionAllocator',
    'ConflictResolver',
    'Publisher',
    'Subscriber',
    'TwoWaySync',
    'ChannelTransport',
    'ChannelHub',
    'MemoryTransport',
    'WebSocketTransport',
    'StateSyncError',
    'RegistryError',
    'KeyNotFoundError',
    'CycleError',
    'DuplicateKeyError',
    'InvalidKeyError',
    'SyncError',
    'StaleUpdateError',
    'DuplicateRegistrationError',
    'TransportError',
]
