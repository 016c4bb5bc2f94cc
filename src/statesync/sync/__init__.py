"""State synchronization over channel transports"""

from .versions import VersionAllocator
from .resolver import ConflictResolver
from .publisher import Publisher, PublisherState
from .subscriber import Subscriber, SubscriberState
from .two_way import TwoWaySync

__all__ = [
    'VersionAllocator',
    'ConflictResolver',
    'Publisher',
    'PublisherState',
    'Subscriber',
    'SubscriberState',
    'TwoWaySync',
]
