"""
Last-write-wins conflict resolution for two-way sync.

Every update carries a ``Provenance(version, timestamp, origin)``. The
resolver remembers the provenance of the value currently held for a state
id and admits an incoming update only if its provenance is strictly
greater. Replays and older updates raise ``StaleUpdateError``.
"""

import threading
from typing import Optional

from ..messages import Provenance
from ..utils.errors import StaleUpdateError
from ..utils.logging import get_logger
from .versions import VersionAllocator

logger = get_logger(__name__)


class ConflictResolver:
    """LWW gate for one state id"""

    def __init__(self, state_id: str = "", allocator: Optional[VersionAllocator] = None):
        self.state_id = state_id
        self.allocator = allocator
        self._last: Optional[Provenance] = None
        self._lock = threading.Lock()

    @property
    def last_applied(self) -> Optional[Provenance]:
        return self._last

    def wins(self, incoming: Provenance) -> bool:
        """Whether ``incoming`` beats the recorded provenance"""
        with self._lock:
            return self._last is None or incoming > self._last

    def record_local(self, provenance: Provenance) -> None:
        """Record a locally published update"""
        with self._lock:
            if self._last is None or provenance > self._last:
                self._last = provenance

    def admit(self, incoming: Provenance) -> Provenance:
        """Record ``incoming`` if it wins.

        Raises:
            StaleUpdateError: incoming is older than or equal to the current value
        """
        with self._lock:
            current = self._last
            if current is not None and not incoming > current:
                raise StaleUpdateError(self.state_id, incoming, current)
            self._last = incoming

        if self.allocator is not None:
            self.allocator.observe(incoming.version)

        logger.debug(
            "update_admitted",
            state_id=self.state_id,
            provenance=str(incoming),
            previous=str(current) if current else None,
        )
        return incoming

    def check(self, incoming: Provenance) -> bool:
        """``admit`` that reports a stale update instead of raising"""
        try:
            self.admit(incoming)
        except StaleUpdateError as e:
            logger.debug(
                "update_discarded",
                state_id=self.state_id,
                incoming=str(e.incoming),
                current=str(e.current),
            )
            return False
        return True

    def reset(self) -> None:
        with self._lock:
            self._last = None


__all__ = ['ConflictResolver']
