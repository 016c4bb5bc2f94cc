"""Monotonic version counters"""

import threading

from ..utils.logging import get_logger

logger = get_logger(__name__)


class VersionAllocator:
    """Per-state-id version counter.

    A fresh allocator is at version 0 and the first ``next()`` returns 1.
    In two-way mode ``observe`` raises the counter to versions seen from
    peers so the next local edit outranks them.
    """

    def __init__(self, state_id: str = "", start: int = 0):
        if start < 0:
            raise ValueError("start must be >= 0")
        self.state_id = state_id
        self._version = start
        self._lock = threading.Lock()

    def next(self) -> int:
        with self._lock:
            self._version += 1
            return self._version

    def current(self) -> int:
        with self._lock:
            return self._version

    def observe(self, version: int) -> int:
        """Raise the counter to at least ``version``; returns the counter."""
        with self._lock:
            if version > self._version:
                logger.debug(
                    "version_observed",
                    state_id=self.state_id,
                    previous=self._version,
                    observed=version,
                )
                self._version = version
            return self._version

    def reset(self, version: int = 0) -> None:
        with self._lock:
            self._version = version

    def __repr__(self) -> str:
        return f"VersionAllocator(state_id={self.state_id!r}, version={self._version})"


__all__ = ['VersionAllocator']
