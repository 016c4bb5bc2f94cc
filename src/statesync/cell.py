"""
Observable state cells.

A ``Cell`` holds one value behind a re-entrant lock and notifies watchers
after every write. Writes come in two flavours:

- ``reset``/``swap`` are local edits (``ChangeSource.LOCAL``)
- ``apply`` installs a value received from a peer (``ChangeSource.REMOTE``)

Watchers see the source on every ``Change`` so a publisher can skip values
that arrived from the network instead of echoing them back.
"""

import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Hashable, List, Optional, Tuple

from .utils.logging import get_logger


logger = get_logger("statesync.cell")


class ChangeSource(Enum):
    """Where a cell write came from."""
    LOCAL = "local"
    REMOTE = "remote"


@dataclass(frozen=True)
class Change:
    """A single observed write."""
    old: Any
    new: Any
    source: ChangeSource = ChangeSource.LOCAL

    @property
    def changed(self) -> bool:
        return self.old != self.new


CellWatcher = Callable[[Change], Any]


class Cell:
    """Thread-safe mutable reference with watches."""

    def __init__(self, value: Any = None, name: Optional[str] = None):
        self.name = name
        self._value = value
        self._lock = threading.RLock()
        self._watches: Dict[Hashable, CellWatcher] = {}

    @property
    def value(self) -> Any:
        return self._value

    def get(self) -> Any:
        return self._value

    def reset(self, value: Any) -> Any:
        """Replace the value as a local edit. Returns the new value."""
        self._write(lambda _old: value, ChangeSource.LOCAL)
        return value

    def swap(self, fn: Callable[..., Any], *args, **kwargs) -> Any:
        """Atomically replace the value with ``fn(old, *args, **kwargs)``.

        ``fn`` runs while the cell lock is held, so it must not block.
        """
        _, new = self._write(lambda old: fn(old, *args, **kwargs), ChangeSource.LOCAL)
        return new

    def swap_when(self, guard: Callable[[], bool], fn: Callable[[Any], Any]) -> Tuple[bool, Any]:
        """``swap`` that only happens if ``guard()`` holds under the cell lock.

        Returns ``(True, new)`` after a write, ``(False, current)`` otherwise.
        """
        result = self._write(fn, ChangeSource.LOCAL, guard=guard)
        if result is None:
            return False, self._value
        return True, result[1]

    def apply(self, value: Any) -> Any:
        """Install a value received from a peer. Returns the previous value."""
        old, _ = self._write(lambda _old: value, ChangeSource.REMOTE)
        return old

    def add_watch(self, watch_id: Hashable, fn: CellWatcher) -> None:
        """Register ``fn(change)``; an existing watch with the same id is replaced."""
        with self._lock:
            self._watches[watch_id] = fn

    def remove_watch(self, watch_id: Hashable) -> bool:
        with self._lock:
            return self._watches.pop(watch_id, None) is not None

    def detach_watch(self, watch_id: Hashable) -> Any:
        """Remove a watch and return the value current at that moment.

        A concurrent write lands either before the removal, in which case the
        watch still sees it and the returned value includes it, or after it.
        """
        with self._lock:
            self._watches.pop(watch_id, None)
            return self._value

    def has_watch(self, watch_id: Hashable) -> bool:
        with self._lock:
            return watch_id in self._watches

    def watch_count(self) -> int:
        with self._lock:
            return len(self._watches)

    def _write(
        self,
        compute: Callable[[Any], Any],
        source: ChangeSource,
        guard: Optional[Callable[[], bool]] = None,
    ) -> Optional[Tuple[Any, Any]]:
        with self._lock:
            if guard is not None and not guard():
                return None
            old = self._value
            new = compute(old)
            self._value = new
            watchers: List[Tuple[Hashable, CellWatcher]] = list(self._watches.items())

        # Watchers run outside the lock so they may write to this cell again
        change = Change(old, new, source)
        for watch_id, fn in watchers:
            try:
                fn(change)
            except Exception as e:
                logger.error(
                    "cell_watcher_error",
                    cell=self.name,
                    watch_id=str(watch_id),
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=True,
                )

        return old, new

    def __repr__(self) -> str:
        return f"Cell(name={self.name!r}, value={self._value!r})"


__all__ = ['Cell', 'Change', 'ChangeSource', 'CellWatcher']
