"""
Named-reference registry.

Keys map either to a concrete value (held in a ``Cell``) or to a ``Ref``
pointing at another key. References are resolved transitively and change
notifications travel along reference chains:

    registry.register("impl/console", console_fn)
    registry.register("impl/remote", remote_fn)
    registry.register("telemetry/log-fn", Ref("impl/console"))

    registry.resolve_ref("telemetry/log-fn")      # -> console_fn
    registry.set_ref("telemetry/log-fn", "impl/remote")
    registry.resolve_ref("telemetry/log-fn")      # -> remote_fn

The reference graph is kept as a forward map (key -> target) and a reverse
index (target -> dependent keys). A write at a concrete key walks the reverse
index to reach every resolved-watch that depends on it.
"""

import re
import threading
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Hashable, List, Optional, Set

from .cell import Cell, Change
from .utils.errors import (
    CycleError,
    DuplicateKeyError,
    InvalidKeyError,
    KeyNotFoundError,
)
from .utils.logging import get_logger


logger = get_logger("statesync.registry")

# category/name or category.sub/name, e.g. "state/user-prefs"
CATEGORY_NAME_PATTERN = r"[a-z][a-z0-9]*(\.[a-z][a-z0-9]*)*/[a-z][a-z0-9-]*"

_PROPAGATE_WATCH = "statesync.registry/propagate"

Listener = Callable[[Any, Any], Any]


class _Unresolved:
    """Placeholder passed to resolved-watches when a chain cannot be resolved."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNRESOLVED"

    def __bool__(self) -> bool:
        return False


UNRESOLVED = _Unresolved()


@dataclass(frozen=True)
class Ref:
    """An indirection to another registry key."""
    target: str


class _Entry:
    __slots__ = ("key", "cell", "target", "watches", "resolved_watches")

    def __init__(self, key: str):
        self.key = key
        self.cell: Optional[Cell] = None
        self.target: Optional[str] = None
        self.watches: Dict[Hashable, Listener] = {}
        self.resolved_watches: Dict[Hashable, Listener] = {}

    @property
    def stored(self) -> Any:
        if self.target is not None:
            return Ref(self.target)
        return self.cell.get()


class Registry:
    """Registry of named values and references.

    Each concrete entry owns a ``Cell`` whose lock serializes writes to that
    key. The registry lock guards the key table and the reference graph.
    Lock order is registry lock, then cell lock. Listeners always run after
    both are released, on the thread that made the change.
    """

    def __init__(self, name_pattern: Optional[str] = None):
        """Initialize registry

        Args:
            name_pattern: Optional regex every key must fully match
        """
        self.name_pattern = name_pattern
        self._pattern = re.compile(name_pattern) if name_pattern else None
        self._lock = threading.RLock()
        self._entries: Dict[str, _Entry] = {}
        self._refs: Dict[str, str] = {}
        self._dependents: Dict[str, Set[str]] = defaultdict(set)

    # Registration

    def register(self, key: str, value: Any = None) -> Optional[Cell]:
        """Create ``key`` holding ``value`` (or a ``Ref``).

        Returns the backing cell for concrete values, ``None`` for references.
        """
        self._validate_key(key)
        if isinstance(value, Ref):
            self._validate_key(value.target)

        with self._lock:
            if key in self._entries:
                raise DuplicateKeyError(key)
            entry = self._create_entry(key, value)

        logger.debug(
            "registry_key_registered",
            key=key,
            reference=entry.target,
        )
        return entry.cell

    def ensure(self, key: str, default: Any = None) -> Any:
        """Create ``key`` with ``default`` unless present; return its stored value."""
        self._validate_key(key)
        if isinstance(default, Ref):
            self._validate_key(default.target)

        with self._lock:
            entry = self._entries.get(key)
            if entry is not None:
                return entry.stored
            self._create_entry(key, default)

        logger.debug("registry_key_ensured", key=key)
        return default

    # Read

    def get_value(self, key: str) -> Any:
        """Stored value of ``key``; a ``Ref`` for reference keys."""
        with self._lock:
            return self._require(key).stored

    def get_ref(self, key: str) -> Optional[str]:
        """Target of a reference key, ``None`` for concrete keys."""
        with self._lock:
            return self._require(key).target

    def resolve_ref(self, key: str) -> Any:
        """Follow references from ``key`` to a concrete value.

        Raises:
            KeyNotFoundError: a key in the chain is not registered
            CycleError: the chain revisits a key
        """
        with self._lock:
            return self._resolve_entry(key).cell.get()

    def cell(self, key: str) -> Cell:
        """The cell backing ``key``, following references.

        The lookup happens once; later re-pointing does not rebind the cell.
        """
        with self._lock:
            return self._resolve_entry(key).cell

    # Write

    def set_value(self, key: str, value: Any) -> Any:
        """Store a concrete value, replacing any reference held by ``key``."""
        self._check_concrete(value)
        return self._write_value(key, lambda _old: value)

    def swap_value(self, key: str, fn: Callable[..., Any], *args) -> Any:
        """Atomically store ``fn(old, *args)``; returns the new value."""
        return self._write_value(key, lambda old: self._check_concrete(fn(old, *args)))

    def set_ref(self, key: str, target: str) -> str:
        """Point ``key`` at ``target``. The target may be registered later."""
        return self._write_ref(key, lambda _old: target)

    def swap_ref(self, key: str, fn: Callable[..., str], *args) -> str:
        """Atomically point ``key`` at ``fn(old_target, *args)``."""
        return self._write_ref(key, lambda old: fn(old, *args))

    # Discovery

    def registered(self, key: str) -> bool:
        self._validate_key(key)
        with self._lock:
            return key in self._entries

    def list_registered(self) -> Set[str]:
        with self._lock:
            return set(self._entries)

    def list_registered_prefix(self, prefix: str) -> Set[str]:
        with self._lock:
            return {key for key in self._entries if key.startswith(prefix)}

    # Cleanup

    def unregister(self, key: str) -> bool:
        """Remove ``key`` and detach its listeners. Returns False if absent.

        References pointing at ``key`` are kept and resolve again once the
        key is registered anew.
        """
        with self._lock:
            entry = self._entries.pop(key, None)
            if entry is None:
                return False
            self._detach(entry)

        logger.debug("registry_key_unregistered", key=key)
        return True

    def unregister_prefix(self, prefix: str) -> int:
        """Remove every key starting with ``prefix``; returns how many."""
        with self._lock:
            keys = [key for key in self._entries if key.startswith(prefix)]
            for key in keys:
                self._detach(self._entries.pop(key))

        logger.debug("registry_prefix_unregistered", prefix=prefix, count=len(keys))
        return len(keys)

    # Watches

    def watch(self, key: str, watch_id: Hashable, fn: Listener) -> None:
        """Call ``fn(old, new)`` whenever the stored value of ``key`` changes."""
        with self._lock:
            self._require(key).watches[watch_id] = fn

    def watch_resolved(self, key: str, watch_id: Hashable, fn: Listener) -> None:
        """Call ``fn(old_resolved, new_resolved)`` whenever the resolved value
        of ``key`` may have changed, including writes at the end of its chain."""
        with self._lock:
            self._require(key).resolved_watches[watch_id] = fn

    def unwatch(self, key: str, watch_id: Hashable) -> bool:
        with self._lock:
            entry = self._require(key)
            removed = entry.watches.pop(watch_id, None) is not None
            removed = entry.resolved_watches.pop(watch_id, None) is not None or removed
            return removed

    def dependents(self, key: str) -> Set[str]:
        """Every reference key that resolves through ``key``."""
        with self._lock:
            return self._dependent_closure(key) - {key}

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    # Internals

    def _validate_key(self, key: Any) -> None:
        if not isinstance(key, str) or not key:
            raise InvalidKeyError(key)
        if self._pattern is not None and not self._pattern.fullmatch(key):
            raise InvalidKeyError(key, self.name_pattern)

    @staticmethod
    def _check_concrete(value: Any) -> Any:
        if isinstance(value, Ref):
            raise TypeError("Use set_ref/swap_ref to store a reference")
        return value

    def _require(self, key: str) -> _Entry:
        entry = self._entries.get(key)
        if entry is None:
            raise KeyNotFoundError(key)
        return entry

    def _create_entry(self, key: str, value: Any) -> _Entry:
        entry = _Entry(key)
        if isinstance(value, Ref):
            self._check_cycle(key, value.target)
            entry.target = value.target
            self._link(key, value.target)
        else:
            self._attach_cell(entry, Cell(value, name=key))
        self._entries[key] = entry
        return entry

    def _attach_cell(self, entry: _Entry, cell: Cell) -> None:
        entry.cell = cell
        cell.add_watch(_PROPAGATE_WATCH, lambda change: self._on_cell_change(entry, change))

    def _detach(self, entry: _Entry) -> None:
        entry.watches.clear()
        entry.resolved_watches.clear()
        if entry.cell is not None:
            entry.cell.remove_watch(_PROPAGATE_WATCH)
        else:
            self._unlink(entry.key)

    def _link(self, key: str, target: str) -> None:
        self._refs[key] = target
        self._dependents[target].add(key)

    def _unlink(self, key: str) -> None:
        target = self._refs.pop(key, None)
        if target is None:
            return
        dependents = self._dependents.get(target)
        if dependents is not None:
            dependents.discard(key)
            if not dependents:
                del self._dependents[target]

    def _check_cycle(self, key: str, target: str) -> None:
        chain = [key, target]
        seen = {key}
        current = target
        while current not in seen:
            seen.add(current)
            current = self._refs.get(current)
            if current is None:
                return
            chain.append(current)
        raise CycleError(chain)

    def _resolve_entry(self, key: str) -> _Entry:
        chain: List[str] = []
        seen: Set[str] = set()
        current = key
        while True:
            entry = self._entries.get(current)
            if entry is None:
                raise KeyNotFoundError(current)
            if entry.target is None:
                return entry
            chain.append(current)
            seen.add(current)
            current = entry.target
            if current in seen:
                raise CycleError(chain + [current])

    def _resolve_quiet(self, key: str) -> Any:
        try:
            return self._resolve_entry(key).cell.get()
        except (KeyNotFoundError, CycleError):
            return UNRESOLVED

    def _dependent_closure(self, key: str) -> Set[str]:
        seen = {key}
        pending = [key]
        while pending:
            for dependent in self._dependents.get(pending.pop(), ()):
                if dependent not in seen:
                    seen.add(dependent)
                    pending.append(dependent)
        return seen

    def _resolved_listeners(self, key: str) -> List[Listener]:
        listeners: List[Listener] = []
        for affected in self._dependent_closure(key):
            entry = self._entries.get(affected)
            if entry is not None:
                listeners.extend(entry.resolved_watches.values())
        return listeners

    def _on_cell_change(self, entry: _Entry, change: Change) -> None:
        # Only writes committed while the cell was attached to entry get here
        key = entry.key
        with self._lock:
            if self._entries.get(key) is not entry:
                return
            direct = list(entry.watches.values())
            resolved = self._resolved_listeners(key)

        self._notify(key, direct, change.old, change.new)
        self._notify(key, resolved, change.old, change.new)

    def _write_value(self, key: str, compute: Callable[[Any], Any]) -> Any:
        while True:
            with self._lock:
                entry = self._require(key)
                cell = entry.cell
                if cell is None:
                    old = entry.stored
                    old_resolved = self._resolve_quiet(key)
                    new = compute(old)
                    self._unlink(key)
                    entry.target = None
                    self._attach_cell(entry, Cell(new, name=key))
                    direct = list(entry.watches.values())
                    resolved = self._resolved_listeners(key)
                    break

            # The registry lock is released here; detaching takes the cell lock,
            # so the guard and the write see the same attachment
            written, new = cell.swap_when(lambda: cell.has_watch(_PROPAGATE_WATCH), compute)
            if written:
                return new
            logger.debug("registry_write_retried", key=key)

        self._notify(key, direct, old, new)
        self._notify(key, resolved, old_resolved, new)
        return new

    def _write_ref(self, key: str, compute: Callable[[Optional[str]], str]) -> str:
        with self._lock:
            entry = self._require(key)
            target = compute(entry.target)
            self._validate_key(target)
            self._check_cycle(key, target)

            if entry.cell is not None:
                old = old_resolved = entry.cell.detach_watch(_PROPAGATE_WATCH)
                entry.cell = None
            else:
                old = entry.stored
                old_resolved = self._resolve_quiet(key)
                self._unlink(key)
            entry.target = target
            self._link(key, target)
            new_resolved = self._resolve_quiet(key)

            direct = list(entry.watches.values())
            resolved = self._resolved_listeners(key)

        logger.debug("registry_reference_set", key=key, target=target)
        self._notify(key, direct, old, Ref(target))
        self._notify(key, resolved, old_resolved, new_resolved)
        return target

    @staticmethod
    def _notify(key: str, listeners: List[Listener], old: Any, new: Any) -> None:
        for fn in listeners:
            try:
                fn(old, new)
            except Exception as e:
                logger.error(
                    "registry_listener_error",
                    key=key,
                    listener=getattr(fn, '__name__', repr(fn)),
                    error=str(e),
                    exc_info=True,
                )


def build_registry(config: Any = None) -> Registry:
    """Create a registry from a ``StateSyncConfig`` or ``RegistryConfig``."""
    if config is None:
        return Registry()
    registry_config = getattr(config, "registry", config)
    return Registry(name_pattern=registry_config.name_pattern)


__all__ = [
    'Registry',
    'Ref',
    'UNRESOLVED',
    'CATEGORY_NAME_PATTERN',
    'build_registry',
]
