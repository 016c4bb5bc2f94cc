"""
Tests for observable state cells.
"""

import threading

import pytest

from statesync.cell import Cell, Change, ChangeSource


class TestCell:
    """Test cell reads and writes."""

    def test_reset_and_get(self):
        cell = Cell(1)
        assert cell.reset(2) == 2
        assert cell.get() == 2
        assert cell.value == 2

    def test_swap_applies_function(self):
        cell = Cell(10)
        assert cell.swap(lambda v, n: v + n, 5) == 15
        assert cell.swap(lambda v, n=0: v * n, n=2) == 30

    def test_apply_returns_previous_value(self):
        cell = Cell("old")
        assert cell.apply("new") == "old"
        assert cell.get() == "new"

    def test_concurrent_swaps_are_atomic(self):
        cell = Cell(0)

        def bump():
            for _ in range(500):
                cell.swap(lambda v: v + 1)

        threads = [threading.Thread(target=bump) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert cell.get() == 2000

    def test_swap_when_guard_holds(self):
        cell = Cell(1)
        changes = []
        cell.add_watch("w", changes.append)

        assert cell.swap_when(lambda: True, lambda v: v + 1) == (True, 2)
        assert changes == [Change(1, 2, ChangeSource.LOCAL)]

    def test_swap_when_guard_fails(self):
        cell = Cell(1)
        changes = []
        cell.add_watch("w", changes.append)

        assert cell.swap_when(lambda: False, lambda v: v + 1) == (False, 1)
        assert cell.get() == 1
        assert changes == []


class TestCellWatches:
    """Test change notification."""

    def test_watch_receives_local_change(self):
        cell = Cell(1)
        changes = []
        cell.add_watch("w", changes.append)

        cell.reset(2)

        assert changes == [Change(1, 2, ChangeSource.LOCAL)]

    def test_apply_is_tagged_remote(self):
        cell = Cell(1)
        changes = []
        cell.add_watch("w", changes.append)

        cell.apply(5)

        assert changes[0].source is ChangeSource.REMOTE
        assert changes[0].new == 5

    def test_unchanged_write_still_notifies(self):
        cell = Cell(3)
        changes = []
        cell.add_watch("w", changes.append)

        cell.reset(3)

        assert len(changes) == 1
        assert not changes[0].changed

    def test_same_id_replaces_watch(self):
        cell = Cell(0)
        first, second = [], []
        cell.add_watch("w", first.append)
        cell.add_watch("w", second.append)

        cell.reset(1)

        assert first == []
        assert len(second) == 1
        assert cell.watch_count() == 1

    def test_remove_watch(self):
        cell = Cell(0)
        changes = []
        cell.add_watch("w", changes.append)

        assert cell.has_watch("w")
        assert cell.remove_watch("w") is True
        assert cell.remove_watch("w") is False
        assert not cell.has_watch("w")

        cell.reset(1)
        assert changes == []

    def test_detach_watch_returns_current_value(self):
        cell = Cell(0)
        changes = []
        cell.add_watch("w", changes.append)
        cell.reset(3)

        assert cell.detach_watch("w") == 3
        assert not cell.has_watch("w")

        cell.reset(4)
        assert changes == [Change(0, 3, ChangeSource.LOCAL)]

    def test_failing_watcher_does_not_block_others(self):
        cell = Cell(0)
        seen = []

        def broken(change):
            raise RuntimeError("boom")

        cell.add_watch("broken", broken)
        cell.add_watch("ok", seen.append)

        assert cell.reset(1) == 1
        assert len(seen) == 1

    def test_watcher_may_write_back(self):
        cell = Cell(0)

        def clamp(change):
            if change.new > 10:
                cell.reset(10)

        cell.add_watch("clamp", clamp)
        cell.reset(50)

        assert cell.get() == 10
