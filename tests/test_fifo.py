"""Tests for the fixed-size history buffer."""

import threading

import pytest

from webmon.fifo import FixedSizeFIFO


class TestFixedSizeFIFO:
    """Tests for FixedSizeFIFO."""

    def test_empty(self):
        """Test a new FIFO is empty."""
        fifo: FixedSizeFIFO[int] = FixedSizeFIFO(3)
        assert fifo.to_list() == []
        assert fifo.get_newest() is None
        assert len(fifo) == 0

    def test_keeps_last_items_in_insertion_order(self):
        """Test the FIFO holds min(N, C) items, the last C added, oldest first."""
        for count in range(0, 10):
            fifo: FixedSizeFIFO[int] = FixedSizeFIFO(4)
            for i in range(count):
                fifo.add(i)
            expected = list(range(count))[-4:]
            assert fifo.to_list() == expected
            assert len(fifo) == min(count, 4)
            assert fifo.get_newest() == (count - 1 if count else None)

    def test_clear(self):
        """Test clear() empties the FIFO."""
        fifo: FixedSizeFIFO[str] = FixedSizeFIFO(2)
        fifo.add("a")
        fifo.add("b")
        fifo.clear()
        assert fifo.to_list() == []
        assert fifo.get_newest() is None

    def test_to_list_returns_copy(self):
        """Test mutating the snapshot does not affect the FIFO."""
        fifo: FixedSizeFIFO[int] = FixedSizeFIFO(2)
        fifo.add(1)
        snapshot = fifo.to_list()
        snapshot.append(99)
        assert fifo.to_list() == [1]

    def test_invalid_length(self):
        """Test a FIFO needs room for at least one item."""
        with pytest.raises(ValueError):
            FixedSizeFIFO(0)

    def test_concurrent_readers_see_consistent_snapshots(self):
        """Test to_list() from another thread always sees a contiguous run of added items."""
        fifo: FixedSizeFIFO[int] = FixedSizeFIFO(5)
        stop = threading.Event()
        errors = []

        def reader():
            while not stop.is_set():
                items = fifo.to_list()
                if not items:
                    continue
                if len(items) > 5 or items != list(range(items[0], items[0] + len(items))):
                    errors.append(items)

        thread = threading.Thread(target=reader, daemon=True)
        thread.start()
        for i in range(20000):
            fifo.add(i)
        stop.set()
        thread.join(5)
        assert errors == []
