"""A fixed-size history buffer."""

from typing import Generic, TypeVar

T = TypeVar("T")


class FixedSizeFIFO(Generic[T]):
    """
    Holds a fixed-size history, dropping the oldest item when full.

    The buffer is written by a single thread only (add, clear and
    get_newest). to_list() may be called from any thread at any time: every
    add() publishes a new immutable tuple by a single reference assignment,
    so readers always see a complete state, at worst without the item that
    is being added right now.
    """

    def __init__(self, max_length: int) -> None:
        """
        Initialize the FIFO.

        Args:
            max_length: maximum number of items held. Must be at least 1.
        """
        if max_length < 1:
            raise ValueError(f"max_length must be at least 1, got {max_length}")
        self._max_length = max_length
        self._items: tuple[T, ...] = ()

    @property
    def max_length(self) -> int:
        return self._max_length

    def add(self, item: T) -> None:
        """Append an item, evicting the oldest ones when the maximum length has been reached."""
        items = self._items
        if len(items) >= self._max_length:
            items = items[len(items) - self._max_length + 1 :]
        self._items = items + (item,)

    def to_list(self) -> list[T]:
        """Return a snapshot copy, oldest item first. Thread-safe."""
        return list(self._items)

    def get_newest(self) -> T | None:
        """Return the most recently added item, None if empty."""
        items = self._items
        return items[-1] if items else None

    def clear(self) -> None:
        self._items = ()

    def __len__(self) -> int:
        return len(self._items)
