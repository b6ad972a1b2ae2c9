"""
Fixed capacity, insertion ordered history. The oldest entry is evicted
once the capacity is exceeded.
"""

from collections import deque
from typing import Generic, Iterator, List, TypeVar

T = TypeVar("T")


class BoundedHistory(Generic[T]):
    def __init__(self, max_size: int):
        if max_size < 1:
            raise ValueError(f"history capacity must be at least 1, got {max_size}")
        # deque with maxlen drops from the left on append
        self._items = deque(maxlen=max_size)

    @property
    def max_size(self) -> int:
        return self._items.maxlen

    def push(self, item: T) -> None:
        self._items.append(item)

    def resize(self, max_size: int) -> None:
        """Changes the capacity, keeping the newest entries that still fit."""
        if max_size < 1:
            raise ValueError(f"history capacity must be at least 1, got {max_size}")
        self._items = deque(self._items, maxlen=max_size)

    def clear(self) -> None:
        self._items.clear()

    def to_list(self) -> List[T]:
        return list(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[T]:
        return iter(self._items)

    def __repr__(self):
        return f"BoundedHistory({len(self._items)}/{self.max_size})"
