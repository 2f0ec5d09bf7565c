"""
Bounded seen-set for push reconciliation.

Remembers the most recent dedup keys reported for one address so
a burst of push events does not re-probe storage for records that
were just handled. Oldest entries are evicted first; an evicted key
simply falls through to the durable dedup check.
"""

from collections import deque
from typing import Hashable, Iterable


class BoundedSeenSet:
    """Insertion-ordered set with a fixed capacity."""

    def __init__(self, capacity: int = 1000) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self._capacity = capacity
        self._items: set = set()
        self._order: deque = deque()

    @property
    def capacity(self) -> int:
        return self._capacity

    def add(self, item: Hashable) -> None:
        if item in self._items:
            return
        self._items.add(item)
        self._order.append(item)
        while len(self._order) > self._capacity:
            self._items.discard(self._order.popleft())

    def update(self, items: Iterable[Hashable]) -> None:
        for item in items:
            self.add(item)

    def clear(self) -> None:
        self._items.clear()
        self._order.clear()

    def __contains__(self, item: object) -> bool:
        return item in self._items

    def __len__(self) -> int:
        return len(self._items)
