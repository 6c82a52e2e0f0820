from __future__ import annotations

from collections import deque
from itertools import islice
from typing import Deque, Iterable, Iterator, Optional, Tuple

from ..binance.api import Candle


class BoundedWindow:
    """Fixed-capacity FIFO of candles, oldest first.

    Push and head eviction are O(1) (deque with maxlen).
    """

    __slots__ = ("_items", "_capacity")

    def __init__(self, capacity: int, candles: Optional[Iterable[Candle]] = None):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self._capacity = capacity
        self._items: Deque[Candle] = deque(maxlen=capacity)
        if candles is not None:
            self._items.extend(candles)

    @property
    def capacity(self) -> int:
        return self._capacity

    def push(self, candle: Candle) -> Optional[Candle]:
        """Append at the tail; returns the evicted head candle, if any."""
        evicted = self._items[0] if len(self._items) == self._capacity else None
        self._items.append(candle)
        return evicted

    def snapshot(self) -> Tuple[Candle, ...]:
        """Point-in-time ordered view; later pushes do not affect it."""
        return tuple(self._items)

    def tail(self, n: int) -> Tuple[Candle, ...]:
        if n <= 0:
            return ()
        start = max(len(self._items) - n, 0)
        return tuple(islice(self._items, start, None))

    @property
    def latest(self) -> Optional[Candle]:
        return self._items[-1] if self._items else None

    @property
    def oldest(self) -> Optional[Candle]:
        return self._items[0] if self._items else None

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[Candle]:
        return iter(self._items)

    def __repr__(self) -> str:
        return f"BoundedWindow(len={len(self._items)}, capacity={self._capacity})"
