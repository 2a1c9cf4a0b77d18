# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Bounded FIFO buffer for observation records.

Single writer per buffer.  Readers get a shallow tuple snapshot, never the
live deque, so iteration is safe while the producer keeps appending.
"""

from __future__ import annotations

import time
from collections import deque
from collections.abc import Callable, Iterator
from typing import Generic, TypeVar

T = TypeVar("T")


class BufferView(Generic[T]):
    """Lazy, finite, restartable view over a buffer snapshot.

    Each ``iter()`` walks the same snapshot again; records appended to the
    buffer after the view was created are not visible.
    """

    __slots__ = ("_items", "_predicate")

    def __init__(self, items: tuple[T, ...], predicate: Callable[[T], bool] | None = None) -> None:
        self._items = items
        self._predicate = predicate

    def __iter__(self) -> Iterator[T]:
        if self._predicate is None:
            return iter(self._items)
        return (item for item in self._items if self._predicate(item))

    def __len__(self) -> int:
        if self._predicate is None:
            return len(self._items)
        return sum(1 for _ in self)

    def __bool__(self) -> bool:
        return any(True for _ in self)

    def to_list(self) -> list[T]:
        return list(self)


class RingBuffer(Generic[T]):
    """Fixed-capacity FIFO: appending past capacity evicts the oldest record."""

    def __init__(
        self,
        capacity: int,
        *,
        timestamp_of: Callable[[T], float] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self._items: deque[T] = deque(maxlen=capacity)
        self._timestamp_of = timestamp_of or (lambda item: getattr(item, "timestamp", 0.0))
        self._clock = clock
        self._evictions = 0

    @property
    def capacity(self) -> int:
        return self._items.maxlen or 0

    @property
    def evictions(self) -> int:
        return self._evictions

    def __len__(self) -> int:
        return len(self._items)

    def push(self, item: T) -> None:
        if len(self._items) == self._items.maxlen:
            self._evictions += 1
        self._items.append(item)

    def extend(self, items: list[T]) -> None:
        for item in items:
            self.push(item)

    def snapshot(self) -> tuple[T, ...]:
        """Shallow copy, oldest first."""
        return tuple(self._items)

    def recent(self, count: int) -> list[T]:
        if count <= 0:
            return []
        return list(self._items)[-count:]

    def window(self, seconds: float | None = None) -> BufferView[T]:
        """Records newer than ``seconds`` ago; None means the whole buffer."""
        items = self.snapshot()
        if seconds is None:
            return BufferView(items)
        cutoff = self._clock() - seconds
        timestamp_of = self._timestamp_of
        return BufferView(items, lambda item: timestamp_of(item) >= cutoff)

    def clear(self) -> None:
        self._items.clear()
