"""Fixed-capacity ring buffer."""

from __future__ import annotations

import threading
from typing import Generic, TypeVar

T = TypeVar("T")


class CircularBuffer(Generic[T]):
    """Thread-safe circular buffer keeping the most recently added values."""

    def __init__(self, capacity: int) -> None:
        if capacity <= 0:
            raise ValueError(f"Buffer capacity must be positive, got {capacity}")
        self._buf: list[T | None] = [None] * capacity
        self._capacity = capacity
        self._size = 0
        self._ptr = 0
        self._lock = threading.Lock()

    def add(self, value: T) -> bool:
        """Add a value, overwriting the oldest one when full. Returns True if it overwrote."""
        with self._lock:
            overwrote = self._size == self._capacity
            if not overwrote:
                self._size += 1
            self._buf[self._ptr] = value
            self._ptr = (self._ptr + 1) % self._capacity
            return overwrote

    def append(self, *values: T) -> bool:
        """Add several values in order. Returns True if any existing value was overwritten."""
        with self._lock:
            overwrote = self._size + len(values) > self._capacity
            self._size = min(self._size + len(values), self._capacity)
            for value in values:
                self._buf[self._ptr] = value
                self._ptr = (self._ptr + 1) % self._capacity
            return overwrote

    def get(self) -> list[T]:
        """Return the buffered values, oldest first."""
        with self._lock:
            start = (self._ptr - self._size) % self._capacity
            return [self._buf[(start + i) % self._capacity] for i in range(self._size)]  # type: ignore[misc]

    def clear(self) -> None:
        with self._lock:
            self._size = 0
            self._ptr = 0

    @property
    def size(self) -> int:
        with self._lock:
            return self._size

    @property
    def capacity(self) -> int:
        return self._capacity

    def is_full(self) -> bool:
        with self._lock:
            return self._size == self._capacity

    def __len__(self) -> int:
        return self.size
