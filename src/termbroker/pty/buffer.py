"""Scrollback buffer for terminal sessions."""

from __future__ import annotations

import threading


class ScrollbackBuffer:
    """Thread-safe bounded byte ring holding a session's recent output.

    Output is stored as raw bytes (ANSI sequences and partial UTF-8
    included) so that a replay reproduces exactly what the process wrote.
    Once ``capacity`` bytes are retained, each append discards the oldest
    bytes to make room.
    """

    def __init__(self, capacity: int = 50 * 1024) -> None:
        if capacity <= 0:
            raise ValueError(f"capacity must be positive, got {capacity}")
        self._capacity = capacity
        self._data = bytearray()
        self._total_bytes: int = 0  # Total bytes ever appended
        self._lock = threading.Lock()

    def append(self, data: bytes) -> None:
        """Append output, dropping the oldest bytes beyond capacity."""
        if not data:
            return
        with self._lock:
            self._total_bytes += len(data)
            if len(data) >= self._capacity:
                self._data = bytearray(data[-self._capacity :])
                return
            self._data += data
            overflow = len(self._data) - self._capacity
            if overflow > 0:
                del self._data[:overflow]

    def snapshot(self) -> bytes:
        """Return the retained bytes, oldest first."""
        with self._lock:
            return bytes(self._data)

    def read_tail(self, n: int = 500) -> bytes:
        """Return the last ``n`` retained bytes."""
        with self._lock:
            return bytes(self._data[-n:]) if n > 0 else b""

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def size(self) -> int:
        """Number of bytes currently retained."""
        with self._lock:
            return len(self._data)

    @property
    def total_bytes(self) -> int:
        """Number of bytes ever appended."""
        with self._lock:
            return self._total_bytes

    def clear(self) -> None:
        """Clear the buffer."""
        with self._lock:
            self._data.clear()
            self._total_bytes = 0
