"""Message id counting utilities."""
from __future__ import annotations

import threading


class MessageIdCounter:
    """Monotonically increasing message id generator.

    Ids are unique only within the lifetime of a single counter instance.
    Incrementing is guarded by a lock so a counter may be shared with
    threads outside of the event loop.

    Args:
        start: First id returned by the counter.
    """

    def __init__(self, start: int = 1) -> None:
        self._next = start
        self._lock = threading.Lock()

    def next_id(self) -> int:
        """Get the next id and advance the counter."""
        with self._lock:
            value = self._next
            self._next += 1
            return value
