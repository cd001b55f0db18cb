"""Stable integer IDs for captured console records."""

from __future__ import annotations

import threading

MAX_SAFE_INTEGER = 2**53 - 1


class IdGenerator:
    """Hands out 1, 2, 3, ... and resumes at 1 instead of reaching ``limit``.

    One generator serves a whole monitoring session, so console messages and
    exceptions share a single increasing sequence.
    """

    def __init__(self, start: int = 1, limit: int = MAX_SAFE_INTEGER) -> None:
        if start < 1 or start >= limit:
            raise ValueError(f"start must be in [1, {limit}), got {start}")
        self._next = start
        self._limit = limit
        self._lock = threading.Lock()

    def __call__(self) -> int:
        with self._lock:
            if self._next >= self._limit:
                self._next = 1
            value = self._next
            self._next += 1
            return value

    def peek(self) -> int:
        """The ID the next call will return."""
        with self._lock:
            return 1 if self._next >= self._limit else self._next
