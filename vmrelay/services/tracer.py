"""Bounded in-memory ledger of remote execution attempts."""

from __future__ import annotations

import itertools
import threading
from collections import deque

from vmrelay.models.trace import TraceEntry

TRACE_COMMAND_MAX = 16 * 1024
TRACE_OUTPUT_MAX = 64 * 1024
TRACE_ERROR_MAX = 8 * 1024


def truncate_text(text: str, max_len: int) -> str:
    if len(text) <= max_len:
        return text
    return text[: max(max_len - 1, 0)] + "…"


class CommandTracer:
    """Ring buffer of :class:`TraceEntry`, newest first.

    ``record`` is called from coroutines and from transport worker threads
    (late results of timed-out calls), so the buffer is guarded by a plain
    threading lock.  Once ``capacity`` is reached the oldest entry is dropped.
    """

    def __init__(self, capacity: int = 200) -> None:
        if capacity < 1:
            raise ValueError("trace capacity must be positive")
        self._capacity = capacity
        self._entries: deque[TraceEntry] = deque(maxlen=capacity)
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    @property
    def capacity(self) -> int:
        return self._capacity

    def record(self, entry: TraceEntry) -> int:
        stored = entry.model_copy(
            update={
                "command": truncate_text(entry.command, TRACE_COMMAND_MAX),
                "output": truncate_text(entry.output, TRACE_OUTPUT_MAX),
                "error": (
                    truncate_text(entry.error, TRACE_ERROR_MAX)
                    if entry.error is not None
                    else None
                ),
                "duration_ms": max(entry.duration_ms, 0),
            },
        )
        with self._lock:
            stored.sequence_id = next(self._ids)
            self._entries.appendleft(stored)
            return stored.sequence_id

    def list(self) -> list[TraceEntry]:
        with self._lock:
            return list(self._entries)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
