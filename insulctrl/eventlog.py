# insulctrl/eventlog.py
"""Bounded diagnostic log shown to the operator."""

from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterator


@dataclass(frozen=True)
class LogEntry:
    timestamp: float
    message: str

    def __str__(self) -> str:
        return f"[{datetime.fromtimestamp(self.timestamp):%H:%M:%S}] {self.message}"


class EventLog:
    """Append-only ring of :class:`LogEntry`, newest first.

    Once ``capacity`` entries are held, the oldest one is evicted.
    """

    def __init__(self, capacity: int, clock: Callable[[], float] = time.time) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self._entries: deque[LogEntry] = deque(maxlen=capacity)
        self._clock = clock

    @property
    def capacity(self) -> int:
        return self._entries.maxlen or 0

    def append(self, message: str) -> LogEntry:
        entry = LogEntry(self._clock(), message)
        self._entries.appendleft(entry)
        return entry

    def clear(self) -> None:
        self._entries.clear()

    @property
    def entries(self) -> list[LogEntry]:
        return list(self._entries)

    def __iter__(self) -> Iterator[LogEntry]:
        return iter(tuple(self._entries))

    def __len__(self) -> int:
        return len(self._entries)
