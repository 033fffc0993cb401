"""Activity log, request counter and the periodic stats collector."""

from __future__ import annotations

import asyncio
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from config import CONFIG, Config
from errors import MemoryClientError
from models import MemoryStats
from utils import log, to_iso, utc_now


@dataclass
class ActivityEntry:
    operation: str
    details: str
    success: bool
    timestamp: datetime = field(default_factory=utc_now)

    def as_dict(self) -> dict[str, Any]:
        return {
            "timestamp": to_iso(self.timestamp),
            "operation": self.operation,
            "details": self.details,
            "success": self.success,
        }


class ActivityLog:
    """Bounded log of recent operations, oldest entries dropped first."""

    def __init__(self, size: int = CONFIG.activity_log_size):
        self._entries: deque[ActivityEntry] = deque(maxlen=size)
        self._requests = 0
        self._lock = threading.Lock()

    def record(self, operation: str, details: str = "", success: bool = True) -> None:
        with self._lock:
            self._entries.append(ActivityEntry(operation, details, success))
            self._requests += 1

    def recent(self, limit: int | None = None) -> list[dict[str, Any]]:
        """Newest first."""
        with self._lock:
            entries = list(self._entries)
        entries.reverse()
        return [e.as_dict() for e in entries[:limit]]

    @property
    def request_count(self) -> int:
        with self._lock:
            return self._requests


class StatsCollector:
    """Samples collection statistics into a fixed-size ring buffer."""

    def __init__(self, sampler: Callable[[], MemoryStats], config: Config = CONFIG):
        self._sampler = sampler
        self.interval = config.stats_interval
        self._history: deque[MemoryStats] = deque(maxlen=config.stats_history_size)
        self._lock = threading.Lock()

    def sample(self) -> MemoryStats:
        stats = self._sampler()
        with self._lock:
            self._history.append(stats)
        return stats

    def latest(self) -> MemoryStats | None:
        with self._lock:
            return self._history[-1] if self._history else None

    def history(self) -> list[MemoryStats]:
        """Oldest first."""
        with self._lock:
            return list(self._history)

    async def run(self, stop: asyncio.Event | None = None) -> None:
        """Sample every ``interval`` seconds until ``stop`` is set or the task is cancelled."""
        stop = stop or asyncio.Event()
        while not stop.is_set():
            try:
                await asyncio.to_thread(self.sample)
            except MemoryClientError as e:
                log(f"Stats collection error: {e}")
            except Exception as e:
                log(f"Unexpected stats collection error: {e!r}")
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
