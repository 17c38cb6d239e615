"""Timing counters logged at the end of a run when ``DEBUG`` is set."""
from __future__ import annotations

import os
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, Iterator, List

from logging_utils import get_logger

logger = get_logger(__name__)


def debug_enabled(environ=None) -> bool:
    env = os.environ if environ is None else environ
    return bool(str(env.get("DEBUG", "")).strip())


@dataclass
class PerfEntry:
    count: int = 0
    total_seconds: float = 0.0

    @property
    def average_ms(self) -> float:
        if self.count == 0:
            return 0.0
        return self.total_seconds * 1000.0 / self.count


class PerfCounters:
    """Thread-safe accumulated durations keyed by label."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: Dict[str, PerfEntry] = {}

    def add(self, label: str, seconds: float) -> None:
        with self._lock:
            entry = self._entries.setdefault(label, PerfEntry())
            entry.count += 1
            entry.total_seconds += seconds

    @contextmanager
    def measure(self, label: str) -> Iterator[None]:
        started = time.perf_counter()
        try:
            yield
        finally:
            self.add(label, time.perf_counter() - started)

    def snapshot(self) -> Dict[str, PerfEntry]:
        with self._lock:
            return {k: PerfEntry(v.count, v.total_seconds) for k, v in self._entries.items()}

    def lines(self) -> List[str]:
        return [
            f"{label}: {entry.count}x, total {entry.total_seconds * 1000.0:.1f}ms, avg {entry.average_ms:.1f}ms"
            for label, entry in sorted(self.snapshot().items())
        ]

    def log(self) -> None:
        for line in self.lines():
            logger.info("perf | %s", line)
