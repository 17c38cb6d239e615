from __future__ import annotations

import os
from typing import Optional

from .errors import ConfigurationError


def detect_cpu_count() -> int:
    return max(1, os.cpu_count() or 1)


def resolve_concurrency(requested: Optional[int], cpu_count: Optional[int] = None) -> int:
    """Return the number of frames rendered in parallel.

    Unset means half of the logical processors, never less than one. An
    explicit value must lie between 1 and the processor count.
    """
    cores = cpu_count if cpu_count is not None else detect_cpu_count()
    cores = max(1, int(cores))
    if requested is None:
        return max(1, cores // 2)
    if isinstance(requested, bool) or not isinstance(requested, int):
        raise ConfigurationError(f"Concurrency must be an integer, got {requested!r}")
    if requested < 1:
        raise ConfigurationError(f"Concurrency must be at least 1. Passed: {requested}")
    if requested > cores:
        raise ConfigurationError(
            f"Maximum for concurrency is {cores} (number of logical processors on this system). Passed: {requested}"
        )
    return requested


def describe_concurrency(concurrency: int) -> str:
    return f"{concurrency}x concurrency"
