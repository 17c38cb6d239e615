"""Progress sinks for the render stages.

A reporter receives ``start_stage`` / ``report_progress`` / ``finish_stage``
events. The base class clamps every value into ``[previous, maximum]`` so
that display code never sees a regression, even when frame workers report
from several threads.
"""
from __future__ import annotations

import sys
import threading
import time
from dataclasses import dataclass
from typing import Dict, Optional, TextIO

from .models import Stage


def format_hms(seconds: float) -> str:
    if seconds < 0:
        seconds = 0
    seconds = int(round(seconds))
    h, rem = divmod(seconds, 3600)
    m, s = divmod(rem, 60)
    if h > 0:
        return f"{h:02d}:{m:02d}:{s:02d}"
    return f"{m:02d}:{s:02d}"


@dataclass
class StageProgress:
    value: float = 0
    maximum: float = 0


class ProgressReporter:
    """Base sink. Subclasses override the ``_on_*`` hooks."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._stages: Dict[Stage, StageProgress] = {}

    def start_stage(self, stage: Stage, maximum: float, label: str = "") -> None:
        with self._lock:
            self._stages[stage] = StageProgress(value=0, maximum=maximum)
            self._on_start(stage, maximum, label)

    def report_progress(self, stage: Stage, value: float, maximum: Optional[float] = None) -> None:
        with self._lock:
            state = self._stages.get(stage)
            if state is None:
                state = StageProgress(value=0, maximum=maximum if maximum is not None else value)
                self._stages[stage] = state
            limit = state.maximum if maximum is None else min(maximum, state.maximum)
            clamped = min(max(value, state.value), limit)
            if clamped == state.value and value != clamped:
                return
            state.value = clamped
            self._on_progress(stage, clamped, state.maximum)

    def finish_stage(self, stage: Stage) -> None:
        with self._lock:
            state = self._stages.get(stage)
            self._on_finish(stage, state or StageProgress())

    def packaging_progress(self, percent: float) -> None:
        self.report_progress(Stage.PACKAGING, percent, 100)

    def frame_progress(self, frames_done: int, total: int) -> None:
        self.report_progress(Stage.RENDERING_FRAMES, frames_done, total)

    def stitch_progress(self, frames_encoded: int, total: int) -> None:
        self.report_progress(Stage.STITCHING, frames_encoded, total)

    def snapshot(self) -> Dict[Stage, StageProgress]:
        with self._lock:
            return {stage: StageProgress(p.value, p.maximum) for stage, p in self._stages.items()}

    # ------------------------------------------------------------------
    def _on_start(self, stage: Stage, maximum: float, label: str) -> None:
        pass

    def _on_progress(self, stage: Stage, value: float, maximum: float) -> None:
        pass

    def _on_finish(self, stage: Stage, state: StageProgress) -> None:
        pass


class NullProgressReporter(ProgressReporter):
    pass


class ConsoleProgressReporter(ProgressReporter):
    """Text progress bar on a terminal stream."""

    def __init__(self, stream: TextIO = sys.stderr, width: int = 24, min_interval: float = 0.1) -> None:
        super().__init__()
        self.stream = stream
        self.width = width
        self.min_interval = min_interval
        self._start_time = time.time()
        self._last_render = 0.0

    def _on_start(self, stage: Stage, maximum: float, label: str) -> None:
        if label:
            self.stream.write(label + "\n")
        self._start_time = time.time()
        self._last_render = 0.0
        self._draw(stage, 0, maximum)

    def _on_progress(self, stage: Stage, value: float, maximum: float) -> None:
        now = time.time()
        # Rate-limit updates to avoid flicker (10 fps max).
        if now - self._last_render < self.min_interval and value < maximum:
            return
        self._last_render = now
        self._draw(stage, value, maximum)

    def _on_finish(self, stage: Stage, state: StageProgress) -> None:
        self._draw(stage, state.value, state.maximum)
        self.stream.write("\n")
        self.stream.flush()

    def _draw(self, stage: Stage, value: float, maximum: float) -> None:
        total = max(maximum, 0.001)
        cur = min(max(value, 0.0), total)
        frac = cur / total
        filled = int(round(self.width * frac))
        bar = "█" * filled + "·" * (self.width - filled)
        elapsed = time.time() - self._start_time
        eta = 0.0 if frac <= 0.0001 else elapsed * (1.0 / frac - 1.0)
        if stage is Stage.PACKAGING:
            counter = f"{int(frac * 100):3d}%"
            msg = f"[{bar}] {counter}"
        else:
            msg = (
                f"[{bar}] {int(frac * 100):3d}% | "
                f"{format_hms(elapsed)} | ETA {format_hms(eta)} | {int(cur)}/{int(maximum)}"
            )
        self.stream.write("\r" + msg)
        self.stream.flush()


class FrameProgressTracker:
    """Aggregate completed frames across concurrent workers.

    Workers call ``frame_done`` with the frame index they finished. The
    reported counter is the number of completed frames, bounded by ``total``
    and reported under a lock so it never goes backwards.
    """

    def __init__(self, total: int, reporter: ProgressReporter, stage: Stage = Stage.RENDERING_FRAMES) -> None:
        self.total = total
        self.reporter = reporter
        self.stage = stage
        self._lock = threading.Lock()
        self._done = set()
        self._highest_index = -1

    @property
    def completed(self) -> int:
        with self._lock:
            return len(self._done)

    @property
    def highest_index(self) -> int:
        with self._lock:
            return self._highest_index

    def frame_done(self, frame: int) -> int:
        with self._lock:
            if not 0 <= frame < self.total or frame in self._done:
                return len(self._done)
            self._done.add(frame)
            self._highest_index = max(self._highest_index, frame)
            completed = len(self._done)
            self.reporter.report_progress(self.stage, completed, self.total)
            return completed
