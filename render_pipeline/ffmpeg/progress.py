from __future__ import annotations

from typing import Callable, Optional


class ProgressParser:
    """Parse `-progress pipe:1` key=value pairs and report encoded frames."""

    def __init__(
        self,
        on_frame: Callable[[int], None],
        on_time: Optional[Callable[[float], None]] = None,
    ) -> None:
        self.on_frame = on_frame
        self.on_time = on_time
        self.finished = False

    def feed_line(self, line: str) -> None:
        line = line.strip()
        if not line or "=" not in line:
            return
        key, value = line.split("=", 1)
        if key == "frame":
            try:
                self.on_frame(int(value))
            except ValueError:
                pass
        elif key == "out_time_ms" and self.on_time is not None:
            try:
                self.on_time(int(value) / 1000000.0)
            except ValueError:
                pass
        elif key == "progress" and value.strip() == "end":
            self.finished = True
