from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from logging_utils import get_logger

from .progress import ProgressParser

logger = get_logger(__name__)


def _pretty(cmd: Sequence[str]) -> str:
    return " ".join(a if " " not in a else f"'{a}'" for a in cmd)


def _log_stderr_tail(stderr: str) -> None:
    for line in (stderr or "").splitlines()[-50:]:
        logger.error("ffmpeg: %s", line)


def run_ffmpeg_stream(
    args: Sequence[str],
    *,
    on_frame: Optional[Callable[[int], None]] = None,
    ffmpeg_path: str = "ffmpeg",
    cwd: Optional[Path] = None,
) -> None:
    """Run ffmpeg with `-progress pipe:1` and stream encoded frame counts.

    Calls `on_frame(frames_encoded)` for every `frame=` line ffmpeg emits.
    """
    full_args: List[str] = [
        ffmpeg_path,
        "-hide_banner",
        "-loglevel",
        "error",
        "-nostats",
        "-progress",
        "pipe:1",
    ] + list(args)
    logger.debug("FFmpeg(stream): %s", _pretty(full_args))

    parser = ProgressParser(on_frame=lambda frame: on_frame(frame) if on_frame else None)

    proc = subprocess.Popen(
        full_args,
        cwd=str(cwd) if cwd else None,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        bufsize=1,
    )
    assert proc.stdout is not None
    try:
        for line in proc.stdout:
            parser.feed_line(line)
    finally:
        proc.wait()
    if proc.returncode != 0:
        err = proc.stderr.read() if proc.stderr else ""
        _log_stderr_tail(err)
        raise RuntimeError(f"ffmpeg failed with exit code {proc.returncode}")


def capture_ffmpeg_info(args: Sequence[str], *, ffmpeg_path: str = "ffmpeg") -> str:
    """Run an informational ffmpeg command (`-buildconf`, `-version`).

    ffmpeg prints these through its logger, i.e. on stderr, so both streams
    are returned together.
    """
    cmd: List[str] = [ffmpeg_path, "-hide_banner"] + list(args)
    logger.debug("FFmpeg(info): %s", _pretty(cmd))
    proc = subprocess.run(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True)
    if proc.returncode != 0:
        _log_stderr_tail(proc.stderr)
        raise RuntimeError(f"ffmpeg failed with exit code {proc.returncode}")
    return (proc.stdout or "") + (proc.stderr or "")
