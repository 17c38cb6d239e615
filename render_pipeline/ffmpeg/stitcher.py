"""FFmpeg encoder that merges an ordered frame directory into one video file."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional

from logging_utils import get_logger

from ..collaborators import Encoder, StitchJob
from ..formats import EncoderCapabilities
from ..models import Codec
from .capabilities import find_ffmpeg, probe_capabilities
from .runner import run_ffmpeg_stream

logger = get_logger(__name__)

VIDEO_ENCODERS: Dict[Codec, str] = {
    Codec.H264: "libx264",
    Codec.H265: "libx265",
    Codec.VP8: "libvpx",
    Codec.VP9: "libvpx-vp9",
}


@dataclass
class FFmpegStitchOptions:
    preset: Optional[str] = None
    threads: Optional[int] = None
    extra_video_flags: Optional[List[str]] = None


def build_stitch_args(job: StitchJob, options: Optional[FFmpegStitchOptions] = None) -> List[str]:
    """Return ffmpeg arguments (without the binary) for ``job``."""
    opts = options or FFmpegStitchOptions()
    args: List[str] = [
        "-r",
        str(job.fps),
        "-f",
        "image2",
        "-s",
        f"{job.width}x{job.height}",
        "-start_number",
        "0",
        "-i",
        str(job.frames_dir / job.frame_pattern),
        "-frames:v",
        str(job.total_frames),
        "-c:v",
        VIDEO_ENCODERS[job.codec],
        "-crf",
        _format_crf(job.crf),
        "-pix_fmt",
        job.pixel_format.value,
    ]
    if job.codec in (Codec.VP8, Codec.VP9):
        # Constant quality mode for libvpx needs an unbounded bitrate.
        args += ["-b:v", "0"]
    if opts.preset and job.codec in (Codec.H264, Codec.H265):
        args += ["-preset", str(opts.preset)]
    if opts.threads:
        args += ["-threads", str(opts.threads)]
    if opts.extra_video_flags:
        args.extend(opts.extra_video_flags)
    if job.output_path.suffix.lower() in (".mp4", ".mov"):
        args += ["-movflags", "+faststart"]
    args += ["-y" if job.overwrite else "-n", str(job.output_path)]
    return args


def _format_crf(crf: float) -> str:
    if float(crf).is_integer():
        return str(int(crf))
    return str(crf)


class FFmpegStitcher(Encoder):
    """Encoder collaborator backed by the ffmpeg command line tool."""

    def __init__(self, ffmpeg_path: str = "ffmpeg", options: Optional[Dict[str, object]] = None) -> None:
        self.ffmpeg_path = ffmpeg_path
        self.stitch_opts = self._build_stitch_options(options or {})
        self._capabilities: Optional[EncoderCapabilities] = None

    def validate(self) -> None:
        self.ffmpeg_path = find_ffmpeg(self.ffmpeg_path)

    def capabilities(self) -> EncoderCapabilities:
        if self._capabilities is None:
            self._capabilities = probe_capabilities(self.ffmpeg_path)
        return self._capabilities

    def stitch(self, job: StitchJob, on_progress: Optional[Callable[[int], None]] = None) -> Path:
        missing = [
            frame
            for frame in (0, job.total_frames - 1)
            if not (job.frames_dir / (job.frame_pattern % frame)).exists()
        ]
        if missing:
            raise RuntimeError(f"Frames missing in {job.frames_dir}: {missing}")
        job.output_path.parent.mkdir(parents=True, exist_ok=True)
        logger.info(
            "Stitching %d frames (%dx%d @ %dfps, %s, crf %s) into %s",
            job.total_frames,
            job.width,
            job.height,
            job.fps,
            job.codec.value,
            _format_crf(job.crf),
            job.output_path,
        )
        run_ffmpeg_stream(
            build_stitch_args(job, self.stitch_opts),
            on_frame=on_progress,
            ffmpeg_path=self.ffmpeg_path,
        )
        return job.output_path

    def _build_stitch_options(self, overrides: Dict[str, object]) -> FFmpegStitchOptions:
        opts = FFmpegStitchOptions()
        for field_name in ("preset", "threads"):
            if field_name in overrides:
                setattr(opts, field_name, overrides[field_name])
        extra_flags = overrides.get("extra_video_flags")
        if isinstance(extra_flags, list):
            opts.extra_video_flags = [str(flag) for flag in extra_flags]
        return opts
