"""FFmpeg encoder collaborator.

Modules:
- stitcher: Encoder implementation turning a frame directory into a video
- capabilities: Binary lookup and build-flag probing
- runner: Subprocess execution and logging helpers
- progress: Parser for `-progress pipe:1` output
"""

from .capabilities import parse_buildconf, probe_capabilities
from .stitcher import FFmpegStitcher, build_stitch_args

__all__ = ["FFmpegStitcher", "build_stitch_args", "parse_buildconf", "probe_capabilities"]
