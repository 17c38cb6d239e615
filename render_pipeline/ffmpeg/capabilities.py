from __future__ import annotations

import re
import shutil
from pathlib import Path
from typing import Optional

from logging_utils import get_logger

from ..errors import PreconditionError
from ..formats import EncoderCapabilities
from .runner import capture_ffmpeg_info

logger = get_logger(__name__)

_FLAG_RE = re.compile(r"--(enable-[A-Za-z0-9_-]+)")
_VERSION_RE = re.compile(r"ffmpeg version (\S+)")


def find_ffmpeg(ffmpeg_path: str = "ffmpeg") -> str:
    """Return the resolved ffmpeg binary or raise ``PreconditionError``."""
    candidate = Path(ffmpeg_path).expanduser()
    if candidate.is_file():
        return str(candidate)
    resolved = shutil.which(ffmpeg_path)
    if resolved is None:
        raise PreconditionError(
            f"FFmpeg binary '{ffmpeg_path}' was not found. Install FFmpeg or set ffmpeg.path in the config file."
        )
    return resolved


def parse_buildconf(text: str, version: Optional[str] = None) -> EncoderCapabilities:
    """Extract ``--enable-*`` flags from `ffmpeg -buildconf` output."""
    features = frozenset(match.group(1) for match in _FLAG_RE.finditer(text))
    if version is None:
        found = _VERSION_RE.search(text)
        version = found.group(1) if found else None
    return EncoderCapabilities(features=features, version=version)


def probe_capabilities(ffmpeg_path: str = "ffmpeg") -> EncoderCapabilities:
    """Ask the ffmpeg binary which optional features it was built with.

    A failing probe yields empty capabilities; the caller only uses them for
    warnings.
    """
    try:
        buildconf = capture_ffmpeg_info(["-buildconf"], ffmpeg_path=ffmpeg_path)
        version_text = capture_ffmpeg_info(["-version"], ffmpeg_path=ffmpeg_path)
    except (OSError, RuntimeError) as exc:
        logger.warning("Could not read FFmpeg build configuration: %s", exc)
        return EncoderCapabilities()
    found = _VERSION_RE.search(version_text)
    capabilities = parse_buildconf(buildconf, version=found.group(1) if found else None)
    logger.debug("FFmpeg %s with %d build flags", capabilities.version, len(capabilities.features))
    return capabilities
