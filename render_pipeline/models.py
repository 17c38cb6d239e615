from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Mapping, Optional


class Codec(str, Enum):
    H264 = "h264"
    H265 = "h265"
    VP8 = "vp8"
    VP9 = "vp9"


class PixelFormat(str, Enum):
    YUV420P = "yuv420p"
    YUVA420P = "yuva420p"
    YUV422P = "yuv422p"
    YUV444P = "yuv444p"
    YUV420P10LE = "yuv420p10le"
    YUV422P10LE = "yuv422p10le"
    YUV444P10LE = "yuv444p10le"

    @property
    def has_alpha(self) -> bool:
        return self is PixelFormat.YUVA420P


class ImageFormat(str, Enum):
    JPEG = "jpeg"
    PNG = "png"

    @property
    def supports_alpha(self) -> bool:
        return self is ImageFormat.PNG


class Stage(str, Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    PACKAGING = "packaging"
    RESOLVING_COMPOSITION = "resolving-composition"
    RENDERING_FRAMES = "rendering-frames"
    STITCHING = "stitching"
    CLEANING_UP = "cleaning-up"
    DONE = "done"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (Stage.DONE, Stage.FAILED)


def _is_positive_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


@dataclass(frozen=True)
class Composition:
    id: str
    width: int
    height: int
    fps: int
    duration_in_frames: int

    def __post_init__(self) -> None:
        if not self.id:
            raise ValueError("Composition id must be a non-empty string")
        for name in ("width", "height", "fps", "duration_in_frames"):
            value = getattr(self, name)
            if not _is_positive_int(value):
                raise ValueError(
                    f"Composition {self.id!r}: {name} must be a positive integer, got {value!r}"
                )


@dataclass(frozen=True)
class RenderOptions:
    """Raw user input for one run; may still contain conflicts."""

    source: Path
    composition_id: str
    output: Optional[Path] = None
    codec: Optional[str] = None
    sequence: bool = False
    pixel_format: str = PixelFormat.YUV420P.value
    image_format: Optional[str] = None
    quality: Optional[int] = None
    crf: Optional[float] = None
    concurrency: Optional[int] = None
    overwrite: bool = False
    props: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RenderRequest:
    """Validated configuration passed unchanged through every stage."""

    source: Path
    composition_id: str
    output: Path
    codec: Optional[Codec]
    pixel_format: PixelFormat
    image_format: ImageFormat
    quality: Optional[int]
    crf: Optional[float]
    concurrency: int
    overwrite: bool
    outputs_image_sequence: bool
    props: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.outputs_image_sequence:
            if self.codec is not None:
                raise ValueError("An image sequence request cannot carry a codec")
            if self.crf is not None:
                raise ValueError("An image sequence request cannot carry a crf")
        else:
            if self.codec is None:
                raise ValueError("A video request needs a codec")
            if self.crf is None:
                raise ValueError("A video request needs a crf")
        if self.concurrency < 1:
            raise ValueError("concurrency must be at least 1")

    @property
    def effective_quality(self) -> Optional[int]:
        """Quality only applies to jpeg frames."""
        if self.image_format is ImageFormat.JPEG:
            return self.quality
        return None

    def to_debug_dict(self) -> Dict[str, Any]:
        return {
            "source": str(self.source),
            "composition_id": self.composition_id,
            "output": str(self.output),
            "codec": self.codec.value if self.codec else None,
            "pixel_format": self.pixel_format.value,
            "image_format": self.image_format.value,
            "quality": self.effective_quality,
            "crf": self.crf,
            "concurrency": self.concurrency,
            "overwrite": self.overwrite,
            "outputs_image_sequence": self.outputs_image_sequence,
        }
