"""Interfaces of the packaging, composition, frame and encoder collaborators."""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, List, Mapping, Optional

from .formats import EncoderCapabilities
from .models import Codec, Composition, ImageFormat, PixelFormat

ProgressCallback = Callable[[float], None]

FRAME_FILE_PREFIX = "element-"


def frame_file_name(frame: int, image_format: ImageFormat, total_frames: int) -> str:
    """Name of the raster file for ``frame``, zero-padded to the width of the last index."""
    return f"{FRAME_FILE_PREFIX}{frame:0{frame_pad_width(total_frames)}d}.{image_format.value}"


def frame_pad_width(total_frames: int) -> int:
    return len(str(max(total_frames - 1, 0)))


@dataclass(frozen=True)
class StitchJob:
    """Everything the encoder needs to turn a frame directory into one file."""

    frames_dir: Path
    width: int
    height: int
    fps: int
    total_frames: int
    output_path: Path
    overwrite: bool
    image_format: ImageFormat
    pixel_format: PixelFormat
    codec: Codec
    crf: float

    @property
    def frame_pattern(self) -> str:
        return f"{FRAME_FILE_PREFIX}%0{frame_pad_width(self.total_frames)}d.{self.image_format.value}"


class Bundler(ABC):
    """Turns composition source into a loadable artifact directory."""

    @abstractmethod
    def bundle(self, source: Path, out_dir: Path, on_progress: Optional[ProgressCallback] = None) -> Path:
        """Package ``source`` into ``out_dir`` and return the artifact location."""


class CompositionResolver(ABC):
    @abstractmethod
    def get_compositions(self, artifact: Path) -> List[Composition]:
        """Return the compositions of an artifact in declaration order."""


class FrameRenderer(ABC):
    """Renders single frames. Each worker thread gets its own instance."""

    @abstractmethod
    def render_frame(
        self,
        composition: Composition,
        props: Mapping[str, Any],
        frame: int,
        output_path: Path,
        image_format: ImageFormat,
        quality: Optional[int],
    ) -> None:
        """Write the raster image for ``frame`` to ``output_path``."""

    def close(self) -> None:
        """Release engine resources held by this instance."""


FrameRendererFactory = Callable[[Path], FrameRenderer]


class Encoder(ABC):
    @abstractmethod
    def validate(self) -> None:
        """Raise if the encoder cannot be used at all (e.g. binary missing)."""

    @abstractmethod
    def capabilities(self) -> EncoderCapabilities:
        """Describe optional features of the encoder build."""

    @abstractmethod
    def stitch(self, job: StitchJob, on_progress: Optional[Callable[[int], None]] = None) -> Path:
        """Encode the ordered frames of ``job`` into ``job.output_path``."""
