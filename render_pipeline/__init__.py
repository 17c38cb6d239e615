"""
Render pipeline package.

Turns a programmatically defined composition into a video file or an image
sequence: bundle the source, pick the composition, render every frame in
parallel and stitch the frames with FFmpeg.
"""

from __future__ import annotations

__all__ = [
    "Composition",
    "RenderOptions",
    "RenderRequest",
    "RenderPipeline",
    "PipelineRun",
    "Stage",
]

from .models import Composition, RenderOptions, RenderRequest, Stage
from .pipeline import PipelineRun, RenderPipeline
