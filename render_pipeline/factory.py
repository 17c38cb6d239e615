"""Wire the default collaborators into a ``RenderPipeline``."""
from __future__ import annotations

from typing import Optional

from config_loader import AppConfig

from .bundler import SourceBundler
from .compositions import PythonCompositionLoader
from .ffmpeg import FFmpegStitcher
from .frame_renderer import PillowFrameRenderer
from .pipeline import RenderPipeline
from .progress import ProgressReporter


def make_pipeline(
    config: AppConfig,
    *,
    reporter: Optional[ProgressReporter] = None,
    debug: bool = False,
) -> RenderPipeline:
    ffmpeg_cfg = config.raw.get("ffmpeg", {}) if isinstance(config.raw, dict) else {}
    options = ffmpeg_cfg.get("options", {}) if isinstance(ffmpeg_cfg, dict) else {}
    bundle_cfg = config.raw.get("bundle", {}) if isinstance(config.raw, dict) else {}
    entry = str(bundle_cfg.get("entry", "index.py")) if isinstance(bundle_cfg, dict) else "index.py"

    return RenderPipeline(
        bundler=SourceBundler(entry=entry),
        resolver=PythonCompositionLoader(),
        frame_renderer_factory=PillowFrameRenderer,
        encoder=FFmpegStitcher(config.ffmpeg_path, options if isinstance(options, dict) else {}),
        reporter=reporter,
        temp_root=config.temp_dir,
        debug=debug,
    )
