"""Command line entry for the render pipeline."""
from __future__ import annotations

import argparse
import json
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from config_loader import load_config
from logging_utils import configure_logging, get_logger
from render_pipeline.errors import ConfigurationError
from render_pipeline.factory import make_pipeline
from render_pipeline.models import Codec, ImageFormat, PixelFormat, RenderOptions
from render_pipeline.perf import debug_enabled
from render_pipeline.progress import ConsoleProgressReporter

logger = get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Render a composition to a video file or an image sequence")
    parser.add_argument("source", help="Composition source: a .py file or a directory with index.py")
    parser.add_argument("composition_id", help="ID of the composition to render")
    parser.add_argument(
        "output",
        nargs="?",
        help="Output file (or directory with --sequence). Default: out.<ext> / out",
    )
    parser.add_argument(
        "--config",
        help="Path to YAML configuration (default: render.config.yaml if present)",
    )
    parser.add_argument(
        "--codec",
        choices=[codec.value for codec in Codec],
        help="Video codec. Derived from the output extension when omitted (h264 otherwise).",
    )
    parser.add_argument(
        "--sequence",
        action="store_true",
        default=None,
        help="Output an image sequence instead of a video. Cannot be combined with --codec.",
    )
    parser.add_argument(
        "--pixel-format",
        choices=[fmt.value for fmt in PixelFormat],
        help="Pixel format of the encoded video (default: yuv420p)",
    )
    parser.add_argument(
        "--image-format",
        choices=[fmt.value for fmt in ImageFormat],
        help="Raster format of rendered frames (default: jpeg, png for sequences and alpha)",
    )
    parser.add_argument("--quality", type=int, help="JPEG quality 0-100 (ignored for png)")
    parser.add_argument("--crf", type=float, help="Constant rate factor (codec-specific range)")
    parser.add_argument(
        "--concurrency",
        type=int,
        help="Frames rendered in parallel (default: half of the logical processors)",
    )
    parser.add_argument(
        "--overwrite",
        action="store_true",
        default=None,
        help="Overwrite an existing output",
    )
    parser.add_argument(
        "--props",
        help="Input props for the composition: a JSON string or the path to a JSON file",
    )
    parser.add_argument(
        "--log-level",
        help="Logging level (overrides logging.level in the config)",
    )
    return parser


def load_user_props(value: Optional[str]) -> Dict[str, Any]:
    """Parse ``--props`` from inline JSON or a JSON file."""
    if not value:
        return {}
    candidate = Path(value).expanduser()
    try:
        if candidate.is_file():
            parsed = json.loads(candidate.read_text(encoding="utf-8"))
        else:
            parsed = json.loads(value)
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigurationError(f"--props must be valid JSON or a path to a JSON file: {exc}") from exc
    if not isinstance(parsed, dict):
        raise ConfigurationError("--props must be a JSON object")
    return parsed


def _coerce(value: Any, kind, name: str) -> Any:
    if value is None:
        return None
    try:
        return kind(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid value for {name}: {value!r}") from exc


def build_options(args: argparse.Namespace, defaults: Dict[str, Any], props: Dict[str, Any]) -> RenderOptions:
    """Merge CLI flags over config defaults. Flags win."""

    def pick(name: str) -> Any:
        value = getattr(args, name, None)
        return value if value is not None else defaults.get(name)

    return RenderOptions(
        source=Path(args.source),
        composition_id=args.composition_id,
        output=Path(args.output) if args.output else None,
        codec=pick("codec"),
        sequence=bool(pick("sequence")),
        pixel_format=pick("pixel_format") or PixelFormat.YUV420P.value,
        image_format=pick("image_format"),
        quality=_coerce(pick("quality"), int, "quality"),
        crf=_coerce(pick("crf"), float, "crf"),
        concurrency=_coerce(pick("concurrency"), int, "concurrency"),
        overwrite=bool(pick("overwrite")),
        props=props,
    )


def main(argv: List[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    configure_logging(level=args.log_level or "INFO")
    try:
        config = load_config(args.config)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as exc:
        logger.error("Failed to load config: %s", exc)
        return 1
    configure_logging(level=args.log_level or config.logging_level, log_file=config.log_file)
    logger.debug("Config: %s", config.dumps())

    try:
        options = build_options(args, config.render_defaults(), load_user_props(args.props))
    except ConfigurationError as exc:
        logger.error("%s", exc)
        return exc.exit_code

    pipeline = make_pipeline(config, reporter=ConsoleProgressReporter(), debug=debug_enabled())
    try:
        run = pipeline.run(options)
    except KeyboardInterrupt:
        logger.error("Render interrupted")
        return 130

    if run.failed:
        return run.exit_code
    print(run.output)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
