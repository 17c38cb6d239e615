"""Configuration loader for the render pipeline."""
from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

try:
    import yaml  # type: ignore
except ModuleNotFoundError as exc:  # pragma: no cover - import guard
    raise RuntimeError(
        "PyYAML is required. Please install it with `pip install pyyaml`."
    ) from exc


DEFAULT_CONFIG_NAME = "render.config.yaml"

# Keys accepted under `render:`; anything else is ignored with the raw mapping kept.
RENDER_KEYS = (
    "codec",
    "sequence",
    "pixel_format",
    "image_format",
    "quality",
    "crf",
    "concurrency",
    "overwrite",
)


@dataclass
class AppConfig:
    """Wrapper around raw configuration with resolved paths."""

    raw: Dict[str, Any]
    config_path: Optional[Path]
    project_root: Path
    temp_dir: Optional[Path]
    log_file: Optional[Path]

    @property
    def logging_level(self) -> str:
        level = (
            self.raw.get("logging", {}).get("level")
            or self.raw.get("logging", {}).get("LEVEL")
            or "INFO"
        )
        return str(level).upper()

    @property
    def ffmpeg_path(self) -> str:
        return str(self.raw.get("ffmpeg", {}).get("path") or "ffmpeg")

    def render_defaults(self) -> Dict[str, Any]:
        """Return the `render:` section filtered to known keys."""
        section = self.raw.get("render", {})
        if not isinstance(section, dict):
            return {}
        return {key: section[key] for key in RENDER_KEYS if section.get(key) is not None}

    def to_debug_dict(self) -> Dict[str, Any]:
        return {
            "config_path": str(self.config_path) if self.config_path else None,
            "temp_dir": str(self.temp_dir) if self.temp_dir else None,
            "log_file": str(self.log_file) if self.log_file else None,
            "ffmpeg_path": self.ffmpeg_path,
            "render": self.render_defaults(),
        }

    def dumps(self) -> str:
        """Return a JSON string for diagnostics."""
        return json.dumps(self.to_debug_dict(), ensure_ascii=False, indent=2)


def load_config(path: Path | str | None = None, project_root: Path | None = None) -> AppConfig:
    """Load YAML config and resolve key directories.

    When ``path`` is omitted the default ``render.config.yaml`` in the current
    directory is used if present; otherwise built-in defaults apply. An
    explicitly given path must exist.
    """
    raw: Dict[str, Any] = {}
    config_path: Optional[Path] = None

    if path is None:
        candidate = Path(DEFAULT_CONFIG_NAME).resolve()
        if candidate.exists():
            config_path = candidate
    else:
        config_path = Path(path).expanduser().resolve()
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

    if config_path is not None:
        with config_path.open("r", encoding="utf-8") as fh:
            loaded = yaml.safe_load(fh) or {}
        if not isinstance(loaded, dict):
            raise ValueError(f"Config file must contain a mapping: {config_path}")
        raw = loaded

    if project_root is not None:
        root = project_root.resolve()
    elif config_path is not None:
        root = config_path.parent
    else:
        root = Path.cwd()

    temp_name = raw.get("output", {}).get("temp_directory")
    temp_dir = (root / temp_name).resolve() if temp_name else None
    log_file_name = raw.get("logging", {}).get("file")
    log_file = (root / log_file_name).resolve() if log_file_name else None

    return AppConfig(
        raw=raw,
        config_path=config_path,
        project_root=root,
        temp_dir=temp_dir,
        log_file=log_file,
    )
