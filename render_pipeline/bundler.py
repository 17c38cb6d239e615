"""Packaging of composition source into an artifact directory."""
from __future__ import annotations

import json
import shutil
from pathlib import Path
from typing import List, Optional

from logging_utils import get_logger

from .collaborators import Bundler, ProgressCallback

logger = get_logger(__name__)

MANIFEST_NAME = "bundle.json"
DEFAULT_ENTRY = "index.py"
_IGNORED_DIRS = {"__pycache__", ".git", ".venv", "node_modules"}


def read_manifest(artifact: Path) -> dict:
    manifest_path = artifact / MANIFEST_NAME
    if not manifest_path.exists():
        raise FileNotFoundError(f"Bundle manifest not found: {manifest_path}")
    return json.loads(manifest_path.read_text(encoding="utf-8"))


class SourceBundler(Bundler):
    """Copy a composition source file or directory into the artifact directory.

    A single ``.py`` file becomes the entry module. A directory must contain
    ``index.py`` (or the entry named in ``entry``); the whole tree is copied
    so that the entry can import its sibling modules.
    """

    def __init__(self, entry: str = DEFAULT_ENTRY) -> None:
        self.entry = entry

    def bundle(self, source: Path, out_dir: Path, on_progress: Optional[ProgressCallback] = None) -> Path:
        source = Path(source).expanduser().resolve()
        if not source.exists():
            raise FileNotFoundError(f"Composition source not found: {source}")

        if source.is_file():
            files = [source]
            base = source.parent
            entry = source.name
        else:
            base = source
            entry = self.entry
            if not (source / entry).is_file():
                raise FileNotFoundError(f"Entry module '{entry}' not found in {source}")
            files = self._collect(source)

        out_dir.mkdir(parents=True, exist_ok=True)
        total = len(files)
        self._report(on_progress, 0)
        for index, path in enumerate(files, start=1):
            target = out_dir / path.relative_to(base)
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(path, target)
            self._report(on_progress, index * 100.0 / total)

        manifest = {"entry": entry, "source": str(source), "files": total}
        (out_dir / MANIFEST_NAME).write_text(json.dumps(manifest, indent=2), encoding="utf-8")
        logger.info("Bundled %d file(s) from %s into %s", total, source, out_dir)
        self._report(on_progress, 100)
        return out_dir

    @staticmethod
    def _collect(root: Path) -> List[Path]:
        files: List[Path] = []
        for path in sorted(root.rglob("*")):
            if any(part in _IGNORED_DIRS for part in path.relative_to(root).parts):
                continue
            if path.is_file():
                files.append(path)
        return files

    @staticmethod
    def _report(on_progress: Optional[ProgressCallback], percent: float) -> None:
        if on_progress is not None:
            on_progress(percent)
