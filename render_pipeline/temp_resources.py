"""Registry of ephemeral paths owned by a single render run."""
from __future__ import annotations

import shutil
import tempfile
import threading
from pathlib import Path
from typing import List, Optional

from logging_utils import get_logger

logger = get_logger(__name__)


class TempResourceManager:
    """Track ephemeral files and directories and remove them in one call.

    Paths are registered when they are created (or before, for files another
    process is about to write). ``dispose()`` may be called any number of
    times and tolerates registered paths that never came into existence.
    """

    def __init__(self, root: Optional[Path] = None, prefix: str = "render-pipeline-") -> None:
        self.root = root
        self.prefix = prefix
        self._paths: List[Path] = []
        self._lock = threading.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def paths(self) -> List[Path]:
        with self._lock:
            return list(self._paths)

    def make_dir(self, name: str) -> Path:
        """Create a fresh directory and register it."""
        with self._lock:
            self._ensure_open()
            if self.root is not None:
                self.root.mkdir(parents=True, exist_ok=True)
            path = Path(
                tempfile.mkdtemp(prefix=f"{self.prefix}{name}-", dir=str(self.root) if self.root else None)
            )
            self._paths.append(path)
        logger.debug("Created temp directory %s", path)
        return path

    def register(self, path: Path) -> Path:
        path = Path(path)
        with self._lock:
            self._ensure_open()
            if path not in self._paths:
                self._paths.append(path)
        return path

    def release(self, path: Path) -> None:
        """Stop tracking ``path`` so that disposal keeps it."""
        path = Path(path)
        with self._lock:
            if path in self._paths:
                self._paths.remove(path)

    def dispose(self) -> List[Path]:
        """Remove every registered path. Returns the paths that could not be removed."""
        with self._lock:
            pending = list(reversed(self._paths))
            self._paths.clear()
            self._closed = True

        failed: List[Path] = []
        for path in pending:
            try:
                if path.is_dir() and not path.is_symlink():
                    shutil.rmtree(path)
                elif path.exists() or path.is_symlink():
                    path.unlink()
                else:
                    continue
                logger.debug("Removed %s", path)
            except OSError as exc:
                logger.warning("Could not remove temporary path %s: %s", path, exc)
                failed.append(path)
        return failed

    def _ensure_open(self) -> None:
        if self._closed:
            raise RuntimeError("Temp resources were already disposed for this run")

    def __enter__(self) -> "TempResourceManager":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.dispose()
