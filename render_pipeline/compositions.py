"""Loading compositions from a bundled Python entry module.

The entry module exposes either a ``get_compositions()`` function or a
``COMPOSITIONS`` list. Each entry is a mapping::

    {
        "id": "Intro",
        "width": 1280,
        "height": 720,
        "fps": 30,
        "duration_in_frames": 90,
        "component": draw_intro,   # (frame, composition, props) -> PIL image
    }
"""
from __future__ import annotations

import importlib.util
import itertools
import sys
import threading
from pathlib import Path
from types import ModuleType
from typing import Any, Callable, Dict, List, Mapping, Set

from logging_utils import get_logger

from .bundler import read_manifest
from .collaborators import CompositionResolver
from .models import Composition

logger = get_logger(__name__)

Component = Callable[..., Any]

_import_lock = threading.Lock()
_module_counter = itertools.count()


def load_bundle_module(artifact: Path) -> ModuleType:
    """Import the artifact's entry module as a fresh module object."""
    artifact = Path(artifact)
    manifest = read_manifest(artifact)
    entry_path = artifact / manifest["entry"]
    if not entry_path.is_file():
        raise FileNotFoundError(f"Bundle entry not found: {entry_path}")

    module_name = f"_render_bundle_{next(_module_counter)}"
    spec = importlib.util.spec_from_file_location(module_name, entry_path)
    if spec is None or spec.loader is None:
        raise ImportError(f"Cannot load composition module from {entry_path}")
    module = importlib.util.module_from_spec(spec)

    # The entry may import sibling modules of the bundle.
    with _import_lock:
        loaded_before = set(sys.modules)
        sys.path.insert(0, str(artifact))
        try:
            spec.loader.exec_module(module)
        finally:
            try:
                sys.path.remove(str(artifact))
            except ValueError:
                pass
            _forget_bundle_modules(artifact, loaded_before)
    return module


def _forget_bundle_modules(artifact: Path, loaded_before: Set[str]) -> None:
    """Drop modules imported from ``artifact`` out of ``sys.modules``.

    Another bundle may ship a sibling module with the same name.
    """
    root = artifact.resolve()
    for name in set(sys.modules) - loaded_before:
        module_file = getattr(sys.modules.get(name), "__file__", None)
        if module_file and Path(module_file).resolve().is_relative_to(root):
            del sys.modules[name]


def composition_entries(module: ModuleType) -> List[Mapping[str, Any]]:
    if hasattr(module, "get_compositions"):
        entries = module.get_compositions()
    elif hasattr(module, "COMPOSITIONS"):
        entries = module.COMPOSITIONS
    else:
        raise AttributeError(
            f"Module {module.__file__} defines neither get_compositions() nor COMPOSITIONS"
        )
    entries = list(entries or [])
    for entry in entries:
        if not isinstance(entry, Mapping):
            raise TypeError(f"Composition entries must be mappings, got {type(entry).__name__}")
    return entries


def composition_from_entry(entry: Mapping[str, Any]) -> Composition:
    duration = entry.get("duration_in_frames", entry.get("durationInFrames"))
    return Composition(
        id=str(entry.get("id", "")),
        width=entry.get("width"),
        height=entry.get("height"),
        fps=entry.get("fps"),
        duration_in_frames=duration,
    )


def component_index(module: ModuleType) -> Dict[str, Component]:
    components: Dict[str, Component] = {}
    for entry in composition_entries(module):
        component = entry.get("component")
        if not callable(component):
            raise TypeError(f"Composition {entry.get('id')!r} has no callable 'component'")
        components[str(entry.get("id"))] = component
    return components


class PythonCompositionLoader(CompositionResolver):
    def get_compositions(self, artifact: Path) -> List[Composition]:
        module = load_bundle_module(artifact)
        compositions = [composition_from_entry(entry) for entry in composition_entries(module)]
        seen = set()
        for composition in compositions:
            if composition.id in seen:
                raise ValueError(f"Duplicate composition id {composition.id!r} in {artifact}")
            seen.add(composition.id)
        logger.debug("Found compositions: %s", ", ".join(c.id for c in compositions))
        return compositions
