"""Frame renderer that evaluates Python composition components with Pillow."""
from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import numpy as np
from PIL import Image

from logging_utils import get_logger

from .collaborators import FrameRenderer
from .compositions import Component, component_index, load_bundle_module
from .models import Composition, ImageFormat

logger = get_logger(__name__)

DEFAULT_JPEG_QUALITY = 80


def to_image(result: Any) -> Image.Image:
    """Accept a Pillow image or an HxWx3/HxWx4 array from a component."""
    if isinstance(result, Image.Image):
        return result
    if isinstance(result, np.ndarray):
        array = result
        if array.dtype != np.uint8:
            array = np.clip(array, 0, 255).astype(np.uint8)
        if array.ndim not in (2, 3) or (array.ndim == 3 and array.shape[2] not in (3, 4)):
            raise ValueError(f"Unsupported frame array shape {array.shape}")
        return Image.fromarray(array)
    raise TypeError(f"Component must return a PIL image or numpy array, got {type(result).__name__}")


class PillowFrameRenderer(FrameRenderer):
    """One instance per worker; each loads its own copy of the bundle module."""

    def __init__(self, artifact: Path) -> None:
        self.artifact = Path(artifact)
        self._components: Dict[str, Component] = component_index(load_bundle_module(self.artifact))

    def render_frame(
        self,
        composition: Composition,
        props: Mapping[str, Any],
        frame: int,
        output_path: Path,
        image_format: ImageFormat,
        quality: Optional[int],
    ) -> None:
        component = self._components.get(composition.id)
        if component is None:
            raise KeyError(f"No component registered for composition {composition.id!r}")

        image = to_image(component(frame, composition, dict(props)))
        if image.size != (composition.width, composition.height):
            raise ValueError(
                f"Frame {frame} of {composition.id} is {image.size[0]}x{image.size[1]}, "
                f"expected {composition.width}x{composition.height}"
            )

        output_path.parent.mkdir(parents=True, exist_ok=True)
        if image_format is ImageFormat.JPEG:
            image.convert("RGB").save(
                output_path,
                format="JPEG",
                quality=DEFAULT_JPEG_QUALITY if quality is None else quality,
            )
        else:
            if image.mode not in ("RGB", "RGBA"):
                image = image.convert("RGBA")
            image.save(output_path, format="PNG")
