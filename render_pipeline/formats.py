"""Compatibility checks between codec, pixel format, image format and crf.

All functions here are pure. Fatal problems raise ``ConfigurationError``;
advisory problems are returned as messages for the caller to log.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, FrozenSet, List, Optional, Tuple

from .errors import ConfigurationError
from .models import Codec, ImageFormat, PixelFormat

DEFAULT_CODEC = Codec.H264

CRF_RANGES: Dict[Codec, Tuple[int, int]] = {
    Codec.H264: (0, 51),
    Codec.H265: (0, 51),
    Codec.VP8: (4, 63),
    Codec.VP9: (0, 63),
}

DEFAULT_CRF: Dict[Codec, int] = {
    Codec.H264: 18,
    Codec.H265: 23,
    Codec.VP8: 9,
    Codec.VP9: 28,
}

PIXEL_FORMATS_WITH_ALPHA_CODECS = frozenset({Codec.VP8, Codec.VP9})

FILE_EXTENSIONS: Dict[Codec, str] = {
    Codec.H264: "mp4",
    Codec.H265: "mp4",
    Codec.VP8: "webm",
    Codec.VP9: "webm",
}

# Encoder build flags each codec needs. Missing flags only produce warnings.
REQUIRED_ENCODER_FEATURES: Dict[Codec, Tuple[Tuple[str, str], ...]] = {
    Codec.VP8: (
        ("enable-libvpx", "please switch out your FFmpeg binary or choose a different codec"),
    ),
    Codec.H265: (
        ("enable-gpl", "please recompile FFmpeg with --enable-gpl --enable-libx265 or choose a different codec"),
        ("enable-libx265", "please recompile FFmpeg with --enable-gpl --enable-libx265 or choose a different codec"),
    ),
}


@dataclass(frozen=True)
class EncoderCapabilities:
    """Build flags of the encoder binary, e.g. ``enable-libvpx``."""

    features: FrozenSet[str] = field(default_factory=frozenset)
    version: Optional[str] = None

    def has(self, feature: str) -> bool:
        return feature.lstrip("-") in self.features


def _parse_enum(enum_cls, value, label: str):
    if isinstance(value, enum_cls):
        return value
    text = str(value).strip().lower()
    try:
        return enum_cls(text)
    except ValueError:
        choices = ", ".join(member.value for member in enum_cls)
        raise ConfigurationError(f"Unknown {label} '{value}'. Valid values: {choices}") from None


def parse_codec(value) -> Codec:
    return _parse_enum(Codec, value, "codec")


def parse_pixel_format(value) -> PixelFormat:
    return _parse_enum(PixelFormat, value, "pixel format")


def parse_image_format(value) -> ImageFormat:
    if str(value).strip().lower() == "jpg":
        return ImageFormat.JPEG
    return _parse_enum(ImageFormat, value, "image format")


def codec_from_extension(path: Optional[Path]) -> Optional[Codec]:
    """Return the codec an output file extension implies, if any."""
    if path is None:
        return None
    suffix = path.suffix.lower().lstrip(".")
    if suffix == "webm":
        return Codec.VP8
    if suffix == "hevc":
        return Codec.H265
    return None


def file_extension_for_codec(codec: Codec) -> str:
    return FILE_EXTENSIONS[codec]


def default_crf(codec: Codec) -> int:
    return DEFAULT_CRF[codec]


def default_image_format(pixel_format: PixelFormat, outputs_image_sequence: bool) -> ImageFormat:
    if outputs_image_sequence or pixel_format.has_alpha:
        return ImageFormat.PNG
    return ImageFormat.JPEG


def check_codec_feasibility(codec: Optional[Codec], capabilities: Optional[EncoderCapabilities]) -> List[str]:
    """Return advisory warnings for codecs the encoder build may not support.

    The encoder run is the authoritative check; this only gives early notice.
    """
    if codec is None or capabilities is None:
        return []
    warnings: List[str] = []
    for feature, hint in REQUIRED_ENCODER_FEATURES.get(codec, ()):
        if not capabilities.has(feature):
            warnings.append(
                f"The {codec.value} codec has been selected, but your FFmpeg binary wasn't "
                f"compiled with the --{feature} flag. This does not work, {hint}."
            )
    return warnings


def validate_pixel_format_for_codec(pixel_format: PixelFormat, codec: Optional[Codec]) -> None:
    if codec is None:
        return
    if pixel_format.has_alpha and codec not in PIXEL_FORMATS_WITH_ALPHA_CODECS:
        allowed = ", ".join(sorted(c.value for c in PIXEL_FORMATS_WITH_ALPHA_CODECS))
        raise ConfigurationError(
            f"Pixel format '{pixel_format.value}' is only supported by the codecs {allowed}, "
            f"but '{codec.value}' was selected."
        )


def validate_pixel_format_for_image_format(pixel_format: PixelFormat, image_format: ImageFormat) -> None:
    if pixel_format.has_alpha and not image_format.supports_alpha:
        raise ConfigurationError(
            f"Pixel format '{pixel_format.value}' needs transparency, but the image format "
            f"'{image_format.value}' has no alpha channel. Use --image-format=png."
        )


def validate_crf_presence(crf: Optional[float], outputs_image_sequence: bool) -> None:
    if outputs_image_sequence and crf is not None:
        raise ConfigurationError("CRF can't be set when rendering an image sequence.")
    if not outputs_image_sequence and crf is None:
        raise ConfigurationError("CRF is required when rendering a video.")


def validate_crf_for_codec(crf, codec: Codec) -> None:
    if isinstance(crf, bool) or not isinstance(crf, (int, float)):
        raise ConfigurationError(f"CRF must be a number, got {crf!r}")
    low, high = CRF_RANGES[codec]
    if crf < low or crf > high:
        raise ConfigurationError(
            f"CRF must be between {low} and {high} for codec {codec.value}. Passed: {crf}"
        )


def validate_quality(quality) -> None:
    if quality is None:
        return
    if isinstance(quality, bool) or not isinstance(quality, int):
        raise ConfigurationError(f"Quality must be an integer between 0 and 100, got {quality!r}")
    if quality < 0 or quality > 100:
        raise ConfigurationError(f"Quality must be between 0 and 100. Passed: {quality}")
