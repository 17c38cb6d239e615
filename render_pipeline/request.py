"""Turn raw ``RenderOptions`` into a validated ``RenderRequest``."""
from __future__ import annotations

from pathlib import Path
from typing import List, Optional, Tuple

from . import formats
from .concurrency import resolve_concurrency
from .errors import ConfigurationError, PreconditionError
from .models import Codec, ImageFormat, RenderOptions, RenderRequest

DEFAULT_OUTPUT_STEM = "out"


def check_sequence_codec_conflict(options: RenderOptions) -> None:
    if options.sequence and options.codec:
        raise ConfigurationError(
            "Detected both a codec and image sequence output. No video codec can be used "
            "for image sequences. Remove one of the two options and try again."
        )


def resolve_codec(options: RenderOptions, warnings: List[str]) -> Optional[Codec]:
    if options.sequence:
        return None
    from_extension = formats.codec_from_extension(options.output)
    if options.codec:
        codec = formats.parse_codec(options.codec)
        if from_extension is not None and from_extension is not codec and options.output is not None:
            warnings.append(
                f"The output file extension '{options.output.suffix}' usually goes with the "
                f"{from_extension.value} codec, but {codec.value} was selected."
            )
        return codec
    if from_extension is not None:
        return from_extension
    return formats.DEFAULT_CODEC


def resolve_output_path(
    options: RenderOptions,
    codec: Optional[Codec],
    cwd: Optional[Path] = None,
    warnings: Optional[List[str]] = None,
) -> Path:
    base = cwd or Path.cwd()
    if options.output is not None:
        output = Path(options.output).expanduser()
        if codec is not None and not output.suffix:
            # ffmpeg picks the container from the extension.
            extension = formats.file_extension_for_codec(codec)
            output = output.with_name(f"{output.name}.{extension}")
            if warnings is not None:
                warnings.append(
                    f"No file extension specified, adding .{extension} to the output file name: {output.name}"
                )
    elif codec is None:
        output = Path(DEFAULT_OUTPUT_STEM)
    else:
        output = Path(f"{DEFAULT_OUTPUT_STEM}.{formats.file_extension_for_codec(codec)}")
    if not output.is_absolute():
        output = base / output
    return output.resolve()


def resolve_render_request(
    options: RenderOptions,
    *,
    cpu_count: Optional[int] = None,
    cwd: Optional[Path] = None,
) -> Tuple[RenderRequest, List[str]]:
    """Validate ``options`` and fill in defaults.

    Returns the request and advisory warnings. Configuration problems raise
    ``ConfigurationError``; an existing output without overwrite permission
    raises ``PreconditionError``. Nothing is created on disk.
    """
    check_sequence_codec_conflict(options)
    warnings: List[str] = []

    pixel_format = formats.parse_pixel_format(options.pixel_format)
    codec = resolve_codec(options, warnings)

    if options.sequence:
        formats.validate_crf_presence(options.crf, outputs_image_sequence=True)
        crf = None
    else:
        assert codec is not None
        crf = options.crf if options.crf is not None else formats.default_crf(codec)
        formats.validate_crf_presence(crf, outputs_image_sequence=False)
        formats.validate_crf_for_codec(crf, codec)

    if options.image_format:
        image_format = formats.parse_image_format(options.image_format)
    else:
        image_format = formats.default_image_format(pixel_format, options.sequence)

    formats.validate_pixel_format_for_codec(pixel_format, codec)
    formats.validate_pixel_format_for_image_format(pixel_format, image_format)
    formats.validate_quality(options.quality)
    if options.quality is not None and image_format is not ImageFormat.JPEG:
        warnings.append(
            f"Quality {options.quality} is ignored because frames are rendered as {image_format.value}."
        )

    concurrency = resolve_concurrency(options.concurrency, cpu_count)

    output = resolve_output_path(options, codec, cwd, warnings)
    if output.exists() and not options.overwrite:
        raise PreconditionError(f"File at {output} already exists. Use --overwrite to overwrite.")
    if options.sequence and output.exists() and not output.is_dir():
        raise PreconditionError(f"Image sequence output {output} exists and is not a directory.")

    request = RenderRequest(
        source=Path(options.source),
        composition_id=options.composition_id,
        output=output,
        codec=codec,
        pixel_format=pixel_format,
        image_format=image_format,
        quality=options.quality,
        crf=crf,
        concurrency=concurrency,
        overwrite=options.overwrite,
        outputs_image_sequence=options.sequence,
        props=dict(options.props),
    )
    return request, warnings
