"""Error taxonomy for render runs.

Every error carries the process exit code the command line reports for it.
"""
from __future__ import annotations

from typing import Optional, Sequence


class RenderError(Exception):
    exit_code = 1


class ConfigurationError(RenderError):
    """Conflicting or invalid output parameters, detected before any work starts."""

    exit_code = 1


class PreconditionError(RenderError):
    """The environment does not allow the run (existing output, missing input)."""

    exit_code = 1


class CompositionNotFoundError(PreconditionError):
    def __init__(self, composition_id: str, available: Sequence[str]) -> None:
        self.composition_id = composition_id
        self.available = list(available)
        listing = ", ".join(self.available) if self.available else "(none)"
        super().__init__(
            f"Cannot find composition with ID {composition_id}. Available compositions: {listing}"
        )


class CollaboratorError(RenderError):
    """Packaging, frame rendering or encoding failed."""

    exit_code = 2

    def __init__(self, message: str, *, stage: Optional[str] = None) -> None:
        super().__init__(message)
        self.stage = stage
