"""Error taxonomy for the classification pipeline.

Batch entry points capture these per item; single-item entry points let them
propagate to the caller (CLI or HTTP layer).
"""

from __future__ import annotations


class MediaClassifyError(Exception):
    """Base class for all pipeline errors.

    Carries a human-readable message and, where available, the offending
    input echoed back so callers can report it.
    """

    def __init__(self, message: str, *, input_ref: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.input_ref = input_ref


class InvalidInputError(MediaClassifyError):
    """Malformed or empty media reference, or an invalid request option."""


class UnauthorizedError(MediaClassifyError):
    """The request did not carry the configured API key."""


class NotFoundError(MediaClassifyError):
    """A local resource does not exist."""


class FetchFailedError(MediaClassifyError):
    """Network or transport failure while acquiring media."""


class SizeExceededError(MediaClassifyError):
    """Resolved media is larger than the configured byte ceiling."""


class ProbeFailedError(MediaClassifyError):
    """Video duration could not be determined."""


class ExtractionEmptyError(MediaClassifyError):
    """No frames could be extracted in any I/O mode."""


class ModelMismatchError(MediaClassifyError):
    """Model input shape undefined or class count disagrees with the labels."""


class ModelLoadError(MediaClassifyError):
    """Model artifacts or label metadata could not be loaded."""


class WorkerFailureError(MediaClassifyError):
    """Delegated preprocessing failed and the in-process fallback failed too."""


class DecodeFailedError(MediaClassifyError):
    """Image bytes could not be decoded into a tensor of the target size."""


class FfmpegUnavailableError(MediaClassifyError):
    """The ffmpeg executable required for video input was not found."""


def describe(error: BaseException) -> str:
    """Return the message used in error-tagged result entries."""
    if isinstance(error, MediaClassifyError):
        return error.message
    return str(error) or type(error).__name__
