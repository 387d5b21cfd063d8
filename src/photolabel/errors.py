"""Error taxonomy shared by the model lifecycle and the classification pipeline."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum


class ErrorKind(StrEnum):
    MODEL_LOAD = "model_load"
    CLASSIFICATION = "classification"
    CAMERA = "camera"
    PERMISSION = "permission"


@dataclass(frozen=True)
class AppError:
    """An error published as state rather than raised across the API boundary."""

    kind: ErrorKind
    message: str
    original_error: BaseException | None = None


class PhotoLabelError(Exception):
    """Base class for PhotoLabel errors."""

    kind: ErrorKind | None = None


class ModelLoadError(PhotoLabelError):
    """The model could not be downloaded, opened, or is not supported."""

    kind = ErrorKind.MODEL_LOAD


class ModelNotReadyError(PhotoLabelError):
    """The model handle was requested before a successful load."""

    kind = ErrorKind.MODEL_LOAD


class ClassificationError(PhotoLabelError):
    """A single classification request failed."""

    kind = ErrorKind.CLASSIFICATION


class ImageFetchError(ClassificationError):
    """The image bytes could not be read from their handle."""


class ImageDecodeError(ClassificationError):
    """The image bytes are corrupt or in an unsupported format."""


def error_kind(exc: BaseException, default: ErrorKind) -> ErrorKind:
    """Return the kind carried by a PhotoLabel error, or ``default`` for anything else."""
    if isinstance(exc, PhotoLabelError) and exc.kind is not None:
        return exc.kind
    return default
