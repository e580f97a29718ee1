"""Exceptions raised by the tagging pipeline."""

from __future__ import annotations


class TaggerError(Exception):
    """Base exception for all tagging errors."""


class ConfigError(TaggerError):
    """Invalid or missing configuration; raised before any image is attempted."""


class ImageLoadError(TaggerError):
    """The source image could not be read, fetched or decoded."""


class UnsupportedImageFormat(ImageLoadError):
    """No decoder accepted the image bytes."""


class TileRenderError(TaggerError):
    """A planned tile could not be cropped or encoded."""


class OutputWriteError(TaggerError):
    """The per-image result file could not be written."""


class InferenceError(TaggerError):
    """Transport failure talking to the inference endpoint."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ResponseParseError(TaggerError):
    """The model response did not have the expected shape."""

    def __init__(self, message: str, response: str = ""):
        super().__init__(message)
        self.response = response
