"""
Exception taxonomy for the handwriting recognition pipeline.

Degraded results (no text, low confidence) are never exceptions; they come
back as a valid OCRResult with warnings attached.
"""


class HandscanError(Exception):
    """Base class for all pipeline errors."""


class ImageSourceError(HandscanError, ValueError):
    """Input image is missing, of an unsupported type, or cannot be decoded."""


class ModelUnavailableError(HandscanError, RuntimeError):
    """Recognition model or backend could not be loaded; retry initialize()."""
