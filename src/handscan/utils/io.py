"""
I/O utilities for the handwriting recognition pipeline.

Handles:
- Image source variants (bytes, file path, decoded buffer)
- Normalization of every source into a PixelBuffer
- JSON serialization
- Directory management
"""

import json
import logging
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Any, Union

import numpy as np

from ..errors import ImageSourceError
from .images import PixelBuffer

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = ('.png', '.jpg', '.jpeg', '.tiff', '.tif', '.bmp', '.webp')


# ============================================================================
# Image Sources
# ============================================================================

@dataclass(frozen=True)
class BytesSource:
    """Encoded image bytes (PNG, JPEG, ...)."""
    data: bytes


@dataclass(frozen=True)
class FilePathSource:
    """Path or file:// URI of an image on disk."""
    path: Union[str, Path]


@dataclass(frozen=True)
class DecodedSource:
    """Already decoded pixels: (h, w), (h, w, 1), (h, w, 3) RGB or (h, w, 4) RGBA."""
    pixels: Any


ImageSource = Union[BytesSource, FilePathSource, DecodedSource]


def as_image_source(value: Any) -> ImageSource:
    """
    Wrap a raw value in the matching ImageSource variant.

    bytes -> BytesSource, str/Path -> FilePathSource, ndarray/PixelBuffer ->
    DecodedSource. Anything else is rejected.
    """
    if isinstance(value, (BytesSource, FilePathSource, DecodedSource)):
        return value
    if isinstance(value, (bytes, bytearray, memoryview)):
        return BytesSource(bytes(value))
    if isinstance(value, (str, Path)):
        return FilePathSource(value)
    if isinstance(value, (np.ndarray, PixelBuffer)):
        return DecodedSource(value)
    raise ImageSourceError(f"Unsupported image source type: {type(value).__name__}")


def _normalize_pixels(pixels: np.ndarray, color_order: str = "rgb") -> PixelBuffer:
    """Convert a decoded array to a 1- or 3-channel RGB PixelBuffer."""
    import cv2

    if not isinstance(pixels, np.ndarray):
        raise ImageSourceError(f"Decoded pixels must be a numpy array, got {type(pixels).__name__}")
    if pixels.size == 0:
        raise ImageSourceError("Decoded image is empty")

    if pixels.dtype != np.uint8:
        if np.issubdtype(pixels.dtype, np.floating) and pixels.max(initial=0) <= 1.0:
            pixels = pixels * 255.0
        pixels = np.clip(pixels, 0, 255).astype(np.uint8)

    if pixels.ndim == 2:
        return PixelBuffer(np.ascontiguousarray(pixels[:, :, None]))

    if pixels.ndim != 3:
        raise ImageSourceError(f"Unexpected image shape: {pixels.shape}")

    channels = pixels.shape[2]
    if channels == 1:
        return PixelBuffer(np.ascontiguousarray(pixels))
    if channels == 3:
        if color_order == "bgr":
            pixels = cv2.cvtColor(pixels, cv2.COLOR_BGR2RGB)
        return PixelBuffer(np.ascontiguousarray(pixels))
    if channels == 4:
        code = cv2.COLOR_BGRA2RGB if color_order == "bgr" else cv2.COLOR_RGBA2RGB
        return PixelBuffer(np.ascontiguousarray(cv2.cvtColor(np.ascontiguousarray(pixels), code)))

    raise ImageSourceError(f"Unsupported channel count: {channels}")


def _resolve_path(path: Union[str, Path]) -> Path:
    text = str(path)
    if text.startswith("file://"):
        from urllib.parse import unquote, urlparse
        text = unquote(urlparse(text).path)
    return Path(text)


def decode_image_bytes(data: bytes) -> PixelBuffer:
    """Decode encoded image bytes into an RGB PixelBuffer."""
    import cv2

    if not data:
        raise ImageSourceError("Image bytes are empty")

    array = np.frombuffer(data, dtype=np.uint8)
    decoded = cv2.imdecode(array, cv2.IMREAD_UNCHANGED)
    if decoded is None:
        raise ImageSourceError("Could not decode image bytes")

    if decoded.dtype == np.uint16:
        decoded = (decoded / 257).astype(np.uint8)

    return _normalize_pixels(decoded, color_order="bgr")


def load_image(image_path: Union[str, Path]) -> PixelBuffer:
    """
    Load an image from file.

    Args:
        image_path: Filesystem path or file:// URI

    Returns:
        RGB PixelBuffer

    Raises:
        ImageSourceError: If the file doesn't exist or cannot be decoded
    """
    path = _resolve_path(image_path)
    if not path.is_file():
        raise ImageSourceError(f"Image file not found: {path}")

    if path.suffix.lower() not in IMAGE_EXTENSIONS:
        logger.warning(f"Unrecognized image extension {path.suffix!r}, trying to decode anyway")

    try:
        buffer = decode_image_bytes(path.read_bytes())
    except ImageSourceError as e:
        raise ImageSourceError(f"Could not decode image {path}: {e}") from e

    logger.debug(f"Loaded image: {path}, size: {buffer.width}x{buffer.height}x{buffer.channels}")
    return buffer


def load_image_source(source: Any) -> PixelBuffer:
    """
    Resolve any supported image source into a fresh PixelBuffer.

    Fails fast with ImageSourceError before any pixel work begins.
    """
    source = as_image_source(source)

    if isinstance(source, BytesSource):
        return decode_image_bytes(source.data)
    if isinstance(source, FilePathSource):
        return load_image(source.path)

    pixels = source.pixels
    if isinstance(pixels, PixelBuffer):
        return pixels.copy()
    try:
        return _normalize_pixels(np.array(pixels, copy=True))
    except ValueError as e:
        if isinstance(e, ImageSourceError):
            raise
        raise ImageSourceError(f"Invalid decoded image: {e}") from e


def save_image(buffer: PixelBuffer, output_path: Union[str, Path]) -> Path:
    """Save an RGB PixelBuffer (or RGB array) to file."""
    import cv2

    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    data = buffer.data if isinstance(buffer, PixelBuffer) else buffer
    if data.ndim == 3 and data.shape[2] == 3:
        data = cv2.cvtColor(data, cv2.COLOR_RGB2BGR)
    elif data.ndim == 3 and data.shape[2] == 1:
        data = data[:, :, 0]

    cv2.imwrite(str(output_path), data)
    logger.debug(f"Saved image: {output_path}")
    return output_path


# ============================================================================
# JSON Serialization
# ============================================================================

class EnhancedJSONEncoder(json.JSONEncoder):
    """JSON encoder that handles numpy arrays and dataclasses."""

    def default(self, obj):
        if isinstance(obj, np.ndarray):
            return obj.tolist()
        if isinstance(obj, np.integer):
            return int(obj)
        if isinstance(obj, np.floating):
            return float(obj)
        if isinstance(obj, np.bool_):
            return bool(obj)
        if hasattr(obj, 'to_dict'):
            return obj.to_dict()
        if hasattr(obj, '__dataclass_fields__'):
            return asdict(obj)
        if isinstance(obj, Path):
            return str(obj)
        return super().default(obj)


def save_json(
    data: Any,
    output_path: Union[str, Path],
    indent: int = 2,
    ensure_ascii: bool = False
) -> Path:
    """
    Save data to a JSON file.

    Args:
        data: Data to serialize (dict, list, dataclass, etc.)
        output_path: Path to save the JSON file
        indent: Indentation level for pretty printing
        ensure_ascii: If True, escape non-ASCII characters

    Returns:
        Path to the saved file
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    with open(output_path, 'w', encoding='utf-8') as f:
        json.dump(data, f, indent=indent, ensure_ascii=ensure_ascii, cls=EnhancedJSONEncoder)

    logger.debug(f"Saved JSON: {output_path}")
    return output_path


def load_json(json_path: Union[str, Path]) -> Any:
    """Load data from a JSON file."""
    json_path = Path(json_path)
    if not json_path.exists():
        raise FileNotFoundError(f"JSON file not found: {json_path}")

    with open(json_path, 'r', encoding='utf-8') as f:
        return json.load(f)


def ensure_dir(path: Union[str, Path]) -> Path:
    """Ensure a directory exists, creating it if necessary."""
    path = Path(path)
    path.mkdir(parents=True, exist_ok=True)
    return path
