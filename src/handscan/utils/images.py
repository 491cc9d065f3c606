"""
Image preprocessing utilities for the handwriting recognition pipeline.

Provides:
- PixelBuffer, the (height, width, channels) uint8 page representation
- Grayscale, median denoise, histogram equalization, background removal
- Binary / Otsu / adaptive thresholding
- Projection-profile deskew
- Sharpening and inversion
- Full preprocessing pipeline with progress reporting

Stages that work on intensity read channel 0 and write the result back to
every channel, so a 3-channel buffer stays 3-channel throughout.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional, Tuple

import numpy as np

from ..config import PreprocessingConfig, ThresholdMethod

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float, str], None]

# Stage constants
MEDIAN_KERNEL = 3
BACKGROUND_WINDOW = 31
ADAPTIVE_WINDOW = 15
ADAPTIVE_C = 10
BINARY_CUTOFF = 128
INK_THRESHOLD = 128
DESKEW_ANGLES = tuple(range(-5, 6))
SHARPEN_KERNEL = np.array(
    [[0, -1, 0],
     [-1, 5, -1],
     [0, -1, 0]],
    dtype=np.float32
)


# ============================================================================
# Data Classes
# ============================================================================

@dataclass
class PixelBuffer:
    """
    Row-major uint8 pixel data of shape (height, width, channels).

    A buffer is owned by one stage at a time; stages return a new buffer
    that replaces the caller's handle rather than sharing arrays.
    """
    data: np.ndarray

    def __post_init__(self):
        if not isinstance(self.data, np.ndarray):
            raise TypeError(f"PixelBuffer data must be a numpy array, got {type(self.data).__name__}")
        if self.data.ndim != 3:
            raise ValueError(f"PixelBuffer data must be 3-dimensional, got shape {self.data.shape}")
        if self.data.dtype != np.uint8:
            raise ValueError(f"PixelBuffer data must be uint8, got {self.data.dtype}")
        if self.data.shape[2] not in (1, 3):
            raise ValueError(f"PixelBuffer must have 1 or 3 channels, got {self.data.shape[2]}")
        if self.data.shape[0] == 0 or self.data.shape[1] == 0:
            raise ValueError("PixelBuffer must not be empty")

    @property
    def height(self) -> int:
        return self.data.shape[0]

    @property
    def width(self) -> int:
        return self.data.shape[1]

    @property
    def channels(self) -> int:
        return self.data.shape[2]

    @property
    def intensity(self) -> np.ndarray:
        """Channel 0 as a 2-D view."""
        return self.data[:, :, 0]

    @classmethod
    def blank(cls, width: int, height: int, channels: int = 3, fill: int = 255) -> "PixelBuffer":
        return cls(np.full((height, width, channels), fill, dtype=np.uint8))

    @classmethod
    def from_gray(cls, gray: np.ndarray, channels: int = 3) -> "PixelBuffer":
        gray = np.asarray(gray, dtype=np.uint8)
        return cls(np.repeat(gray[:, :, None], channels, axis=2))

    def copy(self) -> "PixelBuffer":
        return PixelBuffer(self.data.copy())

    def with_intensity(self, gray: np.ndarray) -> "PixelBuffer":
        """New buffer of the same channel count with every channel set to gray."""
        return PixelBuffer.from_gray(gray, channels=self.channels)


@dataclass
class PreprocessingResult:
    """Result of image preprocessing."""
    image: PixelBuffer
    original_shape: Tuple[int, int]
    deskew_angle: float = 0.0
    transformations: List[str] = field(default_factory=list)


# ============================================================================
# Helpers
# ============================================================================

def _round_half_up(values: np.ndarray) -> np.ndarray:
    return np.floor(values + 0.5)


def _to_uint8(values: np.ndarray) -> np.ndarray:
    return np.clip(values, 0, 255).astype(np.uint8)


def local_mean(gray: np.ndarray, window: int) -> np.ndarray:
    """
    Mean of the window x window neighbourhood of every pixel.

    The window is clamped at the image edges, so border pixels average only
    the in-bounds neighbours.
    """
    import cv2

    h, w = gray.shape
    half = window // 2
    integral = cv2.integral(np.ascontiguousarray(gray), sdepth=cv2.CV_64F)

    rows = np.arange(h)
    cols = np.arange(w)
    y0 = np.clip(rows - half, 0, h)
    y1 = np.clip(rows + half + 1, 0, h)
    x0 = np.clip(cols - half, 0, w)
    x1 = np.clip(cols + half + 1, 0, w)

    sums = (
        integral[np.ix_(y1, x1)]
        - integral[np.ix_(y0, x1)]
        - integral[np.ix_(y1, x0)]
        + integral[np.ix_(y0, x0)]
    )
    counts = np.outer(y1 - y0, x1 - x0)
    return sums / counts


def histogram(gray: np.ndarray) -> np.ndarray:
    """256-bin intensity histogram."""
    return np.bincount(gray.ravel(), minlength=256)


# ============================================================================
# Core Preprocessing Functions
# ============================================================================

def to_grayscale(buffer: PixelBuffer) -> PixelBuffer:
    """
    Convert to luma (0.299R + 0.587G + 0.114B), written to all channels.

    Single-channel buffers are returned as a copy.
    """
    if buffer.channels == 1:
        return buffer.copy()

    rgb = buffer.data.astype(np.float64)
    luma = 0.299 * rgb[:, :, 0] + 0.587 * rgb[:, :, 1] + 0.114 * rgb[:, :, 2]
    return buffer.with_intensity(_to_uint8(_round_half_up(luma)))


def denoise(buffer: PixelBuffer) -> PixelBuffer:
    """
    3x3 median filter on channel 0.

    Border pixels are left untouched; only interior pixels have a full
    neighbourhood.
    """
    import cv2

    if buffer.height < MEDIAN_KERNEL or buffer.width < MEDIAN_KERNEL:
        return buffer.copy()

    gray = np.ascontiguousarray(buffer.intensity)
    median = cv2.medianBlur(gray, MEDIAN_KERNEL)

    output = buffer.data.copy()
    output[1:-1, 1:-1, :] = median[1:-1, 1:-1, None]
    logger.debug("Applied 3x3 median denoise")
    return PixelBuffer(output)


def enhance_contrast(buffer: PixelBuffer) -> PixelBuffer:
    """
    Global histogram equalization.

    p -> round((CDF[p] - cdf_min) / (total - cdf_min) * 255), where cdf_min
    is the smallest nonzero CDF value.
    """
    gray = buffer.intensity
    cdf = np.cumsum(histogram(gray)).astype(np.float64)
    total = float(gray.size)
    cdf_min = float(cdf[np.flatnonzero(cdf)[0]])

    if total == cdf_min:
        # Single intensity, nothing to spread
        return buffer.copy()

    lut = _to_uint8(_round_half_up((cdf - cdf_min) / (total - cdf_min) * 255.0))
    logger.debug("Applied histogram equalization")
    return buffer.with_intensity(lut[gray])


def remove_background(buffer: PixelBuffer, window: int = BACKGROUND_WINDOW) -> PixelBuffer:
    """
    Flatten uneven illumination.

    Background is the clamped window x window box average; each pixel is
    recentred as clamp(p - background + 128, 0, 255).
    """
    gray = buffer.intensity
    background = local_mean(gray, window)
    flattened = np.rint(gray.astype(np.float64) - background + 128.0)
    logger.debug(f"Removed background with {window}x{window} box average")
    return buffer.with_intensity(_to_uint8(flattened))


def otsu_threshold(hist: np.ndarray) -> int:
    """
    Otsu's threshold from a 256-bin histogram.

    Returns the intensity t maximizing wB * wF * (mB - mF)^2, where the
    background class holds intensities <= t. When several t share the
    maximal variance, the middle of that range is returned. Returns 0 when
    the histogram has a single populated intensity.
    """
    hist = np.asarray(hist, dtype=np.float64)
    levels = np.arange(hist.size, dtype=np.float64)
    total = hist.sum()

    w_b = np.cumsum(hist)
    w_f = total - w_b
    sum_b = np.cumsum(levels * hist)
    sum_all = sum_b[-1]

    valid = (w_b > 0) & (w_f > 0)
    if not valid.any():
        return 0

    variance = np.zeros_like(hist)
    m_b = sum_b[valid] / w_b[valid]
    m_f = (sum_all - sum_b[valid]) / w_f[valid]
    variance[valid] = w_b[valid] * w_f[valid] * (m_b - m_f) ** 2

    best = np.flatnonzero(valid & (variance == variance[valid].max()))
    return int((best[0] + best[-1]) // 2)


def adaptive_threshold(
    gray: np.ndarray,
    window: int = ADAPTIVE_WINDOW,
    c: float = ADAPTIVE_C
) -> np.ndarray:
    """Local-mean threshold: ink where p < mean(window) - c."""
    mean = local_mean(gray, window)
    return np.where(gray < mean - c, 0, 255).astype(np.uint8)


def binarize(buffer: PixelBuffer, method: str = ThresholdMethod.ADAPTIVE) -> PixelBuffer:
    """
    Convert to pure black and white (0 or 255 in every channel).

    Args:
        buffer: Input buffer (channel 0 is thresholded)
        method: 'binary' (fixed 128), 'otsu' or 'adaptive'

    Returns:
        Binary buffer
    """
    gray = buffer.intensity

    if method == ThresholdMethod.BINARY:
        binary = np.where(gray < BINARY_CUTOFF, 0, 255).astype(np.uint8)
    elif method == ThresholdMethod.OTSU:
        t = otsu_threshold(histogram(gray))
        logger.debug(f"Otsu threshold: {t}")
        binary = np.where(gray <= t, 0, 255).astype(np.uint8)
    elif method == ThresholdMethod.ADAPTIVE:
        binary = adaptive_threshold(gray)
    else:
        raise ValueError(f"Unknown binarization method: {method}")

    logger.debug(f"Applied {method} binarization")
    return buffer.with_intensity(binary)


# ============================================================================
# Deskew
# ============================================================================

def rotate_image(image: np.ndarray, angle: float, expand: bool = False) -> np.ndarray:
    """
    Rotate about the image center with nearest-neighbour sampling.

    Out-of-bounds samples are white. With expand=True the canvas grows to
    hold the whole rotated image.
    """
    import cv2

    h, w = image.shape[:2]
    rad = math.radians(angle)
    cos, sin = math.cos(rad), math.sin(rad)

    if expand:
        new_w = int(math.ceil(round(w * abs(cos) + h * abs(sin), 6)))
        new_h = int(math.ceil(round(w * abs(sin) + h * abs(cos), 6)))
    else:
        new_w, new_h = w, h

    cx, cy = w / 2.0, h / 2.0
    ncx, ncy = new_w / 2.0, new_h / 2.0

    # Destination -> source mapping
    matrix = np.array([
        [cos, -sin, cx - cos * ncx + sin * ncy],
        [sin, cos, cy - sin * ncx - cos * ncy],
    ], dtype=np.float64)

    squeeze = image.ndim == 3 and image.shape[2] == 1
    src = image[:, :, 0] if squeeze else image
    border = 255 if src.ndim == 2 else (255,) * src.shape[2]

    rotated = cv2.warpAffine(
        np.ascontiguousarray(src),
        matrix,
        (new_w, new_h),
        flags=cv2.INTER_NEAREST | cv2.WARP_INVERSE_MAP,
        borderMode=cv2.BORDER_CONSTANT,
        borderValue=border
    )
    return rotated[:, :, None] if squeeze else rotated


def projection_variance(gray: np.ndarray, ink_threshold: int = INK_THRESHOLD) -> float:
    """Variance of the per-row ink count (horizontal projection profile)."""
    profile = np.count_nonzero(gray < ink_threshold, axis=1)
    return float(np.var(profile))


def estimate_skew_angle(
    gray: np.ndarray,
    angles: Iterable[float] = DESKEW_ANGLES,
    criterion: str = "min"
) -> float:
    """
    Pick the candidate rotation by projection-profile variance.

    criterion='min' keeps the angle with the smallest variance, 'max' the
    largest. Ties keep the earliest candidate.
    """
    if criterion not in ("min", "max"):
        raise ValueError(f"Unknown deskew criterion: {criterion}")

    best_angle = 0.0
    best_score = None
    for angle in angles:
        score = projection_variance(rotate_image(gray, angle))
        logger.debug(f"Deskew candidate {angle:+.1f}°: variance={score:.2f}")
        if best_score is None or (score < best_score if criterion == "min" else score > best_score):
            best_score = score
            best_angle = float(angle)

    return best_angle


def deskew(
    buffer: PixelBuffer,
    angles: Iterable[float] = DESKEW_ANGLES,
    criterion: str = "min"
) -> Tuple[PixelBuffer, float]:
    """
    Correct skew by projection-profile search.

    Returns the (possibly resized) buffer and the applied angle. The canvas
    is only rotated and white-padded when the chosen angle is nonzero.
    """
    angle = estimate_skew_angle(buffer.intensity, angles, criterion)

    if angle == 0:
        return buffer.copy(), 0.0

    rotated = rotate_image(buffer.data, angle, expand=True)
    logger.info(f"Deskewed image by {angle:.1f}° -> {rotated.shape[1]}x{rotated.shape[0]}")
    return PixelBuffer(np.ascontiguousarray(rotated)), angle


# ============================================================================
# Sharpen / Invert
# ============================================================================

def sharpen(buffer: PixelBuffer) -> PixelBuffer:
    """3x3 sharpening kernel on interior pixels, clamped to [0, 255]."""
    import cv2

    if buffer.height < 3 or buffer.width < 3:
        return buffer.copy()

    gray = buffer.intensity.astype(np.float32)
    filtered = cv2.filter2D(gray, cv2.CV_32F, SHARPEN_KERNEL, borderType=cv2.BORDER_REPLICATE)

    output = buffer.data.copy()
    output[1:-1, 1:-1, :] = _to_uint8(filtered[1:-1, 1:-1])[:, :, None]
    return PixelBuffer(output)


def invert(buffer: PixelBuffer) -> PixelBuffer:
    """Per-channel 255 - p."""
    return PixelBuffer(255 - buffer.data)


# ============================================================================
# Main Preprocessing Pipeline
# ============================================================================

def _report(progress: Optional[ProgressCallback], fraction: float, stage: str):
    if progress is not None:
        progress(fraction, stage)


def preprocess_image(
    buffer: PixelBuffer,
    config: Optional[PreprocessingConfig] = None,
    progress: Optional[ProgressCallback] = None
) -> PreprocessingResult:
    """
    Apply the full preprocessing pipeline.

    Stages run in fixed order: grayscale, denoise, contrast, background
    removal, threshold, deskew, sharpen, invert. Progress is reported ten
    times (fractions 0.1 to 1.0): once on entry, once after each stage
    whether it ran or was disabled, and once on completion.

    Args:
        buffer: Input page
        config: Stage toggles (defaults to PreprocessingConfig())
        progress: Optional callable(fraction, stage_label)

    Returns:
        PreprocessingResult with the corrected buffer and metadata
    """
    config = config or PreprocessingConfig()
    original_shape = (buffer.height, buffer.width)
    processed = buffer.copy()
    transformations = []
    deskew_angle = 0.0

    _report(progress, 0.1, "Image loaded")

    # 1. Grayscale
    if config.grayscale:
        processed = to_grayscale(processed)
        transformations.append("grayscale")
    _report(progress, 0.2, "Converted to grayscale" if config.grayscale else "Grayscale skipped")

    # 2. Denoise
    if config.denoise:
        processed = denoise(processed)
        transformations.append("denoise")
    _report(progress, 0.3, "Noise removed" if config.denoise else "Denoise skipped")

    # 3. Enhance contrast
    if config.enhance_contrast:
        processed = enhance_contrast(processed)
        transformations.append("enhance_contrast")
    _report(progress, 0.4, "Contrast enhanced" if config.enhance_contrast else "Contrast skipped")

    # 4. Remove background
    if config.remove_background:
        processed = remove_background(processed)
        transformations.append("remove_background")
    _report(progress, 0.5, "Background removed" if config.remove_background else "Background skipped")

    # 5. Threshold
    if config.threshold != ThresholdMethod.NONE:
        processed = binarize(processed, method=config.threshold)
        transformations.append(f"threshold_{config.threshold}")
    _report(
        progress, 0.6,
        f"Applied {config.threshold} threshold" if config.threshold != ThresholdMethod.NONE else "Threshold skipped"
    )

    # 6. Deskew
    if config.deskew:
        processed, deskew_angle = deskew(processed)
        if deskew_angle != 0:
            transformations.append(f"deskew_{deskew_angle:.0f}deg")
    _report(progress, 0.7, "Skew corrected" if config.deskew else "Deskew skipped")

    # 7. Sharpen
    if config.sharpen:
        processed = sharpen(processed)
        transformations.append("sharpen")
    _report(progress, 0.8, "Sharpened" if config.sharpen else "Sharpen skipped")

    # 8. Invert
    if config.invert:
        processed = invert(processed)
        transformations.append("invert")
    _report(progress, 0.9, "Inverted" if config.invert else "Invert skipped")

    logger.info(f"Preprocessing complete: {' -> '.join(transformations) or 'no changes'}")
    _report(progress, 1.0, "Preprocessing complete")

    return PreprocessingResult(
        image=processed,
        original_shape=original_shape,
        deskew_angle=deskew_angle,
        transformations=transformations
    )


# ============================================================================
# Debug Visualization
# ============================================================================

def draw_debug_image(
    image: PixelBuffer,
    boxes: List[Tuple[int, int, int, int]],
    labels: Optional[List[str]] = None,
    line_width: int = 2
) -> np.ndarray:
    """
    Draw bounding boxes on a copy of the image for debugging.

    Args:
        image: Page buffer
        boxes: List of (x, y, width, height) tuples
        labels: Optional labels for each box
        line_width: Line thickness

    Returns:
        RGB array with drawn boxes
    """
    import cv2

    if image.channels == 1:
        debug_img = np.repeat(image.data, 3, axis=2)
    else:
        debug_img = image.data.copy()
    debug_img = np.ascontiguousarray(debug_img)

    default_colors = [
        (255, 0, 0),
        (0, 160, 0),
        (0, 0, 255),
        (200, 0, 200),
    ]

    for i, (x, y, w, h) in enumerate(boxes):
        color = default_colors[i % len(default_colors)]
        cv2.rectangle(debug_img, (x, y), (x + w, y + h), color, line_width)

        if labels and i < len(labels):
            cv2.putText(
                debug_img,
                labels[i],
                (x + 2, max(y - 4, 10)),
                cv2.FONT_HERSHEY_SIMPLEX,
                0.4,
                color,
                1
            )

    return debug_img
