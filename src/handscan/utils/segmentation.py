"""
Text line segmentation by horizontal projection profile.

Rows whose ink count exceeds a fraction of the page width are text rows.
Consecutive text rows form a band; a band closes once a run of blank rows
reaches the minimum gap (or the page ends). Bands shorter than the minimum
line height are dropped as noise. Each accepted band is cut out at full
page width with white padding above and below.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np

from ..config import SegmentationConfig
from .images import PixelBuffer

logger = logging.getLogger(__name__)


@dataclass
class LineRegion:
    """A single text line cut from the page."""
    start_y: int
    end_y: int
    padded_image: PixelBuffer
    baseline: int = 0

    @property
    def height(self) -> int:
        return self.end_y - self.start_y

    @property
    def bbox(self) -> Tuple[int, int, int, int]:
        """(x, y, width, height) in page coordinates."""
        return (0, self.start_y, self.padded_image.width, self.height)


def ink_profile(gray: np.ndarray, ink_threshold: int = 128) -> np.ndarray:
    """Per-row count of pixels darker than ink_threshold."""
    return np.count_nonzero(gray < ink_threshold, axis=1)


def find_line_bands(
    text_rows: np.ndarray,
    min_gap: int,
    min_line_height: int
) -> List[Tuple[int, int]]:
    """
    Group a boolean row mask into (start, end) line bands.

    A band closes at the first blank run of at least min_gap rows, or at the
    end of the page. Shorter blank runs are absorbed into the band. Closed
    bands shorter than min_line_height are dropped.
    """
    height = len(text_rows)
    bands = []
    in_line = False
    start = 0

    for y in range(height):
        if text_rows[y]:
            if not in_line:
                in_line = True
                start = y
            continue

        if not in_line:
            continue

        gap = 0
        while y + gap < height and not text_rows[y + gap] and gap < min_gap:
            gap += 1

        if gap >= min_gap or y + gap >= height:
            if y - start >= min_line_height:
                bands.append((start, y))
            in_line = False

    if in_line and height - start >= min_line_height:
        bands.append((start, height))

    return bands


def estimate_baseline(gray_band: np.ndarray, ink_threshold: int = 128) -> int:
    """
    Row of maximum ink in the lower half of a band.

    Falls back to 70% of the band height when the lower half has no ink.
    """
    height = gray_band.shape[0]
    default = int(height * 0.7)
    half = height // 2

    lower = ink_profile(gray_band[half:], ink_threshold)
    if lower.size == 0 or lower.max() == 0:
        return default
    return half + int(np.argmax(lower))


class LineSegmenter:
    """Splits a page into ordered LineRegions."""

    def __init__(self, config: Optional[SegmentationConfig] = None):
        self.config = config or SegmentationConfig()

    def _extract(self, buffer: PixelBuffer, start: int, end: int) -> LineRegion:
        cfg = self.config
        line_height = end - start
        padding = int(line_height * cfg.padding_fraction)

        canvas = np.full(
            (line_height + 2 * padding, buffer.width, buffer.channels), 255, dtype=np.uint8
        )
        src_start = max(0, start - padding)
        src_end = min(buffer.height, end + padding)
        canvas[:src_end - src_start] = buffer.data[src_start:src_end]

        baseline = estimate_baseline(buffer.intensity[start:end], cfg.ink_threshold)
        return LineRegion(
            start_y=start,
            end_y=end,
            padded_image=PixelBuffer(canvas),
            baseline=baseline
        )

    def segment(self, buffer: PixelBuffer) -> List[LineRegion]:
        """
        Detect text lines top to bottom.

        Never returns an empty list: a page without any qualifying band is
        returned as one line covering the whole image.
        """
        cfg = self.config
        profile = ink_profile(buffer.intensity, cfg.ink_threshold)
        text_rows = profile > buffer.width * cfg.min_text_fraction

        bands = find_line_bands(text_rows, cfg.min_gap, cfg.min_line_height)

        if not bands:
            logger.debug("No text lines found, using the full page as a single line")
            return [LineRegion(
                start_y=0,
                end_y=buffer.height,
                padded_image=buffer.copy(),
                baseline=estimate_baseline(buffer.intensity, cfg.ink_threshold)
            )]

        lines = [self._extract(buffer, start, end) for start, end in bands]
        logger.info(f"Segmented {len(lines)} text lines")
        return lines
