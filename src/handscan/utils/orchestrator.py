"""
Page recognition orchestrator.

Provides:
- Progress events, delivered to a callable or a bounded ProgressChannel
- Cooperative cancellation between lines
- The page pipeline: load -> preprocess -> segment -> recognize/decode
  per line -> assemble -> optional hybrid selection -> optional
  dictionary correction
"""

import asyncio
import logging
import queue
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterator, Optional, Union

from ..config import PipelineConfig, PreprocessingConfig
from .ctc import CTCDecoder
from .images import PixelBuffer, draw_debug_image, preprocess_image
from .io import load_image_source, save_image
from .ocr_text import (
    EngineResult,
    ExternalEngine,
    LineResult,
    OCRResult,
    assemble_page,
    build_line_result,
    create_engine,
    quality_warnings,
    select_hybrid_result,
)
from .postprocess import PostProcessor, apply_postprocessing
from .recognizer import SequenceRecognizer
from .segmentation import LineSegmenter

logger = logging.getLogger(__name__)

# Share of overall page progress given to each phase
PREPROCESS_SHARE = 0.5
SEGMENTATION_MARK = 0.6

CANCELLED_WARNING = "Recognition was cancelled; the result is partial"


# ============================================================================
# Progress and Cancellation
# ============================================================================

@dataclass(frozen=True)
class ProgressEvent:
    """One progress report: overall fraction in [0, 1] and a stage label."""
    fraction: float
    stage: str


class ProgressChannel:
    """
    Bounded queue of ProgressEvents for a consumer on another thread.

    Passing the channel as a page's progress sink makes the pipeline put
    events into it (blocking when full) and close it when the page ends.
    Iterating the channel yields events in order until it is closed.
    """

    _CLOSED = object()

    def __init__(self, maxsize: int = 64):
        self._queue = queue.Queue(maxsize=maxsize)
        self._closed = False

    def __call__(self, fraction: float, stage: str):
        self.put(ProgressEvent(fraction, stage))

    def put(self, event: ProgressEvent):
        if self._closed:
            raise RuntimeError("Progress channel is closed")
        self._queue.put(event)

    def close(self):
        if not self._closed:
            self._closed = True
            self._queue.put(self._CLOSED)

    @property
    def closed(self) -> bool:
        return self._closed

    def get(self, timeout: Optional[float] = None) -> Optional[ProgressEvent]:
        """Next event, or None once the channel is closed and drained."""
        item = self._queue.get(timeout=timeout)
        if item is self._CLOSED:
            # Keep the sentinel for any other reader
            self._queue.put(item)
            return None
        return item

    def __iter__(self) -> Iterator[ProgressEvent]:
        while True:
            event = self.get()
            if event is None:
                return
            yield event


ProgressSink = Union[Callable[[float, str], None], ProgressChannel]


class CancellationToken:
    """Thread-safe flag checked by the pipeline between lines."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()


# ============================================================================
# Recognition Orchestrator
# ============================================================================

class RecognitionOrchestrator:
    """
    Runs the recognition pipeline on one page at a time.

    The recognizer is shared read-only and is only disposed by close() when
    this orchestrator created it (see from_config). Independent pages can be
    processed concurrently with one orchestrator per worker.
    """

    def __init__(
        self,
        recognizer: SequenceRecognizer,
        config: Optional[PipelineConfig] = None,
        decoder: Optional[CTCDecoder] = None,
        segmenter: Optional[LineSegmenter] = None,
        external_engine: Optional[ExternalEngine] = None,
        output_dir: Optional[Union[str, Path]] = None,
        post_processor: Optional[PostProcessor] = None
    ):
        self.config = config or PipelineConfig()
        self.recognizer = recognizer
        self.decoder = decoder or CTCDecoder(recognizer.alphabet)
        self.segmenter = segmenter or LineSegmenter(self.config.segmentation)
        self.output_dir = Path(output_dir) if output_dir else None

        self._external_engine = external_engine
        self._post_processor = post_processor
        self._owns_recognizer = False

    @classmethod
    def from_config(
        cls,
        config: PipelineConfig,
        output_dir: Optional[Union[str, Path]] = None
    ) -> "RecognitionOrchestrator":
        """Build an orchestrator that owns its recognizer."""
        orchestrator = cls(SequenceRecognizer(config.recognizer), config=config, output_dir=output_dir)
        orchestrator._owns_recognizer = True
        return orchestrator

    @property
    def external_engine(self) -> Optional[ExternalEngine]:
        if self._external_engine is None and self.config.ocr.hybrid and self.config.ocr.external_engine:
            self._external_engine = create_engine(
                self.config.ocr.external_engine,
                language=self.config.ocr.language,
                use_gpu=self.config.recognizer.use_gpu
            )
            logger.info(f"Initialized external OCR engine: {self.config.ocr.external_engine}")
        return self._external_engine

    @property
    def post_processor(self) -> Optional[PostProcessor]:
        if self._post_processor is None and self.config.ocr.postprocess:
            self._post_processor = PostProcessor.from_dictionary(self.config.ocr.dictionary_path)
        return self._post_processor

    def run_page(
        self,
        source: Any,
        preprocessing: Optional[PreprocessingConfig] = None,
        progress: Optional[ProgressSink] = None,
        cancel_token: Optional[CancellationToken] = None
    ) -> OCRResult:
        """
        Recognize one page.

        Args:
            source: BytesSource / FilePathSource / DecodedSource, or raw bytes,
                a path, a numpy array or a PixelBuffer
            preprocessing: Overrides config.preprocessing for this page
            progress: Callable(fraction, stage) or ProgressChannel
            cancel_token: Checked before each line; a cancelled page returns
                the lines recognized so far with incomplete=True

        Returns:
            OCRResult for the page

        Raises:
            ImageSourceError: If the source cannot be turned into pixels
            ModelUnavailableError: If the recognizer cannot be initialized
        """
        try:
            return self._run_page(source, preprocessing, progress, cancel_token)
        finally:
            if isinstance(progress, ProgressChannel):
                progress.close()

    async def run_page_async(
        self,
        source: Any,
        preprocessing: Optional[PreprocessingConfig] = None,
        progress: Optional[ProgressSink] = None,
        cancel_token: Optional[CancellationToken] = None
    ) -> OCRResult:
        """run_page in a worker thread so the event loop is never blocked."""
        return await asyncio.to_thread(self.run_page, source, preprocessing, progress, cancel_token)

    def _run_page(
        self,
        source: Any,
        preprocessing: Optional[PreprocessingConfig],
        progress: Optional[ProgressSink],
        cancel_token: Optional[CancellationToken]
    ) -> OCRResult:
        start_time = time.time()

        def emit(fraction: float, stage: str):
            if progress is not None:
                progress(min(1.0, fraction), stage)

        # 1. Resolve the input before any pixel work
        page = load_image_source(source)
        logger.info(f"Processing page ({page.width}x{page.height})")

        if not self.recognizer.is_ready:
            self.recognizer.initialize()

        # 2. Preprocess
        preprocess_result = preprocess_image(
            page,
            preprocessing or self.config.preprocessing,
            progress=lambda fraction, stage: emit(fraction * PREPROCESS_SHARE, stage)
        )
        processed = preprocess_result.image

        # 3. Segment
        regions = self.segmenter.segment(processed)
        emit(SEGMENTATION_MARK, f"Found {len(regions)} text lines")

        # 4. Recognize line by line
        lines = []
        incomplete = False
        for i, region in enumerate(regions):
            if cancel_token is not None and cancel_token.is_cancelled:
                logger.info(f"Cancelled after {i} of {len(regions)} lines")
                incomplete = True
                break

            lines.append(self._recognize_line(i, region))
            emit(
                SEGMENTATION_MARK + (1.0 - SEGMENTATION_MARK) * (i + 1) / len(regions),
                f"Recognized line {i + 1}/{len(regions)}"
            )

        # 5. Assemble
        result = assemble_page(lines)
        result.incomplete = incomplete
        result.metadata = {
            "image_size": {"width": page.width, "height": page.height},
            "processed_size": {"width": processed.width, "height": processed.height},
            "deskew_angle": preprocess_result.deskew_angle,
            "transformations": preprocess_result.transformations,
            "line_count": len(regions),
        }

        # 6. Hybrid selection
        if not incomplete and self.config.ocr.hybrid:
            result = select_hybrid_result(result, self._run_external(page))

        # 7. Dictionary correction
        if self.config.ocr.postprocess:
            emit(1.0, "Applying corrections")
            apply_postprocessing(result, self.post_processor)

        result.high_confidence_threshold = self.config.ocr.high_confidence_threshold
        result.low_confidence_threshold = self.config.ocr.low_confidence_threshold
        result.processing_time_ms = (time.time() - start_time) * 1000.0
        result.warnings = quality_warnings(result)
        if incomplete:
            result.warnings.append(CANCELLED_WARNING)

        if self.config.debug_mode and self.output_dir:
            self._save_debug_image(processed, lines)

        logger.info(
            f"Page recognized in {result.processing_time_ms:.0f}ms: "
            f"{len(result.lines)} lines, confidence {result.confidence:.2f} ({result.engine_used})"
        )
        return result

    def _recognize_line(self, index: int, region) -> LineResult:
        """Recognize one line; a failure yields an empty zero-confidence line."""
        try:
            matrix = self.recognizer.recognize(region.padded_image)
            decoded = self.decoder.decode(matrix)
        except Exception as e:
            logger.warning(f"Recognition failed on line {index}: {e}")
            return LineResult(text="", confidence=0.0, bbox=region.bbox, baseline=region.baseline)

        logger.debug(f"Line {index}: {decoded.text!r} ({decoded.confidence:.2f})")
        return build_line_result(decoded, bbox=region.bbox, baseline=region.baseline)

    def _run_external(self, page: PixelBuffer) -> Optional[EngineResult]:
        try:
            engine = self.external_engine
            if engine is None:
                return None
            return engine.recognize(page, self.config.ocr.language)
        except Exception as e:
            logger.warning(f"External engine failed, keeping CRNN result: {e}")
            return None

    def _save_debug_image(self, image: PixelBuffer, lines):
        """Save the preprocessed page with line boxes drawn on it."""
        boxes = [line.bbox for line in lines if line.bbox is not None]
        labels = [f"{i}: {line.confidence:.2f}" for i, line in enumerate(lines) if line.bbox is not None]
        debug_path = self.output_dir / "debug" / "page_debug.png"
        save_image(draw_debug_image(image, boxes, labels), debug_path)
        logger.debug(f"Saved debug image: {debug_path}")

    def close(self):
        """Dispose the recognizer if this orchestrator created it."""
        if self._owns_recognizer:
            try:
                self.recognizer.dispose()
            except Exception as e:
                logger.error(f"Error while closing orchestrator: {e}")

    def __enter__(self) -> "RecognitionOrchestrator":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
