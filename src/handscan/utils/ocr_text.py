"""
OCR result types, external engines and hybrid selection.

Provides:
- Word / line / page result dataclasses with JSON-ready to_dict()
- Page assembly from decoded lines
- External engines (Tesseract, EasyOCR) behind recognize(image, language)
- Confidence-based hybrid selection between the CRNN and an external engine
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple, Dict, Any, Protocol, Union

import numpy as np

from ..errors import ModelUnavailableError
from .ctc import DecodedLine
from .images import PixelBuffer

logger = logging.getLogger(__name__)

BBox = Tuple[int, int, int, int]  # (x, y, width, height)

NO_TEXT_WARNING = "No text detected; try better lighting or a closer capture"
LOW_CONFIDENCE_WARNING = "Low recognition confidence; check the text or retake the photo"

PRIMARY_ENGINE = "crnn"


# ============================================================================
# Data Classes
# ============================================================================

@dataclass
class WordResult:
    """OCR result for a single word."""
    text: str
    confidence: float
    bbox: Optional[BBox] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"text": self.text, "confidence": self.confidence, "bbox": self.bbox}


@dataclass
class LineResult:
    """OCR result for a line of text."""
    text: str
    confidence: float
    words: List[WordResult] = field(default_factory=list)
    bbox: Optional[BBox] = None
    baseline: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "text": self.text,
            "confidence": self.confidence,
            "bbox": self.bbox,
            "baseline": self.baseline,
            "words": [w.to_dict() for w in self.words]
        }


@dataclass
class OCRResult:
    """Complete OCR result for a page."""
    text: str
    confidence: float
    lines: List[LineResult] = field(default_factory=list)
    processing_time_ms: float = 0.0
    engine_used: str = PRIMARY_ENGINE
    alternatives: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    incomplete: bool = False
    corrections: int = 0
    uncertain_words: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    # Set from OCRConfig by the orchestrator
    high_confidence_threshold: float = field(default=0.80, repr=False)
    low_confidence_threshold: float = field(default=0.65, repr=False)

    @property
    def is_high_confidence(self) -> bool:
        return self.confidence >= self.high_confidence_threshold

    @property
    def is_low_confidence(self) -> bool:
        return self.confidence < self.low_confidence_threshold

    def to_dict(self) -> Dict[str, Any]:
        return {
            "text": self.text,
            "confidence": self.confidence,
            "processing_time_ms": self.processing_time_ms,
            "engine": self.engine_used,
            "incomplete": self.incomplete,
            "warnings": self.warnings,
            "alternatives": self.alternatives,
            "corrections": self.corrections,
            "uncertain_words": self.uncertain_words,
            "lines": [line.to_dict() for line in self.lines],
            "metadata": self.metadata
        }


@dataclass
class EngineResult:
    """Black-box result of an external OCR engine."""
    text: str
    confidence: float
    engine: str = ""


# ============================================================================
# Page Assembly
# ============================================================================

def split_word_boxes(words: List[str], bbox: Optional[BBox]) -> List[Optional[BBox]]:
    """Give each word an equal horizontal slice of the line box."""
    if not words:
        return []
    if bbox is None:
        return [None] * len(words)

    x, y, width, height = bbox
    step = width / len(words)
    boxes = []
    for i in range(len(words)):
        left = x + int(round(i * step))
        right = x + int(round((i + 1) * step))
        boxes.append((left, y, right - left, height))
    return boxes


def build_line_result(
    decoded: DecodedLine,
    bbox: Optional[BBox] = None,
    baseline: Optional[int] = None
) -> LineResult:
    """Wrap a decoded line; every word shares the line confidence."""
    words = [
        WordResult(text=word, confidence=decoded.confidence, bbox=box)
        for word, box in zip(decoded.words, split_word_boxes(decoded.words, bbox))
    ]
    return LineResult(
        text=decoded.text,
        confidence=decoded.confidence,
        words=words,
        bbox=bbox,
        baseline=baseline
    )


def assemble_page(lines: List[LineResult], processing_time_ms: float = 0.0) -> OCRResult:
    """
    Join line texts with newlines and average line confidences.

    Empty lines keep their separators, so line i of the text is lines[i].
    A page without lines has confidence exactly 0.
    """
    text = "\n".join(line.text for line in lines)
    confidence = float(np.mean([line.confidence for line in lines])) if lines else 0.0
    return OCRResult(
        text=text,
        confidence=confidence,
        lines=lines,
        processing_time_ms=processing_time_ms
    )


def quality_warnings(result: OCRResult) -> List[str]:
    """User-facing hints for empty or low-confidence pages."""
    if not result.text.strip():
        return [NO_TEXT_WARNING]
    if result.is_low_confidence:
        return [LOW_CONFIDENCE_WARNING]
    return []


# ============================================================================
# External Engines
# ============================================================================

class ExternalEngine(Protocol):
    """Any OCR engine usable for hybrid selection."""

    name: str

    def recognize(self, image: Union[PixelBuffer, np.ndarray], language: Optional[str] = None) -> EngineResult:
        ...


def _as_array(image: Union[PixelBuffer, np.ndarray]) -> np.ndarray:
    if isinstance(image, PixelBuffer):
        data = image.data
        return data[:, :, 0] if data.shape[2] == 1 else data
    return image


class TesseractEngine:
    """OCR using Tesseract."""

    name = "tesseract"

    def __init__(
        self,
        language: str = "eng",
        config: str = "--oem 3 --psm 6"
    ):
        try:
            import pytesseract
            self.pytesseract = pytesseract

            # Test that tesseract is installed
            pytesseract.get_tesseract_version()

        except Exception as e:
            raise ModelUnavailableError(
                f"Tesseract not available: {e}\n"
                "Install with: pip install pytesseract\n"
                "Also install Tesseract: https://github.com/tesseract-ocr/tesseract"
            ) from e

        self.language = language
        self.config = config

    def _preprocess_for_ocr(self, image: np.ndarray) -> np.ndarray:
        import cv2

        if image.ndim == 3:
            gray = cv2.cvtColor(image, cv2.COLOR_RGB2GRAY)
        else:
            gray = image.copy()

        # Resize if too small (helps OCR accuracy)
        h = gray.shape[0]
        if h < 30:
            scale = 30.0 / h
            gray = cv2.resize(gray, None, fx=scale, fy=scale, interpolation=cv2.INTER_CUBIC)

        return gray

    def recognize(self, image: Union[PixelBuffer, np.ndarray], language: Optional[str] = None) -> EngineResult:
        """Recognize text using Tesseract."""
        processed = self._preprocess_for_ocr(_as_array(image))

        try:
            data = self.pytesseract.image_to_data(
                processed,
                lang=language or self.language,
                config=self.config,
                output_type=self.pytesseract.Output.DICT
            )
        except Exception as e:
            logger.error(f"Tesseract error: {e}")
            return EngineResult(text="", confidence=0.0, engine=self.name)

        lines = {}
        confidences = []
        for i in range(len(data['text'])):
            text = data['text'][i].strip()
            conf = float(data['conf'][i])
            if conf < 0 or not text:  # -1 means no valid confidence
                continue
            key = (data['block_num'][i], data['par_num'][i], data['line_num'][i])
            lines.setdefault(key, []).append(text)
            confidences.append(conf / 100.0)

        full_text = '\n'.join(' '.join(words) for words in lines.values())
        avg_confidence = float(np.mean(confidences)) if confidences else 0.0

        return EngineResult(text=full_text, confidence=avg_confidence, engine=self.name)


class EasyOCREngine:
    """OCR using EasyOCR."""

    name = "easyocr"

    # Map Tesseract-style language codes
    LANG_MAP = {"eng": "en", "chi_sim": "ch_sim", "chi_tra": "ch_tra", "fra": "fr", "deu": "de"}

    def __init__(
        self,
        language: str = "eng",
        use_gpu: bool = False
    ):
        try:
            import easyocr
        except ImportError as e:
            raise ModelUnavailableError(
                "EasyOCR not available. Install with: pip install easyocr"
            ) from e

        self._easyocr = easyocr
        self.language = language
        self.use_gpu = use_gpu
        self._readers = {}

    def _reader(self, language: str):
        easy_lang = self.LANG_MAP.get(language, language)
        if easy_lang not in self._readers:
            self._readers[easy_lang] = self._easyocr.Reader([easy_lang], gpu=self.use_gpu, verbose=False)
        return self._readers[easy_lang]

    def recognize(self, image: Union[PixelBuffer, np.ndarray], language: Optional[str] = None) -> EngineResult:
        """Recognize text using EasyOCR."""
        try:
            result = self._reader(language or self.language).readtext(_as_array(image))
        except Exception as e:
            logger.error(f"EasyOCR error: {e}")
            return EngineResult(text="", confidence=0.0, engine=self.name)

        # Sort detections by vertical position
        detections = sorted(result, key=lambda d: min(p[1] for p in d[0]))

        texts = [text for _, text, _ in detections]
        confidences = [float(conf) for _, _, conf in detections]

        return EngineResult(
            text='\n'.join(texts),
            confidence=float(np.mean(confidences)) if confidences else 0.0,
            engine=self.name
        )


def create_engine(engine_name: str, language: str = "eng", use_gpu: bool = False) -> ExternalEngine:
    """Create an external OCR engine instance."""
    if engine_name == "tesseract":
        return TesseractEngine(language=language)
    elif engine_name == "easyocr":
        return EasyOCREngine(language=language, use_gpu=use_gpu)
    else:
        raise ValueError(f"Unknown OCR engine: {engine_name}")


# ============================================================================
# Hybrid Selection
# ============================================================================

def _engine_page(result: EngineResult) -> OCRResult:
    lines = []
    for line_text in result.text.split('\n'):
        line_text = line_text.strip()
        if not line_text:
            continue
        words = [WordResult(text=w, confidence=result.confidence) for w in line_text.split()]
        lines.append(LineResult(text=line_text, confidence=result.confidence, words=words))

    return OCRResult(
        text=result.text.strip(),
        confidence=result.confidence,
        lines=lines,
        engine_used=result.engine or "external"
    )


def select_hybrid_result(primary: OCRResult, external: Optional[EngineResult]) -> OCRResult:
    """
    Keep whichever engine's page is better.

    An empty text always loses to a non-empty one, whatever the confidences.
    Otherwise the higher confidence wins; ties keep the primary result. When
    both texts are empty the result is empty with confidence 0. The losing
    text, when non-empty, is kept in alternatives.
    """
    if external is None:
        return primary

    primary_text = primary.text.strip()
    external_text = external.text.strip()

    if not primary_text and not external_text:
        primary.text = ""
        primary.confidence = 0.0
        return primary

    if not external_text:
        use_external = False
    elif not primary_text:
        use_external = True
    else:
        use_external = external.confidence > primary.confidence

    if not use_external:
        if external_text:
            primary.alternatives.append(external_text)
        logger.debug(f"Hybrid selection kept {primary.engine_used} ({primary.confidence:.2f})")
        return primary

    chosen = _engine_page(external)
    chosen.processing_time_ms = primary.processing_time_ms
    chosen.incomplete = primary.incomplete
    chosen.metadata = dict(primary.metadata)
    if primary_text:
        chosen.alternatives.append(primary_text)
    logger.info(f"Hybrid selection chose {chosen.engine_used} ({chosen.confidence:.2f})")
    return chosen
