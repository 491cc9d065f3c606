"""
Utility modules for the handwriting recognition pipeline.
"""

from .io import BytesSource, FilePathSource, DecodedSource, load_image_source, save_json, ensure_dir
from .images import PixelBuffer, PreprocessingResult, preprocess_image, deskew, denoise, binarize, enhance_contrast
from .segmentation import LineRegion, LineSegmenter
from .ctc import Alphabet, DEFAULT_ALPHABET, CTCDecoder, DecodedLine
from .recognizer import SequenceRecognizer, TorchBackend, OnnxBackend
from .ocr_text import OCRResult, LineResult, WordResult, EngineResult, TesseractEngine, EasyOCREngine, select_hybrid_result
from .postprocess import SpellChecker, PostProcessor, apply_postprocessing
from .orchestrator import RecognitionOrchestrator, ProgressEvent, ProgressChannel, CancellationToken

__all__ = [
    # IO
    "BytesSource", "FilePathSource", "DecodedSource", "load_image_source", "save_json", "ensure_dir",
    # Images
    "PixelBuffer", "PreprocessingResult", "preprocess_image", "deskew", "denoise", "binarize", "enhance_contrast",
    # Segmentation
    "LineRegion", "LineSegmenter",
    # Decoding
    "Alphabet", "DEFAULT_ALPHABET", "CTCDecoder", "DecodedLine",
    # Recognition
    "SequenceRecognizer", "TorchBackend", "OnnxBackend",
    # OCR results
    "OCRResult", "LineResult", "WordResult", "EngineResult", "TesseractEngine", "EasyOCREngine",
    "select_hybrid_result",
    # Correction
    "SpellChecker", "PostProcessor", "apply_postprocessing",
    # Orchestration
    "RecognitionOrchestrator", "ProgressEvent", "ProgressChannel", "CancellationToken",
]
