"""
Configuration and constants for the handwriting recognition pipeline.

This module provides:
- Preprocessing options (immutable, one flag per stage)
- Line segmentation and recognizer parameters
- External engine, hybrid selection and text correction settings
- Environment overrides
"""

import os
from dataclasses import dataclass, field, replace as dataclass_replace
from typing import Optional
from pathlib import Path
import logging

logger = logging.getLogger("handscan")


# ============================================================================
# Directory Paths
# ============================================================================

SRC_DIR = Path(__file__).parent
MODELS_DIR = SRC_DIR / "models"
DEFAULT_MODEL_NAMES = ("crnn.onnx", "crnn.pt", "crnn.pth")


# ============================================================================
# Threshold Methods
# ============================================================================

class ThresholdMethod:
    """Binarization algorithms selectable from PreprocessingConfig."""
    NONE = "none"
    BINARY = "binary"
    ADAPTIVE = "adaptive"
    OTSU = "otsu"

    ALL = (NONE, BINARY, ADAPTIVE, OTSU)


# ============================================================================
# Processing Configuration
# ============================================================================

@dataclass(frozen=True)
class PreprocessingConfig:
    """Image preprocessing options. Every stage can be toggled on its own."""
    grayscale: bool = True
    denoise: bool = True
    threshold: str = ThresholdMethod.ADAPTIVE
    deskew: bool = True
    remove_background: bool = True
    enhance_contrast: bool = True
    sharpen: bool = True
    invert: bool = False
    target_dpi: int = 300  # informational only

    def __post_init__(self):
        if self.threshold not in ThresholdMethod.ALL:
            raise ValueError(
                f"Unknown threshold method: {self.threshold!r} "
                f"(expected one of {', '.join(ThresholdMethod.ALL)})"
            )

    def replace(self, **changes) -> "PreprocessingConfig":
        return dataclass_replace(self, **changes)


@dataclass
class SegmentationConfig:
    """Horizontal projection line segmentation parameters."""
    ink_threshold: int = 128
    min_text_fraction: float = 0.01
    min_gap: int = 5
    min_line_height: int = 10
    padding_fraction: float = 0.1

    def __post_init__(self):
        if self.min_line_height < 1 or self.min_gap < 1:
            raise ValueError("min_line_height and min_gap must be positive")


@dataclass
class RecognizerConfig:
    """Sequence recognizer (CRNN) configuration."""
    model_path: Optional[str] = None
    backend: str = "auto"  # auto, torch, onnx
    input_height: int = 32
    input_width: int = 256
    use_gpu: bool = False
    warm_up: bool = True

    def __post_init__(self):
        if self.backend not in ("auto", "torch", "onnx"):
            raise ValueError(f"Unknown recognizer backend: {self.backend}")
        if self.input_height <= 0 or self.input_width <= 0:
            raise ValueError("Recognizer input size must be positive")


@dataclass
class OCRConfig:
    """Page-level OCR configuration."""
    language: str = "eng"
    # Optional second engine used for hybrid selection
    external_engine: Optional[str] = None  # tesseract, easyocr
    hybrid: bool = False
    # Dictionary correction of the final text
    postprocess: bool = False
    dictionary_path: Optional[str] = None  # one extra word per line
    # Confidence thresholds
    high_confidence_threshold: float = 0.80
    low_confidence_threshold: float = 0.65


@dataclass
class PipelineConfig:
    """Main pipeline configuration."""
    preprocessing: PreprocessingConfig = field(default_factory=PreprocessingConfig)
    segmentation: SegmentationConfig = field(default_factory=SegmentationConfig)
    recognizer: RecognizerConfig = field(default_factory=RecognizerConfig)
    ocr: OCRConfig = field(default_factory=OCRConfig)

    debug_mode: bool = False


# ============================================================================
# Default Configuration Instance
# ============================================================================

def find_default_model() -> Optional[str]:
    """Return the first bundled model artifact found in MODELS_DIR."""
    for name in DEFAULT_MODEL_NAMES:
        candidate = MODELS_DIR / name
        if candidate.exists():
            return str(candidate)
    return None


def get_config() -> PipelineConfig:
    """Get the default pipeline configuration with environment overrides."""
    config = PipelineConfig()

    config.recognizer.model_path = os.environ.get("HANDSCAN_MODEL_PATH") or find_default_model()

    backend = os.environ.get("HANDSCAN_BACKEND")
    if backend:
        config.recognizer = dataclass_replace(config.recognizer, backend=backend.lower())

    if os.environ.get("HANDSCAN_USE_GPU", "").lower() == "true":
        config.recognizer.use_gpu = True

    if os.environ.get("HANDSCAN_DEBUG", "").lower() == "true":
        config.debug_mode = True

    engine = os.environ.get("HANDSCAN_ENGINE")
    if engine:
        config.ocr.external_engine = engine.lower()
        config.ocr.hybrid = True

    if os.environ.get("HANDSCAN_POSTPROCESS", "").lower() == "true":
        config.ocr.postprocess = True

    dictionary = os.environ.get("HANDSCAN_DICTIONARY")
    if dictionary:
        config.ocr.dictionary_path = dictionary
        config.ocr.postprocess = True

    return config


# ============================================================================
# Utility Functions
# ============================================================================

def check_gpu_available() -> bool:
    """Check if GPU is available for inference."""
    try:
        import torch
        return torch.cuda.is_available()
    except ImportError:
        return False


def get_device() -> str:
    """Get the appropriate device string for PyTorch."""
    if check_gpu_available():
        return "cuda"
    return "cpu"
