#!/usr/bin/env python
"""
Command-line interface for the Handwriting Recognition Pipeline.

Usage:
    handscan --input <image> [--output <result.json>] [options]

Examples:
    # Recognize a page with the bundled model
    handscan --input page.jpg

    # Otsu threshold, no deskew, custom model, JSON output
    handscan --input page.jpg --threshold otsu --no-deskew --model crnn.onnx --output result.json

    # Hybrid mode against Tesseract
    handscan --input page.jpg --engine tesseract --hybrid
"""

import argparse
import logging
import sys
import time
from dataclasses import replace
from pathlib import Path

from . import __version__
from .config import ThresholdMethod, get_config, check_gpu_available
from .errors import HandscanError

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger("handscan")


def setup_argparser() -> argparse.ArgumentParser:
    """Create argument parser."""
    parser = argparse.ArgumentParser(
        prog="handscan",
        description="Handwriting Recognition Pipeline - Convert page photos and scans to text",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  Recognize a page:
    handscan --input page.jpg

  Save the full result as JSON:
    handscan --input page.jpg --output result.json

  Compare against Tesseract and keep the more confident text:
    handscan --input page.jpg --engine tesseract --hybrid
        """
    )

    # Required arguments
    parser.add_argument(
        "--input", "-i",
        required=True,
        help="Input image file"
    )

    parser.add_argument(
        "--output", "-o",
        default=None,
        help="Path of the JSON result file (default: print only)"
    )

    # Preprocessing
    parser.add_argument(
        "--threshold",
        choices=list(ThresholdMethod.ALL),
        default=ThresholdMethod.ADAPTIVE,
        help="Binarization method (default: adaptive)"
    )

    for stage in ("grayscale", "denoise", "deskew", "sharpen"):
        parser.add_argument(
            f"--no-{stage}",
            action="store_true",
            help=f"Disable the {stage} stage"
        )

    parser.add_argument(
        "--no-background-removal",
        action="store_true",
        help="Disable background removal"
    )

    parser.add_argument(
        "--no-contrast",
        action="store_true",
        help="Disable histogram equalization"
    )

    parser.add_argument(
        "--invert",
        action="store_true",
        help="Invert the preprocessed image"
    )

    # Recognition
    parser.add_argument(
        "--model", "-m",
        default=None,
        help="Recognition model (.pt/.pth state_dict or .onnx)"
    )

    parser.add_argument(
        "--backend",
        choices=["auto", "torch", "onnx"],
        default=None,
        help="Inference backend (default: by model file suffix)"
    )

    parser.add_argument(
        "--engine",
        choices=["tesseract", "easyocr"],
        default=None,
        help="External OCR engine for hybrid selection (implies --hybrid)"
    )

    parser.add_argument(
        "--hybrid",
        action="store_true",
        help="Run the external engine too and keep the more confident result"
    )

    parser.add_argument(
        "--language", "-l",
        default=None,
        help="Language code passed to the external engine (default: eng)"
    )

    parser.add_argument(
        "--correct",
        action="store_true",
        help="Correct misspelled words against the built-in dictionary"
    )

    parser.add_argument(
        "--dictionary",
        default=None,
        help="Extra dictionary file, one word per line (implies --correct)"
    )

    parser.add_argument(
        "--use-gpu",
        action="store_true",
        help="Use GPU for model inference if available"
    )

    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug mode (saves the page with line boxes next to the output)"
    )

    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose output"
    )

    parser.add_argument(
        "--quiet", "-q",
        action="store_true",
        help="Suppress non-error output"
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}"
    )

    return parser


def check_dependencies(args) -> bool:
    """Check if required dependencies are available."""
    missing = []

    try:
        import cv2
    except ImportError:
        missing.append("opencv-python")

    try:
        import numpy
    except ImportError:
        missing.append("numpy")

    backend = args.backend or "auto"
    model = args.model or ""
    if backend == "onnx" or (backend == "auto" and model.endswith(".onnx")):
        try:
            import onnxruntime
        except ImportError:
            missing.append("onnxruntime")
    else:
        try:
            import torch
        except ImportError:
            missing.append("torch")

    if args.engine == "tesseract":
        try:
            import pytesseract
            try:
                pytesseract.get_tesseract_version()
            except Exception:
                missing.append("tesseract-ocr (system package)")
        except ImportError:
            missing.append("pytesseract")
    elif args.engine == "easyocr":
        try:
            import easyocr
        except ImportError:
            missing.append("easyocr")

    if missing:
        logger.error("Missing required dependencies:")
        for dep in missing:
            logger.error(f"  - {dep}")
        logger.error("\nInstall with: pip install handscan[engines]")
        return False

    return True


def build_config(args):
    """Pipeline configuration from environment defaults and CLI flags."""
    config = get_config()

    config.preprocessing = config.preprocessing.replace(
        grayscale=not args.no_grayscale,
        denoise=not args.no_denoise,
        threshold=args.threshold,
        deskew=not args.no_deskew,
        remove_background=not args.no_background_removal,
        enhance_contrast=not args.no_contrast,
        sharpen=not args.no_sharpen,
        invert=args.invert
    )

    if args.model:
        config.recognizer = replace(config.recognizer, model_path=args.model)
    if args.backend:
        config.recognizer = replace(config.recognizer, backend=args.backend)

    if args.use_gpu:
        if check_gpu_available():
            logger.info("GPU acceleration enabled")
            config.recognizer.use_gpu = True
        else:
            logger.warning("GPU requested but not available, using CPU")

    if args.engine:
        config.ocr.external_engine = args.engine
        config.ocr.hybrid = True
    if args.hybrid:
        if not config.ocr.external_engine:
            config.ocr.external_engine = "tesseract"
        config.ocr.hybrid = True
    if args.language:
        config.ocr.language = args.language

    if args.correct:
        config.ocr.postprocess = True
    if args.dictionary:
        config.ocr.dictionary_path = args.dictionary
        config.ocr.postprocess = True

    config.debug_mode = args.debug or config.debug_mode
    return config


def run_pipeline(args) -> int:
    """Run the recognition pipeline on one page."""
    from .utils.io import save_json
    from .utils.orchestrator import RecognitionOrchestrator

    start_time = time.time()
    config = build_config(args)

    output_path = Path(args.output) if args.output else None
    output_dir = output_path.parent if output_path else Path.cwd()

    with RecognitionOrchestrator.from_config(config, output_dir=output_dir) as orchestrator:
        logger.info("Loading recognition model...")
        orchestrator.recognizer.initialize()
        logger.debug(orchestrator.recognizer.model_summary())

        logger.info(f"Recognizing {args.input}...")
        result = orchestrator.run_page(
            Path(args.input),
            progress=lambda fraction, stage: logger.debug(f"[{fraction:5.1%}] {stage}")
        )

    if output_path:
        save_json(result.to_dict(), output_path)
        logger.info(f"Saved JSON: {output_path}")

    elapsed = time.time() - start_time

    if not args.quiet:
        print("\n" + "="*60)
        print("RECOGNITION COMPLETE")
        print("="*60)
        print(f"Source: {args.input}")
        if output_path:
            print(f"Output: {output_path}")
        print(f"Engine: {result.engine_used}")
        print(f"Lines: {len(result.lines)}")
        print(f"Confidence: {result.confidence:.2%}" + (" (high)" if result.is_high_confidence else ""))
        if config.ocr.postprocess:
            print(f"Corrections: {result.corrections}")
        print(f"Processing time: {elapsed:.2f}s")
        for warning in result.warnings:
            print(f"Warning: {warning}")
        print("-"*60)
        print(result.text)
        print("="*60)

    return 0


def main():
    """Main entry point."""
    parser = setup_argparser()
    args = parser.parse_args()

    # Configure logging level
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)
    elif args.quiet:
        logging.getLogger().setLevel(logging.ERROR)

    # Check dependencies
    if not check_dependencies(args):
        sys.exit(1)

    # Run pipeline
    try:
        exit_code = run_pipeline(args)
        sys.exit(exit_code)
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        sys.exit(130)
    except HandscanError as e:
        logger.error(str(e))
        sys.exit(2)
    except Exception as e:
        logger.error(f"Unexpected error: {e}")
        if args.debug:
            raise
        sys.exit(1)


if __name__ == "__main__":
    main()
