"""
Tests for configuration and the command-line interface.
"""

import pytest
import sys
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))


class TestConfig:
    """Test configuration defaults and environment overrides."""

    def test_defaults(self, monkeypatch):
        for var in ("HANDSCAN_MODEL_PATH", "HANDSCAN_BACKEND", "HANDSCAN_USE_GPU", "HANDSCAN_DEBUG", "HANDSCAN_ENGINE"):
            monkeypatch.delenv(var, raising=False)
        from handscan.config import get_config

        config = get_config()

        assert config.segmentation.min_gap == 5
        assert config.segmentation.min_line_height == 10
        assert config.recognizer.input_height == 32
        assert config.recognizer.input_width == 256
        assert config.ocr.hybrid is False
        assert config.debug_mode is False

    def test_environment_overrides(self, monkeypatch, tmp_path):
        from handscan.config import get_config

        model = tmp_path / "crnn.onnx"
        monkeypatch.setenv("HANDSCAN_MODEL_PATH", str(model))
        monkeypatch.setenv("HANDSCAN_BACKEND", "ONNX")
        monkeypatch.setenv("HANDSCAN_DEBUG", "true")
        monkeypatch.setenv("HANDSCAN_ENGINE", "tesseract")

        config = get_config()

        assert config.recognizer.model_path == str(model)
        assert config.recognizer.backend == "onnx"
        assert config.debug_mode is True
        assert config.ocr.external_engine == "tesseract"
        assert config.ocr.hybrid is True

    def test_invalid_backend_env(self, monkeypatch):
        from handscan.config import get_config

        monkeypatch.setenv("HANDSCAN_BACKEND", "tflite")

        with pytest.raises(ValueError):
            get_config()

    def test_correction_environment(self, monkeypatch):
        from handscan.config import get_config

        monkeypatch.setenv("HANDSCAN_DICTIONARY", "words.txt")

        config = get_config()

        assert config.ocr.postprocess is True
        assert config.ocr.dictionary_path == "words.txt"

    def test_device(self):
        from handscan.config import get_device

        assert get_device() in ("cpu", "cuda")


class TestArgparser:
    """Test CLI argument handling."""

    @pytest.fixture
    def parser(self):
        from handscan.cli import setup_argparser
        return setup_argparser()

    def test_requires_input(self, parser):
        with pytest.raises(SystemExit):
            parser.parse_args([])

    def test_preprocessing_flags(self, parser, monkeypatch):
        monkeypatch.delenv("HANDSCAN_ENGINE", raising=False)
        from handscan.cli import build_config

        args = parser.parse_args([
            "--input", "page.png", "--threshold", "otsu", "--no-deskew", "--no-sharpen", "--invert"
        ])
        config = build_config(args)

        assert config.preprocessing.threshold == "otsu"
        assert config.preprocessing.deskew is False
        assert config.preprocessing.sharpen is False
        assert config.preprocessing.invert is True
        assert config.preprocessing.denoise is True

    def test_model_and_hybrid(self, parser):
        from handscan.cli import build_config

        args = parser.parse_args([
            "-i", "page.png", "--model", "m.onnx", "--backend", "onnx",
            "--engine", "easyocr", "--hybrid", "--language", "fra"
        ])
        config = build_config(args)

        assert config.recognizer.model_path == "m.onnx"
        assert config.recognizer.backend == "onnx"
        assert config.ocr.external_engine == "easyocr"
        assert config.ocr.hybrid is True
        assert config.ocr.language == "fra"

    def test_hybrid_defaults_to_tesseract(self, parser, monkeypatch):
        monkeypatch.delenv("HANDSCAN_ENGINE", raising=False)
        from handscan.cli import build_config

        config = build_config(parser.parse_args(["-i", "page.png", "--hybrid"]))

        assert config.ocr.external_engine == "tesseract"

    def test_invalid_threshold(self, parser):
        with pytest.raises(SystemExit):
            parser.parse_args(["-i", "page.png", "--threshold", "sauvola"])

    def test_engine_enables_hybrid(self, parser):
        from handscan.cli import build_config

        config = build_config(parser.parse_args(["-i", "page.png", "--engine", "easyocr"]))

        assert config.ocr.external_engine == "easyocr"
        assert config.ocr.hybrid is True

    def test_correction_flags(self, parser, monkeypatch):
        for var in ("HANDSCAN_POSTPROCESS", "HANDSCAN_DICTIONARY"):
            monkeypatch.delenv(var, raising=False)
        from handscan.cli import build_config

        assert build_config(parser.parse_args(["-i", "page.png"])).ocr.postprocess is False
        assert build_config(parser.parse_args(["-i", "page.png", "--correct"])).ocr.postprocess is True

        config = build_config(parser.parse_args(["-i", "page.png", "--dictionary", "words.txt"]))

        assert config.ocr.postprocess is True
        assert config.ocr.dictionary_path == "words.txt"
