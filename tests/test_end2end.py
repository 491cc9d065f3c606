"""
End-to-end integration tests for the Handwriting Recognition Pipeline.
"""

import pytest
import numpy as np
import asyncio
import sys
import threading
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))


class StubBackend:
    """Recognition backend that always returns the same probability matrix."""

    def __init__(self, matrix=None, error=None):
        self.matrix = matrix
        self.error = error
        self.calls = 0

    def predict(self, batch):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.matrix[None]

    def summary(self):
        return "stub"

    def close(self):
        pass


class StubEngine:
    """External engine returning a fixed result."""

    name = "stub"

    def __init__(self, text, confidence):
        self.text = text
        self.confidence = confidence
        self.languages = []

    def recognize(self, image, language=None):
        from handscan.utils.ocr_text import EngineResult
        self.languages.append(language)
        return EngineResult(text=self.text, confidence=self.confidence, engine=self.name)


def _recognizer(text="HELLO", error=None):
    from handscan.config import RecognizerConfig
    from handscan.utils.ctc import encode_text_matrix
    from handscan.utils.recognizer import SequenceRecognizer

    backend = StubBackend(encode_text_matrix(text, timesteps=63), error=error)
    return SequenceRecognizer(RecognizerConfig(warm_up=False), backend=backend)


def _otsu_config(**ocr):
    from handscan.config import PipelineConfig, PreprocessingConfig, OCRConfig

    return PipelineConfig(
        preprocessing=PreprocessingConfig(threshold="otsu", deskew=False),
        ocr=OCRConfig(**ocr)
    )


class TestEndToEnd:
    """End-to-end integration tests."""

    @pytest.fixture
    def one_line_page(self):
        """White page with a single clean horizontal text band."""
        img = np.full((100, 200, 3), 255, dtype=np.uint8)
        img[40:60, 20:180] = 0
        return img

    @pytest.fixture
    def two_line_page(self):
        img = np.full((120, 200, 3), 255, dtype=np.uint8)
        img[20:40, 20:180] = 0
        img[70:90, 20:160] = 0
        return img

    def test_single_band_hello(self, one_line_page):
        """One text band with Otsu and no deskew gives one HELLO line."""
        from handscan.utils.orchestrator import RecognitionOrchestrator

        orchestrator = RecognitionOrchestrator(_recognizer(), config=_otsu_config())
        result = orchestrator.run_page(one_line_page)

        assert len(result.lines) == 1
        assert result.text == "HELLO"
        assert result.confidence == pytest.approx(0.9)
        assert 0.0 <= result.confidence <= 1.0
        assert result.lines[0].bbox == (0, 40, 200, 20)
        assert [w.text for w in result.lines[0].words] == ["HELLO"]
        assert result.incomplete is False
        assert result.warnings == []
        assert result.processing_time_ms > 0

    def test_two_lines_joined(self, two_line_page):
        from handscan.utils.orchestrator import RecognitionOrchestrator

        result = RecognitionOrchestrator(_recognizer(), config=_otsu_config()).run_page(two_line_page)

        assert len(result.lines) == 2
        assert result.text == "HELLO\nHELLO"

    def test_metadata(self, one_line_page):
        from handscan.utils.orchestrator import RecognitionOrchestrator

        result = RecognitionOrchestrator(_recognizer(), config=_otsu_config()).run_page(one_line_page)

        assert result.metadata["image_size"] == {"width": 200, "height": 100}
        assert result.metadata["deskew_angle"] == 0.0
        assert "threshold_otsu" in result.metadata["transformations"]

    def test_default_config_runs(self, two_line_page):
        from handscan.utils.orchestrator import RecognitionOrchestrator

        result = RecognitionOrchestrator(_recognizer()).run_page(two_line_page)

        assert len(result.lines) >= 1
        assert 0.0 <= result.confidence <= 1.0

    def test_initializes_recognizer(self, one_line_page):
        from handscan.utils.orchestrator import RecognitionOrchestrator

        recognizer = _recognizer()
        assert not recognizer.is_ready

        RecognitionOrchestrator(recognizer, config=_otsu_config()).run_page(one_line_page)

        assert recognizer.is_ready

    def test_bytes_input(self, one_line_page):
        import cv2
        from handscan.utils.io import BytesSource
        from handscan.utils.orchestrator import RecognitionOrchestrator

        ok, encoded = cv2.imencode(".png", one_line_page)
        assert ok

        result = RecognitionOrchestrator(_recognizer(), config=_otsu_config()).run_page(
            BytesSource(encoded.tobytes())
        )

        assert result.text == "HELLO"

    def test_bad_source_fails_fast(self):
        from handscan.errors import ImageSourceError
        from handscan.utils.orchestrator import RecognitionOrchestrator

        recognizer = _recognizer()
        with pytest.raises(ImageSourceError):
            RecognitionOrchestrator(recognizer).run_page(b"garbage")

        assert recognizer._backend.calls == 0

    def test_preprocessing_override(self, one_line_page):
        from handscan.config import PreprocessingConfig
        from handscan.utils.orchestrator import RecognitionOrchestrator

        orchestrator = RecognitionOrchestrator(_recognizer(), config=_otsu_config())
        result = orchestrator.run_page(
            one_line_page, preprocessing=PreprocessingConfig(threshold="binary", deskew=False)
        )

        assert "threshold_binary" in result.metadata["transformations"]


class TestDegradedResults:
    """Test that degraded pages return results instead of raising."""

    @pytest.fixture
    def page(self):
        img = np.full((100, 200, 3), 255, dtype=np.uint8)
        img[40:60, 20:180] = 0
        return img

    def test_empty_recognition(self, page):
        from handscan.utils.ocr_text import NO_TEXT_WARNING
        from handscan.utils.orchestrator import RecognitionOrchestrator

        result = RecognitionOrchestrator(_recognizer(text=""), config=_otsu_config()).run_page(page)

        assert result.text == ""
        assert result.confidence == 0.0
        assert NO_TEXT_WARNING in result.warnings

    def test_line_failure_yields_empty_line(self, page, caplog):
        from handscan.utils.orchestrator import RecognitionOrchestrator

        recognizer = _recognizer(error=RuntimeError("backend exploded"))
        result = RecognitionOrchestrator(recognizer, config=_otsu_config()).run_page(page)

        assert len(result.lines) == 1
        assert result.lines[0].text == ""
        assert result.lines[0].confidence == 0.0
        assert result.confidence == 0.0
        assert "backend exploded" in caplog.text

    def test_low_confidence_warning(self, page):
        from handscan.config import RecognizerConfig
        from handscan.utils.ctc import encode_text_matrix
        from handscan.utils.ocr_text import LOW_CONFIDENCE_WARNING
        from handscan.utils.orchestrator import RecognitionOrchestrator
        from handscan.utils.recognizer import SequenceRecognizer

        backend = StubBackend(encode_text_matrix("HI", probability=0.4, timesteps=63))
        recognizer = SequenceRecognizer(RecognizerConfig(warm_up=False), backend=backend)

        result = RecognitionOrchestrator(recognizer, config=_otsu_config()).run_page(page)

        assert result.text == "HI"
        assert LOW_CONFIDENCE_WARNING in result.warnings


class TestProgress:
    """Test progress reporting."""

    @pytest.fixture
    def page(self):
        img = np.full((120, 200, 3), 255, dtype=np.uint8)
        img[20:40, 20:180] = 0
        img[70:90, 20:160] = 0
        return img

    def test_callback_order(self, page):
        from handscan.utils.orchestrator import RecognitionOrchestrator

        events = []
        RecognitionOrchestrator(_recognizer(), config=_otsu_config()).run_page(
            page, progress=lambda f, s: events.append((f, s))
        )

        # 10 preprocessing events, segmentation, one per line
        assert len(events) == 13
        fractions = [f for f, _ in events]
        assert fractions == sorted(fractions)
        assert all(0.0 <= f <= 1.0 for f in fractions)
        assert fractions[-1] == pytest.approx(1.0)
        assert events[10][1] == "Found 2 text lines"
        assert events[12][1] == "Recognized line 2/2"

    def test_channel(self, page):
        from handscan.utils.orchestrator import ProgressChannel, ProgressEvent, RecognitionOrchestrator

        channel = ProgressChannel(maxsize=4)
        orchestrator = RecognitionOrchestrator(_recognizer(), config=_otsu_config())

        worker = threading.Thread(target=orchestrator.run_page, args=(page,), kwargs={"progress": channel})
        worker.start()
        events = list(channel)
        worker.join(timeout=30)

        assert len(events) == 13
        assert all(isinstance(e, ProgressEvent) for e in events)
        assert events[-1].fraction == pytest.approx(1.0)
        assert channel.closed

    def test_channel_closed_on_error(self):
        from handscan.errors import ImageSourceError
        from handscan.utils.orchestrator import ProgressChannel, RecognitionOrchestrator

        channel = ProgressChannel()
        with pytest.raises(ImageSourceError):
            RecognitionOrchestrator(_recognizer()).run_page(b"", progress=channel)

        assert list(channel) == []

    def test_put_after_close(self):
        from handscan.utils.orchestrator import ProgressChannel

        channel = ProgressChannel()
        channel.close()
        channel.close()

        with pytest.raises(RuntimeError):
            channel(0.5, "late")


class TestCancellation:
    """Test cooperative cancellation between lines."""

    @pytest.fixture
    def page(self):
        img = np.full((120, 200, 3), 255, dtype=np.uint8)
        img[20:40, 20:180] = 0
        img[70:90, 20:160] = 0
        return img

    def test_cancel_before_lines(self, page):
        from handscan.utils.orchestrator import CancellationToken, RecognitionOrchestrator, CANCELLED_WARNING

        token = CancellationToken()
        token.cancel()

        result = RecognitionOrchestrator(_recognizer(), config=_otsu_config()).run_page(page, cancel_token=token)

        assert result.incomplete is True
        assert result.lines == []
        assert result.confidence == 0.0
        assert CANCELLED_WARNING in result.warnings

    def test_cancel_after_first_line(self, page):
        from handscan.utils.orchestrator import CancellationToken, RecognitionOrchestrator

        token = CancellationToken()

        def progress(fraction, stage):
            if stage.startswith("Recognized line 1"):
                token.cancel()

        result = RecognitionOrchestrator(_recognizer(), config=_otsu_config()).run_page(
            page, progress=progress, cancel_token=token
        )

        assert result.incomplete is True
        assert len(result.lines) == 1
        assert result.text == "HELLO"

    def test_cancelled_page_skips_hybrid(self, page):
        from handscan.utils.orchestrator import CancellationToken, RecognitionOrchestrator

        token = CancellationToken()
        token.cancel()
        engine = StubEngine("cat", 0.99)

        result = RecognitionOrchestrator(
            _recognizer(), config=_otsu_config(hybrid=True), external_engine=engine
        ).run_page(page, cancel_token=token)

        assert result.text == ""
        assert engine.languages == []


class TestHybrid:
    """Test hybrid selection through the orchestrator."""

    @pytest.fixture
    def page(self):
        img = np.full((100, 200, 3), 255, dtype=np.uint8)
        img[40:60, 20:180] = 0
        return img

    def test_external_wins_when_crnn_empty(self, page):
        from handscan.utils.orchestrator import RecognitionOrchestrator

        engine = StubEngine("cat", 0.2)
        result = RecognitionOrchestrator(
            _recognizer(text=""), config=_otsu_config(hybrid=True), external_engine=engine
        ).run_page(page)

        assert result.text == "cat"
        assert result.engine_used == "stub"
        assert engine.languages == ["eng"]

    def test_crnn_wins_over_empty_external(self, page):
        from handscan.utils.orchestrator import RecognitionOrchestrator

        result = RecognitionOrchestrator(
            _recognizer(), config=_otsu_config(hybrid=True), external_engine=StubEngine("", 0.0)
        ).run_page(page)

        assert result.text == "HELLO"
        assert result.engine_used == "crnn"

    def test_more_confident_external(self, page):
        from handscan.utils.orchestrator import RecognitionOrchestrator

        result = RecognitionOrchestrator(
            _recognizer(), config=_otsu_config(hybrid=True), external_engine=StubEngine("HELL0", 0.95)
        ).run_page(page)

        assert result.text == "HELL0"
        assert result.alternatives == ["HELLO"]

    def test_hybrid_disabled_ignores_engine(self, page):
        from handscan.utils.orchestrator import RecognitionOrchestrator

        engine = StubEngine("cat", 0.99)
        result = RecognitionOrchestrator(
            _recognizer(), config=_otsu_config(), external_engine=engine
        ).run_page(page)

        assert result.text == "HELLO"
        assert engine.languages == []


class TestAsyncAndLifecycle:
    """Test the async entry point and recognizer ownership."""

    @pytest.fixture
    def page(self):
        img = np.full((100, 200, 3), 255, dtype=np.uint8)
        img[40:60, 20:180] = 0
        return img

    def test_run_page_async(self, page):
        from handscan.utils.orchestrator import RecognitionOrchestrator

        orchestrator = RecognitionOrchestrator(_recognizer(), config=_otsu_config())
        result = asyncio.run(orchestrator.run_page_async(page))

        assert result.text == "HELLO"

    def test_concurrent_pages_share_recognizer(self, page):
        from handscan.utils.orchestrator import RecognitionOrchestrator

        recognizer = _recognizer().initialize()

        async def run_both():
            first = RecognitionOrchestrator(recognizer, config=_otsu_config())
            second = RecognitionOrchestrator(recognizer, config=_otsu_config())
            return await asyncio.gather(first.run_page_async(page), second.run_page_async(page.copy()))

        results = asyncio.run(run_both())

        assert [r.text for r in results] == ["HELLO", "HELLO"]

    def test_close_keeps_shared_recognizer(self, page):
        from handscan.utils.orchestrator import RecognitionOrchestrator

        recognizer = _recognizer().initialize()
        with RecognitionOrchestrator(recognizer, config=_otsu_config()) as orchestrator:
            orchestrator.run_page(page)

        assert recognizer.is_ready

    def test_debug_image_saved(self, page, tmp_path):
        from handscan.utils.orchestrator import RecognitionOrchestrator

        config = _otsu_config()
        config.debug_mode = True
        RecognitionOrchestrator(_recognizer(), config=config, output_dir=tmp_path).run_page(page)

        assert (tmp_path / "debug" / "page_debug.png").exists()

    def test_result_saved_as_json(self, page, tmp_path):
        from handscan.utils.io import save_json, load_json
        from handscan.utils.orchestrator import RecognitionOrchestrator

        result = RecognitionOrchestrator(_recognizer(), config=_otsu_config()).run_page(page)
        data = load_json(save_json(result.to_dict(), tmp_path / "result.json"))

        assert data["text"] == "HELLO"
        assert data["engine"] == "crnn"
        assert len(data["lines"]) == 1


class TestCorrection:
    """Test dictionary correction and confidence thresholds through the orchestrator."""

    @pytest.fixture
    def page(self):
        img = np.full((100, 200, 3), 255, dtype=np.uint8)
        img[40:60, 20:180] = 0
        return img

    def test_correction_disabled_by_default(self, page):
        from handscan.utils.orchestrator import RecognitionOrchestrator

        result = RecognitionOrchestrator(_recognizer(text="TEH"), config=_otsu_config()).run_page(page)

        assert result.text == "TEH"
        assert result.corrections == 0

    def test_correction_enabled(self, page):
        from handscan.utils.orchestrator import RecognitionOrchestrator

        result = RecognitionOrchestrator(
            _recognizer(text="TEH"), config=_otsu_config(postprocess=True)
        ).run_page(page)

        assert result.text == "THE"
        assert result.lines[0].text == "THE"
        assert result.corrections == 1
        assert result.confidence == pytest.approx(0.9)

    def test_correction_with_dictionary_file(self, page, tmp_path):
        from handscan.utils.orchestrator import RecognitionOrchestrator

        path = tmp_path / "words.txt"
        path.write_text("hallo\n", encoding="utf-8")

        result = RecognitionOrchestrator(
            _recognizer(text="HALLO"), config=_otsu_config(postprocess=True, dictionary_path=str(path))
        ).run_page(page)

        assert result.text == "HALLO"
        assert result.corrections == 0

    def test_configured_confidence_thresholds(self, page):
        from handscan.utils.ocr_text import LOW_CONFIDENCE_WARNING
        from handscan.utils.orchestrator import RecognitionOrchestrator

        default = RecognitionOrchestrator(_recognizer(), config=_otsu_config()).run_page(page)
        strict = RecognitionOrchestrator(
            _recognizer(),
            config=_otsu_config(high_confidence_threshold=0.95, low_confidence_threshold=0.92)
        ).run_page(page)

        assert default.is_high_confidence is True
        assert strict.is_high_confidence is False
        assert strict.is_low_confidence is True
        assert LOW_CONFIDENCE_WARNING in strict.warnings
