"""
Sequence recognizer: runs a pretrained CRNN artifact on line images.

Supports:
- PyTorch state_dict artifacts for the CRNN module (primary)
- ONNX artifacts through onnxruntime (alternative)

The recognizer is an explicitly owned handle: initialize() loads the model
and warms it up once, recognize() runs inference on one line, dispose()
releases the backend. A ready recognizer holds no per-call state, so one
instance may be shared read-only by several orchestrators.
"""

import logging
import threading
import time
from pathlib import Path
from typing import Callable, Optional, Protocol

import numpy as np

from ..config import RecognizerConfig
from ..errors import ModelUnavailableError
from .ctc import Alphabet, DEFAULT_ALPHABET
from .images import PixelBuffer

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float, str], None]


# ============================================================================
# Input Preparation
# ============================================================================

def prepare_line_image(image: PixelBuffer, height: int = 32, width: int = 256) -> np.ndarray:
    """
    Fit a line image into the fixed recognizer input.

    The line is resized to the target height keeping its aspect ratio (width
    capped at the target width), placed left-aligned on a white canvas,
    scaled to [0, 1] and inverted so background is 0 and ink is 1.

    Returns:
        float32 array of shape (1, height, width, 1)
    """
    import cv2

    gray = image.intensity
    aspect = gray.shape[1] / gray.shape[0]
    new_w = max(1, min(width, int(round(height * aspect))))

    interpolation = cv2.INTER_AREA if gray.shape[0] > height else cv2.INTER_LINEAR
    resized = cv2.resize(np.ascontiguousarray(gray), (new_w, height), interpolation=interpolation)

    canvas = np.full((height, width), 255, dtype=np.uint8)
    canvas[:, :new_w] = resized

    normalized = 1.0 - canvas.astype(np.float32) / 255.0
    return normalized[None, :, :, None]


def _softmax(logits: np.ndarray) -> np.ndarray:
    shifted = logits - logits.max(axis=-1, keepdims=True)
    exp = np.exp(shifted)
    return exp / exp.sum(axis=-1, keepdims=True)


# ============================================================================
# Backends
# ============================================================================

class RecognizerBackend(Protocol):
    """Inference runtime behind the recognizer: (1, H, W, 1) in, (1, T, C) out."""

    def predict(self, batch: np.ndarray) -> np.ndarray:
        ...

    def summary(self) -> str:
        ...

    def close(self) -> None:
        ...


class TorchBackend:
    """CRNN module on PyTorch."""

    def __init__(
        self,
        model_path: Optional[str] = None,
        num_classes: int = DEFAULT_ALPHABET.num_classes,
        use_gpu: bool = False,
        model=None
    ):
        try:
            import torch
        except ImportError as e:
            raise ModelUnavailableError("PyTorch is not installed. Install with: pip install torch") from e

        from .crnn import CRNN

        self._torch = torch
        self.device = torch.device("cuda" if use_gpu and torch.cuda.is_available() else "cpu")

        if model is None:
            model = CRNN(num_classes)
            if model_path is not None:
                state = torch.load(model_path, map_location=self.device, weights_only=True)
                if isinstance(state, dict):
                    state = state.get("model_state_dict", state.get("state_dict", state))
                model.load_state_dict(state)

        self.model = model.to(self.device)
        self.model.eval()
        logger.info(f"Loaded CRNN on {self.device}")

    def predict(self, batch: np.ndarray) -> np.ndarray:
        # NHWC -> NCHW
        tensor = self._torch.from_numpy(np.ascontiguousarray(batch.transpose(0, 3, 1, 2)))
        with self._torch.no_grad():
            probs = self.model(tensor.to(self.device))
        return probs.cpu().numpy()

    def summary(self) -> str:
        if hasattr(self.model, "summary"):
            return self.model.summary()
        return str(self.model)

    def close(self):
        self.model = None
        if self.device.type == "cuda":
            self._torch.cuda.empty_cache()


def get_execution_providers(use_gpu: bool = False) -> list:
    """ONNX runtime providers, CUDA first when requested and available."""
    import onnxruntime as ort

    available = ort.get_available_providers()
    logger.debug(f"Available ONNX providers: {available}")

    if use_gpu and "CUDAExecutionProvider" in available:
        return ["CUDAExecutionProvider", "CPUExecutionProvider"]
    return ["CPUExecutionProvider"]


class OnnxBackend:
    """CRNN exported to ONNX, run with onnxruntime."""

    def __init__(self, model_path: str, use_gpu: bool = False):
        try:
            import onnxruntime as ort
        except ImportError as e:
            raise ModelUnavailableError(
                "onnxruntime is not installed. Install with: pip install onnxruntime"
            ) from e

        self.session = ort.InferenceSession(model_path, providers=get_execution_providers(use_gpu))
        model_input = self.session.get_inputs()[0]
        self._input_name = model_input.name
        self._input_shape = model_input.shape
        # (1, 1, 32, 256) models take channels first
        self._channels_first = len(model_input.shape) == 4 and model_input.shape[1] == 1
        logger.info(f"Loaded ONNX model {model_path} (input {self._input_name} {self._input_shape})")

    def predict(self, batch: np.ndarray) -> np.ndarray:
        if self._channels_first:
            batch = batch.transpose(0, 3, 1, 2)
        outputs = self.session.run(None, {self._input_name: np.ascontiguousarray(batch, dtype=np.float32)})
        return np.asarray(outputs[0], dtype=np.float32)

    def summary(self) -> str:
        inputs = ", ".join(f"{i.name}{list(i.shape)}" for i in self.session.get_inputs())
        outputs = ", ".join(f"{o.name}{list(o.shape)}" for o in self.session.get_outputs())
        return f"ONNX model\n  inputs: {inputs}\n  outputs: {outputs}"

    def close(self):
        self.session = None


def create_backend(config: RecognizerConfig, num_classes: int) -> RecognizerBackend:
    """Build the backend named by config (auto picks by file suffix)."""
    if not config.model_path:
        raise ModelUnavailableError(
            "No recognition model configured. Set RecognizerConfig.model_path or HANDSCAN_MODEL_PATH."
        )

    path = Path(config.model_path)
    if not path.exists():
        raise ModelUnavailableError(f"Model file not found: {path}")

    backend = config.backend
    if backend == "auto":
        backend = "onnx" if path.suffix.lower() == ".onnx" else "torch"

    try:
        if backend == "onnx":
            return OnnxBackend(str(path), use_gpu=config.use_gpu)
        return TorchBackend(str(path), num_classes=num_classes, use_gpu=config.use_gpu)
    except ModelUnavailableError:
        raise
    except Exception as e:
        raise ModelUnavailableError(f"Failed to load {backend} model {path}: {e}") from e


# ============================================================================
# Recognizer
# ============================================================================

class SequenceRecognizer:
    """
    Line image -> (timesteps, len(alphabet) + 1) probability matrix.

    Args:
        config: Recognizer configuration
        alphabet: Character set the model was trained on
        backend: Ready backend to use instead of loading config.model_path
    """

    def __init__(
        self,
        config: Optional[RecognizerConfig] = None,
        alphabet: Alphabet = DEFAULT_ALPHABET,
        backend: Optional[RecognizerBackend] = None
    ):
        self.config = config or RecognizerConfig()
        self.alphabet = alphabet
        self._backend = backend
        self._provided_backend = backend is not None
        self._ready = False
        self._disposed = False
        self._lock = threading.Lock()

    @property
    def is_ready(self) -> bool:
        return self._ready

    def initialize(self, progress: Optional[ProgressCallback] = None) -> "SequenceRecognizer":
        """
        Load the model and run one warm-up inference.

        Raises:
            ModelUnavailableError: If the artifact or runtime cannot be loaded.
                The recognizer stays unusable; initialize() may be retried.
        """
        with self._lock:
            if self._ready:
                return self

            start = time.time()
            if progress:
                progress(0.1, "Loading recognition model")

            if self._backend is None:
                self._backend = create_backend(self.config, self.alphabet.num_classes)
            if progress:
                progress(0.6, "Model loaded")

            if self.config.warm_up:
                self._warm_up()
            if progress:
                progress(1.0, "Recognizer ready")

            self._ready = True
            self._disposed = False
            logger.info(f"Recognizer initialized in {time.time() - start:.2f}s")
            return self

    def _warm_up(self):
        zeros = np.zeros(
            (1, self.config.input_height, self.config.input_width, 1), dtype=np.float32
        )
        try:
            self._backend.predict(zeros)
        except Exception as e:
            raise ModelUnavailableError(f"Model warm-up failed: {e}") from e
        logger.debug("Warm-up inference complete")

    def recognize(self, image: PixelBuffer) -> np.ndarray:
        """
        Run the model on one line image.

        Returns:
            float32 matrix of shape (timesteps, len(alphabet) + 1), rows summing to 1
        """
        if not self._ready:
            raise ModelUnavailableError("Recognizer is not initialized; call initialize() first")

        batch = prepare_line_image(image, self.config.input_height, self.config.input_width)
        output = np.asarray(self._backend.predict(batch), dtype=np.float32)

        matrix = output[0] if output.ndim == 3 else output
        if matrix.ndim != 2 or matrix.shape[1] != self.alphabet.num_classes:
            raise ValueError(
                f"Model output shape {output.shape} does not match "
                f"{self.alphabet.num_classes} classes"
            )

        if matrix.shape[0] and not np.allclose(matrix.sum(axis=1), 1.0, atol=1e-3):
            matrix = _softmax(matrix)
        return matrix

    def model_summary(self) -> str:
        if not self._ready:
            return "Recognizer not initialized"
        return self._backend.summary()

    def dispose(self):
        """Release the backend. Safe to call more than once."""
        with self._lock:
            if self._disposed or self._backend is None:
                self._disposed = True
                self._ready = False
                return

            try:
                self._backend.close()
            except Exception as e:
                logger.error(f"Error while disposing recognizer backend: {e}")
            finally:
                self._backend = None
                self._ready = False
                self._disposed = True
                logger.debug("Recognizer disposed")

    def __enter__(self) -> "SequenceRecognizer":
        return self.initialize()

    def __exit__(self, exc_type, exc, tb):
        self.dispose()
