"""
Model loading and the inference session manager.

The manager:
 - loads a TorchScript or ONNX segmentation model from `model_path` on first use,
 - validates it against the configured input/output shape contract,
 - serializes every forward pass behind a single run lock,
 - releases the model only when `unload()` is called.
"""

from __future__ import annotations

import logging
from pathlib import Path
from threading import Lock
from typing import Callable, Optional, Tuple

import numpy as np
import onnxruntime as ort
import torch

from . import config
from .errors import ModelLoadError, ShapeMismatchError

logger = logging.getLogger(__name__)


def select_device(preferred: Optional[str] = None) -> torch.device:
    """Prefer CUDA -> Apple MPS -> CPU unless a device is configured."""
    if preferred:
        return torch.device(preferred)
    if torch.cuda.is_available():
        return torch.device("cuda")
    if torch.backends.mps.is_available():  # type: ignore[attr-defined]
        return torch.device("mps")
    return torch.device("cpu")


class ModelBackend:
    """One loaded model able to map a single NCHW float32 array to another."""

    name = "backend"

    def run(self, tensor: np.ndarray) -> np.ndarray:  # pragma: no cover - interface only
        raise NotImplementedError

    def close(self) -> None:
        pass


class TorchScriptBackend(ModelBackend):
    name = "torchscript"

    def __init__(self, model_path: Path, device: torch.device):
        self.device = device
        self.model = torch.jit.load(str(model_path), map_location=device)
        if hasattr(self.model, "eval"):
            self.model.eval()

    def run(self, tensor: np.ndarray) -> np.ndarray:
        with torch.no_grad():
            out = self.model(torch.from_numpy(tensor).to(self.device))
        # Multi-output exports put the final matte first.
        if isinstance(out, (list, tuple)):
            out = out[0]
        return out.detach().cpu().numpy().astype(np.float32, copy=False)

    def close(self) -> None:
        self.model = None
        if self.device.type == "cuda":
            torch.cuda.empty_cache()


class OnnxBackend(ModelBackend):
    name = "onnx"

    def __init__(self, model_path: Path, input_shape: Tuple[int, ...]):
        available = ort.get_available_providers()
        providers = ["CPUExecutionProvider"]
        if "CUDAExecutionProvider" in available:
            providers.insert(0, "CUDAExecutionProvider")
        self.session = ort.InferenceSession(str(model_path), providers=providers)

        inputs = self.session.get_inputs()
        outputs = self.session.get_outputs()
        if len(inputs) != 1 or len(outputs) != 1:
            raise ModelLoadError(
                f"Expected a single-input/single-output model, got {len(inputs)} inputs and {len(outputs)} outputs"
            )
        declared = inputs[0].shape
        # Symbolic (dynamic) dims come back as strings or None.
        if len(declared) != len(input_shape) or any(
            isinstance(d, int) and d != want for d, want in zip(declared, input_shape)
        ):
            raise ModelLoadError(f"Model input shape {declared} does not accept {input_shape}")
        self.input_name = inputs[0].name
        self.output_name = outputs[0].name
        logger.info("ONNX Runtime providers: %s", self.session.get_providers())

    def run(self, tensor: np.ndarray) -> np.ndarray:
        (out,) = self.session.run([self.output_name], {self.input_name: tensor})
        return np.asarray(out, dtype=np.float32)

    def close(self) -> None:
        self.session = None


def load_backend(model_path: Path, settings: config.Settings) -> ModelBackend:
    if model_path.suffix.lower() == ".onnx":
        logger.info("Loading ONNX model from %s", model_path)
        return OnnxBackend(model_path, config.model_input_shape(settings))
    device = select_device(settings.device)
    logger.info("Loading TorchScript model from %s on %s", model_path, device)
    return TorchScriptBackend(model_path, device)


class InferenceSessionManager:
    """
    Explicit handle on the single loaded segmentation model.

    `ensure_loaded` is idempotent and safe to call from many threads; `run`
    admits one forward pass at a time.
    """

    def __init__(
        self,
        settings: Optional[config.Settings] = None,
        loader: Callable[[Path, config.Settings], ModelBackend] = load_backend,
    ):
        self.settings = settings or config.get_settings()
        self._loader = loader
        self._backend: Optional[ModelBackend] = None
        self._input_shape: Optional[Tuple[int, ...]] = None
        self._output_shape: Optional[Tuple[int, ...]] = None
        self._load_lock = Lock()
        self._run_lock = Lock()

    @property
    def is_loaded(self) -> bool:
        return self._backend is not None

    @property
    def input_shape(self) -> Tuple[int, ...]:
        if self._input_shape is None:
            raise ModelLoadError("Inference session is not loaded")
        return self._input_shape

    @property
    def output_shape(self) -> Tuple[int, ...]:
        if self._output_shape is None:
            raise ModelLoadError("Inference session is not loaded")
        return self._output_shape

    def ensure_loaded(self, model_path: Optional[Path] = None) -> None:
        if self._backend is not None:
            return

        with self._load_lock:
            if self._backend is not None:
                return
            path = Path(model_path or self.settings.model_path)
            if not path.is_file():
                raise ModelLoadError(f"Model artifact not found at {path}")

            input_shape = config.model_input_shape(self.settings)
            try:
                backend = self._loader(path, self.settings)
            except ModelLoadError:
                raise
            except Exception as exc:  # noqa: BLE001
                logger.exception("Failed to load model from %s", path)
                raise ModelLoadError(f"Could not load model from {path}: {exc}") from exc

            try:
                output_shape = self._validate(backend, input_shape)
            except Exception:
                backend.close()
                raise

            self._input_shape = input_shape
            self._output_shape = output_shape
            self._backend = backend
            logger.info(
                "Model loaded from %s (input=%s output=%s)", path, input_shape, output_shape
            )

    def _validate(self, backend: ModelBackend, input_shape: Tuple[int, ...]) -> Tuple[int, ...]:
        """Run one warm-up pass and return the declared output shape."""
        configured = self.settings.output_size
        if not self.settings.validate_model:
            size = configured or self.settings.input_size
            return (1, 1, size, size)

        try:
            sample = backend.run(np.zeros(input_shape, dtype=np.float32))
        except Exception as exc:  # noqa: BLE001
            raise ModelLoadError(f"Model failed its warm-up inference: {exc}") from exc

        shape = tuple(int(d) for d in sample.shape)
        if len(shape) != 4 or shape[0] != 1 or shape[1] != 1:
            raise ModelLoadError(f"Model output shape {shape} is not (1, 1, H, W)")
        if configured is not None and shape[2:] != (configured, configured):
            raise ModelLoadError(
                f"Model output resolution {shape[2:]} does not match configured {configured}x{configured}"
            )
        return shape

    def run(self, tensor: np.ndarray) -> np.ndarray:
        """Execute one forward pass. Not reentrant: callers are serialized."""
        if self._input_shape is None:
            raise ModelLoadError("Inference session is not loaded")
        if tuple(tensor.shape) != self._input_shape:
            raise ShapeMismatchError(
                f"Input tensor shape {tuple(tensor.shape)} does not match model input {self._input_shape}"
            )
        if tensor.dtype != np.float32:
            raise ShapeMismatchError(f"Input tensor dtype {tensor.dtype} is not float32")

        with self._run_lock:
            backend = self._backend
            if backend is None:
                raise ModelLoadError("Inference session was unloaded")
            return backend.run(np.ascontiguousarray(tensor))

    def unload(self) -> None:
        with self._load_lock, self._run_lock:
            if self._backend is None:
                return
            self._backend.close()
            self._backend = None
            self._input_shape = None
            self._output_shape = None
            logger.info("Model unloaded")
