"""
Typed failures for the background-removal pipeline.

Every error carries a stable `code` the surrounding application can map to
its own messaging, and a `retryable` flag telling it whether resubmitting the
same request can succeed.
"""

from __future__ import annotations


class PipelineError(Exception):
    code = "PROCESSING_FAILED"
    retryable = False

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "retryable": self.retryable}


class InvalidImageError(PipelineError):
    """Malformed or unsupported input image."""

    code = "INVALID_IMAGE"


class ImageTooLargeError(PipelineError):
    """Input exceeds the configured `max_input_dimension`."""

    code = "IMAGE_TOO_LARGE"


class ModelLoadError(PipelineError):
    """The model artifact could not be loaded or failed validation (fatal)."""

    code = "MODEL_LOAD_FAILED"


class ShapeMismatchError(PipelineError):
    """Tensor shape disagrees with the loaded session's declared shapes."""

    code = "SHAPE_MISMATCH"


class DimensionMismatchError(PipelineError):
    # Internal invariant; reported to callers as a generic processing failure.
    code = "PROCESSING_FAILED"


class InferenceTimeoutError(PipelineError):
    code = "INFERENCE_TIMEOUT"
    retryable = True


class QueueFullError(PipelineError):
    code = "QUEUE_FULL"
    retryable = True


class ProcessingError(PipelineError):
    """Unexpected failure inside a pipeline stage."""

    code = "PROCESSING_FAILED"
