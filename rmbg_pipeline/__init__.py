"""
Background removal inference pipeline.

Exposes reusable primitives for loading a segmentation model, encoding images
into tensors, refining the predicted mask and compositing the cutout.
"""

from .errors import (
    DimensionMismatchError,
    ImageTooLargeError,
    InferenceTimeoutError,
    InvalidImageError,
    ModelLoadError,
    PipelineError,
    ProcessingError,
    QueueFullError,
    ShapeMismatchError,
)
from .image import RasterImage
from .pipeline import BackgroundRemover, RemovalOptions, RemovalRequest, RemovalResult

__all__ = [
    "BackgroundRemover",
    "DimensionMismatchError",
    "ImageTooLargeError",
    "InferenceTimeoutError",
    "InvalidImageError",
    "ModelLoadError",
    "PipelineError",
    "ProcessingError",
    "QueueFullError",
    "RasterImage",
    "RemovalOptions",
    "RemovalRequest",
    "RemovalResult",
    "ShapeMismatchError",
]
