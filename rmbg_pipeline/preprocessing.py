"""
Tensor codec: RasterImage <-> model tensors.

Encoding fits the image into the model's fixed square input (stretch or
letterbox), normalizes with per-channel mean/std and reorders HWC -> NCHW.
Decoding turns the single-channel output tensor into a [0, 1] mask at model
resolution; mapping back to the original size is the postprocessor's job and
uses the same `ResizeGeometry` so both directions stay exact inverses.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence, Tuple

import numpy as np
from PIL import Image

from .errors import InvalidImageError, ShapeMismatchError
from .image import SUPPORTED_CHANNELS, RasterImage


@dataclass(frozen=True)
class ResizeGeometry:
    target_size: int
    scaled_width: int
    scaled_height: int
    pad_left: int = 0
    pad_top: int = 0

    @property
    def is_padded(self) -> bool:
        return (self.scaled_width, self.scaled_height) != (self.target_size, self.target_size)


def validate_dimensions(width: int, height: int, channels: int) -> None:
    if width <= 0 or height <= 0:
        raise InvalidImageError(f"Invalid image dimensions {width}x{height}")
    if channels not in SUPPORTED_CHANNELS:
        raise InvalidImageError(f"Unsupported channel count: {channels}")


def resize_geometry(width: int, height: int, target_size: int, policy: str = "stretch") -> ResizeGeometry:
    """Where the image lands inside the `target_size` square for `policy`."""
    if policy == "stretch":
        return ResizeGeometry(target_size, target_size, target_size)
    if policy != "letterbox":
        raise ValueError(f"Unknown resize policy: {policy}")

    scale = target_size / max(width, height)
    new_w = min(target_size, max(1, int(round(width * scale))))
    new_h = min(target_size, max(1, int(round(height * scale))))
    return ResizeGeometry(
        target_size=target_size,
        scaled_width=new_w,
        scaled_height=new_h,
        pad_left=(target_size - new_w) // 2,
        pad_top=(target_size - new_h) // 2,
    )


def encode(
    image: RasterImage,
    target_size: int,
    mean: Sequence[float] = (0.5, 0.5, 0.5),
    std: Sequence[float] = (1.0, 1.0, 1.0),
    policy: str = "stretch",
) -> np.ndarray:
    """
    Convert `image` into a float32 (1, 3, target_size, target_size) tensor.

    Alpha is dropped before normalization. Resampling is Pillow bilinear, so
    the same input always produces the same tensor.
    """
    validate_dimensions(image.width, image.height, image.channels)
    geometry = resize_geometry(image.width, image.height, target_size, policy)

    rgb = Image.fromarray(np.ascontiguousarray(image.rgb))
    if (geometry.scaled_width, geometry.scaled_height) != rgb.size:
        rgb = rgb.resize((geometry.scaled_width, geometry.scaled_height), Image.BILINEAR)

    im_np = np.asarray(rgb).astype(np.float32) / 255.0
    im_np = (im_np - np.asarray(mean, dtype=np.float32)) / np.asarray(std, dtype=np.float32)
    im_np = np.transpose(im_np, (2, 0, 1))  # HWC -> CHW

    tensor = np.zeros((1, 3, target_size, target_size), dtype=np.float32)
    top, left = geometry.pad_top, geometry.pad_left
    tensor[0, :, top : top + geometry.scaled_height, left : left + geometry.scaled_width] = im_np
    return tensor


def decode(
    tensor: np.ndarray,
    expected_shape: Tuple[int, ...],
    normalization: str = "minmax",
) -> np.ndarray:
    """Interpret a (1, 1, H, W) output tensor as an (H, W) foreground-probability mask."""
    if tuple(tensor.shape) != tuple(expected_shape):
        raise ShapeMismatchError(
            f"Output tensor shape {tuple(tensor.shape)} does not match declared {tuple(expected_shape)}"
        )
    if tensor.ndim != 4 or tensor.shape[0] != 1 or tensor.shape[1] != 1:
        raise ShapeMismatchError(f"Expected a (1, 1, H, W) output tensor, got {tuple(tensor.shape)}")

    raw = np.asarray(tensor[0, 0], dtype=np.float32)
    if normalization == "minmax":
        lo, hi = float(raw.min()), float(raw.max())
        # A flat map carries no contrast to stretch.
        if hi - lo > 1e-6:
            raw = (raw - lo) / (hi - lo)
    elif normalization != "clip":
        raise ValueError(f"Unknown mask normalization: {normalization}")
    return np.clip(raw, 0.0, 1.0).astype(np.float32)
