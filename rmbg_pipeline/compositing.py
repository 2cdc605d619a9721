"""
Compositing of the original image with its foreground mask.

A transparent background yields RGBA with the mask as alpha. A solid color or
background image is blended in behind the subject and the output is opaque.
"""

from __future__ import annotations

from typing import Optional, Tuple, Union

import cv2
import numpy as np

from .errors import DimensionMismatchError
from .image import RasterImage

TRANSPARENT = "transparent"

Background = Union[str, Tuple[int, int, int], RasterImage]


def parse_hex_color(value: Optional[str]) -> Optional[Tuple[int, int, int]]:
    if not value:
        return None
    raw = value.strip()
    if raw.startswith("#"):
        raw = raw[1:]
    if len(raw) != 6:
        return None
    try:
        return (int(raw[0:2], 16), int(raw[2:4], 16), int(raw[4:6], 16))
    except ValueError:
        return None


def _background_pixels(background: Background, width: int, height: int) -> np.ndarray:
    if isinstance(background, RasterImage):
        bg = background.rgb.astype(np.float32)
        if (background.width, background.height) != (width, height):
            bg = cv2.resize(bg, (width, height), interpolation=cv2.INTER_LINEAR)
        return bg
    if isinstance(background, str):
        color = parse_hex_color(background)
        if color is None:
            raise ValueError(f"Unrecognized background: {background!r}")
        background = color
    bg = np.empty((height, width, 3), dtype=np.float32)
    bg[...] = np.asarray(background, dtype=np.float32)
    return bg


def composite(
    original: RasterImage,
    mask: np.ndarray,
    background: Background = TRANSPARENT,
    threshold: Optional[float] = None,
) -> RasterImage:
    """Merge `original` and `mask` into an RGBA RasterImage of the same size."""
    if mask.shape != (original.height, original.width):
        raise DimensionMismatchError(
            f"Mask shape {mask.shape} does not match image {original.height}x{original.width}"
        )

    alpha = np.clip(mask.astype(np.float32), 0.0, 1.0)
    if threshold is not None:
        alpha = (alpha >= threshold).astype(np.float32)

    rgb = original.rgb
    if isinstance(background, str) and background == TRANSPARENT:
        alpha_out = alpha
        if original.alpha is not None:
            alpha_out = alpha_out * (original.alpha.astype(np.float32) / 255.0)
        alpha_u8 = np.clip(np.rint(alpha_out * 255.0), 0, 255).astype(np.uint8)
        return RasterImage(np.dstack((rgb, alpha_u8)))

    bg = _background_pixels(background, original.width, original.height)
    weight = alpha[..., None]
    blended = rgb.astype(np.float32) * weight + bg * (1.0 - weight)
    rgb_out = np.clip(np.rint(blended), 0, 255).astype(np.uint8)
    opaque = np.full((original.height, original.width), 255, dtype=np.uint8)
    return RasterImage(np.dstack((rgb_out, opaque)))
