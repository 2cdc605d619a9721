"""Mask post-processing: back to source resolution, then edge-band feathering."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import cv2
import numpy as np

from .errors import InvalidImageError
from .preprocessing import ResizeGeometry

logger = logging.getLogger(__name__)


def _band_mask(alpha: np.ndarray, radius: int) -> np.ndarray:
    """Pixels within `radius` of the 0.5 foreground/background transition."""
    hard = (alpha >= 0.5).astype(np.uint8)
    kernel = cv2.getStructuringElement(cv2.MORPH_ELLIPSE, (2 * radius + 1, 2 * radius + 1))
    dilated = cv2.dilate(hard, kernel, iterations=1)
    eroded = cv2.erode(hard, kernel, iterations=1)
    return dilated != eroded


def resize_mask(
    mask: np.ndarray,
    target_width: int,
    target_height: int,
    geometry: Optional[ResizeGeometry] = None,
) -> np.ndarray:
    """
    Map a model-space mask onto the original image grid.

    Undoes the encode-side fit: letterbox padding is cropped away first (scaled
    to the mask's resolution, which may differ from the model input), then the
    content is resized so mask pixel (x, y) lines up with image pixel (x, y).
    """
    if target_width <= 0 or target_height <= 0:
        raise InvalidImageError(f"Invalid mask target size {target_width}x{target_height}")

    mask = np.asarray(mask, dtype=np.float32)
    if geometry is not None and geometry.is_padded:
        sx = mask.shape[1] / geometry.target_size
        sy = mask.shape[0] / geometry.target_size
        left = int(round(geometry.pad_left * sx))
        top = int(round(geometry.pad_top * sy))
        right = max(left + 1, int(round((geometry.pad_left + geometry.scaled_width) * sx)))
        bottom = max(top + 1, int(round((geometry.pad_top + geometry.scaled_height) * sy)))
        mask = mask[top:bottom, left:right]

    src_h, src_w = mask.shape
    if (src_w, src_h) == (target_width, target_height):
        return np.clip(mask, 0.0, 1.0)

    shrinking = target_width < src_w and target_height < src_h
    interpolation = cv2.INTER_AREA if shrinking else cv2.INTER_LINEAR
    resized = cv2.resize(
        np.ascontiguousarray(mask), (target_width, target_height), interpolation=interpolation
    )
    return np.clip(resized, 0.0, 1.0).astype(np.float32)


def refine(mask: np.ndarray, feather_radius: int) -> np.ndarray:
    """
    Soften the silhouette edge over `feather_radius` pixels.

    Only the transition band is blurred so solid regions keep their values.
    Radius 0 leaves the mask untouched apart from clamping.
    """
    if feather_radius < 0:
        raise ValueError("feather_radius must be >= 0")
    alpha = np.clip(np.asarray(mask, dtype=np.float32), 0.0, 1.0)
    if feather_radius == 0:
        return alpha.copy()

    band = _band_mask(alpha, feather_radius)
    if not np.any(band):
        return alpha.copy()

    ksize = 2 * feather_radius + 1
    blurred = cv2.GaussianBlur(alpha, (ksize, ksize), 0, borderType=cv2.BORDER_REPLICATE)
    logger.debug(
        "postprocess: feather radius=%d band fraction=%.4f", feather_radius, float(np.mean(band))
    )
    return np.clip(np.where(band, blurred, alpha), 0.0, 1.0).astype(np.float32)


def keep_largest_component(alpha: np.ndarray, threshold: float = 0.05) -> np.ndarray:
    """Zero out all but the largest connected component above threshold."""
    mask = (alpha > threshold).astype(np.uint8)
    num_labels, labels, stats, _ = cv2.connectedComponentsWithStats(mask, connectivity=8)
    logger.debug("postprocess: %d connected components above %.2f", max(num_labels - 1, 0), threshold)
    if num_labels <= 2:
        return alpha

    largest_label = 1 + np.argmax(stats[1:, cv2.CC_STAT_AREA])
    return np.where(labels == largest_label, alpha, 0.0).astype(np.float32)


def dump_debug_mask(alpha: np.ndarray, debug_dir: Path) -> None:
    """Write the final mask as mask.png when DEBUG is enabled."""
    try:
        debug_dir.mkdir(parents=True, exist_ok=True)
        alpha_u8 = np.clip(alpha * 255.0, 0, 255).astype(np.uint8)
        cv2.imwrite(str(debug_dir / "mask.png"), alpha_u8)
        logger.debug("postprocess: wrote debug mask to %s", debug_dir)
    except (OSError, cv2.error) as exc:
        logger.warning("postprocess: failed to write debug outputs: %s", exc)
