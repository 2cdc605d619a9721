"""
RasterImage: the decoded pixel buffer that flows through the pipeline.

Pixels are held as a row-major `uint8` array of shape (height, width,
channels) in RGB(A) order. Decoding from encoded bytes goes through Pillow.
"""

from __future__ import annotations

from dataclasses import dataclass
from io import BytesIO
from typing import Optional

import numpy as np
from PIL import Image, UnidentifiedImageError

from .errors import ImageTooLargeError, InvalidImageError

SUPPORTED_CHANNELS = (3, 4)


@dataclass(eq=False)
class RasterImage:
    pixels: np.ndarray  # (H, W, C) uint8

    def __post_init__(self) -> None:
        if not isinstance(self.pixels, np.ndarray) or self.pixels.ndim != 3:
            raise InvalidImageError("Pixel buffer must be a (height, width, channels) array")
        if self.pixels.shape[2] not in SUPPORTED_CHANNELS:
            raise InvalidImageError(f"Unsupported channel count: {self.pixels.shape[2]}")
        if self.pixels.dtype != np.uint8:
            self.pixels = np.clip(self.pixels, 0, 255).astype(np.uint8)
        self.pixels = np.ascontiguousarray(self.pixels)

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def channels(self) -> int:
        return int(self.pixels.shape[2])

    @property
    def size(self) -> tuple[int, int]:
        """(width, height), matching Pillow's convention."""
        return self.width, self.height

    @property
    def rgb(self) -> np.ndarray:
        return self.pixels[..., :3]

    @property
    def alpha(self) -> Optional[np.ndarray]:
        if self.channels == 4:
            return self.pixels[..., 3]
        return None

    @classmethod
    def from_buffer(cls, buffer: bytes, width: int, height: int, channels: int) -> "RasterImage":
        """Wrap a raw interleaved buffer, enforcing len == width * height * channels."""
        if width <= 0 or height <= 0:
            raise InvalidImageError(f"Invalid image dimensions {width}x{height}")
        if channels not in SUPPORTED_CHANNELS:
            raise InvalidImageError(f"Unsupported channel count: {channels}")
        expected = width * height * channels
        if len(buffer) != expected:
            raise InvalidImageError(
                f"Buffer length {len(buffer)} does not match {width}x{height}x{channels}={expected}"
            )
        pixels = np.frombuffer(bytes(buffer), dtype=np.uint8).reshape(height, width, channels)
        return cls(pixels.copy())

    @classmethod
    def from_array(cls, array: np.ndarray) -> "RasterImage":
        return cls(np.array(array, copy=True))

    @classmethod
    def from_pil(cls, image: Image.Image) -> "RasterImage":
        if image.mode.startswith("I") or image.mode == "F":
            image = _high_depth_to_l(image)
        if image.mode not in {"RGB", "RGBA"}:
            has_transparency = image.mode in {"LA", "PA"} or "transparency" in image.info
            image = image.convert("RGBA" if has_transparency else "RGB")
        return cls(np.array(image, dtype=np.uint8))

    @classmethod
    def from_bytes(cls, data: bytes, max_dimension: Optional[int] = None) -> "RasterImage":
        return load_image_from_bytes(data, max_dimension)

    def to_pil(self) -> Image.Image:
        return Image.fromarray(self.pixels)

    def to_png_bytes(self) -> bytes:
        buf = BytesIO()
        self.to_pil().save(buf, format="PNG")
        return buf.getvalue()


def _high_depth_to_l(image: Image.Image) -> Image.Image:
    """
    Rescale 16/32-bit integer and float grayscale to 8-bit "L".

    Pillow's own convert() clips these modes at 255 instead of rescaling.
    Integer data is treated as 16-bit unless it already fits in 8 bits; float
    data is treated as [0, 1] unless it exceeds 1.
    """
    values = np.asarray(image, dtype=np.float32)
    values = np.nan_to_num(values, nan=0.0, posinf=0.0, neginf=0.0)
    peak = float(values.max()) if values.size else 0.0
    if image.mode == "F":
        scale = 255.0 if peak <= 1.0 else 1.0
    elif image.mode.startswith("I;16") or peak > 255.0:
        scale = 255.0 / 65535.0
    else:
        scale = 1.0
    return Image.fromarray(np.clip(np.rint(values * scale), 0, 255).astype(np.uint8))


def check_dimension_ceiling(width: int, height: int, max_dimension: Optional[int]) -> None:
    if max_dimension is not None and (width > max_dimension or height > max_dimension):
        raise ImageTooLargeError(
            f"Image {width}x{height} exceeds the maximum dimension of {max_dimension}px"
        )


def load_image_from_bytes(data: bytes, max_dimension: Optional[int] = None) -> RasterImage:
    """
    Decode common raster formats into a RasterImage.

    The header is inspected before pixel data is decoded so oversized images
    are rejected without allocating their full buffer.
    """
    if not data:
        raise InvalidImageError("Empty image payload")
    try:
        image = Image.open(BytesIO(data))
    except Image.DecompressionBombError as exc:
        raise ImageTooLargeError(str(exc)) from exc
    except (UnidentifiedImageError, OSError) as exc:
        raise InvalidImageError("Invalid image data") from exc

    width, height = image.size
    if width <= 0 or height <= 0:
        raise InvalidImageError(f"Invalid image dimensions {width}x{height}")
    check_dimension_ceiling(width, height, max_dimension)

    try:
        image.load()
        return RasterImage.from_pil(image)
    except InvalidImageError:
        raise
    except Exception as exc:  # noqa: BLE001
        # Plugins surface truncated or malformed data as OSError, EOFError,
        # SyntaxError or struct.error depending on the format.
        raise InvalidImageError("Image data could not be decoded") from exc
