"""
High-level background-removal pipeline.

`BackgroundRemover.remove_background` is the main entry point. It keeps
orchestration simple:
image in -> encode -> model (serialized) -> decode -> resize/refine -> composite -> RGBA out.

Every failure is returned as a typed error inside `RemovalResult`; a request
either produces a full image or nothing.
"""

from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass, field
import logging
from threading import BoundedSemaphore
import time
from typing import Annotated, Literal, Optional, Tuple, Union
import uuid

import numpy as np
from pydantic import BaseModel, ConfigDict, Field, field_validator

from . import config
from .compositing import TRANSPARENT, composite, parse_hex_color
from .errors import (
    DimensionMismatchError,
    InferenceTimeoutError,
    InvalidImageError,
    ModelLoadError,
    PipelineError,
    ProcessingError,
    QueueFullError,
)
from .image import RasterImage, check_dimension_ceiling, load_image_from_bytes
from .model_loader import InferenceSessionManager
from .postprocessing import dump_debug_mask, keep_largest_component, refine, resize_mask
from .preprocessing import decode, encode, resize_geometry, validate_dimensions
from .queue_worker import InferenceWorker

logger = logging.getLogger(__name__)

Channel = Annotated[int, Field(ge=0, le=255)]


class RemovalOptions(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    background: Union[Literal["transparent"], Tuple[Channel, Channel, Channel]] = TRANSPARENT
    background_image: Optional[RasterImage] = None
    feather_radius: int = Field(0, ge=0)
    keep_largest_component: bool = False

    @field_validator("background", mode="before")
    @classmethod
    def parse_background(cls, v):
        if isinstance(v, str):
            if v.strip().lower() == TRANSPARENT:
                return TRANSPARENT
            color = parse_hex_color(v)
            if color is None:
                raise ValueError("background must be 'transparent', an (r, g, b) tuple or '#RRGGBB'")
            return color
        return v


@dataclass
class RemovalRequest:
    source: Union[bytes, RasterImage]
    options: RemovalOptions = field(default_factory=RemovalOptions)


@dataclass
class RemovalResult:
    image: Optional[RasterImage] = None
    error: Optional[PipelineError] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.image is not None

    @property
    def code(self) -> Optional[str]:
        return self.error.code if self.error is not None else None

    def unwrap(self) -> RasterImage:
        if self.error is not None:
            raise self.error
        if self.image is None:
            raise ProcessingError("Pipeline produced no image")
        return self.image

    def to_png_bytes(self) -> bytes:
        return self.unwrap().to_png_bytes()


class BackgroundRemover:
    """
    Owns the inference session handle and the request-level policy around it.

    Codec and compositing work runs on the calling thread (or the request pool
    for `submit`), so several requests can be encoding at once; only the
    forward pass is funneled through the single inference worker.
    """

    def __init__(
        self,
        settings: Optional[config.Settings] = None,
        session: Optional[InferenceSessionManager] = None,
    ):
        self.settings = settings or config.get_settings()
        self._owns_session = session is None
        self.session = session or InferenceSessionManager(self.settings)
        self._worker = InferenceWorker(self.session)
        self._requests = ThreadPoolExecutor(
            max_workers=self.settings.request_workers, thread_name_prefix="rmbg-request"
        )
        self._slots = BoundedSemaphore(self.settings.max_queue_depth)

    def __enter__(self) -> "BackgroundRemover":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _deadline(self) -> float:
        return time.monotonic() + self.settings.inference_timeout_seconds

    def _rejected(self) -> RemovalResult:
        logger.warning("pipeline: rejecting request, %d requests already in flight", self.settings.max_queue_depth)
        return RemovalResult(error=QueueFullError("Too many requests in flight; retry later"))

    def remove_background(self, request: RemovalRequest) -> RemovalResult:
        if not self._slots.acquire(blocking=False):
            return self._rejected()
        try:
            return self._process(request, self._deadline())
        finally:
            self._slots.release()

    def submit(self, request: RemovalRequest) -> "Future[RemovalResult]":
        """
        Queue a request and return a future for its result.

        Cancelling the future before it starts drops the request. Once
        started it runs to completion; a caller that no longer wants the
        result just drops the future.
        """
        if not self._slots.acquire(blocking=False):
            rejected: Future = Future()
            rejected.set_result(self._rejected())
            return rejected
        try:
            future = self._requests.submit(self._process, request, self._deadline())
        except RuntimeError:
            self._slots.release()
            raise
        future.add_done_callback(lambda _: self._slots.release())
        return future

    def remove_background_bytes(self, data: bytes, options: Optional[RemovalOptions] = None) -> bytes:
        """Encoded image bytes in, RGBA PNG bytes out. Raises the typed error on failure."""
        result = self.remove_background(RemovalRequest(data, options or RemovalOptions()))
        return result.to_png_bytes()

    def close(self) -> None:
        self._requests.shutdown(wait=False, cancel_futures=True)
        self._worker.shutdown(wait=True)
        if self._owns_session:
            self.session.unload()

    # ------------------------------------------------------------------

    def _load_source(self, source: Union[bytes, RasterImage]) -> RasterImage:
        max_dim = self.settings.max_input_dimension
        if isinstance(source, RasterImage):
            validate_dimensions(source.width, source.height, source.channels)
            check_dimension_ceiling(source.width, source.height, max_dim)
            return source
        if isinstance(source, (bytes, bytearray, memoryview)):
            return load_image_from_bytes(bytes(source), max_dim)
        raise InvalidImageError(f"Unsupported image source type: {type(source).__name__}")

    @staticmethod
    def _check_deadline(deadline: float, stage: str) -> None:
        if time.monotonic() > deadline:
            raise InferenceTimeoutError(f"Request exceeded its time budget during {stage}")

    def _infer(self, tensor: np.ndarray, deadline: float) -> np.ndarray:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise InferenceTimeoutError("Request exceeded its time budget before inference")
        future = self._worker.submit(tensor)
        try:
            return future.result(timeout=remaining)
        except FuturesTimeoutError as exc:
            if not future.cancel():
                logger.warning("pipeline: inference still running after timeout; its result will be discarded")
            raise InferenceTimeoutError(
                f"Inference did not finish within {self.settings.inference_timeout_ms} ms"
            ) from exc

    def _process(self, request: RemovalRequest, deadline: float) -> RemovalResult:
        request_id = uuid.uuid4().hex[:8]
        started = time.monotonic()
        settings = self.settings
        options = request.options
        try:
            image = self._load_source(request.source)
            self.session.ensure_loaded()

            geometry = resize_geometry(image.width, image.height, settings.input_size, settings.resize_policy)
            tensor = encode(
                image,
                settings.input_size,
                mean=settings.normalize_mean,
                std=settings.normalize_std,
                policy=settings.resize_policy,
            )
            self._check_deadline(deadline, "encode")

            output = self._infer(tensor, deadline)

            mask = decode(output, self.session.output_shape, settings.mask_normalization)
            mask = resize_mask(mask, image.width, image.height, geometry)
            if options.keep_largest_component:
                mask = keep_largest_component(mask)
            mask = refine(mask, options.feather_radius)
            if settings.debug:
                dump_debug_mask(mask, settings.debug_output_dir)
            self._check_deadline(deadline, "postprocess")

            background = options.background_image if options.background_image is not None else options.background
            # Without feathering the edge is a hard cut at 0.5.
            threshold = 0.5 if options.feather_radius == 0 else None
            output_image = composite(image, mask, background, threshold=threshold)
        except DimensionMismatchError as exc:
            logger.exception("pipeline[%s]: mask/image misalignment: %s", request_id, exc)
            return RemovalResult(error=exc)
        except ModelLoadError as exc:
            logger.error("pipeline[%s]: model unavailable: %s", request_id, exc)
            return RemovalResult(error=exc)
        except PipelineError as exc:
            logger.warning("pipeline[%s]: request failed with %s: %s", request_id, exc.code, exc)
            return RemovalResult(error=exc)
        except Exception as exc:  # noqa: BLE001
            logger.exception("pipeline[%s]: background removal failed: %s", request_id, exc)
            return RemovalResult(error=ProcessingError("Background removal failed"))

        logger.debug(
            "pipeline[%s]: %dx%d done in %.1f ms",
            request_id,
            image.width,
            image.height,
            (time.monotonic() - started) * 1000.0,
        )
        return RemovalResult(image=output_image)
