"""
Single-slot inference worker.

All forward passes go through one background thread, so inference runs one
at a time in arrival (FIFO) order while codec and compositing work stays on
the callers' threads. Each submission returns a `Future`: cancelling it drops
the job if it has not started; a job already running finishes and its result
is simply never read.
"""

from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor
import logging
import time

import numpy as np

from .model_loader import InferenceSessionManager

logger = logging.getLogger(__name__)


class InferenceWorker:
    def __init__(self, session: InferenceSessionManager):
        self.session = session
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="rmbg-inference")

    def _run(self, tensor: np.ndarray) -> np.ndarray:
        started = time.perf_counter()
        out = self.session.run(tensor)
        logger.debug("inference: forward pass took %.1f ms", (time.perf_counter() - started) * 1000.0)
        return out

    def submit(self, tensor: np.ndarray) -> "Future[np.ndarray]":
        return self._executor.submit(self._run, tensor)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait, cancel_futures=True)
