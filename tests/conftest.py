from __future__ import annotations

import time
from pathlib import Path

import numpy as np
import pytest
import torch

from rmbg_pipeline.config import Settings
from rmbg_pipeline.image import RasterImage
from rmbg_pipeline.model_loader import InferenceSessionManager, ModelBackend
from rmbg_pipeline.pipeline import BackgroundRemover


class DarkForeground(torch.nn.Module):
    """Scores dark pixels as foreground: 1.0 for black, 0.0 for white (mean 0.5, std 1)."""

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return 0.5 - x.mean(dim=1, keepdim=True)


class Identity(torch.nn.Module):
    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return x


class SlowBackend(ModelBackend):
    """In-process backend with the same scoring as DarkForeground and a tunable delay."""

    name = "slow"

    def __init__(self, delay: float = 0.0):
        self.delay = delay
        self.calls = 0

    def run(self, tensor: np.ndarray) -> np.ndarray:
        self.calls += 1
        if self.delay:
            time.sleep(self.delay)
        return (0.5 - tensor.mean(axis=1, keepdims=True)).astype(np.float32)


def save_scripted(module: torch.nn.Module, path: Path) -> Path:
    torch.jit.save(torch.jit.script(module), str(path))
    return path


def square_image(size: int, top: int, left: int, side: int, channels: int = 3) -> RasterImage:
    """White canvas with a black `side` x `side` square at (top, left)."""
    pixels = np.full((size, size, channels), 255, dtype=np.uint8)
    pixels[top : top + side, left : left + side, :3] = 0
    return RasterImage(pixels)


@pytest.fixture
def model_path(tmp_path: Path) -> Path:
    return save_scripted(DarkForeground(), tmp_path / "dark_foreground.pt")


@pytest.fixture
def settings(model_path: Path) -> Settings:
    return Settings(
        model_path=model_path,
        input_size=128,
        max_input_dimension=1024,
        inference_timeout_ms=10000,
        max_queue_depth=4,
    )


@pytest.fixture
def remover(settings: Settings):
    with BackgroundRemover(settings) as r:
        yield r


@pytest.fixture
def slow_backend() -> SlowBackend:
    return SlowBackend()


@pytest.fixture
def slow_session(tmp_path: Path, slow_backend: SlowBackend):
    artifact = tmp_path / "model.bin"
    artifact.write_bytes(b"weights")

    def _make(**overrides) -> InferenceSessionManager:
        params = dict(model_path=artifact, input_size=64, inference_timeout_ms=10000)
        params.update(overrides)
        return InferenceSessionManager(Settings(**params), loader=lambda path, s: slow_backend)

    return _make
