"""
Configuration loader for the background-removal pipeline.

Environment variables (prefix `RMBG_`) are centralized here to keep the rest
of the code focused on image work and to make operational tuning clear.
"""

from functools import lru_cache
from pathlib import Path
from typing import Optional, Tuple

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="RMBG_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        protected_namespaces=("settings_",),
    )

    # Model + preprocessing
    model_path: Path = Field(...)
    input_size: int = Field(1024, gt=0)
    output_size: Optional[int] = Field(None, gt=0)
    normalize_mean: Tuple[float, float, float] = (0.5, 0.5, 0.5)
    normalize_std: Tuple[float, float, float] = (1.0, 1.0, 1.0)
    resize_policy: str = "stretch"
    mask_normalization: str = "minmax"
    validate_model: bool = True
    device: Optional[str] = None

    # Request limits
    max_input_dimension: int = Field(4096, gt=0)
    inference_timeout_ms: int = Field(30000, gt=0)
    max_queue_depth: int = Field(4, ge=1)
    request_workers: int = Field(2, ge=1)

    log_level: str = "INFO"

    # Debugging
    debug: bool = False
    debug_output_dir: Path = Path("/tmp/rmbg_debug")

    @field_validator("resize_policy")
    @classmethod
    def validate_resize_policy(cls, v: str) -> str:
        v = v.lower()
        if v not in {"stretch", "letterbox"}:
            raise ValueError("RMBG_RESIZE_POLICY must be one of stretch|letterbox")
        return v

    @field_validator("mask_normalization")
    @classmethod
    def validate_mask_normalization(cls, v: str) -> str:
        v = v.lower()
        if v not in {"minmax", "clip"}:
            raise ValueError("RMBG_MASK_NORMALIZATION must be one of minmax|clip")
        return v

    @field_validator("normalize_std")
    @classmethod
    def validate_std(cls, v: Tuple[float, float, float]) -> Tuple[float, float, float]:
        if any(s == 0 for s in v):
            raise ValueError("RMBG_NORMALIZE_STD values must be non-zero")
        return v

    @property
    def inference_timeout_seconds(self) -> float:
        return self.inference_timeout_ms / 1000.0


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings to avoid reparsing env on every call."""
    return Settings()


def model_input_shape(settings: Optional[Settings] = None) -> Tuple[int, int, int, int]:
    """NCHW shape every encoded tensor must have for the configured model."""
    settings = settings or get_settings()
    return (1, 3, settings.input_size, settings.input_size)
