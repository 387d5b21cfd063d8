"""Environment-based configuration for PhotoLabel."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from PHOTOLABEL_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="PHOTOLABEL_",
        case_sensitive=False,
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8082

    # Authentication (None = disabled)
    api_key: str | None = None

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # Model assets. models_repo is a placeholder: point it at a HuggingFace repo that
    # hosts mobilenet_v{version}_{width}_224.onnx files and imagenet_labels.txt.
    models_dir: str = "models"
    models_repo: str = "photolabel/mobilenet-onnx"

    # MobileNet selection
    mobilenet_version: int = Field(default=2, ge=1, le=2)
    width_multiplier: float = Field(default=1.0, gt=0.0, le=1.0)

    # Classification
    input_size: int = Field(default=224, ge=1)
    top_k: int = Field(default=3, ge=1)
    confidence_threshold: float = Field(default=0.1, ge=0.0, le=1.0)

    # Capture (published to clients, not used by the pipeline)
    capture_quality: float = Field(default=0.8, gt=0.0, le=1.0)
    capture_skip_processing: bool = True

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)

    # Concurrency
    max_concurrent: int = Field(default=1, ge=1)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=52_428_800, ge=1)


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
