"""Environment-based configuration for ImagePredictor."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from IMAGEPREDICTOR_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="IMAGEPREDICTOR_",
        case_sensitive=False,
        protected_namespaces=("settings_",),
    )

    # Authentication (None = disabled)
    api_key: str | None = None

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # Model selection. Files come from model_repo on the Hub unless
    # model_path/labels_path point at local copies.
    classifier_model: str = "mobilenetv2_100"
    model_repo: str | None = None
    models_dir: str = "models"
    model_path: str | None = None
    labels_path: str | None = None

    # Request configuration
    crop_and_scale: Literal["center_crop", "scale_fit", "scale_fill"] = "center_crop"

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)

    # Engine worker threads
    max_concurrent: int = Field(default=2, ge=1)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=52_428_800, ge=1)
    default_top_k: int = Field(default=5, ge=1)

    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
