"""Environment-based configuration for waifutag."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from waifutag.ml.labels import TagCategory


class Settings(BaseSettings):
    """Application settings loaded from WAIFUTAG_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="WAIFUTAG_",
        case_sensitive=False,
        protected_namespaces=(),
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8083

    # Authentication (None = disabled)
    api_key: str | None = None

    # ML device
    device: Literal["cpu", "cuda", "tensorrt", "coreml"] = "cpu"
    device_id: int = Field(default=0, ge=0)

    # Model selection
    model: str = "swin-v2"
    models_dir: str = "./models"
    preload: bool = True

    # Default per-category thresholds (used where the label file has none)
    general_threshold: float = Field(default=0.35, ge=0.0, le=1.0)
    character_threshold: float = Field(default=0.85, ge=0.0, le=1.0)
    rating_threshold: float = Field(default=0.0, ge=0.0, le=1.0)

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)

    # Concurrency
    max_concurrent: int = Field(default=2, ge=1)
    queue_timeout: float = Field(default=5.0, gt=0.0)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=52_428_800, ge=1)

    # Custom Hub repositories ("owner/repo") accepted as model names
    allow_custom_models: bool = False
    custom_model_filename: str = "model.onnx"
    custom_labels_filename: str = "selected_tags.csv"
    custom_config_filename: str = "config.json"

    def default_thresholds(self) -> dict[TagCategory, float]:
        return {
            TagCategory.GENERAL: self.general_threshold,
            TagCategory.CHARACTER: self.character_threshold,
            TagCategory.RATING: self.rating_threshold,
        }


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
