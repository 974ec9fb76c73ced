"""Environment-based configuration for SnapLabel."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from SNAPLABEL_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="SNAPLABEL_",
        case_sensitive=False,
        protected_namespaces=(),
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8083
    log_level: str = "INFO"

    # Authentication (None = disabled)
    api_key: str | None = None

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # Model location: a Hugging Face repo, or a local directory when model_dir is set
    model_repo: str = "snaplabel/teachable-image-classifier"
    model_revision: str | None = None
    model_dir: str | None = None
    models_cache_dir: str = "models"
    model_filename: str = "model.onnx"
    metadata_filename: str = "metadata.json"

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)

    # Concurrency
    max_concurrent: int = Field(default=2, ge=1)

    # Input limits
    max_file_size: int = Field(default=20_971_520, ge=1)

    # Camera: preferred (rear-facing) device first, then the default one
    preferred_camera: int = Field(default=1, ge=0)
    default_camera: int = Field(default=0, ge=0)
    capture_width: int = Field(default=320, ge=1)
    capture_height: int = Field(default=320, ge=1)
    capture_flip: bool = True

    # Delay between inference cycles, in seconds (one redraw tick)
    tick_interval: float = Field(default=1 / 60, ge=0.0)


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
