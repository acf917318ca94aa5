"""Environment-based configuration for PlantScan."""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from PLANTSCAN_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="PLANTSCAN_",
        case_sensitive=False,
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8082
    log_level: str = "INFO"

    # Authentication (None = disabled)
    api_key: str | None = None

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # Runtime and model assets
    runtime_module: str = "onnxruntime"
    models_dir: Path = Path("models")
    model_file: str = "plant-disease-model.onnx"
    model_repo_id: str | None = None
    preload_model: bool = False

    # ONNX Runtime threading (single-threaded by default)
    intra_op_threads: int = Field(default=1, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)

    # Concurrency
    max_concurrent: int = Field(default=2, ge=1)

    # Stage timeouts (seconds)
    runtime_load_timeout: float = Field(default=30.0, gt=0)
    model_load_timeout: float = Field(default=60.0, gt=0)
    inference_timeout: float = Field(default=30.0, gt=0)

    # Output
    top_k: int = Field(default=3, ge=1, le=3)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=20_971_520, ge=1)

    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)

    # Remote fallback (Gemini)
    gemini_api_key: str | None = None
    gemini_model: str = "gemini-1.5-flash"
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    gemini_timeout: float = Field(default=30.0, gt=0)

    @property
    def model_path(self) -> Path:
        """Local path of the classification model asset."""
        return self.models_dir / self.model_file


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
