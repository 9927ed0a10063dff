"""Environment-based configuration for SnapLabel."""

from __future__ import annotations

from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from SNAPLABEL_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="SNAPLABEL_",
        case_sensitive=False,
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8083
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # Models: every id listed here starts loading at startup
    models_dir: str = "models"
    models: list[str] = ["mobilenet_v2", "inception_v3_inaturalist"]
    active_model: str = "mobilenet_v2"
    top_k: int = Field(default=5, ge=1)

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)

    # Concurrency
    max_concurrent: int = Field(default=2, ge=1)
    queue_timeout: float = Field(default=5.0, gt=0)

    # Image sources (local_root None = filesystem reads disabled)
    fetch_timeout: float = Field(default=10.0, gt=0)
    local_root: str | None = None

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=20_971_520, ge=1)

    @model_validator(mode="after")
    def _active_model_is_configured(self) -> Settings:
        if self.active_model not in self.models:
            raise ValueError(f"active_model '{self.active_model}' is not in models {self.models}")
        return self


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
