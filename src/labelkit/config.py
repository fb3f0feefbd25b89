"""Environment-based configuration for LabelKit."""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from LABELKIT_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="LABELKIT_",
        case_sensitive=False,
        protected_namespaces=("settings_",),
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8082

    # Authentication (None = disabled)
    api_key: str | None = None

    # ML device
    device: Literal["cpu", "cuda"] = "cpu"

    # Model selection
    model: str = "mobilenet_v1_224_quant"
    models_dir: Path = Path("models")
    labels_dir: Path | None = None  # None = same as models_dir
    model_repo: str | None = None  # Hugging Face repo to fetch missing files from

    # Ranking (None = variant default)
    top_k: int = Field(default=3, ge=0)
    output_mode: Literal["top_k", "top_1"] | None = None

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)

    # Concurrency
    max_concurrent: int = Field(default=2, ge=1)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=209_715_200, ge=1)

    # Model management
    model_ttl: int = Field(default=300, ge=0)
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)

    @property
    def resolved_labels_dir(self) -> Path:
        """Directory label files are read from."""
        return self.labels_dir if self.labels_dir is not None else self.models_dir


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
