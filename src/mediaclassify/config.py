"""Environment-based configuration for mediaclassify."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


class Settings(BaseSettings):
    """Application settings loaded from MEDIACLASSIFY_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="MEDIACLASSIFY_",
        case_sensitive=False,
        protected_namespaces=(),
    )

    # Authentication (None = disabled)
    api_key: str | None = None

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # ML device (maps to ONNX Runtime execution providers)
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # Model source: directory, http(s) base URL or hf://<repo_id>[/<subfolder>]
    model_source: str | None = None
    models_dir: str = "models"
    save_to_dir: str | None = None
    warmup: bool = True

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)

    # I/O strategy for video acquisition and extraction
    io_mode: Literal["memory", "disk"] = "memory"

    # Preprocessing delegation to worker threads
    preprocess_use_workers: bool = False
    preprocess_threads: int = Field(default=4, ge=1)

    # Concurrency
    max_concurrent: int = Field(default=2, ge=1)
    download_concurrency: int = Field(default=8, ge=1)
    extraction_concurrency: int | None = Field(default=None, ge=1, le=16)
    preprocess_concurrency: int | None = Field(default=None, ge=1, le=32)

    # Request defaults
    frames: int = Field(default=10, ge=1)

    # Input limits
    max_bytes: int = Field(default=10 * 1024 * 1024, ge=1)
    max_file_size: int = Field(default=209_715_200, ge=1)

    # Transport
    http_timeout: float = Field(default=15.0, gt=0)
    http_retries: int = Field(default=2, ge=0)

    # Frame extraction
    ffmpeg_path: str = "ffmpeg"


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
