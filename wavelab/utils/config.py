from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List, Literal
import os


def _default_pool_size() -> int:
    cpu_count = os.cpu_count() or 2
    return max(1, cpu_count - 1)


class Settings(BaseSettings):
    """The main wavelab settings object, prefixed with WAVELAB_"""

    # Pool surface
    POOL_SIZE: int = Field(default_factory=_default_pool_size, ge=1)
    MAX_QUEUE_DEPTH: int = Field(default=10, ge=1)
    IDLE_TIMEOUT_MS: int = Field(default=60_000, ge=0)
    WARMUP_ON_LOAD: bool = True

    # Worker processes
    WORKER_START_METHOD: Literal["spawn", "fork", "forkserver"] = "spawn"
    RESULT_POLL_INTERVAL_S: float = Field(default=0.2, gt=0)
    WORKER_SHUTDOWN_TIMEOUT_S: float = Field(default=5.0, gt=0)

    # Spectral transform
    DEFAULT_FFT_BACKEND: Literal["native", "portable"] = "native"
    NATIVE_MAX_ELEMENTS: int = Field(default=4_194_304, ge=1)  # 2048 x 2048

    # Image intake
    MAX_IMAGE_DIMENSION: int = Field(default=1024, ge=1)
    MAX_IMAGE_BYTES: int = Field(default=10 * 1024 * 1024, ge=1)
    SUPPORTED_MIME_TYPES: List[str] = [
        "image/png",
        "image/jpeg",
        "image/jpg",
        "image/bmp",
        "image/tiff",
    ]

    # Logging Configuration
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: Literal["json", "console"] = "json"
    LOG_FILE: str | None = None

    model_config = SettingsConfigDict(
        env_prefix="WAVELAB_",
        env_file=".env",
        extra="ignore",
        case_sensitive=False,
    )
