"""Runtime configuration using pydantic-settings (env prefix ``GGUFLAB_``)."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings

from gguflab.internal import constants


class Settings(BaseSettings):
    """Settings shared by acquisition, the resource manager and the CLI."""

    model_config = {"env_prefix": "GGUFLAB_"}

    models_dir: Path = Path("models")
    log_level: str = "INFO"

    # Acquisition
    max_attempts: int = Field(default=constants.DEFAULT_MAX_ATTEMPTS, ge=1)
    backoff_seconds: float = Field(default=constants.DEFAULT_BACKOFF_SECONDS, ge=0)
    size_tolerance: float = Field(default=constants.SIZE_TOLERANCE, ge=0, lt=1)
    http_connect_timeout: float = 10.0
    http_read_timeout: float = 60.0  # stalled byte stream
    user_agent: str = constants.USER_AGENT

    # Engine
    context_size: int = constants.DEFAULT_CONTEXT_SIZE
    parallel_context_size: int = constants.PARALLEL_CONTEXT_SIZE
    gpu_layers: int = 0
    max_tokens: int = 512
    temperature: float = 0.7
    inference_timeout_seconds: Optional[float] = None


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
