"""
Configuration management

Centralized settings using Pydantic BaseSettings for type-safe configuration
with environment variable support.

Settings can be overridden via environment variables prefixed with
INDEXER_TOOLKIT_ (e.g. INDEXER_TOOLKIT_MAX_ATTEMPTS=5) or a .env file in
the current directory. CLI flags take precedence over both.
"""

import logging
import sys
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

ARTIFACTS_SUBDIR = "artifacts"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class Settings(BaseSettings):
    """
    Orchestrator settings with environment variable support

    Settings can be overridden via environment variables:
    - INDEXER_TOOLKIT_WORKING_DIR=/tmp/stack
    - INDEXER_TOOLKIT_MAX_ATTEMPTS=5
    - INDEXER_TOOLKIT_SERVICE_TIMEOUT=300
    """

    # Stack identity
    stack_name: str = "indexer-stack"
    working_dir: Path = Path(".indexer-stack")
    docker_network: str = "indexer-stack"

    # Attempts and timing
    max_attempts: int = Field(default=3, ge=1)
    service_timeout: float = Field(default=120.0, gt=0)
    poll_interval: float = Field(default=2.0, gt=0)
    poll_backoff: float = Field(default=1.0, ge=1.0)  # 1.0 = linear polling
    max_poll_interval: float = Field(default=10.0, gt=0)
    attempt_deadline: float | None = None

    # Concurrency
    max_workers: int = Field(default=4, ge=1)

    # Host address resolution
    host_address: str | None = None  # Fixed override, skips detection
    host_address_fallback: str | None = "host.docker.internal"

    # Logging
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="INDEXER_TOOLKIT_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("log_level")
    @classmethod
    def _normalize_level(cls, value: str) -> str:
        level = value.upper()
        if level not in logging.getLevelNamesMapping():
            raise ValueError(f"Unknown log level: {value}")
        return level

    @property
    def artifact_dir(self) -> Path:
        """Directory that receives rendered configuration for the current attempt"""
        return self.working_dir / ARTIFACTS_SUBDIR


# Singleton pattern for settings
_settings: Settings | None = None


def get_settings() -> Settings:
    """
    Get orchestrator settings (singleton)

    Returns:
        Settings instance
    """
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings (for testing)"""
    global _settings
    _settings = None


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging for CLI runs"""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stderr)],
        force=True,
    )
    # httpx logs every poll at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
