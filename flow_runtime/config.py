# flow_runtime/config.py
import logging
from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import JoinMode


class Settings(BaseSettings):
    """Runtime settings, read from FLOW_* environment variables or .env"""

    model_config = SettingsConfigDict(
        env_prefix="FLOW_", env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    APP_NAME: str = "Flow Runtime"

    # run defaults; a run request may override each of them
    DEFAULT_TIMEOUT_SECONDS: float = Field(300.0, gt=0)
    MAX_TIMEOUT_SECONDS: float = Field(3600.0, gt=0)
    DEFAULT_CONCURRENCY_LIMIT: Optional[int] = Field(None, ge=1)
    NODE_TIMEOUT_SECONDS: Optional[float] = Field(None, gt=0)
    FAIL_FAST: bool = False
    JOIN_MODE: JoinMode = JoinMode.ALL

    # event log
    EVENT_LOG_DIR: Optional[str] = None
    SSE_KEEPALIVE_SECONDS: float = 15.0

    # logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    @field_validator("LOG_LEVEL")
    def normalise_level(cls, v: str) -> str:
        level = v.upper()
        if level not in logging.getLevelNamesMapping():
            raise ValueError(f"unknown log level {v!r}")
        return level


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance"""
    return Settings()


def configure_logging(settings: Optional[Settings] = None) -> None:
    settings = settings or get_settings()
    logging.basicConfig(level=settings.LOG_LEVEL, format=settings.LOG_FORMAT)
    logging.getLogger("flow_runtime").setLevel(settings.LOG_LEVEL)
