"""Runtime settings for the exam practice server, read from the environment."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from exam_practice.constants.network_constants import DEFAULT_HOST, DEFAULT_PORT
from exam_practice.constants.storage_constants import MAX_STORAGE_SIZE_BYTES


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="EXAM_PRACTICE_", env_file=".env", extra="ignore")

    host: str = DEFAULT_HOST
    port: int = Field(default=DEFAULT_PORT, ge=1, le=65535)

    data_file: Path = Path("data/storage.json")
    storage_quota_bytes: int = Field(default=MAX_STORAGE_SIZE_BYTES, gt=0)
    exams_dir: Path = Path("exams")
    exam_time_limit_minutes: int | None = Field(default=None, gt=0)

    sync_url: str | None = None
    start_online: bool = True

    log_level: str = "INFO"


@lru_cache
def get_settings() -> Settings:
    return Settings()
