"""Pipeline configuration.

Settings come from environment variables, optionally seeded from `.env`
files. The repository root `.env` is read first, then whatever
python-dotenv finds walking up from the working directory. Variables
already present in the environment always win.
"""

from __future__ import annotations

from pathlib import Path
from typing import List, Optional

from dotenv import find_dotenv, load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _env_files() -> List[str]:
    files: List[str] = []
    root_env = Path(__file__).resolve().parents[2] / ".env"
    if root_env.is_file():
        files.append(str(root_env))
    discovered = find_dotenv(usecwd=True)
    if discovered and discovered not in files:
        files.append(discovered)
    return files


ENV_FILES = _env_files()
for _path in ENV_FILES:
    load_dotenv(dotenv_path=_path, override=False)


class Settings(BaseSettings):
    """Runtime settings for the capture pipeline and its scripts."""

    model_config = SettingsConfigDict(
        env_file=tuple(ENV_FILES) or None,
        case_sensitive=True,
        extra="ignore",
    )

    PROJECT_NAME: str = "SnapTrack Capture"
    ENVIRONMENT: str = Field(default="local")

    # Remote extraction service
    API_BASE_URL: str = Field(default="https://api.snaptrack.bot")
    # Ceiling for every request; expiry is reported as a network error
    REQUEST_TIMEOUT_SECONDS: float = Field(default=30.0)
    HEALTH_TIMEOUT_SECONDS: float = Field(default=5.0)
    # Static bearer token for scripts; interactive use injects an auth provider
    API_TOKEN: Optional[str] = Field(default=None)

    # Progress narration: multiplier applied to every stage duration (0 disables pacing)
    STAGE_PACING_SCALE: float = Field(default=1.0)

    # Offline queue
    OFFLINE_QUEUE_DIRECTORY: str = Field(default="./offline_queue")
    OFFLINE_QUEUE_MAX_ATTEMPTS: int = Field(default=3)

    # Capture defaults
    DEFAULT_ENTITY: str = Field(default="Personal")
    UPLOAD_MAX_IMAGE_EDGE: int = Field(default=1600)
    UPLOAD_JPEG_QUALITY: int = Field(default=60)

    # Error reporting (disabled without a DSN)
    SENTRY_DSN: Optional[str] = None
    SENTRY_TRACES_SAMPLE_RATE: float = 0.0
    SENTRY_RELEASE: Optional[str] = None


settings = Settings()
