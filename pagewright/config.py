from __future__ import annotations

import os
from typing import Optional

import yaml
from pydantic import BaseModel, Field

from .constants import (
    DEFAULT_IMAGE_QA_ATTEMPTS,
    DEFAULT_MAX_CONCURRENT_TASKS,
    DEFAULT_STALE_AFTER_SECONDS,
    DEFAULT_STALE_CRITICAL_COUNT,
    DEFAULT_TASK_MAX_RETRIES,
)
from .limiter import RateLimiterConfig


class DispatcherConfig(BaseModel):
    """Dispatch cycle settings."""

    max_concurrent_tasks: int = Field(default=DEFAULT_MAX_CONCURRENT_TASKS, ge=1)
    max_retries: int = Field(default=DEFAULT_TASK_MAX_RETRIES, ge=0)
    retry_base_delay: float = Field(default=0.0, ge=0)
    retry_max_delay: float = Field(default=300.0, ge=0)


class HealthConfig(BaseModel):
    """Stale task detection settings."""

    stale_after_seconds: float = Field(default=DEFAULT_STALE_AFTER_SECONDS, gt=0)
    stale_critical_count: int = Field(default=DEFAULT_STALE_CRITICAL_COUNT, ge=1)


class ImageConfig(BaseModel):
    """Image generation and review settings."""

    max_attempts: int = Field(default=DEFAULT_IMAGE_QA_ATTEMPTS, ge=2)
    generator_base_url: str = "https://api.openai.com/v1"
    generator_model: str = "gpt-image-1"
    generator_api_key_env: str = "PAGEWRIGHT_IMAGE_API_KEY"
    image_size: str = "1536x1024"
    primary_reviewer_model: str = "anthropic:claude-sonnet-4-0"
    secondary_reviewer_model: str = "openai:gpt-4o"
    rewriter_model: str = "google-gla:gemini-2.5-flash"
    storage_dir: str = "images"


class StageConfig(BaseModel):
    """Models behind the intake, research and knowledge-base stages."""

    conductor_model: str = "openai:gpt-4o-mini"
    enhance_intake: bool = True


class PagewrightConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    dispatcher: DispatcherConfig = DispatcherConfig()
    health: HealthConfig = HealthConfig()
    rate_limiter: RateLimiterConfig = RateLimiterConfig()
    images: ImageConfig = ImageConfig()
    stages: StageConfig = StageConfig()


def load_config(path: Optional[str] = None) -> PagewrightConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to PAGEWRIGHT_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("PAGEWRIGHT_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = PagewrightConfig(**data)
    else:
        config = PagewrightConfig()

    env_db_url = os.getenv("PAGEWRIGHT_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config
