"""Application configuration using Pydantic settings."""

from functools import lru_cache
from typing import List, Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Central application configuration."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", case_sensitive=False)

    app_name: str = "WebP Pipeline"
    environment: str = "development"
    debug: bool = True

    api_v1_prefix: str = "/v1"
    cors_allowed_origins: List[str] = ["*"]

    redis_url: str = "redis://localhost:6379/0"
    redis_key_prefix: str = "webp_pipeline"

    celery_broker_url: str | None = None
    celery_result_backend: str | None = None
    celery_image_queue: str = "images"

    storage_root: str = "storage/public"
    record_store_backend: Literal["memory", "redis"] = "memory"

    max_upload_bytes: int = 5 * 1024 * 1024
    allowed_upload_mimes: List[str] = ["image/jpeg", "image/png"]

    conversion_max_attempts: int = 3
    conversion_backoff_seconds: List[int] = [60, 300, 900]
    conversion_timeout_seconds: int = 300
    conversion_error_max_length: int = 255

    codec_preference: List[str] = ["cwebp", "pillow"]
    cwebp_binary: str = "cwebp"
    cwebp_timeout_seconds: float = 120.0

    retry_sweep_interval_seconds: int = 3600
    retry_sweep_hours: int = 24
    retry_sweep_limit: int = 100

    auth_jwt_secret: str = "change-me"
    auth_token_header: str = "Authorization"
    owner_id_header: str = "X-Owner-Id"

    log_json: bool = True


@lru_cache
def get_settings() -> Settings:
    """Return cached settings instance."""

    return Settings()


settings = get_settings()
