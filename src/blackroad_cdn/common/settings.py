"""Application configuration models for the CDN gateway."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def env_field(default, env_name: str):
    return Field(default, validation_alias=env_name)


class GatewaySettings(BaseSettings):
    """Configuration for the media asset gateway."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", populate_by_name=True)
    service_name: str = env_field("BlackRoad CDN", "BLACKROAD_CDN_SERVICE_NAME")
    bucket_label: str = env_field("blackroad-media", "BLACKROAD_CDN_BUCKET_LABEL")
    s3_bucket: Optional[str] = env_field(None, "BLACKROAD_CDN_S3_BUCKET")
    s3_endpoint_url: Optional[str] = env_field(None, "BLACKROAD_CDN_S3_ENDPOINT")
    s3_region: Optional[str] = env_field(None, "BLACKROAD_CDN_S3_REGION")
    s3_max_retries: int = env_field(3, "BLACKROAD_CDN_S3_MAX_RETRIES")
    s3_retry_base_seconds: float = env_field(0.2, "BLACKROAD_CDN_S3_RETRY_BASE")
    s3_retry_max_seconds: float = env_field(2.0, "BLACKROAD_CDN_S3_RETRY_MAX")
    s3_circuit_breaker_failures: int = env_field(5, "BLACKROAD_CDN_S3_CIRCUIT_FAILURES")
    s3_circuit_breaker_reset_seconds: float = env_field(30.0, "BLACKROAD_CDN_S3_CIRCUIT_RESET")
    storage_path: Optional[Path] = env_field(None, "BLACKROAD_CDN_STORAGE_PATH")
    stream_chunk_bytes: int = env_field(1024 * 1024, "BLACKROAD_CDN_STREAM_CHUNK_BYTES")  # 1MiB
    redis_url: Optional[str] = env_field(None, "BLACKROAD_CDN_REDIS_URL")
    metadata_prefix: str = env_field("cdn:", "BLACKROAD_CDN_METADATA_PREFIX")
    admin_prefix: str = env_field("/_cdn", "BLACKROAD_CDN_ADMIN_PREFIX")
    metrics_token: Optional[SecretStr] = env_field(None, "BLACKROAD_CDN_METRICS_TOKEN")
    log_level: str = env_field("INFO", "BLACKROAD_CDN_LOG_LEVEL")
    otel_exporter_endpoint: Optional[str] = env_field(None, "BLACKROAD_CDN_OTEL_EXPORTER_ENDPOINT")
    otel_exporter_headers: Optional[str] = env_field(None, "BLACKROAD_CDN_OTEL_EXPORTER_HEADERS")
    otel_sampler_ratio: float = env_field(0.1, "BLACKROAD_CDN_OTEL_SAMPLER_RATIO")

    @field_validator("s3_bucket", "s3_endpoint_url", "s3_region", "redis_url", mode="before")
    @classmethod
    def _blank_to_none(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("storage_path", mode="before")
    @classmethod
    def _expand_storage_path(cls, value):
        if value in (None, ""):
            return None
        return Path(value).expanduser()

    @field_validator("admin_prefix", mode="before")
    @classmethod
    def _normalize_admin_prefix(cls, value):
        if not isinstance(value, str):
            return value
        stripped = value.strip().strip("/")
        if not stripped:
            raise ValueError("admin prefix must not be empty")
        return f"/{stripped}"

    @field_validator("stream_chunk_bytes")
    @classmethod
    def _positive_chunk(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("stream chunk size must be positive")
        return value
