"""Application configuration for the image cache edge service."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Annotated, Optional

from pydantic import Field, SecretStr, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from .observability import LOG_FORMATS


DEFAULT_USAGE_DATABASE_URL = "sqlite+aiosqlite:///./imgpro-usage.db"

_SIZE_PATTERN = re.compile(r"^(\d+(?:\.\d+)?)\s*(B|KB|MB|GB|TB)?$", re.IGNORECASE)
_SIZE_MULTIPLIERS = {
    "B": 1,
    "KB": 1024,
    "MB": 1024 * 1024,
    "GB": 1024 * 1024 * 1024,
    "TB": 1024 * 1024 * 1024 * 1024,
}


def env_field(default, env_name: str):
    return Field(default, validation_alias=env_name)


def parse_file_size(value: str) -> int:
    """Parse sizes such as ``50MB`` or ``100KB`` into bytes (1024-based)."""
    match = _SIZE_PATTERN.match(value.strip())
    if not match:
        raise ValueError(f"Invalid file size format: {value}")
    unit = (match.group(2) or "B").upper()
    return int(float(match.group(1)) * _SIZE_MULTIPLIERS[unit])


def _split_csv(value):
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return value


def _sqlite_url(value: str) -> str:
    path = Path(value).expanduser().resolve()
    return f"sqlite+aiosqlite:///{path.as_posix()}"


class EdgeSettings(BaseSettings):
    """Configuration for the image cache edge service and its usage aggregator."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", populate_by_name=True)

    allowed_origins: str = env_field("*", "IMGPRO_ALLOWED_ORIGINS")
    max_file_size: int = env_field(50 * 1024 * 1024, "IMGPRO_MAX_FILE_SIZE")
    fetch_timeout_seconds: float = env_field(30.0, "IMGPRO_FETCH_TIMEOUT")
    max_redirects: int = env_field(5, "IMGPRO_MAX_REDIRECTS")
    origin_user_agent: Optional[str] = env_field(None, "IMGPRO_ORIGIN_USER_AGENT")
    forward_client_ip: bool = env_field(False, "IMGPRO_FORWARD_CLIENT_IP")
    allow_private_origins: bool = env_field(False, "IMGPRO_ALLOW_PRIVATE_ORIGINS")
    metadata_endpoint_denylist: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["169.254.169.254", "metadata.google.internal"],
        validation_alias="IMGPRO_METADATA_DENYLIST",
    )

    storage_path: Path = env_field(Path("./image-cache"), "IMGPRO_STORAGE_PATH")
    s3_bucket: Optional[str] = env_field(None, "IMGPRO_S3_BUCKET")
    s3_endpoint_url: Optional[str] = env_field(None, "IMGPRO_S3_ENDPOINT")
    s3_region: Optional[str] = env_field(None, "IMGPRO_S3_REGION")
    s3_max_retries: int = env_field(3, "IMGPRO_S3_MAX_RETRIES")
    s3_retry_base_seconds: float = env_field(0.2, "IMGPRO_S3_RETRY_BASE")
    s3_retry_max_seconds: float = env_field(2.0, "IMGPRO_S3_RETRY_MAX")
    s3_circuit_breaker_failures: int = env_field(5, "IMGPRO_S3_CIRCUIT_FAILURES")
    s3_circuit_breaker_reset_seconds: float = env_field(30.0, "IMGPRO_S3_CIRCUIT_RESET")

    billing_database_url: Optional[str] = env_field(None, "IMGPRO_BILLING_DATABASE_URL")
    usage_database_url: str = env_field(DEFAULT_USAGE_DATABASE_URL, "IMGPRO_USAGE_DATABASE_URL")
    site_ids: Annotated[dict[str, int], NoDecode] = Field(default_factory=dict, validation_alias="IMGPRO_SITE_IDS")
    usage_flush_interval_seconds: float = env_field(60.0, "IMGPRO_USAGE_FLUSH_INTERVAL")
    usage_failure_alert_threshold: int = env_field(5, "IMGPRO_USAGE_FAILURE_ALERT")
    usage_queue_size: int = env_field(1000, "IMGPRO_USAGE_QUEUE_SIZE")
    usage_sweep_interval_seconds: float = env_field(1.0, "IMGPRO_USAGE_SWEEP_INTERVAL")
    usage_idle_seconds: float = env_field(300.0, "IMGPRO_USAGE_IDLE_SECONDS")

    metrics_token: Optional[SecretStr] = env_field(None, "IMGPRO_METRICS_TOKEN")
    log_level: str = env_field("INFO", "IMGPRO_LOG_LEVEL")
    log_format: str = env_field("json", "IMGPRO_LOG_FORMAT")
    otel_exporter_endpoint: Optional[str] = env_field(None, "IMGPRO_OTEL_EXPORTER_ENDPOINT")
    otel_exporter_headers: Optional[str] = env_field(None, "IMGPRO_OTEL_EXPORTER_HEADERS")
    otel_sampler_ratio: float = env_field(0.1, "IMGPRO_OTEL_SAMPLER_RATIO")

    @field_validator("max_file_size", mode="before")
    @classmethod
    def _parse_max_file_size(cls, value):
        if isinstance(value, str):
            return parse_file_size(value)
        return value

    @field_validator("metadata_endpoint_denylist", mode="before")
    @classmethod
    def _split_metadata_denylist(cls, value):
        return _split_csv(value)

    @field_validator("site_ids", mode="before")
    @classmethod
    def _parse_site_ids(cls, value):
        if isinstance(value, str):
            mapping: dict[str, int] = {}
            for item in _split_csv(value):
                domain, _, site_id = item.partition("=")
                if domain.strip() and site_id.strip():
                    mapping[domain.strip().lower()] = int(site_id.strip())
            return mapping
        return value

    @field_validator("log_format")
    @classmethod
    def _check_log_format(cls, value: str) -> str:
        value = value.strip().lower()
        if value not in LOG_FORMATS:
            raise ValueError(f"log format must be one of: {', '.join(LOG_FORMATS)}")
        return value

    @field_validator("usage_database_url", "billing_database_url", mode="before")
    @classmethod
    def _normalize_database_url(cls, value, info: ValidationInfo):
        if value is None or (isinstance(value, str) and not value.strip()):
            # Unset billing disables the sink; usage state falls back to the default store.
            return DEFAULT_USAGE_DATABASE_URL if info.field_name == "usage_database_url" else None
        if isinstance(value, Path):
            value = str(value)
        if isinstance(value, str) and "://" not in value:
            return _sqlite_url(value)
        return value
