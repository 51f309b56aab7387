"""Application configuration for the image delivery proxy."""

from __future__ import annotations

from typing import Annotated, Literal, Optional

from pydantic import Field, RedisDsn, SecretStr, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from .. import __version__


ONE_YEAR_SECONDS = 365 * 24 * 60 * 60
THIRTY_DAYS_SECONDS = 30 * 24 * 60 * 60


def env_field(default, env_name: str):
    return Field(default, validation_alias=env_name)


def _split_csv(value):
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return value


class ImageProxySettings(BaseSettings):
    """Runtime settings for the image proxy service.

    Loaded once per process; the proxy components only ever read from it.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        populate_by_name=True,
        frozen=True,
    )

    cloud_name: str = env_field("slovyagin", "EDGEIMG_CLOUD_NAME")
    cdn_host: str = env_field("res.cloudinary.com", "EDGEIMG_CDN_HOST")
    asset_namespace: str = env_field("photos", "EDGEIMG_ASSET_NAMESPACE")
    version_segment: str = env_field("v1", "EDGEIMG_VERSION_SEGMENT")
    output_format: str = env_field("avif", "EDGEIMG_OUTPUT_FORMAT")
    transform_policy: Literal["size", "dimensions"] = env_field("size", "EDGEIMG_TRANSFORM_POLICY")
    allowed_sizes: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["700", "900", "1400"],
        validation_alias="EDGEIMG_ALLOWED_SIZES",
    )
    referer_check_enabled: bool = env_field(False, "EDGEIMG_REFERER_CHECK")
    allowed_referers: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["https://slovyagin.com"],
        validation_alias="EDGEIMG_ALLOWED_REFERERS",
    )
    cache_max_age_seconds: Optional[int] = env_field(None, "EDGEIMG_CACHE_MAX_AGE")
    user_agent: str = env_field(f"edgeimg/{__version__}", "EDGEIMG_USER_AGENT")
    origin_timeout_seconds: float = env_field(30.0, "EDGEIMG_ORIGIN_TIMEOUT")
    redis_url: Optional[RedisDsn] = env_field(None, "EDGEIMG_REDIS_URL")
    redis_key_prefix: str = env_field("edgeimg:response:", "EDGEIMG_REDIS_KEY_PREFIX")
    metrics_token: Optional[SecretStr] = env_field(None, "EDGEIMG_METRICS_TOKEN")
    bind_host: str = env_field("0.0.0.0", "EDGEIMG_BIND_HOST")
    bind_port: int = env_field(8080, "EDGEIMG_BIND_PORT")
    log_level: str = env_field("INFO", "EDGEIMG_LOG_LEVEL")
    otel_exporter_endpoint: Optional[str] = env_field(None, "EDGEIMG_OTEL_EXPORTER_ENDPOINT")
    otel_exporter_headers: Optional[str] = env_field(None, "EDGEIMG_OTEL_EXPORTER_HEADERS")
    otel_sampler_ratio: float = env_field(0.1, "EDGEIMG_OTEL_SAMPLER_RATIO")

    @field_validator("allowed_sizes", mode="before")
    @classmethod
    def _split_allowed_sizes(cls, value):
        return _split_csv(value)

    @field_validator("allowed_referers", mode="before")
    @classmethod
    def _split_allowed_referers(cls, value):
        return _split_csv(value)

    @field_validator("cache_max_age_seconds", mode="before")
    @classmethod
    def _parse_max_age(cls, value):
        if value in (None, ""):
            return None
        if isinstance(value, str):
            return int(value.strip())
        return value

    @property
    def origin_base_url(self) -> str:
        return f"https://{self.cdn_host}/{self.cloud_name}/image"

    @property
    def cache_ttl_seconds(self) -> int:
        if self.cache_max_age_seconds is not None:
            return max(0, self.cache_max_age_seconds)
        if self.transform_policy == "size":
            return ONE_YEAR_SECONDS
        return THIRTY_DAYS_SECONDS

    @property
    def vary_headers(self) -> list[str]:
        headers = ["Accept"]
        if self.referer_check_enabled:
            headers.append("Referer")
        return headers
