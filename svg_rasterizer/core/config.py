from __future__ import annotations

from typing import Literal, Optional

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

APP_VERSION = "1.0.0"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Server
    port: int = 3000

    # Redis: blob store for rendered images, counter store for rate limiting
    redis_url: str = "redis://localhost:6379"
    rate_limit_redis_url: Optional[str] = None  # defaults to redis_url
    redis_max_connections: int = 20
    redis_socket_timeout: float = 2.0
    redis_connect_retries: int = 3

    # Output dimensions
    max_dimension: Optional[int] = None  # shorthand for max_width and max_height
    max_width: int = 4096
    max_height: int = 4096
    default_width: int = 1024
    default_height: int = 1024
    min_dimension: int = 32

    # Admission control
    rate_limit_max_requests: int = 60
    rate_limit_window_seconds: int = 60
    rate_limit_scope: Literal["global", "client"] = "global"
    rate_limit_fail_open: bool = True
    rate_limit_sliding_ttl: bool = False
    rate_limit_key_prefix: str = "rate_limit"

    # Cache
    cache_key_prefix: str = "svg"
    cache_ttl_seconds: int = 24 * 60 * 60

    # Source document fetcher
    max_document_bytes: int = 1024 * 1024
    max_stream_bytes: int = 5 * 1024 * 1024  # safety margin above max_document_bytes
    fetch_timeout: float = 10.0
    fetch_preflight: bool = True
    http_verify_ssl: bool = True

    # Sanitizer
    sanitizer: Literal["lxml", "external"] = "lxml"
    sanitizer_command: str = "svg-hush /dev/stdin"
    sanitizer_timeout: float = 5.0

    # Join concurrent identical renders instead of repeating them
    coalesce_requests: bool = True

    # Logging
    log_level: str = "INFO"

    @model_validator(mode="after")
    def _check_limits(self) -> Settings:
        if self.max_dimension is not None:
            self.max_width = self.max_dimension
            self.max_height = self.max_dimension
        if self.min_dimension < 1:
            raise ValueError("min_dimension must be at least 1")
        if self.min_dimension > min(self.max_width, self.max_height):
            raise ValueError("min_dimension must not exceed max_width or max_height")
        if self.max_stream_bytes < self.max_document_bytes:
            raise ValueError("max_stream_bytes must be >= max_document_bytes")
        return self

    @property
    def counter_store_url(self) -> str:
        return self.rate_limit_redis_url or self.redis_url


settings = Settings()
