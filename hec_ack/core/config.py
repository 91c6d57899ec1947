"""
Environment configuration — single source of truth for all settings.

Uses pydantic-settings for type-safe config with .env file support.
All values have sensible defaults for a local Splunk HEC on port 8088.

Usage:
    from hec_ack.core.config import settings
    print(settings.HEC_URL)

    # Explicit configuration (tests, embedding applications)
    custom = Settings(HEC_URL="https://hec.example.com", HEC_TOKEN="...")
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from hec_ack.core.errors import ConfigurationError


class Settings(BaseSettings):
    """
    Client-wide settings loaded from environment variables or .env file.

    Precedence: constructor kwargs > env var > .env file > default value
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # ── Application ──
    APP_NAME: str = "HEC Ack Relay"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"  # development | staging | production
    LOG_LEVEL: str = "INFO"  # DEBUG | INFO | WARNING | ERROR | CRITICAL
    LOG_FORMAT: str = "auto"  # auto (json in production) | json | pretty

    # ── HEC endpoint ──
    HEC_URL: str = "https://localhost:8088"
    HEC_TOKEN: Optional[str] = None
    AUTH_SCHEME: str = "Splunk"  # "Splunk" for HEC, "Bearer" for proxies
    EVENT_PATH: str = "/services/collector/event"
    ACK_PATH: str = "/services/collector/ack"
    CHANNEL_HEADER: str = "X-Splunk-Request-Channel"
    CHANNEL_TRANSPORT: str = "header"  # header | query
    HTTP_TIMEOUT_SECONDS: float = 30.0
    VERIFY_TLS: bool = True

    # ── Event defaults ──
    DEFAULT_INDEX: Optional[str] = "main"
    DEFAULT_SOURCETYPE: Optional[str] = "manual"
    DEFAULT_SOURCE: Optional[str] = None

    # ── Acknowledgment ──
    POLL_INTERVAL_SECONDS: float = 5.0
    ACK_TIMEOUT_SECONDS: float = 120.0  # per handle, before resend
    SWEEP_INTERVAL_SECONDS: float = 1.0
    CHANNEL_IDLE_SECONDS: float = 300.0

    # ── Capacity ──
    MAX_PENDING_PER_CHANNEL: int = 1000  # mirror of server maxUnackedRequestsPerChannel
    MAX_PENDING_TOTAL: int = 10000
    BACKPRESSURE_MODE: str = "wait"  # wait | reject
    BACKPRESSURE_TIMEOUT_SECONDS: float = 30.0

    # ── Retry / resend ──
    MAX_ATTEMPTS: int = 3
    SEND_MAX_RETRIES: int = 3
    SEND_BACKOFF_BASE_SECONDS: float = 0.5

    # ── Shutdown ──
    SHUTDOWN_FLUSH: bool = True

    @field_validator(
        "POLL_INTERVAL_SECONDS",
        "ACK_TIMEOUT_SECONDS",
        "SWEEP_INTERVAL_SECONDS",
        "CHANNEL_IDLE_SECONDS",
        "HTTP_TIMEOUT_SECONDS",
    )
    @classmethod
    def _positive_interval(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("interval must be positive")
        return value

    @field_validator("MAX_PENDING_PER_CHANNEL", "MAX_PENDING_TOTAL", "MAX_ATTEMPTS")
    @classmethod
    def _positive_limit(cls, value: int) -> int:
        if value < 1:
            raise ValueError("limit must be at least 1")
        return value

    @field_validator("SEND_MAX_RETRIES")
    @classmethod
    def _non_negative_retries(cls, value: int) -> int:
        if value < 0:
            raise ValueError("retries cannot be negative")
        return value

    @field_validator("CHANNEL_TRANSPORT")
    @classmethod
    def _known_transport(cls, value: str) -> str:
        value = value.lower()
        if value not in ("header", "query"):
            raise ValueError("CHANNEL_TRANSPORT must be 'header' or 'query'")
        return value

    @field_validator("LOG_FORMAT")
    @classmethod
    def _known_log_format(cls, value: str) -> str:
        value = value.lower()
        if value not in ("auto", "json", "pretty"):
            raise ValueError("LOG_FORMAT must be 'auto', 'json' or 'pretty'")
        return value

    @field_validator("BACKPRESSURE_MODE")
    @classmethod
    def _known_backpressure(cls, value: str) -> str:
        value = value.lower()
        if value not in ("wait", "reject"):
            raise ValueError("BACKPRESSURE_MODE must be 'wait' or 'reject'")
        return value

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "development"

    @property
    def base_url(self) -> str:
        return self.HEC_URL.rstrip("/")

    def validate_for_sending(self) -> None:
        """Raise ConfigurationError unless the endpoint and token are usable."""
        if not self.HEC_TOKEN:
            raise ConfigurationError("HEC_TOKEN is not configured", setting="HEC_TOKEN")
        if not self.HEC_URL.startswith(("http://", "https://")):
            raise ConfigurationError(
                f"HEC_URL must be an http(s) URL, got {self.HEC_URL!r}",
                setting="HEC_URL",
            )


@lru_cache()
def get_settings() -> Settings:
    """Cached settings singleton."""
    return Settings()


settings = get_settings()
