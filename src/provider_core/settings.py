from __future__ import annotations

import structlog
from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from provider_core.circuit_breaker import CircuitRegistryConfig
from provider_core.logging import configure_structlog, get_log_level_value
from provider_core.resilient import ResilienceConfig

DEFAULT_ENV_PREFIX = "PROVIDER_HTTP_"


def prefixed_settings_config(prefix: str) -> SettingsConfigDict:
    """Build standard Pydantic settings config for prefixed environments."""
    return SettingsConfigDict(env_prefix=prefix, case_sensitive=False)


class ResilienceSettings(BaseSettings):
    """Timeout, retry, backoff and circuit settings for provider calls."""

    model_config = prefixed_settings_config(DEFAULT_ENV_PREFIX)

    timeout_ms: int = 15_000
    max_retries: int = 3
    backoff_base_ms: int = 1_000
    backoff_max_ms: int = 30_000
    circuit_open_threshold: int = 5
    circuit_reset_window_ms: int = 60_000
    log_level: str = "INFO"

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalize_log_level(cls, value: object) -> object:
        if not isinstance(value, str):
            return value
        get_log_level_value(value)
        return value.strip().upper()

    @model_validator(mode="after")
    def _validate_resilience_settings(self) -> ResilienceSettings:
        if self.timeout_ms <= 0:
            raise ValueError("timeout_ms must be > 0")
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.backoff_base_ms < 0:
            raise ValueError("backoff_base_ms must be >= 0")
        if self.backoff_max_ms < self.backoff_base_ms:
            raise ValueError("backoff_max_ms must be >= backoff_base_ms")
        if self.circuit_open_threshold < 1:
            raise ValueError("circuit_open_threshold must be >= 1")
        if self.circuit_reset_window_ms < 0:
            raise ValueError("circuit_reset_window_ms must be >= 0")
        return self

    def configure_logging(self) -> structlog.stdlib.BoundLogger:
        """Install structlog output at ``log_level`` and return a root logger."""
        return configure_structlog(log_level=self.log_level)

    def resilience_config(self) -> ResilienceConfig:
        """Build per-call fetch defaults, converted to seconds."""
        return ResilienceConfig(
            timeout=self.timeout_ms / 1000,
            max_retries=self.max_retries,
            backoff_base=self.backoff_base_ms / 1000,
            backoff_max=self.backoff_max_ms / 1000,
        )

    def circuit_config(self) -> CircuitRegistryConfig:
        """Build circuit registry configuration, converted to seconds."""
        return CircuitRegistryConfig(
            open_threshold=self.circuit_open_threshold,
            reset_window=self.circuit_reset_window_ms / 1000,
        )
