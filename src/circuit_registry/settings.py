from __future__ import annotations

from typing import Any

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from circuit_registry.logging import get_log_level_value
from circuit_registry.registry import DefaultConfiguration, DefaultSetup


def prefixed_settings_config(prefix: str) -> SettingsConfigDict:
    """Build standard Pydantic settings config for prefixed environments."""
    return SettingsConfigDict(env_prefix=prefix, case_sensitive=False)


class BreakerSettings(BaseSettings):
    """Process-wide breaker defaults read from ``CIRCUIT_BREAKER_*`` variables.

    Unset fields are left out of the default options so the engine's own
    defaults apply.
    """

    model_config = prefixed_settings_config("CIRCUIT_BREAKER_")

    timeout: float | None = None
    reset_timeout: float | None = None
    failure_threshold: int | None = None
    cache: bool | None = None
    cache_ttl: float | None = None
    return_fallback_when_error_is_filtered: bool = False
    log_level: str = "INFO"

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalize_log_level(cls, value: object) -> object:
        if isinstance(value, str):
            normalized = value.strip().upper()
            get_log_level_value(normalized)
            return normalized
        return value

    @model_validator(mode="after")
    def _validate_breaker_settings(self) -> BreakerSettings:
        if self.timeout is not None and self.timeout <= 0:
            raise ValueError("timeout must be > 0")
        if self.reset_timeout is not None and self.reset_timeout < 0:
            raise ValueError("reset_timeout must be >= 0")
        if self.failure_threshold is not None and self.failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if self.cache_ttl is not None and self.cache_ttl < 0:
            raise ValueError("cache_ttl must be >= 0")
        return self

    def breaker_options(self) -> dict[str, Any]:
        """Build the default breaker options mapping from set fields."""
        values = {
            "timeout": self.timeout,
            "reset_timeout": self.reset_timeout,
            "failure_threshold": self.failure_threshold,
            "cache": self.cache,
            "cache_ttl": self.cache_ttl,
        }
        return {key: value for key, value in values.items() if value is not None}

    def default_configuration(
        self, *, setup: DefaultSetup | None = None
    ) -> DefaultConfiguration:
        """Build a ``DefaultConfiguration`` for a registry."""
        return DefaultConfiguration(
            options=self.breaker_options(),
            setup=setup,
            return_fallback_when_error_is_filtered=(
                self.return_fallback_when_error_is_filtered
            ),
        )
