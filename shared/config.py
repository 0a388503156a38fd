"""
Shared configuration management for the PagerDuty directory cache.
"""

import re
from datetime import timedelta
from typing import Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_MAX_AGE = timedelta(seconds=10)

_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")


def parse_duration(value: str) -> timedelta:
    """Parse a duration string such as ``10s``, ``1m30s`` or ``250ms``.

    Raises ``ValueError`` for anything that is not a sequence of
    number+unit pairs. A bare ``0`` is accepted.
    """
    if value is None:
        raise ValueError("duration is empty")
    text = value.strip()
    if not text:
        raise ValueError("duration is empty")

    sign = 1.0
    if text[0] in "+-":
        sign = -1.0 if text[0] == "-" else 1.0
        text = text[1:]
    if text == "0":
        return timedelta(0)

    seconds = 0.0
    position = 0
    for match in _DURATION_PART.finditer(text):
        if match.start() != position:
            raise ValueError(f"invalid duration {value!r}")
        number, unit = match.groups()
        seconds += float(number) * _DURATION_UNITS[unit]
        position = match.end()

    if position == 0 or position != len(text):
        raise ValueError(f"invalid duration {value!r}")

    return timedelta(seconds=sign * seconds)


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # Environment
    env: str = Field(default="local", validation_alias=AliasChoices("PAGERDUTY_ENV", "env"))
    log_level: str = Field(default="info", validation_alias=AliasChoices("PAGERDUTY_LOG_LEVEL", "log_level"))


class CacheConfig(BaseConfig):
    """Cache and upstream API configuration."""

    # Backing store; absence disables the cache
    cache_url: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("PAGERDUTY_CACHE_URL", "TF_PAGERDUTY_CACHE", "cache_url"),
    )
    cache_max_age: str = Field(
        default="10s",
        validation_alias=AliasChoices("PAGERDUTY_CACHE_MAX_AGE", "TF_PAGERDUTY_CACHE_MAX_AGE", "cache_max_age"),
    )
    cache_namespace: str = Field(
        default="pagerduty",
        validation_alias=AliasChoices("PAGERDUTY_CACHE_NAMESPACE", "cache_namespace"),
    )
    cache_connect_timeout: float = Field(
        default=10.0,
        validation_alias=AliasChoices("PAGERDUTY_CACHE_CONNECT_TIMEOUT", "cache_connect_timeout"),
    )
    cache_ping_timeout: float = Field(
        default=2.0,
        validation_alias=AliasChoices("PAGERDUTY_CACHE_PING_TIMEOUT", "cache_ping_timeout"),
    )
    cache_operation_timeout: float = Field(
        default=5.0,
        validation_alias=AliasChoices("PAGERDUTY_CACHE_OPERATION_TIMEOUT", "cache_operation_timeout"),
    )
    refresh_lock_ttl: int = Field(
        default=300,
        validation_alias=AliasChoices("PAGERDUTY_REFRESH_LOCK_TTL", "refresh_lock_ttl"),
    )

    # Upstream API
    api_url: str = Field(
        default="https://api.pagerduty.com",
        validation_alias=AliasChoices("PAGERDUTY_API_URL", "api_url"),
    )
    api_token: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("PAGERDUTY_API_TOKEN", "PAGERDUTY_TOKEN", "api_token"),
    )
    api_timeout: float = Field(
        default=30.0,
        validation_alias=AliasChoices("PAGERDUTY_API_TIMEOUT", "api_timeout"),
    )
    page_limit: int = Field(
        default=100,
        validation_alias=AliasChoices("PAGERDUTY_PAGE_LIMIT", "page_limit"),
    )

    def max_age(self) -> Optional[timedelta]:
        """Parsed ``cache_max_age``; ``None`` when the value is unusable."""
        try:
            parsed = parse_duration(self.cache_max_age)
        except ValueError:
            return None
        if parsed.total_seconds() < 0:
            return None
        return parsed


def get_config(**overrides) -> CacheConfig:
    """Load configuration from the environment, applying explicit overrides."""
    return CacheConfig(**overrides)
