"""
Cache lifecycle: configuration, connectivity and the enabled flag.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

import redis.asyncio as redis

from shared.config import DEFAULT_MAX_AGE, CacheConfig
from shared.errors import CacheDisabledError
from shared.logging import get_logger


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CacheService:
    """Owns the backing-store connection for one process.

    Built once at startup and handed to every cache component. When no
    backing store is configured, or it cannot be reached, the service stays
    disabled and components short-circuit with ``CacheDisabledError``.
    """

    def __init__(
        self,
        config: CacheConfig,
        *,
        metrics=None,
        client_factory: Callable[..., Any] = redis.from_url,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.config = config
        self.metrics = metrics
        self.clock = clock
        self.namespace = config.cache_namespace
        self.logger = get_logger("pagerduty_cache.lifecycle")

        self._client_factory = client_factory
        self._redis: Optional[redis.Redis] = None
        self._enabled = False
        self.max_age = self._resolve_max_age(config)

    def _resolve_max_age(self, config: CacheConfig) -> timedelta:
        max_age = config.max_age()
        if max_age is None:
            self.logger.warning(
                "Couldn't parse cache max age, using the default",
                value=config.cache_max_age,
                default_seconds=DEFAULT_MAX_AGE.total_seconds(),
            )
            return DEFAULT_MAX_AGE
        return max_age

    @property
    def enabled(self) -> bool:
        return self._enabled

    async def initialize(self) -> bool:
        """Connect and verify the backing store. Never raises."""
        url = self.config.cache_url
        if not url:
            self._enabled = False
            self.logger.info("Cache disabled; no backing store configured")
            return False

        try:
            self._redis = self._client_factory(
                url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=self.config.cache_connect_timeout,
                socket_timeout=self.config.cache_operation_timeout,
            )
            await asyncio.wait_for(self._redis.ping(), timeout=self.config.cache_ping_timeout)
        except Exception as e:
            self._enabled = False
            self.logger.error("Couldn't connect to cache backing store; cache disabled", url=url, error=str(e))
            await self._discard_client()
            return False

        self._enabled = True
        self.logger.info(
            "Cache enabled",
            namespace=self.namespace,
            max_age_seconds=self.max_age.total_seconds(),
        )
        return True

    async def _discard_client(self) -> None:
        client, self._redis = self._redis, None
        if client is None:
            return
        try:
            await client.aclose()
        except Exception as e:
            self.logger.debug("Error closing cache client", error=str(e))

    async def close(self) -> None:
        """Release the backing-store connection."""
        was_enabled = self._enabled
        self._enabled = False
        await self._discard_client()
        if was_enabled:
            self.logger.info("Cache closed")

    def ensure_enabled(self) -> None:
        if not self._enabled:
            raise CacheDisabledError()

    def client(self) -> redis.Redis:
        """The live client; raises ``CacheDisabledError`` when disabled."""
        self.ensure_enabled()
        return self._redis

    def key(self, *parts: str) -> str:
        return ":".join((self.namespace,) + parts)

    def record(self, collection: str, operation: str, result: str) -> None:
        if self.metrics:
            self.metrics.increment_counter(
                "cache_operations_total",
                collection=collection,
                operation=operation,
                result=result,
            )

    def health(self) -> Dict[str, Any]:
        return {
            "enabled": self._enabled,
            "namespace": self.namespace,
            "max_age_seconds": self.max_age.total_seconds(),
        }
