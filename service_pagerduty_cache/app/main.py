"""
Wiring for the PagerDuty directory cache.
"""

from typing import Optional

import httpx

from shared.config import CacheConfig, get_config
from shared.metrics import MetricsCollector, get_metrics_collector

from .adapters.pagerduty_client import PagerDutyClient
from .cache.entity_store import EntityStores
from .cache.lifecycle import CacheService
from .cache.refresh import BulkRefresher
from .cache.team_members import TeamMembersCache
from .domain.directory import DirectoryService


SERVICE_NAME = "pagerduty_cache"


async def create_directory_service(
    config: Optional[CacheConfig] = None,
    *,
    metrics: Optional[MetricsCollector] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    cache: Optional[CacheService] = None,
) -> DirectoryService:
    """Build and initialize the cache stack once for this process."""
    config = config or get_config()
    metrics = metrics or get_metrics_collector(SERVICE_NAME)

    if cache is None:
        cache = CacheService(config, metrics=metrics)
    await cache.initialize()

    client = PagerDutyClient(
        config.api_url,
        config.api_token,
        timeout=config.api_timeout,
        page_limit=config.page_limit,
        metrics=metrics,
        transport=transport,
    )

    return DirectoryService(
        cache,
        client,
        stores=EntityStores(cache),
        team_members=TeamMembersCache(cache, client, metrics=metrics),
        refresher=BulkRefresher(cache, client, metrics=metrics),
    )
