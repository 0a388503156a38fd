"""
TTL-gated bulk refresh of the entity collections.

A refresh fetches every user (with contact methods and notification rules
inline) plus the abilities list, flattens the nested relations into their
own collections, writes everything into staging hashes and finally swaps
the staging hashes over the live ones. Nothing live is touched until every
upstream fetch has succeeded and every staging write has landed.

The swap runs as two MULTI/EXEC transactions. Redis does not roll back a
transaction when one of its commands fails, so the first one drops the
refresh marker before renaming and the second one writes a new marker only
once every rename has gone through. A half-applied swap therefore always
leaves the cache looking stale.
"""

import asyncio
import copy
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from redis.exceptions import LockError

from shared.errors import (
    CacheLayerException,
    CacheMissError,
    RecordValidationError,
    RefreshError,
)
from shared.logging import get_logger, refresh_context

from .collections import (
    ABILITIES_KEY,
    ENTITY_COLLECTIONS,
    LAST_REFRESH_KEY,
    REFRESH_LOCK_SUFFIX,
    REFRESH_STATUS_KEY,
    STAGING_SEGMENT,
    TEAM_MEMBERS,
    USER_RELATIONS,
    USERS,
    MISC_COLLECTION,
    CACHE_SCHEMA_VERSION,
    user_includes,
)
from .entity_store import MiscStore, RefreshMarker, encode_record, record_id
from .lifecycle import CacheService


STAGING_CHUNK_SIZE = 500

# Copied from an extracted record into the reference left behind
REFERENCE_EXTRAS = ("summary", "self", "html_url")

SPECS_BY_NAME = {spec.name: spec for spec in ENTITY_COLLECTIONS}


class RefreshStatus(str, Enum):
    DISABLED = "disabled"
    SKIPPED = "skipped"
    IN_PROGRESS = "in_progress"
    REFRESHED = "refreshed"
    FAILED = "failed"


@dataclass
class RefreshResult:
    """What a ``populate`` call did."""

    status: RefreshStatus
    refreshed_at: Optional[datetime] = None
    counts: Dict[str, int] = field(default_factory=dict)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "refreshed_at": self.refreshed_at.isoformat() if self.refreshed_at else None,
            "counts": dict(self.counts),
            "error": self.error,
        }


def _is_reference(item: Dict[str, Any]) -> bool:
    return str(item.get("type", "")).endswith("_reference")


def decompose_users(users: List[Dict[str, Any]]) -> Dict[str, List[Dict[str, Any]]]:
    """Split users with inline relations into flat per-collection lists.

    Every nested contact method and notification rule is copied into its own
    collection and replaced in the user document by a reference carrying its
    ID. A nested record without an ID raises ``RecordValidationError``; plain
    references (upstream did not expand the relation) are left in place and
    not extracted.
    """
    flat: Dict[str, List[Dict[str, Any]]] = {spec.name: [] for spec in ENTITY_COLLECTIONS}

    for source in users:
        user = copy.deepcopy(source)
        user_id = record_id(USERS, user)

        for spec in USER_RELATIONS:
            nested = user.get(spec.relation)
            if not nested:
                continue

            references = []
            for item in nested:
                if not isinstance(item, dict):
                    raise RecordValidationError(
                        f"user {user_id} has a malformed {spec.relation} entry",
                        details={"user_id": user_id, "relation": spec.relation},
                    )
                if _is_reference(item):
                    references.append(item)
                    continue
                try:
                    item_id = record_id(spec, item)
                except RecordValidationError as e:
                    e.details.update({"user_id": user_id, "relation": spec.relation})
                    raise
                flat[spec.name].append(item)
                reference = {"id": item_id, "type": spec.reference_type}
                reference.update({k: item[k] for k in REFERENCE_EXTRAS if k in item})
                references.append(reference)

            user[spec.relation] = references

        flat[USERS.name].append(user)

    return flat


class BulkRefresher:
    """Repopulates the entity collections from the upstream API."""

    def __init__(self, cache: CacheService, client, *, metrics=None, lock_ttl: Optional[int] = None):
        self.cache = cache
        self.client = client
        self.metrics = metrics if metrics is not None else cache.metrics
        self.misc = MiscStore(cache)
        self.lock_ttl = lock_ttl if lock_ttl is not None else cache.config.refresh_lock_ttl
        self.logger = get_logger("pagerduty_cache.refresh")
        self._lock = asyncio.Lock()

    @property
    def lock_key(self) -> str:
        return self.cache.key(REFRESH_LOCK_SUFFIX)

    async def populate(self, force: bool = False) -> RefreshResult:
        """Refresh the cache if the last refresh is older than the max age.

        Never raises; failures are logged and reported in the result.
        """
        if not self.cache.enabled:
            return RefreshResult(RefreshStatus.DISABLED)

        async with self._lock:
            if not force:
                fresh = await self._fresh_marker()
                if fresh is not None:
                    return self._finish(RefreshResult(RefreshStatus.SKIPPED, refreshed_at=fresh.refreshed_at))

            try:
                lock = self.cache.client().lock(self.lock_key, timeout=self.lock_ttl)
                acquired = await lock.acquire(blocking=False)
            except Exception as e:
                self.logger.error("Couldn't take refresh lock", error=str(e))
                return self._finish(RefreshResult(RefreshStatus.FAILED, error=str(e)))
            if not acquired:
                self.logger.info("Another refresh holds the lock, not refreshing")
                return self._finish(RefreshResult(RefreshStatus.IN_PROGRESS))

            try:
                if not force:
                    fresh = await self._fresh_marker()
                    if fresh is not None:
                        return self._finish(RefreshResult(RefreshStatus.SKIPPED, refreshed_at=fresh.refreshed_at))
                return self._finish(await self._refresh(uuid.uuid4().hex))
            finally:
                await self._release_lock(lock)

    async def _fresh_marker(self) -> Optional[RefreshMarker]:
        """The current marker if it is still within the max age."""
        try:
            marker = await self.misc.get_refresh_marker()
        except CacheMissError:
            self.logger.info("No refresh marker, refreshing")
            return None
        except CacheLayerException as e:
            self.logger.warning("Couldn't read refresh marker, refreshing", error=str(e))
            return None

        if marker.schema_version != CACHE_SCHEMA_VERSION:
            self.logger.info(
                "Refresh marker written by another cache version, refreshing",
                marker_version=marker.schema_version,
                version=CACHE_SCHEMA_VERSION,
            )
            return None

        refreshed_at = marker.refreshed_at
        if refreshed_at.tzinfo is None:
            refreshed_at = refreshed_at.replace(tzinfo=timezone.utc)
        age = self.cache.clock() - refreshed_at
        if age < self.cache.max_age:
            self.logger.info("Cache is fresh, not refreshing", refreshed_at=refreshed_at.isoformat())
            return marker

        self.logger.info("Cache is stale, refreshing", refreshed_at=refreshed_at.isoformat())
        return None

    async def _release_lock(self, lock) -> None:
        try:
            await lock.release()
        except LockError as e:
            # Expired during the refresh; whoever holds it now keeps it
            self.logger.warning("Refresh lock expired before release", error=str(e), lock_ttl=self.lock_ttl)
        except Exception as e:
            # The lock expires on its own after lock_ttl
            self.logger.warning("Couldn't release refresh lock", error=str(e))

    async def _refresh(self, token: str) -> RefreshResult:
        start = time.perf_counter()
        with refresh_context(token) as refresh_id:
            try:
                return await self._load_and_swap(token, refresh_id)
            finally:
                if self.metrics:
                    self.metrics.observe_histogram("cache_refresh_duration_seconds", time.perf_counter() - start)

    async def _load_and_swap(self, token: str, refresh_id: str) -> RefreshResult:
        self.logger.info("Refreshing cache")
        try:
            users = await self.client.list_users(include=user_includes())
            abilities = await self.client.list_abilities()
            flat = decompose_users(users)
        except Exception as e:
            self.logger.error("Couldn't load data from PagerDuty; keeping existing cache", error=str(e))
            return RefreshResult(RefreshStatus.FAILED, error=str(e))

        await self.misc.set_refresh_status("in_progress", refresh_id=refresh_id)
        refreshed_at = self.cache.clock()
        staging = {name: self._staging_key(token, name) for name in flat}
        try:
            await self._stage(flat, staging)
            await self._swap(flat, staging)
            await self._write_misc(abilities, refreshed_at, refresh_id)
        except RefreshError as e:
            await self._discard_staging(staging)
            await self.misc.set_refresh_status("failed", refresh_id=refresh_id, error=e.message)
            return RefreshResult(RefreshStatus.FAILED, error=e.message)

        counts = {name: len(records) for name, records in flat.items()}
        counts[ABILITIES_KEY] = len(abilities)
        self.logger.info("Cache refreshed", counts=counts)
        self._record_counts(counts)
        return RefreshResult(RefreshStatus.REFRESHED, refreshed_at=refreshed_at, counts=counts)

    def _staging_key(self, token: str, collection: str) -> str:
        return self.cache.key(STAGING_SEGMENT, token, collection)

    async def _stage(self, flat: Dict[str, List[Dict[str, Any]]], staging: Dict[str, str]) -> None:
        """Write every collection into its staging hash."""
        client = self.cache.client()
        try:
            async with client.pipeline(transaction=False) as pipe:
                for name, records in flat.items():
                    spec = SPECS_BY_NAME[name]
                    for chunk_start in range(0, len(records), STAGING_CHUNK_SIZE):
                        chunk = records[chunk_start:chunk_start + STAGING_CHUNK_SIZE]
                        mapping = {record_id(spec, r): encode_record(r) for r in chunk}
                        pipe.hset(staging[name], mapping=mapping)
                await pipe.execute()
        except Exception as e:
            self.logger.error("Couldn't stage refreshed records", error=str(e))
            raise RefreshError(f"staging failed: {e}") from e

    async def _swap(self, flat: Dict[str, List[Dict[str, Any]]], staging: Dict[str, str]) -> None:
        """Rename staged collections over the live ones, dropping the marker first."""
        client = self.cache.client()
        try:
            async with client.pipeline(transaction=True) as pipe:
                pipe.hdel(self.cache.key(MISC_COLLECTION), LAST_REFRESH_KEY)
                for name, records in flat.items():
                    live = self.cache.key(name)
                    if records:
                        pipe.rename(staging[name], live)
                    else:
                        pipe.delete(live)
                pipe.delete(self.cache.key(TEAM_MEMBERS.name))
                results = await pipe.execute(raise_on_error=False)
        except Exception as e:
            self.logger.error("Couldn't swap refreshed collections into place", error=str(e))
            raise RefreshError(f"swap failed: {e}") from e

        errors = [r for r in results if isinstance(r, Exception)]
        if errors:
            self.logger.error(
                "Swap partly applied; cache left without a refresh marker",
                errors=[str(e) for e in errors],
            )
            raise RefreshError(f"swap failed: {errors[0]}")

    async def _write_misc(self, abilities: List[str], refreshed_at: datetime, refresh_id: str) -> None:
        """Replace the misc hash, publishing the new refresh marker."""
        marker = RefreshMarker(refreshed_at=refreshed_at)
        misc = {
            ABILITIES_KEY: encode_record({"endpoint": ABILITIES_KEY, "abilities": abilities}),
            LAST_REFRESH_KEY: marker.to_json(),
            REFRESH_STATUS_KEY: encode_record({
                "state": "complete",
                "refresh_id": refresh_id,
                "updated_at": refreshed_at.isoformat(),
            }),
        }
        misc_key = self.cache.key(MISC_COLLECTION)
        try:
            async with self.cache.client().pipeline(transaction=True) as pipe:
                pipe.delete(misc_key)
                pipe.hset(misc_key, mapping=misc)
                await pipe.execute()
        except Exception as e:
            self.logger.error("Couldn't write refresh marker", error=str(e))
            raise RefreshError(f"marker write failed: {e}") from e

    async def _discard_staging(self, staging: Dict[str, str]) -> None:
        try:
            await self.cache.client().delete(*staging.values())
        except Exception as e:
            self.logger.warning("Couldn't remove staging collections", error=str(e))

    def _record_counts(self, counts: Dict[str, int]) -> None:
        if not self.metrics:
            return
        for name, count in counts.items():
            self.metrics.set_gauge("cache_refresh_records", count, collection=name)

    def _finish(self, result: RefreshResult) -> RefreshResult:
        if self.metrics:
            self.metrics.increment_counter("cache_refresh_total", result=result.status.value)
        return result
