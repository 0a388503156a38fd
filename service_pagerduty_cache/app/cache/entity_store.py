"""
Per-entity read-through store.

Each collection is a Redis hash keyed by entity ID whose values are the
JSON documents returned by the upstream API.
"""

import json
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from shared.errors import CacheBackendError, CacheMissError, RecordValidationError
from shared.logging import get_logger

from .collections import (
    ABILITIES_KEY,
    CACHE_SCHEMA_VERSION,
    CONTACT_METHODS,
    LAST_REFRESH_KEY,
    MISC_COLLECTION,
    NOTIFICATION_RULES,
    REFRESH_STATUS_KEY,
    USERS,
    CollectionSpec,
)
from .lifecycle import CacheService


class UpsertResult(str, Enum):
    """Outcome of ``EntityStore.update``; informational only."""

    REPLACED = "replaced"
    INSERTED = "inserted"


def encode_record(record: Any) -> str:
    return json.dumps(record, sort_keys=True, separators=(",", ":"))


def decode_record(raw: str, expect: Optional[type] = None) -> Any:
    """Parse a stored document; raises ``ValueError`` if it is unreadable."""
    value = json.loads(raw)
    if expect is not None and not isinstance(value, expect):
        raise ValueError(f"expected {expect.__name__}, got {type(value).__name__}")
    return value


def record_id(spec: CollectionSpec, record: Dict[str, Any]) -> str:
    """The record's identity; records without one cannot be cached."""
    value = record.get(spec.id_field) if isinstance(record, dict) else None
    if not isinstance(value, str) or not value:
        raise RecordValidationError(
            f"{spec.name} record has no {spec.id_field!r}",
            details={"collection": spec.name},
        )
    return value


class EntityStore:
    """get/insert/update/delete over one entity collection."""

    def __init__(self, cache: CacheService, spec: CollectionSpec):
        self.cache = cache
        self.spec = spec
        self.logger = get_logger(f"pagerduty_cache.store.{spec.name}")

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def key(self) -> str:
        return self.cache.key(self.spec.name)

    def _backend_error(self, operation: str, entity_id: Optional[str], exc: Exception) -> CacheBackendError:
        self.cache.record(self.name, operation, "error")
        self.logger.error(
            "Cache operation failed",
            operation=operation,
            entity_id=entity_id,
            error=str(exc),
        )
        return CacheBackendError(
            f"{operation} on {self.name} failed: {exc}",
            details={"collection": self.name, "id": entity_id},
        )

    async def get(self, entity_id: str) -> Dict[str, Any]:
        """Point lookup; raises ``CacheMissError`` when absent."""
        client = self.cache.client()
        try:
            raw = await client.hget(self.key, entity_id)
        except Exception as e:
            raise self._backend_error("get", entity_id, e) from e

        if raw is None:
            self.cache.record(self.name, "get", "miss")
            raise CacheMissError(self.name, entity_id)

        try:
            record = decode_record(raw, expect=dict)
        except (TypeError, ValueError) as e:
            self.cache.record(self.name, "get", "corrupt")
            self.logger.warning("Unreadable cached record", entity_id=entity_id, error=str(e))
            raise CacheBackendError(
                f"{self.name}: {entity_id} is unreadable",
                details={"collection": self.name, "id": entity_id},
            ) from e

        self.cache.record(self.name, "get", "hit")
        self.logger.debug("Got record from cache", entity_id=entity_id)
        return record

    async def insert(self, record: Dict[str, Any]) -> None:
        """Add a record without checking for an existing one."""
        client = self.cache.client()
        entity_id = record_id(self.spec, record)
        try:
            await client.hset(self.key, entity_id, encode_record(record))
        except Exception as e:
            raise self._backend_error("insert", entity_id, e) from e
        self.cache.record(self.name, "insert", "ok")
        self.logger.debug("Inserted record", entity_id=entity_id)

    async def update(self, record: Dict[str, Any]) -> UpsertResult:
        """Replace the whole record with this ID, inserting it if absent."""
        client = self.cache.client()
        entity_id = record_id(self.spec, record)
        try:
            added = await client.hset(self.key, entity_id, encode_record(record))
        except Exception as e:
            raise self._backend_error("update", entity_id, e) from e

        result = UpsertResult.INSERTED if added else UpsertResult.REPLACED
        self.cache.record(self.name, "update", result.value)
        if result is UpsertResult.REPLACED:
            self.logger.debug("Replaced an existing record", entity_id=entity_id)
        else:
            self.logger.debug("Inserted a new record", entity_id=entity_id)
        return result

    async def delete(self, entity_id: str) -> bool:
        """Remove the record; returns whether anything was removed."""
        client = self.cache.client()
        try:
            removed = await client.hdel(self.key, entity_id)
        except Exception as e:
            raise self._backend_error("delete", entity_id, e) from e
        self.cache.record(self.name, "delete", "ok" if removed else "absent")
        self.logger.debug("Deleted record", entity_id=entity_id, removed=bool(removed))
        return bool(removed)


class EntityStores:
    """The three entity stores, built from the collection table."""

    def __init__(self, cache: CacheService):
        self.users = EntityStore(cache, USERS)
        self.contact_methods = EntityStore(cache, CONTACT_METHODS)
        self.notification_rules = EntityStore(cache, NOTIFICATION_RULES)

    def __iter__(self):
        return iter((self.users, self.contact_methods, self.notification_rules))

    def by_name(self, name: str) -> EntityStore:
        for store in self:
            if store.name == name:
                return store
        raise KeyError(name)


@dataclass
class RefreshMarker:
    """When the last successful bulk refresh finished."""

    refreshed_at: datetime
    schema_version: int = CACHE_SCHEMA_VERSION

    def to_json(self) -> str:
        return encode_record({
            "endpoint": LAST_REFRESH_KEY,
            "refreshed_at": self.refreshed_at.isoformat(),
            "schema_version": self.schema_version,
        })

    @classmethod
    def from_json(cls, raw: str) -> "RefreshMarker":
        data = decode_record(raw, expect=dict)
        return cls(
            refreshed_at=datetime.fromisoformat(data["refreshed_at"]),
            schema_version=int(data.get("schema_version", 0)),
        )


class MiscStore:
    """Singleton records: abilities snapshot, refresh marker and status."""

    def __init__(self, cache: CacheService):
        self.cache = cache
        self.logger = get_logger("pagerduty_cache.store.misc")

    @property
    def key(self) -> str:
        return self.cache.key(MISC_COLLECTION)

    async def _get(self, field: str) -> str:
        client = self.cache.client()
        try:
            raw = await client.hget(self.key, field)
        except Exception as e:
            self.cache.record(MISC_COLLECTION, "get", "error")
            self.logger.error("Cache operation failed", field=field, error=str(e))
            raise CacheBackendError(f"get {field} failed: {e}") from e
        if raw is None:
            self.cache.record(MISC_COLLECTION, "get", "miss")
            raise CacheMissError(MISC_COLLECTION, field)
        self.cache.record(MISC_COLLECTION, "get", "hit")
        return raw

    def _decode(self, field: str, raw: str) -> Dict[str, Any]:
        try:
            return decode_record(raw, expect=dict)
        except (TypeError, ValueError) as e:
            self.cache.record(MISC_COLLECTION, "get", "corrupt")
            self.logger.warning("Unreadable cached record", field=field, error=str(e))
            raise CacheBackendError(f"{field} is unreadable", details={"field": field}) from e

    async def get_abilities(self) -> List[str]:
        data = self._decode(ABILITIES_KEY, await self._get(ABILITIES_KEY))
        abilities = data.get("abilities") or []
        if not isinstance(abilities, list):
            raise CacheBackendError(f"{ABILITIES_KEY} is unreadable", details={"field": ABILITIES_KEY})
        return [str(a) for a in abilities]

    async def get_refresh_marker(self) -> RefreshMarker:
        raw = await self._get(LAST_REFRESH_KEY)
        try:
            return RefreshMarker.from_json(raw)
        except (KeyError, TypeError, ValueError) as e:
            self.logger.warning("Unreadable refresh marker", error=str(e))
            raise CacheMissError(MISC_COLLECTION, LAST_REFRESH_KEY) from e

    async def get_refresh_status(self) -> Dict[str, Any]:
        return self._decode(REFRESH_STATUS_KEY, await self._get(REFRESH_STATUS_KEY))

    async def set_refresh_status(self, state: str, **fields: Any) -> None:
        """Best-effort status write; failures are logged only."""
        payload = {"state": state, "updated_at": self.cache.clock().isoformat(), **fields}
        try:
            await self.cache.client().hset(self.key, REFRESH_STATUS_KEY, encode_record(payload))
        except Exception as e:
            self.logger.warning("Couldn't record refresh status", state=state, error=str(e))
