"""
Shared fixtures for the PagerDuty directory cache tests.
"""

import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Set

import pytest
import pytest_asyncio
import redis.exceptions
from prometheus_client import CollectorRegistry

from shared.config import CacheConfig
from shared.metrics import MetricsCollector
from service_pagerduty_cache.app.cache.lifecycle import CacheService


class FakePipeline:
    """Queues commands and applies them on ``execute``."""

    def __init__(self, store: "FakeRedis", transaction: bool):
        self.store = store
        self.transaction = transaction
        self.commands: List[tuple] = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        self.commands = []

    def _queue(self, name: str, *args, **kwargs):
        self.commands.append((name, args, kwargs))
        return self

    def hset(self, *args, **kwargs):
        return self._queue("hset", *args, **kwargs)

    def delete(self, *args, **kwargs):
        return self._queue("delete", *args, **kwargs)

    def rename(self, *args, **kwargs):
        return self._queue("rename", *args, **kwargs)

    def hdel(self, *args, **kwargs):
        return self._queue("hdel", *args, **kwargs)

    async def execute(self, raise_on_error: bool = True):
        """Connection failures abort the whole batch; command errors only their own slot."""
        self.store._check("execute")
        for name, _args, _kwargs in self.commands:
            self.store._check(name)
        results = []
        for name, args, kwargs in self.commands:
            if name in self.store.error_commands:
                results.append(redis.exceptions.ResponseError(f"{name} failed"))
                continue
            try:
                results.append(self.store._apply(name, *args, **kwargs))
            except redis.exceptions.ResponseError as e:
                results.append(e)
        self.commands = []
        if raise_on_error:
            for result in results:
                if isinstance(result, Exception):
                    raise result
        return results


class FakeLock:
    """Token-owned lock over ``FakeRedis.strings`` with the ``redis.asyncio.lock.Lock`` contract."""

    def __init__(self, store: "FakeRedis", name: str, timeout: Optional[float] = None):
        self.store = store
        self.name = name
        self.timeout = timeout
        self.token: Optional[str] = None

    async def acquire(self, blocking: Optional[bool] = None, blocking_timeout=None, token=None) -> bool:
        self.store._check("set")
        if self.name in self.store.strings:
            return False
        self.token = token or uuid.uuid4().hex
        self.store.strings[self.name] = self.token
        return True

    async def release(self) -> None:
        if self.token is None:
            raise redis.exceptions.LockError("Cannot release an unlocked lock")
        token, self.token = self.token, None
        self.store._check("evalsha")
        if self.store.strings.get(self.name) != token:
            raise redis.exceptions.LockNotOwnedError("Cannot release a lock that's no longer owned")
        del self.store.strings[self.name]


class FakeRedis:
    """In-memory stand-in for the subset of ``redis.asyncio.Redis`` the cache uses."""

    def __init__(self):
        self.hashes: Dict[str, Dict[str, str]] = {}
        self.strings: Dict[str, str] = {}
        self.calls: List[str] = []
        self.fail_commands: Set[str] = set()
        self.error_commands: Set[str] = set()
        self.closed = False

    def _check(self, name: str) -> None:
        self.calls.append(name)
        if name in self.fail_commands:
            raise redis.exceptions.ConnectionError(f"{name} failed")

    def _apply(self, name: str, *args, **kwargs):
        return getattr(self, f"_{name}")(*args, **kwargs)

    # Commands

    def _hset(self, key: str, field: Optional[str] = None, value: Optional[str] = None, mapping=None) -> int:
        bucket = self.hashes.setdefault(key, {})
        items = dict(mapping or {})
        if field is not None:
            items[field] = value
        added = sum(1 for f in items if f not in bucket)
        bucket.update(items)
        return added

    def _delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self.hashes.pop(key, None) is not None:
                removed += 1
            if self.strings.pop(key, None) is not None:
                removed += 1
        return removed

    def _rename(self, src: str, dst: str) -> bool:
        if src in self.hashes:
            self._delete(dst)
            self.hashes[dst] = self.hashes.pop(src)
            return True
        if src in self.strings:
            self._delete(dst)
            self.strings[dst] = self.strings.pop(src)
            return True
        raise redis.exceptions.ResponseError("no such key")

    async def ping(self) -> bool:
        self._check("ping")
        return True

    async def hget(self, key: str, field: str) -> Optional[str]:
        self._check("hget")
        return self.hashes.get(key, {}).get(field)

    async def hset(self, key: str, field: Optional[str] = None, value: Optional[str] = None, mapping=None) -> int:
        self._check("hset")
        return self._hset(key, field, value, mapping)

    def _hdel(self, key: str, *fields: str) -> int:
        bucket = self.hashes.get(key, {})
        removed = sum(1 for f in fields if bucket.pop(f, None) is not None)
        if key in self.hashes and not bucket:
            del self.hashes[key]
        return removed

    async def hdel(self, key: str, *fields: str) -> int:
        self._check("hdel")
        return self._hdel(key, *fields)

    async def delete(self, *keys: str) -> int:
        self._check("delete")
        return self._delete(*keys)

    async def rename(self, src: str, dst: str) -> bool:
        self._check("rename")
        return self._rename(src, dst)

    def pipeline(self, transaction: bool = True) -> FakePipeline:
        return FakePipeline(self, transaction)

    def lock(self, name: str, timeout: Optional[float] = None, **kwargs) -> FakeLock:
        return FakeLock(self, name, timeout)

    async def aclose(self) -> None:
        self.closed = True


class GuardedRedis(FakeRedis):
    """A backing store that fails the test when any command reaches it."""

    def _check(self, name: str) -> None:
        pytest.fail(f"backing store touched while cache disabled: {name}")


class FrozenClock:
    """Controllable UTC clock."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


def make_config(**overrides: Any) -> CacheConfig:
    values = {
        "cache_url": "redis://localhost:6379/0",
        "cache_max_age": "10s",
        "cache_namespace": "pagerduty",
        "api_url": "https://api.pagerduty.test",
        "api_token": "test-token",
    }
    values.update(overrides)
    return CacheConfig(**values)


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def metrics():
    return MetricsCollector("pagerduty_cache_test", registry=CollectorRegistry())


@pytest_asyncio.fixture
async def cache(fake_redis, clock, metrics):
    """An enabled cache backed by the in-memory double."""
    service = CacheService(
        make_config(),
        metrics=metrics,
        client_factory=lambda url, **kwargs: fake_redis,
        clock=clock,
    )
    assert await service.initialize() is True
    yield service
    await service.close()


@pytest_asyncio.fixture
async def disabled_cache(clock):
    """A cache with no backing store configured; any store access fails the test."""
    guarded = GuardedRedis()

    def factory(url, **kwargs):
        pytest.fail("disabled cache must not connect")

    service = CacheService(make_config(cache_url=None), client_factory=factory, clock=clock)
    assert await service.initialize() is False
    service._redis = guarded
    return service
