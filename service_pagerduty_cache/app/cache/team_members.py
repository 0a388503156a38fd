"""
Lazily populated team membership cache.

Entries are filled on first lookup and removed by the operations that
change a team's membership or identity. They never expire on their own.
"""

from typing import Any, Dict, List

from shared.errors import CacheBackendError, CacheDisabledError, CacheLayerException
from shared.logging import get_logger

from .collections import TEAM_MEMBERS
from .entity_store import decode_record, encode_record
from .lifecycle import CacheService


class TeamMembersCache:
    """Populate-on-miss cache of team member lists keyed by team ID."""

    def __init__(self, cache: CacheService, client, *, metrics=None):
        self.cache = cache
        self.client = client
        self.metrics = metrics if metrics is not None else cache.metrics
        self.logger = get_logger("pagerduty_cache.team_members")

    @property
    def key(self) -> str:
        return self.cache.key(TEAM_MEMBERS.name)

    async def get_members(self, team_id: str) -> List[Dict[str, Any]]:
        """Cached member list, or a fresh one fetched and stored on miss."""
        try:
            raw = await self.cache.client().hget(self.key, team_id)
        except CacheDisabledError:
            raw = None
        except Exception as e:
            self.logger.warning("Couldn't read team members from cache", team_id=team_id, error=str(e))
            raw = None

        if raw is not None:
            try:
                members = decode_record(raw, expect=list)
            except (TypeError, ValueError) as e:
                # Overwritten by the refetch below
                self.logger.warning("Unreadable cached team members", team_id=team_id, error=str(e))
            else:
                self._record("hit")
                self.logger.debug("Got team members from cache", team_id=team_id)
                return members

        self._record("miss")
        members = await self.client.list_team_members(team_id)
        await self._store(team_id, members)
        return members

    async def _store(self, team_id: str, members: List[Dict[str, Any]]) -> None:
        if not self.cache.enabled:
            return
        try:
            await self.cache.client().hset(self.key, team_id, encode_record(members))
        except Exception as e:
            self.logger.warning("Couldn't cache team members", team_id=team_id, error=str(e))
            return
        self.logger.debug("Cached team members", team_id=team_id, count=len(members))

    async def invalidate(self, team_id: str) -> bool:
        """Drop the cached membership of a team."""
        client = self.cache.client()
        try:
            removed = await client.hdel(self.key, team_id)
        except Exception as e:
            self.logger.error("Couldn't invalidate team members", team_id=team_id, error=str(e))
            raise CacheBackendError(f"invalidate {team_id} failed: {e}") from e
        self.logger.debug("Invalidated team members", team_id=team_id, removed=bool(removed))
        return bool(removed)

    async def invalidate_quietly(self, team_id: str) -> None:
        """``invalidate`` for mutating callers that must not fail on the cache."""
        try:
            await self.invalidate(team_id)
        except CacheDisabledError:
            pass
        except CacheLayerException as e:
            self.logger.warning("Team membership may be stale", team_id=team_id, error=e.message)

    def _record(self, result: str) -> None:
        if self.metrics:
            self.metrics.increment_counter("team_members_cache_total", result=result)
