"""
Cache-aware CRUD over PagerDuty users, contact methods, notification rules
and team membership.

Reads consult the cache first and fall back to the live API on any cache
condition; writes go to the live API first and are then mirrored into the
cache. The cache is never allowed to fail an operation.
"""

from typing import Any, Awaitable, Callable, Dict, List, Optional

from shared.errors import CacheDisabledError, CacheLayerException, CacheMissError
from shared.logging import get_logger

from ..cache.entity_store import EntityStore, EntityStores, MiscStore
from ..cache.lifecycle import CacheService
from ..cache.refresh import BulkRefresher, RefreshResult, RefreshStatus
from ..cache.team_members import TeamMembersCache


logger = get_logger("pagerduty_cache.directory")


async def _read_through(
    store: EntityStore,
    entity_id: str,
    fetch: Callable[[], Awaitable[Optional[Dict[str, Any]]]],
) -> Optional[Dict[str, Any]]:
    try:
        return await store.get(entity_id)
    except CacheDisabledError:
        pass
    except CacheMissError:
        logger.debug("Cache miss, reading live", collection=store.name, entity_id=entity_id)
    except CacheLayerException as e:
        logger.warning("Cache read failed, reading live", collection=store.name, entity_id=entity_id, error=e.message)

    record = await fetch()
    if record is not None:
        await _mirror(store.update, store, record)
    return record


async def _mirror(operation: Callable[[Any], Awaitable[Any]], store: EntityStore, argument: Any) -> None:
    """Apply a write to the cache, logging instead of raising."""
    if not store.cache.enabled:
        return
    try:
        await operation(argument)
    except CacheLayerException as e:
        logger.warning(
            "Couldn't mirror write into cache",
            collection=store.name,
            operation=operation.__name__,
            error=e.message,
        )


class DirectoryService:
    """Entity operations backed by the cache and the PagerDuty API."""

    def __init__(
        self,
        cache: CacheService,
        client,
        *,
        stores: Optional[EntityStores] = None,
        team_members: Optional[TeamMembersCache] = None,
        refresher: Optional[BulkRefresher] = None,
    ):
        self.cache = cache
        self.client = client
        self.stores = stores or EntityStores(cache)
        self.misc = MiscStore(cache)
        self.team_members = team_members or TeamMembersCache(cache, client)
        self.refresher = refresher or BulkRefresher(cache, client)

    async def ensure_fresh(self) -> RefreshResult:
        """Opportunistic bulk refresh; gated by the max age, never raises."""
        try:
            return await self.refresher.populate()
        except Exception as e:
            logger.error("Unexpected refresh failure", error=str(e))
            return RefreshResult(RefreshStatus.FAILED, error=str(e))

    async def close(self) -> None:
        await self.client.close()
        await self.cache.close()

    # Users

    async def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        return await _read_through(self.stores.users, user_id, lambda: self.client.get_user(user_id))

    async def create_user(self, user: Dict[str, Any]) -> Dict[str, Any]:
        created = await self.client.create_user(user)
        await _mirror(self.stores.users.insert, self.stores.users, created)
        return created

    async def update_user(self, user_id: str, user: Dict[str, Any]) -> Dict[str, Any]:
        updated = await self.client.update_user(user_id, user)
        await _mirror(self.stores.users.update, self.stores.users, updated)
        return updated

    async def delete_user(self, user_id: str) -> None:
        related = await self._cached_relations(user_id)
        await self.client.delete_user(user_id)
        await _mirror(self.stores.users.delete, self.stores.users, user_id)
        for store_name, ids in related.items():
            store = self.stores.by_name(store_name)
            for entity_id in ids:
                await _mirror(store.delete, store, entity_id)

    async def _cached_relations(self, user_id: str) -> Dict[str, List[str]]:
        """IDs of the contact methods and rules referenced by a cached user."""
        try:
            user = await self.stores.users.get(user_id)
        except CacheLayerException:
            return {}
        related: Dict[str, List[str]] = {}
        for store in (self.stores.contact_methods, self.stores.notification_rules):
            refs = user.get(store.spec.relation) or []
            related[store.name] = [ref["id"] for ref in refs if isinstance(ref, dict) and ref.get("id")]
        return related

    # Contact methods

    async def get_contact_method(self, user_id: str, contact_method_id: str) -> Optional[Dict[str, Any]]:
        return await _read_through(
            self.stores.contact_methods,
            contact_method_id,
            lambda: self.client.get_contact_method(user_id, contact_method_id),
        )

    async def create_contact_method(self, user_id: str, contact_method: Dict[str, Any]) -> Dict[str, Any]:
        created = await self.client.create_contact_method(user_id, contact_method)
        await _mirror(self.stores.contact_methods.insert, self.stores.contact_methods, created)
        return created

    async def update_contact_method(
        self, user_id: str, contact_method_id: str, contact_method: Dict[str, Any]
    ) -> Dict[str, Any]:
        updated = await self.client.update_contact_method(user_id, contact_method_id, contact_method)
        await _mirror(self.stores.contact_methods.update, self.stores.contact_methods, updated)
        return updated

    async def delete_contact_method(self, user_id: str, contact_method_id: str) -> None:
        await self.client.delete_contact_method(user_id, contact_method_id)
        await _mirror(self.stores.contact_methods.delete, self.stores.contact_methods, contact_method_id)

    # Notification rules

    async def get_notification_rule(self, user_id: str, rule_id: str) -> Optional[Dict[str, Any]]:
        return await _read_through(
            self.stores.notification_rules,
            rule_id,
            lambda: self.client.get_notification_rule(user_id, rule_id),
        )

    async def create_notification_rule(self, user_id: str, rule: Dict[str, Any]) -> Dict[str, Any]:
        created = await self.client.create_notification_rule(user_id, rule)
        await _mirror(self.stores.notification_rules.insert, self.stores.notification_rules, created)
        return created

    async def update_notification_rule(self, user_id: str, rule_id: str, rule: Dict[str, Any]) -> Dict[str, Any]:
        updated = await self.client.update_notification_rule(user_id, rule_id, rule)
        await _mirror(self.stores.notification_rules.update, self.stores.notification_rules, updated)
        return updated

    async def delete_notification_rule(self, user_id: str, rule_id: str) -> None:
        await self.client.delete_notification_rule(user_id, rule_id)
        await _mirror(self.stores.notification_rules.delete, self.stores.notification_rules, rule_id)

    # Abilities

    async def get_abilities(self) -> List[str]:
        try:
            return await self.misc.get_abilities()
        except CacheLayerException as e:
            logger.debug("Abilities not served from cache", reason=e.code)
        return await self.client.list_abilities()

    # Teams

    async def get_team_members(self, team_id: str) -> List[Dict[str, Any]]:
        return await self.team_members.get_members(team_id)

    async def add_user_to_team(self, team_id: str, user_id: str, role: Optional[str] = None) -> None:
        try:
            await self.client.add_user_to_team(team_id, user_id, role)
        finally:
            await self.team_members.invalidate_quietly(team_id)

    async def remove_user_from_team(self, team_id: str, user_id: str) -> None:
        try:
            await self.client.remove_user_from_team(team_id, user_id)
        finally:
            await self.team_members.invalidate_quietly(team_id)

    async def update_team(self, team_id: str, team: Dict[str, Any]) -> Dict[str, Any]:
        try:
            return await self.client.update_team(team_id, team)
        finally:
            await self.team_members.invalidate_quietly(team_id)

    async def delete_team(self, team_id: str) -> None:
        try:
            await self.client.delete_team(team_id)
        finally:
            await self.team_members.invalidate_quietly(team_id)
