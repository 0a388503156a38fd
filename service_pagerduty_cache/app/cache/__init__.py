"""
Cache package for the PagerDuty directory cache.

- lifecycle: connection, max age and the enabled flag
- entity_store: per-entity get/insert/update/delete and singleton records
- refresh: TTL-gated bulk refresh with staged, atomic swap
- team_members: lazily populated team membership
"""

from .entity_store import EntityStore, EntityStores, MiscStore, RefreshMarker, UpsertResult
from .lifecycle import CacheService
from .refresh import BulkRefresher, RefreshResult, RefreshStatus, decompose_users
from .team_members import TeamMembersCache

__all__ = [
    "BulkRefresher",
    "CacheService",
    "EntityStore",
    "EntityStores",
    "MiscStore",
    "RefreshMarker",
    "RefreshResult",
    "RefreshStatus",
    "TeamMembersCache",
    "UpsertResult",
    "decompose_users",
]
