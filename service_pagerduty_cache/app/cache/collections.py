"""
Collections mirrored by the cache.

Everything that differs between entity kinds lives in this table so that
the store, the bulk refresh and the directory service share one code path.
"""

from dataclasses import dataclass
from typing import Optional, Tuple


# Bumped whenever the stored layout changes; a marker written by another
# version is treated as stale.
CACHE_SCHEMA_VERSION = 1

MISC_COLLECTION = "misc"

LAST_REFRESH_KEY = "lastrefresh"
ABILITIES_KEY = "abilities"
REFRESH_STATUS_KEY = "refreshstatus"

REFRESH_LOCK_SUFFIX = "refresh_lock"
STAGING_SEGMENT = "staging"


@dataclass(frozen=True)
class CollectionSpec:
    """Describes one cached collection."""

    name: str
    id_field: str = "id"
    # Key under which this collection arrives nested inside a user document
    relation: Optional[str] = None
    # Reference type left in the parent document after extraction
    reference_type: Optional[str] = None


USERS = CollectionSpec(name="users")
CONTACT_METHODS = CollectionSpec(
    name="contact_methods",
    relation="contact_methods",
    reference_type="contact_method_reference",
)
NOTIFICATION_RULES = CollectionSpec(
    name="notification_rules",
    relation="notification_rules",
    reference_type="assignment_notification_rule_reference",
)
TEAM_MEMBERS = CollectionSpec(name="team_members")

ENTITY_COLLECTIONS: Tuple[CollectionSpec, ...] = (USERS, CONTACT_METHODS, NOTIFICATION_RULES)

USER_RELATIONS: Tuple[CollectionSpec, ...] = tuple(
    spec for spec in ENTITY_COLLECTIONS if spec.relation
)


def user_includes() -> Tuple[str, ...]:
    """Relations requested inline when listing users."""
    return tuple(spec.relation for spec in USER_RELATIONS)
