"""
Conflict resolution for entity writes.

A conflict is an incoming record that is older than what the entity already
holds (out-of-order delivery, or a newer write from another source), or a
lost compare-and-swap on the entity version. The policy decides the
attributes that get written:

- last_write_wins: the record with the later source timestamp wins outright
- merge: the later record wins per field; the older one only fills gaps
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from syncgate.utils.timeutil import ensure_utc, utcnow

logger = logging.getLogger(__name__)

LAST_WRITE_WINS = "last_write_wins"
MERGE = "merge"
POLICIES = (LAST_WRITE_WINS, MERGE)

# Conflict kinds
OUT_OF_ORDER = "out_of_order"
CROSS_SOURCE = "cross_source"
VERSION_MISMATCH = "version_mismatch"


@dataclass(frozen=True)
class Resolution:
    attributes: dict
    winner: str  # incoming, current, merged


def is_older(incoming: Optional[datetime], current: Optional[datetime]) -> bool:
    """True only when both timestamps are known and incoming predates current."""
    if incoming is None or current is None:
        return False
    return ensure_utc(incoming) < ensure_utc(current)


def resolve(policy: str, current: dict, incoming: dict, incoming_is_older: bool) -> Resolution:
    """Attributes to write when incoming meets current."""
    current = current or {}
    if not incoming_is_older:
        return Resolution(attributes={**current, **incoming}, winner="incoming")
    if policy == MERGE:
        merged = {**incoming, **current}
        winner = "merged" if merged != current else "current"
        return Resolution(attributes=merged, winner=winner)
    return Resolution(attributes=dict(current), winner="current")


def conflict_descriptor(
    kind: str,
    policy: str,
    resolution: str,
    source: str,
    item_id=None,
    incoming_updated_at: Optional[datetime] = None,
    current_updated_at: Optional[datetime] = None,
    current_source: Optional[str] = None,
    expected_version: Optional[int] = None,
) -> dict:
    """JSON-serializable record stored in entity_sync_status.sync_conflicts."""
    descriptor = {
        "kind": kind,
        "detected_at": utcnow().isoformat(),
        "source": source,
        "policy": policy,
        "resolution": resolution,
    }
    if item_id is not None:
        descriptor["item_id"] = str(item_id)
    if incoming_updated_at is not None:
        descriptor["incoming_updated_at"] = ensure_utc(incoming_updated_at).isoformat()
    if current_updated_at is not None:
        descriptor["current_updated_at"] = ensure_utc(current_updated_at).isoformat()
    if current_source:
        descriptor["current_source"] = current_source
    if expected_version is not None:
        descriptor["expected_version"] = expected_version
    return descriptor


def get_conflict_policy() -> str:
    from syncgate.config import get_settings
    policy = get_settings().sync_conflict_policy
    if policy not in POLICIES:
        logger.warning("Unknown conflict policy '%s', using %s", policy, LAST_WRITE_WINS)
        return LAST_WRITE_WINS
    return policy
