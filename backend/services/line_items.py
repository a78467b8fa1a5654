"""
Subscription line-item resolution.

Maps a subscription's remote line items back to declared tiers and add-ons
through the catalog tags on each item's price, and diffs two item snapshots.
Items without a recognised tag are ignored.
"""

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from core.domain.catalog import AddonWithQuantity, CatalogEntry, CatalogKind, RemoteAddon
from core.domain.events import AddonUpdate, WhatHappened
from core.domain.subscription import LineItem

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TierChange:
    old_tier_id: str
    new_tier_id: str


@dataclass(frozen=True)
class AddonsDiff:
    current: list[AddonWithQuantity]
    previous: list[AddonWithQuantity]
    changed_quantity: list[AddonWithQuantity]


def _item_key(item: LineItem):
    return (item.catalog_id, item.subject_type)


def resolve_addons(
    items: Sequence[LineItem],
    known_addons: Iterable[RemoteAddon],
    subscription_id: str | None = None,
) -> list[AddonWithQuantity]:
    """
    Resolve the add-on items of a subscription.

    Items tagged for an add-on that is no longer known are dropped and
    logged, so stale items never reach resolved state.
    """
    by_key = {addon.key: addon for addon in known_addons}
    resolved: list[AddonWithQuantity] = []
    for item in items:
        if not item.is_catalog(CatalogKind.ADDON):
            continue
        addon = by_key.get(_item_key(item))
        if addon is None:
            logger.warning(
                f"Dropping orphaned add-on item {item.item_id} (add-on {item.catalog_id!r}) "
                f"on subscription {subscription_id or 'unknown'}"
            )
            continue
        resolved.append(AddonWithQuantity(addon=addon, quantity=item.quantity))
    return resolved


def resolve_tier_ids(items: Sequence[LineItem], known_tiers: Iterable[CatalogEntry]) -> list[str]:
    """Return the ids of known tiers found on the items, in item order."""
    keys = {tier.key for tier in known_tiers}
    return [
        item.catalog_id
        for item in items
        if item.is_catalog(CatalogKind.TIER) and _item_key(item) in keys
    ]


def find_main_tier_item(
    items: Sequence[LineItem], known_tiers: Iterable[CatalogEntry]
) -> LineItem | None:
    """Return the first item tagged with a known tier."""
    keys = {tier.key for tier in known_tiers}
    for item in items:
        if item.is_catalog(CatalogKind.TIER) and _item_key(item) in keys:
            return item
    return None


def diff_tier(
    new_items: Sequence[LineItem],
    old_items: Sequence[LineItem] | None,
    known_tiers: Iterable[CatalogEntry],
) -> TierChange | None:
    """
    Detect a tier change between two snapshots.

    Each side resolves to its first tier item. Returns None when either side
    has no resolvable tier or both resolve to the same tier.
    """
    known_tiers = list(known_tiers)
    new_ids = resolve_tier_ids(new_items, known_tiers)
    old_ids = resolve_tier_ids(old_items or [], known_tiers)
    if not new_ids or not old_ids:
        return None
    if new_ids[0] == old_ids[0]:
        return None
    return TierChange(old_tier_id=old_ids[0], new_tier_id=new_ids[0])


def diff_addons(
    new_items: Sequence[LineItem],
    old_items: Sequence[LineItem] | None,
    known_addons: Iterable[RemoteAddon],
    subscription_id: str | None = None,
) -> AddonsDiff | None:
    """
    Detect add-on changes between two snapshots.

    When the previous snapshot carries no items the new snapshot is compared
    with itself, which never reports a change.

    Returns:
        The diff, or None when nothing was added, removed or requantified
    """
    known_addons = list(known_addons)
    current = resolve_addons(new_items, known_addons, subscription_id)
    previous = (
        resolve_addons(old_items, known_addons, subscription_id) if old_items else list(current)
    )

    previous_by_key = {entry.addon.key: entry for entry in previous}
    current_keys = {entry.addon.key for entry in current}

    changed_quantity = [
        entry
        for entry in current
        if entry.addon.key in previous_by_key
        and previous_by_key[entry.addon.key].quantity != entry.quantity
    ]
    added = [entry for entry in current if entry.addon.key not in previous_by_key]
    removed = [entry for entry in previous if entry.addon.key not in current_keys]

    if not changed_quantity and not added and not removed:
        return None
    return AddonsDiff(current=current, previous=previous, changed_quantity=changed_quantity)


def classify_addon_changes(
    current: Sequence[AddonWithQuantity],
    previous: Sequence[AddonWithQuantity],
) -> list[AddonUpdate]:
    """
    Partition every add-on seen in either snapshot into exactly one bucket.

    Quantity differs: UPDATED. Only in ``current``: ADDED. Only in
    ``previous``: REMOVED. Otherwise: NOTHING.
    """
    previous_by_key = {entry.addon.key: entry for entry in previous}
    seen = set()
    updates: list[AddonUpdate] = []

    for entry in current:
        key = entry.addon.key
        if key in seen:
            continue
        seen.add(key)
        old = previous_by_key.get(key)
        if old is None:
            what = WhatHappened.ADDED
        elif old.quantity != entry.quantity:
            what = WhatHappened.UPDATED
        else:
            what = WhatHappened.NOTHING
        updates.append(AddonUpdate(what_happened=what, addon=entry.addon, quantity=entry.quantity))

    for entry in previous:
        key = entry.addon.key
        if key in seen:
            continue
        seen.add(key)
        updates.append(
            AddonUpdate(what_happened=WhatHappened.REMOVED, addon=entry.addon, quantity=entry.quantity)
        )

    return updates
