"""
Catalog domain entities.

Tiers and add-ons are declared locally and mirrored on the payment platform.
The ``(id, subject_type)`` pair is the stable identity echoed into remote
product and price metadata; it is the only link between the two sides.
"""

from dataclasses import dataclass
from enum import StrEnum
from typing import Any, ClassVar

DEFAULT_YEARLY_MULTIPLIER = 10.0
DEFAULT_CURRENCY = "usd"

# Remote metadata keys stamped on every product and price the synchronizer creates
META_ID = "_internal_id"
META_TYPE = "_internal_type"
META_KIND = "_internal_kind"


class SubjectType(StrEnum):
    """Kind of subject a subscription belongs to."""

    USER = "user"
    GROUP = "group"


class CatalogKind(StrEnum):
    """Kind of catalog entry a remote product represents."""

    TIER = "tier"
    ADDON = "addon"


class BillingInterval(StrEnum):
    """Recurring price intervals kept for every catalog entry."""

    MONTH = "month"
    YEAR = "year"


def resolve_yearly_multiplier(times: float | None) -> float:
    """Return the yearly multiplier, defaulting to 10x when absent or below 1."""
    if times is None or times < 1:
        return DEFAULT_YEARLY_MULTIPLIER
    return times


@dataclass(frozen=True, kw_only=True)
class CatalogEntry:
    """Fields shared by tiers and add-ons."""

    kind: ClassVar[CatalogKind]

    id: str
    subject_type: SubjectType
    name: str
    price_minor_units: int
    currency: str = DEFAULT_CURRENCY
    yearly_multiplier: float | None = None
    active: bool = True

    @property
    def key(self) -> tuple[str, SubjectType]:
        return (self.id, self.subject_type)

    @property
    def yearly_price_minor_units(self) -> int:
        return round(self.price_minor_units * resolve_yearly_multiplier(self.yearly_multiplier))

    def price_for(self, interval: BillingInterval) -> int:
        if interval == BillingInterval.YEAR:
            return self.yearly_price_minor_units
        return self.price_minor_units

    def remote_metadata(self) -> dict[str, str]:
        """Metadata tags identifying this entry on remote products and prices."""
        return {
            META_TYPE: self.subject_type.value,
            META_ID: self.id,
            META_KIND: self.kind.value,
        }


@dataclass(frozen=True, kw_only=True)
class Tier(CatalogEntry):
    """A declared subscription plan."""

    kind: ClassVar[CatalogKind] = CatalogKind.TIER


@dataclass(frozen=True, kw_only=True)
class Addon(CatalogEntry):
    """A declared, quantity-bearing extra billed alongside a tier."""

    kind: ClassVar[CatalogKind] = CatalogKind.ADDON


@dataclass(frozen=True, kw_only=True)
class RemoteEntryMixin:
    """Identifiers of the remote product and its current prices."""

    remote_product_id: str
    remote_monthly_price_id: str | None = None
    remote_yearly_price_id: str | None = None

    def price_id_for(self, annual: bool) -> str | None:
        return self.remote_yearly_price_id if annual else self.remote_monthly_price_id


@dataclass(frozen=True, kw_only=True)
class RemoteTier(RemoteEntryMixin, Tier):
    """A tier as it currently exists on the payment platform."""

    pass


@dataclass(frozen=True, kw_only=True)
class RemoteAddon(RemoteEntryMixin, Addon):
    """An add-on as it currently exists on the payment platform."""

    pass


@dataclass(frozen=True)
class AddonWithQuantity:
    """A resolved add-on line item."""

    addon: RemoteAddon
    quantity: int

    @property
    def addon_id(self) -> str:
        return self.addon.id


@dataclass(frozen=True)
class AddonSelection:
    """An add-on requested by id, as passed to checkout and add-on changes."""

    addon_id: str
    quantity: int = 1


def parse_catalog_tags(metadata: dict[str, Any] | None) -> tuple[str, SubjectType, CatalogKind] | None:
    """
    Read the catalog identity from remote metadata.

    Returns None when the object was not created by the synchronizer or the
    tags are unreadable.
    """
    if not metadata:
        return None
    entry_id = metadata.get(META_ID)
    raw_type = metadata.get(META_TYPE)
    raw_kind = metadata.get(META_KIND)
    if not entry_id or not raw_type or not raw_kind:
        return None
    try:
        return entry_id, SubjectType(raw_type), CatalogKind(raw_kind)
    except ValueError:
        return None
