"""Billing configuration consumed read-only by the services."""

from dataclasses import dataclass, field

from core.domain.catalog import Addon, CatalogEntry, SubjectType, Tier
from core.exceptions import ConfigurationError


@dataclass(frozen=True)
class BillingOptions:
    include_tax_in_price: bool = False
    delete_unknown_entries: bool = False
    default_due_days: int = 7
    redirect_url: str | None = None
    invoice_all_on_dispute_loss: bool = False


@dataclass(frozen=True)
class BillingConfig:
    """Declared catalog plus payment platform credentials."""

    tiers: tuple[Tier, ...]
    addons: tuple[Addon, ...]
    api_key: str
    webhook_url: str | None = None
    webhook_secret: str | None = None
    options: BillingOptions = field(default_factory=BillingOptions)

    def __post_init__(self):
        object.__setattr__(self, "tiers", tuple(self.tiers))
        object.__setattr__(self, "addons", tuple(self.addons))
        _ensure_unique_keys("Tier", self.tiers)
        _ensure_unique_keys("Addon", self.addons)

    def find_tier(self, tier_id: str, subject_type: SubjectType | None = None) -> Tier | None:
        for tier in self.tiers:
            if tier.id == tier_id and (subject_type is None or tier.subject_type == subject_type):
                return tier
        return None

    def find_addon(self, addon_id: str, subject_type: SubjectType | None = None) -> Addon | None:
        for addon in self.addons:
            if addon.id == addon_id and (subject_type is None or addon.subject_type == subject_type):
                return addon
        return None


def _ensure_unique_keys(label: str, entries: tuple[CatalogEntry, ...]) -> None:
    seen: set[tuple[str, SubjectType]] = set()
    for entry in entries:
        if entry.key in seen:
            raise ConfigurationError(
                f"{label} {entry.id!r} is declared twice for subject type {entry.subject_type.value}"
            )
        seen.add(entry.key)
