"""
Catalog synchronization.

Keeps the remote products and prices in step with the declared tiers and
add-ons. Prices are never edited in place: a price change reuses or creates
a price object with the new amount, repoints the product's default and
deactivates the superseded price. Running a sync twice against unchanged
state performs no writes the second time.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

from core.domain.catalog import (
    BillingInterval,
    CatalogEntry,
    CatalogKind,
    DEFAULT_CURRENCY,
    RemoteAddon,
    RemoteTier,
    SubjectType,
    parse_catalog_tags,
)
from core.domain.config import BillingConfig
from core.domain.refs import RemoteObject, ref_id
from core.exceptions import InvalidCatalogEntryError
from core.interfaces.services import PaymentPlatform, collect

logger = logging.getLogger(__name__)

EntryKey = tuple[CatalogKind, str, SubjectType]


@dataclass
class SyncReport:
    """Outcome of one synchronization run, keyed by ``kind:id:subject_type``."""

    created: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    deactivated: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


@dataclass
class RemoteEntryState:
    """A tagged remote product with all of its prices."""

    kind: CatalogKind
    entry_id: str
    subject_type: SubjectType
    product: RemoteObject
    prices: list[RemoteObject] = field(default_factory=list)

    @property
    def key(self) -> EntryKey:
        return (self.kind, self.entry_id, self.subject_type)

    def current_price(self, interval: BillingInterval) -> RemoteObject | None:
        """The active price for an interval, preferring the product's default price."""
        candidates = [
            price
            for price in self.prices
            if price.get("active") and _price_interval(price) == interval
        ]
        default_id = ref_id(self.product.get("default_price"))
        for price in candidates:
            if price["id"] == default_id:
                return price
        return candidates[0] if candidates else None

    def to_remote_entry(self) -> RemoteTier | RemoteAddon:
        monthly = self.current_price(BillingInterval.MONTH)
        yearly = self.current_price(BillingInterval.YEAR)
        monthly_amount = (monthly or {}).get("unit_amount") or 0
        yearly_amount = (yearly or {}).get("unit_amount") or 0
        cls = RemoteTier if self.kind == CatalogKind.TIER else RemoteAddon
        return cls(
            id=self.entry_id,
            subject_type=self.subject_type,
            name=self.product.get("name") or self.entry_id,
            price_minor_units=monthly_amount,
            currency=(monthly or {}).get("currency") or DEFAULT_CURRENCY,
            yearly_multiplier=yearly_amount / monthly_amount if monthly_amount and yearly_amount else None,
            active=bool(self.product.get("active")),
            remote_product_id=self.product["id"],
            remote_monthly_price_id=monthly["id"] if monthly else None,
            remote_yearly_price_id=yearly["id"] if yearly else None,
        )


def _price_interval(price: RemoteObject) -> BillingInterval | None:
    recurring = price.get("recurring") or {}
    try:
        return BillingInterval(recurring.get("interval"))
    except ValueError:
        return None


def _label(kind: CatalogKind, entry_id: str, subject_type: SubjectType) -> str:
    return f"{kind.value}:{entry_id}:{subject_type.value}"


class CatalogSynchronizer:
    """Reconciles the declared catalog with the remote one."""

    def __init__(self, platform: PaymentPlatform, config: BillingConfig):
        self.platform = platform
        self.config = config

    async def fetch_remote_entries(self) -> dict[EntryKey, RemoteEntryState]:
        """List every tagged remote product with its prices, paging to exhaustion."""
        products = await collect(self.platform.list_products())
        prices = await collect(self.platform.list_prices())

        prices_by_product: dict[str, list[RemoteObject]] = {}
        for price in prices:
            prices_by_product.setdefault(ref_id(price.get("product")), []).append(price)

        entries: dict[EntryKey, RemoteEntryState] = {}
        for product in products:
            tags = parse_catalog_tags(product.get("metadata"))
            if tags is None:
                continue
            entry_id, subject_type, kind = tags
            state = RemoteEntryState(
                kind=kind,
                entry_id=entry_id,
                subject_type=subject_type,
                product=product,
                prices=prices_by_product.get(product["id"], []),
            )
            existing = entries.get(state.key)
            # Several products may carry the same tags; the active one wins
            if existing is None or (product.get("active") and not existing.product.get("active")):
                entries[state.key] = state
        return entries

    async def remote_tiers(self) -> list[RemoteTier]:
        entries = await self.fetch_remote_entries()
        return [s.to_remote_entry() for s in entries.values() if s.kind == CatalogKind.TIER]

    async def remote_addons(self) -> list[RemoteAddon]:
        entries = await self.fetch_remote_entries()
        return [s.to_remote_entry() for s in entries.values() if s.kind == CatalogKind.ADDON]

    async def known_addons(self) -> list[RemoteAddon]:
        """Remote add-ons whose identity is still declared."""
        declared = {addon.key for addon in self.config.addons}
        return [addon for addon in await self.remote_addons() if addon.key in declared]

    async def known_tiers(self) -> list[RemoteTier]:
        """Remote tiers whose identity is still declared."""
        declared = {tier.key for tier in self.config.tiers}
        return [tier for tier in await self.remote_tiers() if tier.key in declared]

    async def sync(self) -> SyncReport:
        """
        Reconcile every declared tier and add-on.

        Entries are processed concurrently and fail independently; failures
        are logged and reported instead of raised.
        """
        report = SyncReport()
        remote = await self.fetch_remote_entries()

        declared: list[CatalogEntry] = [*self.config.tiers, *self.config.addons]
        declared_keys = {(entry.kind, entry.id, entry.subject_type) for entry in declared}

        jobs: list[tuple[str, Any]] = []
        for entry in declared:
            key = (entry.kind, entry.id, entry.subject_type)
            label = _label(*key)
            state = remote.get(key)
            if state is None:
                jobs.append((label, self._create_entry(entry, report)))
            else:
                jobs.append((label, self._update_entry(entry, state, report)))

        if self.config.options.delete_unknown_entries:
            for key, state in remote.items():
                if key not in declared_keys and state.product.get("active"):
                    jobs.append((_label(*key), self._deactivate_entry(state, report)))

        results = await asyncio.gather(*(job for _, job in jobs), return_exceptions=True)
        for (label, _), result in zip(jobs, results):
            if isinstance(result, Exception):
                logger.error(f"Catalog sync failed for {label}: {result}", exc_info=result)
                report.failed[label] = str(result)
            elif isinstance(result, BaseException):
                raise result

        logger.info(
            f"Catalog sync finished: {len(report.created)} created, {len(report.updated)} updated, "
            f"{len(report.deactivated)} deactivated, {len(report.failed)} failed"
        )
        return report

    def _price_params(
        self, entry: CatalogEntry, interval: BillingInterval, product_id: str
    ) -> dict[str, Any]:
        return {
            "product": product_id,
            "unit_amount": entry.price_for(interval),
            "currency": entry.currency,
            "recurring": {"interval": interval.value},
            "tax_behavior": "inclusive" if self.config.options.include_tax_in_price else "exclusive",
            "metadata": entry.remote_metadata(),
            "active": True,
        }

    async def _create_entry(self, entry: CatalogEntry, report: SyncReport) -> None:
        label = _label(entry.kind, entry.id, entry.subject_type)
        if entry.price_minor_units <= 0:
            raise InvalidCatalogEntryError(f"{label} must have a price greater than zero")

        product = await self.platform.create_product(
            {"name": entry.name, "active": entry.active, "metadata": entry.remote_metadata()}
        )
        monthly = await self.platform.create_price(
            self._price_params(entry, BillingInterval.MONTH, product["id"])
        )
        await self.platform.create_price(self._price_params(entry, BillingInterval.YEAR, product["id"]))
        await self.platform.update_product(product["id"], {"default_price": monthly["id"]})

        logger.info(
            f"Created {label} as product {product['id']} "
            f"({entry.price_minor_units}/{entry.yearly_price_minor_units} {entry.currency})"
        )
        report.created.append(label)

    async def _update_entry(
        self, entry: CatalogEntry, state: RemoteEntryState, report: SyncReport
    ) -> None:
        label = _label(entry.kind, entry.id, entry.subject_type)
        changed = False

        for interval in (BillingInterval.MONTH, BillingInterval.YEAR):
            if await self._ensure_price(entry, state, interval):
                changed = True

        product_params: dict[str, Any] = {}
        if state.product.get("name") != entry.name:
            product_params["name"] = entry.name
        if bool(state.product.get("active")) != entry.active:
            product_params["active"] = entry.active
        if product_params:
            await self.platform.update_product(state.product["id"], product_params)
            logger.info(f"Updated {label} product fields: {sorted(product_params)}")
            changed = True

        if changed:
            report.updated.append(label)

    async def _ensure_price(
        self, entry: CatalogEntry, state: RemoteEntryState, interval: BillingInterval
    ) -> bool:
        """
        Make the product hold exactly one active price at the declared amount.

        Returns:
            True if any remote write was made
        """
        amount = entry.price_for(interval)
        current = state.current_price(interval)
        product_id = state.product["id"]
        wrote = False

        def matches(price: RemoteObject) -> bool:
            return (
                price.get("unit_amount") == amount
                and (price.get("currency") or DEFAULT_CURRENCY) == entry.currency
                and _price_interval(price) == interval
            )

        if current is not None and matches(current):
            target = current
        else:
            if amount <= 0:
                raise InvalidCatalogEntryError(
                    f"{_label(entry.kind, entry.id, entry.subject_type)} must have a price greater than zero"
                )
            reusable = next((price for price in state.prices if matches(price)), None)
            if reusable is not None:
                if not reusable.get("active"):
                    await self.platform.update_price(reusable["id"], {"active": True})
                target = reusable
                logger.info(f"Reusing price {reusable['id']} for {entry.id} ({interval.value})")
            else:
                target = await self.platform.create_price(
                    self._price_params(entry, interval, product_id)
                )
                logger.info(f"Created price {target['id']} for {entry.id} ({interval.value})")
            wrote = True

        if interval == BillingInterval.MONTH and ref_id(state.product.get("default_price")) != target["id"]:
            await self.platform.update_product(product_id, {"default_price": target["id"]})
            wrote = True

        # Anything else active on this interval is superseded
        for price in state.prices:
            if (
                price["id"] != target["id"]
                and price.get("active")
                and _price_interval(price) == interval
            ):
                await self.platform.update_price(price["id"], {"active": False})
                logger.info(f"Deactivated superseded price {price['id']} for {entry.id}")
                wrote = True

        return wrote

    async def _deactivate_entry(self, state: RemoteEntryState, report: SyncReport) -> None:
        label = _label(*state.key)
        await self.platform.update_product(state.product["id"], {"active": False})
        for price in state.prices:
            if price.get("active"):
                await self.platform.update_price(price["id"], {"active": False})
        logger.info(f"Deactivated undeclared {label} (product {state.product['id']})")
        report.deactivated.append(label)
