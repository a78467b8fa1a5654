"""
Checkout and subscription mutation operations.

These calls change state on the payment platform only. The matching domain
events are emitted later, when the platform's webhook for the change
arrives.
"""

import logging
from collections.abc import Sequence
from datetime import UTC, datetime
from typing import Any

from core.domain.catalog import (
    Addon,
    AddonSelection,
    BillingInterval,
    CatalogEntry,
    CatalogKind,
    SubjectType,
    Tier,
)
from core.domain.config import BillingConfig
from core.domain.events import Debug
from core.domain.refs import RemoteObject, expand, ref_id
from core.domain.subscription import (
    GROUP_ID,
    LIVE_STATUSES,
    TIER_ID,
    ChargeOptions,
    ChargeType,
    SubscriptionMetadata,
    parse_line_items,
)
from core.exceptions import (
    DuplicateSubscriptionError,
    InvalidCatalogEntryError,
    MetadataContractError,
    NotFoundError,
    RemoteObjectNotFoundError,
    SubjectTypeMismatchError,
)
from core.interfaces.services import PaymentPlatform, collect
from services.catalog_sync import CatalogSynchronizer
from services.customers import DEFAULT_REDIRECT_URL, CustomerQuery, CustomerService
from services.events import EventBus
from services.line_items import find_main_tier_item

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400


def _subscription_metadata(subscription: RemoteObject) -> SubscriptionMetadata | None:
    """Parsed metadata, or None for subscriptions not created through checkout."""
    try:
        return SubscriptionMetadata.from_metadata(subscription.get("metadata"))
    except MetadataContractError:
        return None


def is_live(subscription: RemoteObject) -> bool:
    return subscription.get("status") in LIVE_STATUSES


class SubscriptionService:
    """Checkout, tier and add-on changes, cancellation, refunds and transfers."""

    def __init__(
        self,
        platform: PaymentPlatform,
        config: BillingConfig,
        synchronizer: CatalogSynchronizer,
        customers: CustomerService,
        bus: EventBus,
    ):
        self.platform = platform
        self.config = config
        self.synchronizer = synchronizer
        self.customers = customers
        self.bus = bus

    # Queries

    async def get_subscription(self, subscription_id: str) -> RemoteObject:
        """
        Raises:
            NotFoundError: If the subscription does not exist
        """
        try:
            return await self.platform.retrieve_subscription(subscription_id)
        except RemoteObjectNotFoundError:
            raise NotFoundError("Subscription", subscription_id)

    async def get_subscriptions_for(
        self, query: CustomerQuery
    ) -> tuple[RemoteObject | None, list[RemoteObject]]:
        """Return the customer's live user subscription and live group subscriptions."""
        customer = await self.customers.require_customer(query)
        return await self._subscriptions_of(customer["id"])

    async def _subscriptions_of(
        self, customer_id: str
    ) -> tuple[RemoteObject | None, list[RemoteObject]]:
        user_subscription = None
        group_subscriptions: list[RemoteObject] = []
        async for subscription in self.platform.list_subscriptions(customer=customer_id):
            metadata = _subscription_metadata(subscription)
            if metadata is None or not is_live(subscription):
                continue
            if metadata.is_user_sub:
                user_subscription = user_subscription or subscription
            else:
                group_subscriptions.append(subscription)
        return user_subscription, group_subscriptions

    async def get_user_subscription(self, query: CustomerQuery) -> RemoteObject | None:
        user_subscription, _ = await self.get_subscriptions_for(query)
        return user_subscription

    async def get_group_subscription(self, group_id: str) -> RemoteObject | None:
        async for subscription in self.platform.list_subscriptions():
            metadata = _subscription_metadata(subscription)
            if metadata and metadata.group_id == group_id and is_live(subscription):
                return subscription
        return None

    # Catalog validation

    def _declared(self, kind: CatalogKind, entry_id: str, subject_type: SubjectType) -> CatalogEntry:
        find = self.config.find_tier if kind == CatalogKind.TIER else self.config.find_addon
        label = "Tier" if kind == CatalogKind.TIER else "Addon"
        entry = find(entry_id, subject_type)
        if entry is None:
            if find(entry_id) is not None:
                raise SubjectTypeMismatchError(
                    f"{label} {entry_id} is not available for {subject_type.value} subscriptions."
                )
            raise NotFoundError(label, entry_id)
        return entry

    @staticmethod
    def _ensure_sellable(entry: CatalogEntry) -> None:
        if not entry.active:
            raise InvalidCatalogEntryError(f"{entry.kind.value.capitalize()} {entry.id} is not active.")
        if entry.price_minor_units <= 0:
            raise InvalidCatalogEntryError(
                f"{entry.kind.value.capitalize()} {entry.id} must have a price greater than zero."
            )

    def _validate_addons(
        self, selections: Sequence[AddonSelection], subject_type: SubjectType
    ) -> list[tuple[Addon, int]]:
        seen: set[str] = set()
        validated = []
        for selection in selections:
            if selection.addon_id in seen:
                raise InvalidCatalogEntryError(f"Addon {selection.addon_id} is listed more than once.")
            if selection.quantity < 1:
                raise InvalidCatalogEntryError(f"Addon {selection.addon_id} needs a quantity of at least 1.")
            seen.add(selection.addon_id)
            addon = self._declared(CatalogKind.ADDON, selection.addon_id, subject_type)
            validated.append((addon, selection.quantity))
        return validated

    async def _remote_price_ids(
        self, kind: CatalogKind, keys: Sequence[tuple[str, SubjectType]], annual: bool
    ) -> dict[tuple[str, SubjectType], str]:
        if not keys:
            return {}
        if kind == CatalogKind.TIER:
            remote = await self.synchronizer.known_tiers()
        else:
            remote = await self.synchronizer.known_addons()
        by_key = {entry.key: entry for entry in remote}

        price_ids = {}
        for key in keys:
            entry = by_key.get(key)
            price_id = entry.price_id_for(annual) if entry else None
            if not price_id:
                interval = BillingInterval.YEAR if annual else BillingInterval.MONTH
                raise NotFoundError(f"{kind.value.capitalize()} {interval.value}ly price", key[0])
            price_ids[key] = price_id
        return price_ids

    # Checkout

    async def create_checkout_session(
        self,
        *,
        tier_id: str,
        subject_type: SubjectType,
        subject_id: str,
        email: str,
        group_id: str | None = None,
        group_name: str | None = None,
        addons: Sequence[AddonSelection] = (),
        annual: bool = False,
        trial_ends_at: datetime | None = None,
        metadata: dict[str, str] | None = None,
    ) -> RemoteObject:
        """
        Create a hosted checkout session for a new subscription.

        Every check runs before anything is written remotely.

        Raises:
            NotFoundError: If the tier, an add-on, or one of their prices is missing
            SubjectTypeMismatchError: If the tier or an add-on belongs to the other subject type
            InvalidCatalogEntryError: If the tier is inactive or not priced
            DuplicateSubscriptionError: If the subject already has a live subscription
        """
        tier = self._declared(CatalogKind.TIER, tier_id, subject_type)
        self._ensure_sellable(tier)
        selected = self._validate_addons(addons, subject_type)
        for addon, _ in selected:
            self._ensure_sellable(addon)

        if subject_type == SubjectType.USER and group_id:
            raise SubjectTypeMismatchError("User subscriptions cannot be created for groups.")
        if subject_type == SubjectType.GROUP and not group_id:
            raise SubjectTypeMismatchError("Group subscriptions must be created for a group.")

        tier_prices = await self._remote_price_ids(CatalogKind.TIER, [tier.key], annual)
        addon_prices = await self._remote_price_ids(
            CatalogKind.ADDON, [addon.key for addon, _ in selected], annual
        )

        existing_customer = await self.customers.get_customer(
            CustomerQuery(subject_id=subject_id, email=email)
        )
        if subject_type == SubjectType.USER:
            if existing_customer is not None:
                user_subscription, _ = await self._subscriptions_of(existing_customer["id"])
                if user_subscription is not None:
                    raise DuplicateSubscriptionError(f"Subject {subject_id} already has a user subscription.")
        elif await self.get_group_subscription(group_id) is not None:
            raise DuplicateSubscriptionError(f"Group {group_id} already has a group subscription.")

        customer = existing_customer or await self.customers.get_or_create_customer(subject_id, email)

        line_items = [{"price": tier_prices[tier.key], "quantity": 1}]
        line_items += [
            {"price": addon_prices[addon.key], "quantity": quantity} for addon, quantity in selected
        ]

        subscription_metadata = {
            **(metadata or {}),
            **SubscriptionMetadata(
                tier_id=tier.id,
                subject_id=subject_id,
                group_id=group_id if subject_type == SubjectType.GROUP else None,
                is_user_sub=subject_type == SubjectType.USER,
                is_annual=annual,
            ).to_metadata(),
        }

        subscription_data: dict[str, Any] = {"metadata": subscription_metadata}
        if subject_type == SubjectType.GROUP:
            subscription_data["description"] = f"Subscription for {group_name or f'group {group_id}'}."

        trial_days = self._trial_days(trial_ends_at)
        if trial_days > 0:
            subscription_data["trial_period_days"] = trial_days
            subscription_data["trial_settings"] = {
                "end_behavior": {"missing_payment_method": "cancel"}
            }

        base_url = self.config.options.redirect_url or DEFAULT_REDIRECT_URL
        session = await self.platform.create_checkout_session(
            {
                "customer": customer["id"],
                "mode": "subscription",
                "client_reference_id": subject_id,
                "allow_promotion_codes": True,
                "line_items": line_items,
                "success_url": f"{base_url}?success=true&subjectId={subject_id}",
                "cancel_url": f"{base_url}?success=false&subjectId={subject_id}",
                "subscription_data": subscription_data,
                "metadata": metadata or {},
                "saved_payment_method_options": {"payment_method_save": "enabled"},
            }
        )
        logger.info(
            f"Created checkout session {session.get('id')} for {subject_type.value} subject "
            f"{subject_id} on tier {tier.id}"
        )
        return session

    @staticmethod
    def _trial_days(trial_ends_at: datetime | None) -> int:
        if trial_ends_at is None:
            return 0
        if trial_ends_at.tzinfo is None:
            trial_ends_at = trial_ends_at.replace(tzinfo=UTC)
        return round((trial_ends_at - datetime.now(UTC)).total_seconds() / SECONDS_PER_DAY)

    # Tier and add-on changes

    async def change_subscription_tier(
        self,
        subscription_id: str,
        new_tier_id: str,
        charge: ChargeOptions = ChargeOptions(),
    ) -> RemoteObject:
        """
        Move a subscription to another tier.

        Returns:
            The updated subscription, or the unchanged one for a no-op request

        Raises:
            NotFoundError: If the subscription, the tier or its main tier item is missing
            SubjectTypeMismatchError: If the tier belongs to the other subject type
            InvalidCatalogEntryError: If the tier is inactive or not priced
        """
        subscription = await self.get_subscription(subscription_id)
        metadata = SubscriptionMetadata.from_metadata(subscription.get("metadata"))
        if metadata.tier_id == new_tier_id:
            logger.info(f"Subscription {subscription_id} is already on tier {new_tier_id}")
            return subscription

        tier: Tier = self._declared(CatalogKind.TIER, new_tier_id, metadata.subject_type)
        self._ensure_sellable(tier)

        items = parse_line_items(subscription.get("items"))
        main_item = next(
            (item for item in items if item.is_catalog(CatalogKind.TIER) and item.catalog_id == metadata.tier_id),
            None,
        ) or find_main_tier_item(items, self.config.tiers)
        if main_item is None:
            raise NotFoundError("Main tier item", subscription_id)

        prices = await self._remote_price_ids(CatalogKind.TIER, [tier.key], metadata.is_annual)

        params = {
            "items": [{"id": main_item.item_id, "price": prices[tier.key], "quantity": 1}],
            "metadata": {**(subscription.get("metadata") or {}), TIER_ID: tier.id},
        }
        logger.info(
            f"Changing subscription {subscription_id} tier {metadata.tier_id} -> {tier.id} "
            f"({charge.charge_type.value})"
        )
        return await self._apply_change(subscription, params, charge)

    async def change_subscription_addons(
        self,
        subscription_id: str,
        addons: Sequence[AddonSelection],
        charge: ChargeOptions = ChargeOptions(),
    ) -> RemoteObject:
        """
        Replace the add-on set of a subscription.

        Add-ons not listed are removed; listed add-ons are added or requantified.

        Returns:
            The updated subscription, or the unchanged one for a no-op request

        Raises:
            NotFoundError: If the subscription, an add-on or its price is missing
            SubjectTypeMismatchError: If an add-on belongs to the other subject type
        """
        subscription = await self.get_subscription(subscription_id)
        metadata = SubscriptionMetadata.from_metadata(subscription.get("metadata"))
        selected = self._validate_addons(addons, metadata.subject_type)

        declared_keys = {addon.key for addon in self.config.addons}
        current = {
            item.catalog_id: item
            for item in parse_line_items(subscription.get("items"))
            if item.is_catalog(CatalogKind.ADDON) and (item.catalog_id, item.subject_type) in declared_keys
        }
        desired = {addon.id: quantity for addon, quantity in selected}

        if desired == {addon_id: item.quantity for addon_id, item in current.items()}:
            logger.info(f"Subscription {subscription_id} already has the requested add-ons")
            return subscription

        for addon, _ in selected:
            if addon.id not in current:
                self._ensure_sellable(addon)

        new_keys = [addon.key for addon, _ in selected if addon.id not in current]
        prices = await self._remote_price_ids(CatalogKind.ADDON, new_keys, metadata.is_annual)

        items: list[dict[str, Any]] = []
        for addon, quantity in selected:
            existing = current.get(addon.id)
            if existing is not None:
                items.append({"id": existing.item_id, "quantity": quantity})
            else:
                items.append({"price": prices[addon.key], "quantity": quantity})
        for addon_id, item in current.items():
            if addon_id not in desired:
                items.append({"id": item.item_id, "deleted": True})

        logger.info(
            f"Changing add-ons of subscription {subscription_id} to {desired} ({charge.charge_type.value})"
        )
        return await self._apply_change(subscription, {"items": items}, charge)

    async def _apply_change(
        self, subscription: RemoteObject, params: dict[str, Any], charge: ChargeOptions
    ) -> RemoteObject:
        subscription_id = subscription["id"]

        if charge.charge_type == ChargeType.END_OF_PERIOD:
            return await self.platform.update_subscription(
                subscription_id, {**params, "proration_behavior": "none"}
            )

        if charge.charge_type == ChargeType.SEND_INVOICE:
            due_days = (
                charge.due_days if charge.due_days is not None else self.config.options.default_due_days
            )
            updated = await self.platform.update_subscription(
                subscription_id,
                {
                    **params,
                    "proration_behavior": "none",
                    "billing_cycle_anchor": "now",
                    "collection_method": "send_invoice",
                    "days_until_due": due_days,
                },
            )
            invoice = await expand(updated.get("latest_invoice"), self.platform.retrieve_invoice)
            if invoice is not None:
                if invoice.get("status") == "draft":
                    invoice = await self.platform.finalize_invoice(invoice["id"])
                await self.platform.send_invoice(invoice["id"])
                logger.info(f"Sent invoice {invoice['id']} due in {due_days} days")

            # Later renewals are charged automatically again
            if subscription.get("collection_method", "charge_automatically") == "charge_automatically":
                updated = await self.platform.update_subscription(
                    subscription_id, {"collection_method": "charge_automatically"}
                )
            return updated

        updated = await self.platform.update_subscription(
            subscription_id, {**params, "proration_behavior": "create_prorations"}
        )
        customer_id = ref_id(subscription.get("customer"))
        invoice = await self.platform.create_invoice(
            {
                "customer": customer_id,
                "subscription": subscription_id,
                "auto_advance": True,
                "collection_method": "charge_automatically",
                "default_payment_method": ref_id(subscription.get("default_payment_method")),
            }
        )
        finalized = await self.platform.finalize_invoice(invoice["id"])
        total = int(finalized.get("total") or 0)

        if total < 0:
            await self.platform.create_customer_balance_transaction(
                customer_id,
                {
                    "amount": -abs(total),
                    "currency": finalized.get("currency") or "usd",
                    "description": f"Proration credit for subscription {subscription_id}",
                },
            )
            await self.bus.emit(
                Debug(
                    message=f"Subscription {subscription_id} has a negative total of {total}, "
                    f"and the customer was credited that amount."
                )
            )
        elif finalized.get("status") == "open":
            await self.platform.pay_invoice(finalized["id"])
        return updated

    # Cancellation, refunds and transfers

    async def cancel_subscription(
        self, subscription_id: str, immediately: bool = False, invoice_now: bool = False
    ) -> RemoteObject:
        """Cancel at period end, or right away when ``immediately`` is set."""
        subscription = await self.get_subscription(subscription_id)
        if subscription.get("status") == "canceled":
            return subscription

        if immediately:
            logger.info(f"Canceling subscription {subscription_id} immediately")
            return await self.platform.cancel_subscription(
                subscription_id, {"invoice_now": invoice_now}
            )
        if subscription.get("cancel_at_period_end"):
            return subscription

        logger.info(f"Canceling subscription {subscription_id} at period end")
        return await self.platform.update_subscription(subscription_id, {"cancel_at_period_end": True})

    async def refund_invoice(self, invoice_id: str, amount: int | None = None) -> RemoteObject:
        try:
            invoice = await self.platform.retrieve_invoice(invoice_id)
        except RemoteObjectNotFoundError:
            raise NotFoundError("Invoice", invoice_id)

        charge_id = ref_id(invoice.get("charge"))
        payment_intent_id = ref_id(invoice.get("payment_intent"))
        if not charge_id and not payment_intent_id:
            raise NotFoundError("Invoice payment", invoice_id)

        params = {"charge": charge_id} if charge_id else {"payment_intent": payment_intent_id}
        refund = await self.platform.create_refund({**params, "amount": amount})
        logger.info(f"Refunded invoice {invoice_id} ({refund.get('id')})")
        return refund

    async def refund_charge(
        self, charge_id: str, amount: int | None = None, reason: str | None = None
    ) -> RemoteObject:
        refund = await self.platform.create_refund(
            {"charge": charge_id, "amount": amount, "reason": reason}
        )
        logger.info(f"Refunded charge {charge_id} ({refund.get('id')})")
        return refund

    async def transfer_group_subscription(
        self, subscription_id: str, new_group_id: str
    ) -> RemoteObject:
        """
        Move a group subscription to another group.

        Raises:
            SubjectTypeMismatchError: If the subscription is a user subscription
            DuplicateSubscriptionError: If the target group already has a live subscription
        """
        subscription = await self.get_subscription(subscription_id)
        metadata = SubscriptionMetadata.from_metadata(subscription.get("metadata"))
        if metadata.is_user_sub:
            raise SubjectTypeMismatchError("User subscriptions cannot be moved to a group.")
        if metadata.group_id == new_group_id:
            return subscription
        if await self.get_group_subscription(new_group_id) is not None:
            raise DuplicateSubscriptionError(f"Group {new_group_id} already has a group subscription.")

        logger.info(
            f"Transferring subscription {subscription_id} from group {metadata.group_id} to {new_group_id}"
        )
        return await self.platform.update_subscription(
            subscription_id,
            {"metadata": {**(subscription.get("metadata") or {}), GROUP_ID: new_group_id}},
        )

    async def list_subscriptions(self, customer_id: str | None = None) -> list[RemoteObject]:
        return await collect(self.platform.list_subscriptions(customer=customer_id))
