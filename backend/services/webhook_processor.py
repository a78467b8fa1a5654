"""
Webhook processing.

Turns verified payment-platform events into typed domain events. Each
delivery is handled on its own: everything needed is read from the event
and, where necessary, from the platform. Nothing is retained between
deliveries, so redelivered or reordered webhooks are safe to process.
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from core.domain.catalog import RemoteAddon, Tier
from core.domain.config import BillingConfig
from core.domain.events import (
    AddonsChanged,
    BillingEvent,
    CollectionMethod,
    DisputeWarning,
    EarlyFraudWarning,
    InvoiceNeedsPayment,
    InvoicePaymentFailed,
    PaymentStatus,
    Subject,
    SubscriptionCanceled,
    SubscriptionCreated,
    SubscriptionDeleted,
    SubscriptionRenewed,
    SubscriptionUpdated,
    TierChanged,
    UnprocessedWebhook,
)
from core.domain.refs import Ref, RemoteObject, expand, ref_id
from core.domain.subscription import SubscriptionMetadata, parse_line_items
from core.exceptions import (
    CatalogReferenceError,
    MetadataContractError,
    PaymentPlatformError,
    WebhookSignatureError,
)
from core.interfaces.services import PaymentPlatform
from services.catalog_sync import CatalogSynchronizer
from services.events import EventBus
from services.line_items import classify_addon_changes, diff_addons, diff_tier, resolve_addons

logger = logging.getLogger(__name__)

HANDLED_EVENT_TYPES = (
    "invoice.paid",
    "invoice.finalized",
    "invoice.payment_failed",
    "invoice.payment_action_required",
    "customer.subscription.updated",
    "customer.subscription.deleted",
    "radar.early_fraud_warning.created",
    "charge.dispute.created",
    "charge.dispute.funds_withdrawn",
)

RESOLVED_INVOICE_STATUSES = frozenset({"paid", "void", "uncollectible"})

DASHBOARD_URL = "https://dashboard.stripe.com"

MSG_OK = "Webhook processed successfully."
MSG_UNHANDLED = "Unhandled webhook"
MSG_MISSING_SUBSCRIPTION = "Missing subscription data."
MSG_SUBSCRIPTION_LOOKUP_FAILED = "Failed to retrieve subscription data."


@dataclass(frozen=True)
class WebhookResult:
    """Outcome of a webhook delivery, mapped to an HTTP response by the caller."""

    status: int
    message: str

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


OK = WebhookResult(200, MSG_OK)


@dataclass
class _SubscriptionContext:
    subscription: RemoteObject
    metadata: SubscriptionMetadata
    subject: Subject
    tier: Tier
    known_addons: list[RemoteAddon]

    @property
    def subscription_id(self) -> str | None:
        return self.subscription.get("id")


def _timestamp(value: Any) -> datetime | None:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), UTC)


def invoice_subscription_ref(invoice: RemoteObject) -> Ref:
    """Locate the subscription of an invoice in either API shape."""
    if invoice.get("subscription"):
        return invoice["subscription"]
    parent = invoice.get("parent") or {}
    details = parent.get("subscription_details") or {}
    return details.get("subscription")


class WebhookProcessor:
    """Verifies webhook deliveries and emits the matching domain events."""

    def __init__(
        self,
        platform: PaymentPlatform,
        config: BillingConfig,
        synchronizer: CatalogSynchronizer,
        bus: EventBus,
    ):
        self.platform = platform
        self.config = config
        self.synchronizer = synchronizer
        self.bus = bus
        self._handlers: dict[str, Callable[[RemoteObject], Awaitable[WebhookResult]]] = {
            "invoice.paid": self._on_invoice_paid,
            "invoice.finalized": self._on_invoice_needs_attention,
            "invoice.payment_failed": self._on_invoice_needs_attention,
            "invoice.payment_action_required": self._on_invoice_needs_attention,
            "customer.subscription.updated": self._on_subscription_updated,
            "customer.subscription.deleted": self._on_subscription_deleted,
            "radar.early_fraud_warning.created": self._on_early_fraud_warning,
            "charge.dispute.created": self._on_dispute_created,
            "charge.dispute.funds_withdrawn": self._on_dispute_funds_withdrawn,
        }

    async def handle(self, payload: bytes | str, signature: str, secret: str) -> WebhookResult:
        """
        Verify and process one webhook delivery.

        Args:
            payload: Raw request body
            signature: Signature header value
            secret: Endpoint signing secret

        Returns:
            WebhookResult describing the outcome

        Raises:
            WebhookSignatureError: If the signature is invalid
            CatalogReferenceError: If the subscription references an undeclared tier
        """
        raw = payload.encode("utf-8") if isinstance(payload, str) else payload
        try:
            event = self.platform.construct_event(raw, signature, secret)
        except WebhookSignatureError as e:
            logger.warning(f"Rejected webhook with invalid signature: {e}")
            await self.bus.emit(UnprocessedWebhook(payload=payload, reason=str(e)))
            raise

        event_type = event.get("type", "")
        log_extra = {"event_id": event.get("id"), "event_type": event_type}
        handler = self._handlers.get(event_type)
        if handler is None:
            logger.info(f"Unhandled webhook type {event_type}", extra=log_extra)
            await self.bus.emit(UnprocessedWebhook(payload=event, reason=MSG_UNHANDLED))
            return WebhookResult(400, MSG_UNHANDLED)

        logger.info(f"Processing webhook {event.get('id')} ({event_type})", extra=log_extra)
        try:
            return await handler(event)
        except MetadataContractError as e:
            logger.warning(f"Rejected webhook {event.get('id')}: {e}", extra=log_extra)
            return WebhookResult(400, str(e))
        except CatalogReferenceError as e:
            logger.error(f"Webhook {event.get('id')} failed [{e.reference}]: {e}", extra=log_extra)
            raise

    # Lookups

    async def _guarded(self, retrieve: Callable[[str], Awaitable[RemoteObject]], ref: Ref) -> RemoteObject | None:
        async def safe(object_id: str) -> RemoteObject | None:
            try:
                return await retrieve(object_id)
            except PaymentPlatformError as e:
                logger.warning(f"Lookup of {object_id} failed, treating as missing: {e}")
                return None

        return await expand(ref, safe)

    async def _subscription(self, ref: Ref) -> RemoteObject | None:
        return await self._guarded(self.platform.retrieve_subscription, ref)

    async def _context(
        self, subscription: RemoteObject, known_addons: list[RemoteAddon] | None = None
    ) -> _SubscriptionContext:
        metadata = SubscriptionMetadata.from_metadata(subscription.get("metadata"))
        tier = self._declared_tier(metadata.tier_id, metadata)
        if known_addons is None:
            known_addons = await self.synchronizer.known_addons()
        return _SubscriptionContext(
            subscription=subscription,
            metadata=metadata,
            subject=Subject(
                subject_type=metadata.subject_type,
                subject_id=metadata.subject_id,
                group_id=metadata.group_id,
            ),
            tier=tier,
            known_addons=known_addons,
        )

    def _declared_tier(self, tier_id: str, metadata: SubscriptionMetadata) -> Tier:
        tier = self.config.find_tier(tier_id, metadata.subject_type)
        if tier is None:
            raise CatalogReferenceError("Tier", tier_id)
        return tier

    def _addons(self, ctx: _SubscriptionContext):
        items = parse_line_items(ctx.subscription.get("items"))
        return resolve_addons(items, ctx.known_addons, ctx.subscription_id)

    def _base_fields(self, ctx: _SubscriptionContext) -> dict[str, Any]:
        return {
            "subject": ctx.subject,
            "tier": ctx.tier,
            "is_annual": ctx.metadata.is_annual,
            "addons": self._addons(ctx),
        }

    async def _emit(self, event: BillingEvent) -> None:
        logger.info(f"Emitting {type(event).__name__}")
        await self.bus.emit(event)

    # Invoice events

    async def _on_invoice_paid(self, event: RemoteObject) -> WebhookResult:
        invoice = event["data"]["object"]
        subscription_ref = invoice_subscription_ref(invoice)
        if not subscription_ref:
            return WebhookResult(400, MSG_MISSING_SUBSCRIPTION)

        subscription = await self._subscription(subscription_ref)
        if subscription is None:
            return WebhookResult(400, MSG_SUBSCRIPTION_LOOKUP_FAILED)

        ctx = await self._context(subscription)
        reason = invoice.get("billing_reason")
        if reason == "subscription_create":
            await self._emit(
                SubscriptionCreated(**self._base_fields(ctx), subscription=subscription, invoice=invoice)
            )
        elif reason == "subscription_cycle":
            await self._emit(
                SubscriptionRenewed(**self._base_fields(ctx), subscription=subscription, invoice=invoice)
            )
        else:
            logger.debug(f"Ignoring paid invoice {invoice.get('id')} with billing reason {reason}")
        return OK

    async def _on_invoice_needs_attention(self, event: RemoteObject) -> WebhookResult:
        invoice = event["data"]["object"]
        status = invoice.get("status")
        if status in RESOLVED_INVOICE_STATUSES:
            logger.info(f"Invoice {invoice.get('id')} is already {status}, nothing to report")
            return OK

        subscription_ref = invoice_subscription_ref(invoice)
        if not subscription_ref:
            return WebhookResult(400, MSG_MISSING_SUBSCRIPTION)

        subscription = await self._subscription(subscription_ref)
        if subscription is None:
            return WebhookResult(400, MSG_SUBSCRIPTION_LOOKUP_FAILED)

        ctx = await self._context(subscription)

        event_type = event["type"]
        if event_type == "invoice.payment_failed":
            payment_status = PaymentStatus.PAYMENT_FAILED
        elif event_type == "invoice.payment_action_required":
            payment_status = PaymentStatus.REQUIRES_ACTION
        else:
            payment_status = PaymentStatus.PENDING_PAYMENT

        hosted_url = invoice.get("hosted_invoice_url")
        try:
            collection_method = CollectionMethod(invoice.get("collection_method"))
        except ValueError:
            collection_method = CollectionMethod.CHARGE_AUTOMATICALLY
        next_attempt = _timestamp(invoice.get("next_payment_attempt"))

        fields = {
            **self._base_fields(ctx),
            "payment_status": payment_status,
            "final_total": int(invoice.get("total") or 0),
            "currency": invoice.get("currency"),
            "attempt_count": int(invoice.get("attempt_count") or 0),
            "auto_handled": (
                collection_method == CollectionMethod.CHARGE_AUTOMATICALLY
                and next_attempt is not None
                and payment_status != PaymentStatus.REQUIRES_ACTION
            ),
            "should_notify": status == "open"
            and (
                payment_status == PaymentStatus.REQUIRES_ACTION
                or (payment_status == PaymentStatus.PAYMENT_FAILED and bool(hosted_url))
            ),
            "collection_method": collection_method,
            "hosted_url": hosted_url,
            "subscription": subscription,
            "invoice": invoice,
        }

        if payment_status == PaymentStatus.PAYMENT_FAILED:
            await self._emit(InvoicePaymentFailed(**fields, next_attempt=next_attempt))
        else:
            await self._emit(InvoiceNeedsPayment(**fields, due_date=_timestamp(invoice.get("due_date"))))
        return OK

    # Subscription events

    async def _on_subscription_updated(self, event: RemoteObject) -> WebhookResult:
        subscription = event["data"].get("object")
        previous = event["data"].get("previous_attributes")
        if not subscription or previous is None:
            return WebhookResult(400, MSG_MISSING_SUBSCRIPTION)

        known_addons = await self.synchronizer.known_addons()
        ctx = await self._context(subscription, known_addons)
        base = self._base_fields(ctx)
        raw = {"subscription": subscription, "previous": previous}

        became_canceled = (
            subscription.get("status") == "canceled"
            and "status" in previous
            and previous["status"] != "canceled"
        )
        scheduled_cancel = bool(subscription.get("cancel_at_period_end")) and (
            previous.get("cancel_at_period_end") is False
        )
        if became_canceled or scheduled_cancel:
            await self._emit(SubscriptionCanceled(**base, **raw))

        new_items = parse_line_items(subscription.get("items"))
        old_items = parse_line_items(previous.get("items")) if previous.get("items") else None

        tier_change = diff_tier(new_items, old_items, self.config.tiers)
        if tier_change:
            new_tier = self._declared_tier(tier_change.new_tier_id, ctx.metadata)
            old_tier = self._declared_tier(tier_change.old_tier_id, ctx.metadata)
            logger.info(
                f"Subscription {ctx.subscription_id} changed tier "
                f"{old_tier.id} -> {new_tier.id}"
            )
            await self._emit(TierChanged(**{**base, "tier": new_tier}, old_tier=old_tier, **raw))

        addons_diff = diff_addons(new_items, old_items, known_addons, ctx.subscription_id)
        if addons_diff:
            await self._emit(
                AddonsChanged(
                    **{**base, "addons": addons_diff.current},
                    previous_addons=addons_diff.previous,
                    addon_updates=classify_addon_changes(addons_diff.current, addons_diff.previous),
                    **raw,
                )
            )

        await self._emit(SubscriptionUpdated(**base, **raw))
        return OK

    async def _on_subscription_deleted(self, event: RemoteObject) -> WebhookResult:
        subscription = await self._subscription(event["data"].get("object"))
        if subscription is None:
            return WebhookResult(400, MSG_SUBSCRIPTION_LOOKUP_FAILED)

        ctx = await self._context(subscription)
        await self._emit(SubscriptionDeleted(**self._base_fields(ctx), subscription=subscription))
        return OK

    # Fraud and disputes

    async def _on_early_fraud_warning(self, event: RemoteObject) -> WebhookResult:
        warning = event["data"]["object"]
        if not warning.get("actionable"):
            logger.info(f"Early fraud warning {warning.get('id')} is not actionable")
            return OK

        charge_id = ref_id(warning.get("charge"))
        await self._emit(
            EarlyFraudWarning(warning=warning, charge_id=charge_id, fraud_type=warning.get("fraud_type"))
        )

        if not charge_id:
            return OK

        charge = await self._guarded(self.platform.retrieve_charge, charge_id)
        if charge is not None and (charge.get("refunded") or charge.get("disputed")):
            logger.info(f"Charge {charge_id} already refunded or disputed, not refunding")
            return OK

        try:
            refund = await self.platform.create_refund(
                {"charge": charge_id, "reason": "fraudulent"},
                idempotency_key=f"efw-{warning.get('id')}",
            )
        except PaymentPlatformError as e:
            if e.code != "charge_already_refunded":
                raise
            logger.info(f"Charge {charge_id} was already refunded: {e}")
            return OK
        logger.info(f"Refunded charge {charge_id} after fraud warning ({refund.get('id')})")
        return OK

    async def _on_dispute_created(self, event: RemoteObject) -> WebhookResult:
        dispute = event["data"]["object"]
        charge = await self._guarded(self.platform.retrieve_charge, dispute.get("charge"))
        mode = "" if dispute.get("livemode") else "test/"
        await self._emit(
            DisputeWarning(
                reason=dispute.get("reason") or "general",
                amount=int(dispute.get("amount") or 0),
                is_refundable=bool(dispute.get("is_charge_refundable")),
                dashboard_url=f"{DASHBOARD_URL}/{mode}disputes/{dispute.get('id')}",
                dispute=dispute,
                charge=charge,
            )
        )
        return OK

    async def _on_dispute_funds_withdrawn(self, event: RemoteObject) -> WebhookResult:
        dispute = event["data"]["object"]
        charge = await self._guarded(self.platform.retrieve_charge, dispute.get("charge"))
        invoice = None
        if charge is not None:
            invoice = await self._guarded(self.platform.retrieve_invoice, charge.get("invoice"))

        subscription_ref = invoice_subscription_ref(invoice) if invoice else None
        if not subscription_ref:
            logger.info(f"Dispute {dispute.get('id')} is not tied to a subscription")
            return OK

        subscription = await self._subscription(subscription_ref)
        if subscription is None:
            return WebhookResult(400, MSG_SUBSCRIPTION_LOOKUP_FAILED)
        if subscription.get("status") == "canceled":
            logger.info(f"Subscription {subscription.get('id')} already canceled")
            return OK

        invoice_now = self.config.options.invoice_all_on_dispute_loss
        await self.platform.cancel_subscription(
            subscription["id"], {"invoice_now": invoice_now, "prorate": False}
        )
        logger.info(
            f"Canceled subscription {subscription['id']} after lost dispute {dispute.get('id')} "
            f"(invoice_now={invoice_now})"
        )
        return OK
