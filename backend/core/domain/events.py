"""
Domain events emitted from webhook deliveries.

Events are transient: they are built per delivery, handed to subscribers and
dropped. A redelivered webhook produces the same events again.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

from core.domain.catalog import AddonWithQuantity, RemoteAddon, SubjectType, Tier
from core.domain.refs import RemoteObject


class WhatHappened(StrEnum):
    """Per-add-on classification in an add-ons change."""

    ADDED = "added"
    REMOVED = "removed"
    UPDATED = "updated"
    NOTHING = "nothing"


class PaymentStatus(StrEnum):
    """Why an invoice needs attention."""

    PAYMENT_FAILED = "payment_failed"
    REQUIRES_ACTION = "requires_action"
    PENDING_PAYMENT = "pending_payment"


class CollectionMethod(StrEnum):
    CHARGE_AUTOMATICALLY = "charge_automatically"
    SEND_INVOICE = "send_invoice"


@dataclass(frozen=True)
class Subject:
    """The user or group a subscription belongs to."""

    subject_type: SubjectType
    subject_id: str
    group_id: str | None = None


@dataclass(frozen=True)
class AddonUpdate:
    what_happened: WhatHappened
    addon: RemoteAddon
    quantity: int


@dataclass(kw_only=True)
class BillingEvent:
    """Base class for everything the event bus carries."""

    pass


@dataclass(kw_only=True)
class SubscriptionEvent(BillingEvent):
    subject: Subject
    tier: Tier
    is_annual: bool = False
    addons: list[AddonWithQuantity] = field(default_factory=list)

    @property
    def subject_type(self) -> SubjectType:
        return self.subject.subject_type


@dataclass(kw_only=True)
class SubscriptionCreated(SubscriptionEvent):
    subscription: RemoteObject
    invoice: RemoteObject


@dataclass(kw_only=True)
class SubscriptionRenewed(SubscriptionEvent):
    subscription: RemoteObject
    invoice: RemoteObject


@dataclass(kw_only=True)
class SubscriptionUpdated(SubscriptionEvent):
    subscription: RemoteObject
    previous: RemoteObject | None = None


@dataclass(kw_only=True)
class SubscriptionCanceled(SubscriptionUpdated):
    pass


@dataclass(kw_only=True)
class TierChanged(SubscriptionUpdated):
    """``tier`` holds the new tier."""

    old_tier: Tier

    @property
    def new_tier(self) -> Tier:
        return self.tier


@dataclass(kw_only=True)
class AddonsChanged(SubscriptionUpdated):
    """``addons`` holds the add-ons currently on the subscription."""

    previous_addons: list[AddonWithQuantity] = field(default_factory=list)
    addon_updates: list[AddonUpdate] = field(default_factory=list)


@dataclass(kw_only=True)
class SubscriptionDeleted(SubscriptionEvent):
    subscription: RemoteObject


@dataclass(kw_only=True)
class InvoiceEvent(SubscriptionEvent):
    payment_status: PaymentStatus
    final_total: int
    currency: str | None
    attempt_count: int
    auto_handled: bool
    should_notify: bool
    collection_method: CollectionMethod
    hosted_url: str | None
    subscription: RemoteObject
    invoice: RemoteObject


@dataclass(kw_only=True)
class InvoiceNeedsPayment(InvoiceEvent):
    due_date: datetime | None = None


@dataclass(kw_only=True)
class InvoicePaymentFailed(InvoiceEvent):
    next_attempt: datetime | None = None


@dataclass(kw_only=True)
class EarlyFraudWarning(BillingEvent):
    warning: RemoteObject
    charge_id: str | None = None
    fraud_type: str | None = None


@dataclass(kw_only=True)
class DisputeWarning(BillingEvent):
    reason: str
    amount: int
    is_refundable: bool
    dashboard_url: str
    dispute: RemoteObject
    charge: RemoteObject | None = None


@dataclass(kw_only=True)
class UnprocessedWebhook(BillingEvent):
    payload: Any
    reason: str = ""


@dataclass(kw_only=True)
class Debug(BillingEvent):
    message: str
