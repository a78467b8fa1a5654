# Domain Entities
# Pure business objects with no external dependencies
from .catalog import (
    Addon,
    AddonSelection,
    AddonWithQuantity,
    BillingInterval,
    CatalogKind,
    RemoteAddon,
    RemoteTier,
    SubjectType,
    Tier,
)
from .config import BillingConfig, BillingOptions
from .events import (
    AddonsChanged,
    AddonUpdate,
    BillingEvent,
    Debug,
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
    WhatHappened,
)
from .subscription import ChargeOptions, ChargeType, LineItem, SubscriptionMetadata

__all__ = [
    "Addon",
    "AddonSelection",
    "AddonWithQuantity",
    "AddonUpdate",
    "AddonsChanged",
    "BillingConfig",
    "BillingEvent",
    "BillingInterval",
    "BillingOptions",
    "CatalogKind",
    "ChargeOptions",
    "ChargeType",
    "Debug",
    "DisputeWarning",
    "EarlyFraudWarning",
    "InvoiceNeedsPayment",
    "InvoicePaymentFailed",
    "LineItem",
    "PaymentStatus",
    "RemoteAddon",
    "RemoteTier",
    "SubjectType",
    "Subject",
    "SubscriptionCanceled",
    "SubscriptionCreated",
    "SubscriptionDeleted",
    "SubscriptionMetadata",
    "SubscriptionRenewed",
    "SubscriptionUpdated",
    "Tier",
    "TierChanged",
    "UnprocessedWebhook",
    "WhatHappened",
]
