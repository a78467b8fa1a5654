"""
Service layer for business logic.
"""

from services.billing_manager import BillingManager, create_billing_manager
from services.catalog_sync import CatalogSynchronizer, SyncReport
from services.customers import CustomerQuery, CustomerService
from services.events import EventBus
from services.subscriptions import SubscriptionService
from services.webhook_processor import WebhookProcessor, WebhookResult

__all__ = [
    "BillingManager",
    "CatalogSynchronizer",
    "CustomerQuery",
    "CustomerService",
    "EventBus",
    "SubscriptionService",
    "SyncReport",
    "WebhookProcessor",
    "WebhookResult",
    "create_billing_manager",
]
