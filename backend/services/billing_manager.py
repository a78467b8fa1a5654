"""
Billing manager.

Entry point for the host application: wires the payment platform, the event
bus and the billing services together and owns the webhook signing secret.

The secret is either configured up front or obtained by ``bootstrap()``,
which registers a webhook endpoint and keeps the secret it returns. Webhooks
are refused until one of the two has happened.
"""

import logging

import httpx

from adapters.payments.stripe_adapter import StripeAdapter
from core.domain.config import BillingConfig
from core.domain.events import BillingEvent
from core.exceptions import ConfigurationError, WebhookSecretNotReadyError
from core.interfaces.services import PaymentPlatform
from infrastructure.config.catalog import build_billing_config
from infrastructure.config.settings import Settings
from services.catalog_sync import CatalogSynchronizer, SyncReport
from services.customers import CustomerService
from services.events import EventBus
from services.subscriptions import SubscriptionService
from services.webhook_processor import HANDLED_EVENT_TYPES, WebhookProcessor, WebhookResult

logger = logging.getLogger(__name__)


class BillingManager:
    """Facade over catalog sync, webhook processing and subscription operations."""

    def __init__(self, config: BillingConfig, platform: PaymentPlatform, bus: EventBus | None = None):
        """
        Args:
            config: Declared catalog and options
            platform: Payment platform client
            bus: Event bus to emit on (a new one by default)

        Raises:
            ConfigurationError: If there is neither a webhook secret nor a URL to bootstrap one
        """
        if not config.webhook_secret and not config.webhook_url:
            raise ConfigurationError(
                "A webhook secret or a webhook URL to register an endpoint at is required"
            )

        self.config = config
        self.platform = platform
        self.bus = bus or EventBus()
        self.catalog = CatalogSynchronizer(platform, config)
        self.customers = CustomerService(platform, config)
        self.subscriptions = SubscriptionService(
            platform, config, self.catalog, self.customers, self.bus
        )
        self.processor = WebhookProcessor(platform, config, self.catalog, self.bus)
        self._webhook_secret: str | None = config.webhook_secret

    # Events

    def on(self, event_type: type[BillingEvent], handler, subject_type=None):
        return self.bus.on(event_type, handler, subject_type)

    def once(self, event_type: type[BillingEvent], handler, subject_type=None):
        return self.bus.once(event_type, handler, subject_type)

    def off(self, event_type: type[BillingEvent], handler=None) -> None:
        self.bus.off(event_type, handler)

    # Webhook secret

    @property
    def is_ready(self) -> bool:
        return self._webhook_secret is not None

    @property
    def webhook_secret(self) -> str:
        if self._webhook_secret is None:
            raise WebhookSecretNotReadyError("Webhook secret is not available; call bootstrap() first")
        return self._webhook_secret

    async def bootstrap(self) -> None:
        """
        Register the webhook endpoint and keep its signing secret.

        Does nothing when a secret is already known. An endpoint previously
        registered at the same URL is replaced, since its secret cannot be
        read back.
        """
        if self.is_ready:
            return

        url = self.config.webhook_url
        async for endpoint in self.platform.list_webhook_endpoints():
            if endpoint.get("url") == url:
                await self.platform.delete_webhook_endpoint(endpoint["id"])

        endpoint = await self.platform.create_webhook_endpoint(url, list(HANDLED_EVENT_TYPES))
        secret = endpoint.get("secret")
        if not secret:
            raise ConfigurationError(f"Webhook endpoint {endpoint.get('id')} returned no signing secret")

        self._webhook_secret = secret
        logger.info(f"Registered webhook endpoint {endpoint.get('id')} at {url}")

    # Operations

    async def handle_webhook(self, payload: bytes | str, signature: str) -> WebhookResult:
        """
        Raises:
            WebhookSecretNotReadyError: If no signing secret is known yet
            WebhookSignatureError: If the signature is invalid
        """
        return await self.processor.handle(payload, signature, self.webhook_secret)

    async def sync_catalog(self) -> SyncReport:
        return await self.catalog.sync()

    async def aclose(self) -> None:
        await self.platform.aclose()


def create_billing_manager(
    settings: Settings, platform: PaymentPlatform | None = None
) -> BillingManager:
    """
    Build a manager from settings.

    Args:
        settings: Application settings
        platform: Payment platform client (a Stripe adapter with a shared HTTP client by default)

    Returns:
        BillingManager instance
    """
    config = build_billing_config(settings)
    if platform is None:
        client_kwargs = {}
        if settings.stripe_timeout is not None:
            client_kwargs["timeout"] = settings.stripe_timeout
        platform = StripeAdapter(
            api_key=settings.stripe_api_key,
            api_base=settings.stripe_api_base,
            api_version=settings.stripe_api_version,
            timeout=settings.stripe_timeout,
            client=httpx.AsyncClient(**client_kwargs),
        )
    return BillingManager(config, platform)
