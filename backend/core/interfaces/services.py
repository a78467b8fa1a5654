"""Service interfaces for external integrations."""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Any, TypeVar

from core.domain.refs import RemoteObject

T = TypeVar("T")


async def collect(items: AsyncIterator[T], limit: int | None = None) -> list[T]:
    """Materialize an async item stream, optionally stopping after ``limit`` items."""
    result: list[T] = []
    async for item in items:
        result.append(item)
        if limit is not None and len(result) >= limit:
            break
    return result


class PaymentPlatform(ABC):
    """
    Abstract contract for the remote payment platform.

    Objects are exchanged as plain dictionaries in the platform's own object
    model. ``list_*`` methods return lazy async item streams; the
    implementation pages through the remote collection as they are consumed.
    """

    # Webhooks

    @abstractmethod
    def construct_event(self, payload: bytes, signature: str, secret: str) -> RemoteObject:
        """
        Verify a webhook signature and parse the event.

        Raises:
            WebhookSignatureError: If the signature does not match the payload
        """
        ...

    @abstractmethod
    def list_webhook_endpoints(self) -> AsyncIterator[RemoteObject]: ...

    @abstractmethod
    async def create_webhook_endpoint(self, url: str, events: list[str]) -> RemoteObject: ...

    @abstractmethod
    async def delete_webhook_endpoint(self, endpoint_id: str) -> None: ...

    # Catalog

    @abstractmethod
    def list_products(self) -> AsyncIterator[RemoteObject]: ...

    @abstractmethod
    async def create_product(self, params: dict[str, Any]) -> RemoteObject: ...

    @abstractmethod
    async def update_product(self, product_id: str, params: dict[str, Any]) -> RemoteObject: ...

    @abstractmethod
    def list_prices(
        self, product: str | None = None, active: bool | None = None
    ) -> AsyncIterator[RemoteObject]: ...

    @abstractmethod
    async def create_price(self, params: dict[str, Any]) -> RemoteObject: ...

    @abstractmethod
    async def update_price(self, price_id: str, params: dict[str, Any]) -> RemoteObject: ...

    # Subscriptions

    @abstractmethod
    async def retrieve_subscription(
        self, subscription_id: str, expand: list[str] | None = None
    ) -> RemoteObject: ...

    @abstractmethod
    def list_subscriptions(
        self, customer: str | None = None, status: str = "all"
    ) -> AsyncIterator[RemoteObject]: ...

    @abstractmethod
    async def update_subscription(
        self, subscription_id: str, params: dict[str, Any]
    ) -> RemoteObject: ...

    @abstractmethod
    async def cancel_subscription(
        self, subscription_id: str, params: dict[str, Any] | None = None
    ) -> RemoteObject: ...

    # Invoices

    @abstractmethod
    async def retrieve_invoice(self, invoice_id: str) -> RemoteObject: ...

    @abstractmethod
    def list_invoices(self, customer: str) -> AsyncIterator[RemoteObject]: ...

    @abstractmethod
    async def create_invoice(self, params: dict[str, Any]) -> RemoteObject: ...

    @abstractmethod
    async def finalize_invoice(self, invoice_id: str) -> RemoteObject: ...

    @abstractmethod
    async def pay_invoice(self, invoice_id: str) -> RemoteObject: ...

    @abstractmethod
    async def send_invoice(self, invoice_id: str) -> RemoteObject: ...

    # Customers

    @abstractmethod
    async def retrieve_customer(self, customer_id: str) -> RemoteObject: ...

    @abstractmethod
    def list_customers(self, email: str | None = None) -> AsyncIterator[RemoteObject]: ...

    @abstractmethod
    async def create_customer(self, params: dict[str, Any]) -> RemoteObject: ...

    @abstractmethod
    async def update_customer(self, customer_id: str, params: dict[str, Any]) -> RemoteObject: ...

    @abstractmethod
    async def create_customer_balance_transaction(
        self, customer_id: str, params: dict[str, Any]
    ) -> RemoteObject: ...

    @abstractmethod
    def list_payment_methods(self, customer: str) -> AsyncIterator[RemoteObject]: ...

    # Charges and refunds

    @abstractmethod
    async def retrieve_charge(self, charge_id: str) -> RemoteObject: ...

    @abstractmethod
    async def create_refund(
        self, params: dict[str, Any], idempotency_key: str | None = None
    ) -> RemoteObject: ...

    # Hosted sessions

    @abstractmethod
    async def create_checkout_session(self, params: dict[str, Any]) -> RemoteObject: ...

    @abstractmethod
    async def create_billing_portal_session(self, params: dict[str, Any]) -> RemoteObject: ...

    async def aclose(self) -> None:
        """Release any held connections."""
        return None
