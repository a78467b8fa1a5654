"""
Stripe billing adapter for catalog and subscription management.

Talks to the Stripe REST API directly over httpx: form-encoded requests,
cursor pagination, and webhook signature verification.
"""

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any
from urllib.parse import urlencode

import httpx

from adapters.payments.webhook_signature import DEFAULT_TOLERANCE_SECONDS, verify_signature
from core.domain.refs import RemoteObject
from core.exceptions import PaymentPlatformError, RemoteObjectNotFoundError, WebhookSignatureError
from core.interfaces.services import PaymentPlatform
from infrastructure.config.settings import settings

logger = logging.getLogger(__name__)

PAGE_SIZE = 100


# Custom Exceptions
class StripeError(PaymentPlatformError):
    """Base exception for Stripe adapter errors."""

    pass


class StripeAPIError(StripeError):
    """Raised when the Stripe API returns an error."""

    def __init__(self, message: str, status_code: int | None = None, code: str | None = None):
        super().__init__(message, code=code)
        self.status_code = status_code


class StripeAuthError(StripeError):
    """Raised when API authentication fails."""

    pass


class StripeNotFoundError(StripeAPIError, RemoteObjectNotFoundError):
    """Raised when the requested object does not exist."""

    pass


def encode_form_data(params: dict[str, Any], prefix: str | None = None) -> list[tuple[str, str]]:
    """
    Flatten nested parameters into Stripe's bracketed form encoding.

    ``{"metadata": {"a": "1"}, "items": [{"price": "p"}]}`` becomes
    ``metadata[a]=1`` and ``items[0][price]=p``. None values are skipped and
    booleans are sent as ``true``/``false``.
    """
    pairs: list[tuple[str, str]] = []
    for key, value in params.items():
        name = f"{prefix}[{key}]" if prefix else str(key)
        pairs.extend(_encode_value(name, value))
    return pairs


def _encode_value(name: str, value: Any) -> list[tuple[str, str]]:
    if value is None:
        return []
    if isinstance(value, dict):
        return encode_form_data(value, name)
    if isinstance(value, (list, tuple)):
        pairs: list[tuple[str, str]] = []
        for index, item in enumerate(value):
            pairs.extend(_encode_value(f"{name}[{index}]", item))
        return pairs
    if isinstance(value, bool):
        return [(name, "true" if value else "false")]
    return [(name, str(value))]


class StripeAdapter(PaymentPlatform):
    """
    Stripe API adapter for subscription billing.

    When constructed with an ``httpx.AsyncClient`` the adapter reuses it for
    every request and closes it in ``aclose``; otherwise a short-lived client
    is opened per request.
    """

    API_BASE_URL = "https://api.stripe.com/v1"

    def __init__(
        self,
        api_key: str | None = None,
        api_base: str | None = None,
        api_version: str | None = None,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
        tolerance: int = DEFAULT_TOLERANCE_SECONDS,
    ):
        """
        Initialize Stripe adapter.

        Args:
            api_key: Stripe secret key (defaults to settings)
            api_base: API base URL (defaults to settings)
            api_version: Pinned ``Stripe-Version`` header, if any
            timeout: Request timeout in seconds; httpx's default applies when unset
            client: Shared HTTP client
            tolerance: Accepted webhook signature age in seconds
        """
        self.api_key = api_key or settings.stripe_api_key
        self.api_base = (api_base or settings.stripe_api_base or self.API_BASE_URL).rstrip("/")
        self.api_version = api_version or settings.stripe_api_version
        self.timeout = timeout if timeout is not None else settings.stripe_timeout
        self.tolerance = tolerance
        self._client = client

        if not self.api_key:
            logger.warning("Stripe API key not configured. Set stripe_api_key in settings.")

    def _get_headers(self, idempotency_key: str | None = None) -> dict[str, str]:
        """Get HTTP headers for API requests."""
        if not self.api_key:
            raise StripeAuthError("Stripe API key not configured. Set stripe_api_key in settings.")

        headers = {
            "Accept": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }
        if self.api_version:
            headers["Stripe-Version"] = self.api_version
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    @asynccontextmanager
    async def _client_context(self):
        if self._client is not None:
            yield self._client
            return

        kwargs: dict[str, Any] = {}
        if self.timeout is not None:
            kwargs["timeout"] = self.timeout
        async with httpx.AsyncClient(**kwargs) as client:
            yield client

    async def _make_request(
        self,
        method: str,
        endpoint: str,
        params: dict[str, Any] | None = None,
        idempotency_key: str | None = None,
    ) -> dict[str, Any]:
        """
        Make HTTP request to the Stripe API.

        Args:
            method: HTTP method (GET, POST, DELETE)
            endpoint: API endpoint path
            params: Query parameters for GET and DELETE, form body otherwise
            idempotency_key: Optional idempotency key for POST requests

        Returns:
            API response as dictionary

        Raises:
            StripeAuthError: If the key is missing or rejected
            StripeNotFoundError: If the object does not exist
            StripeAPIError: If the API request fails
        """
        url = f"{self.api_base}/{endpoint}"
        headers = self._get_headers(idempotency_key)
        pairs = encode_form_data(params or {})

        request_kwargs: dict[str, Any] = {"headers": headers}
        if method in ("GET", "DELETE"):
            request_kwargs["params"] = pairs
        elif pairs:
            headers["Content-Type"] = "application/x-www-form-urlencoded"
            request_kwargs["content"] = urlencode(pairs)

        try:
            async with self._client_context() as client:
                logger.debug(f"Making {method} request to {endpoint}")
                response = await client.request(method, url, **request_kwargs)
        except httpx.RequestError as e:
            logger.error(f"HTTP request error: {e}")
            raise StripeAPIError(f"Request failed: {e}")

        if response.is_error:
            self._raise_for_error(response, endpoint)

        if response.status_code == 204 or not response.content:
            return {}
        return response.json()

    def _raise_for_error(self, response: httpx.Response, endpoint: str) -> None:
        message = f"HTTP {response.status_code}"
        code = None
        try:
            error = response.json().get("error") or {}
            message = error.get("message") or message
            code = error.get("code")
        except ValueError:
            pass

        logger.error(f"Stripe API error on {endpoint}: {message}")
        if response.status_code == 401:
            raise StripeAuthError(f"Authentication failed: {message}")
        if response.status_code == 404:
            raise StripeNotFoundError(message, status_code=404, code=code)
        raise StripeAPIError(f"API request failed: {message}", status_code=response.status_code, code=code)

    async def paginate(
        self, endpoint: str, params: dict[str, Any] | None = None
    ) -> AsyncIterator[list[RemoteObject]]:
        """
        Yield pages of a list endpoint, following the ``starting_after`` cursor.

        Each iteration of the returned generator starts again from the first page.
        """
        query = dict(params or {})
        query.setdefault("limit", PAGE_SIZE)
        while True:
            response = await self._make_request("GET", endpoint, query)
            page = response.get("data") or []
            if page:
                yield page
            if not response.get("has_more") or not page:
                return
            query["starting_after"] = page[-1]["id"]

    async def _iterate(
        self, endpoint: str, params: dict[str, Any] | None = None
    ) -> AsyncIterator[RemoteObject]:
        async for page in self.paginate(endpoint, params):
            for item in page:
                yield item

    # Webhooks

    def construct_event(self, payload: bytes, signature: str, secret: str) -> RemoteObject:
        if isinstance(payload, str):
            payload = payload.encode("utf-8")
        verify_signature(payload, signature, secret, tolerance=self.tolerance)
        try:
            event = json.loads(payload)
        except ValueError as e:
            raise WebhookSignatureError(f"Invalid webhook payload: {e}")
        logger.info(f"Verified webhook event {event.get('id')} ({event.get('type')})")
        return event

    def list_webhook_endpoints(self) -> AsyncIterator[RemoteObject]:
        return self._iterate("webhook_endpoints")

    async def create_webhook_endpoint(self, url: str, events: list[str]) -> RemoteObject:
        logger.info(f"Registering webhook endpoint at {url}")
        return await self._make_request(
            "POST", "webhook_endpoints", {"url": url, "enabled_events": events}
        )

    async def delete_webhook_endpoint(self, endpoint_id: str) -> None:
        logger.info(f"Deleting webhook endpoint {endpoint_id}")
        await self._make_request("DELETE", f"webhook_endpoints/{endpoint_id}")

    # Catalog

    def list_products(self) -> AsyncIterator[RemoteObject]:
        return self._iterate("products")

    async def create_product(self, params: dict[str, Any]) -> RemoteObject:
        return await self._make_request("POST", "products", params)

    async def update_product(self, product_id: str, params: dict[str, Any]) -> RemoteObject:
        return await self._make_request("POST", f"products/{product_id}", params)

    def list_prices(
        self, product: str | None = None, active: bool | None = None
    ) -> AsyncIterator[RemoteObject]:
        return self._iterate("prices", {"product": product, "active": active})

    async def create_price(self, params: dict[str, Any]) -> RemoteObject:
        return await self._make_request("POST", "prices", params)

    async def update_price(self, price_id: str, params: dict[str, Any]) -> RemoteObject:
        return await self._make_request("POST", f"prices/{price_id}", params)

    # Subscriptions

    async def retrieve_subscription(
        self, subscription_id: str, expand: list[str] | None = None
    ) -> RemoteObject:
        return await self._make_request(
            "GET", f"subscriptions/{subscription_id}", {"expand": expand}
        )

    def list_subscriptions(
        self, customer: str | None = None, status: str = "all"
    ) -> AsyncIterator[RemoteObject]:
        return self._iterate("subscriptions", {"customer": customer, "status": status})

    async def update_subscription(
        self, subscription_id: str, params: dict[str, Any]
    ) -> RemoteObject:
        return await self._make_request("POST", f"subscriptions/{subscription_id}", params)

    async def cancel_subscription(
        self, subscription_id: str, params: dict[str, Any] | None = None
    ) -> RemoteObject:
        return await self._make_request("DELETE", f"subscriptions/{subscription_id}", params)

    # Invoices

    async def retrieve_invoice(self, invoice_id: str) -> RemoteObject:
        return await self._make_request("GET", f"invoices/{invoice_id}")

    def list_invoices(self, customer: str) -> AsyncIterator[RemoteObject]:
        return self._iterate("invoices", {"customer": customer})

    async def create_invoice(self, params: dict[str, Any]) -> RemoteObject:
        return await self._make_request("POST", "invoices", params)

    async def finalize_invoice(self, invoice_id: str) -> RemoteObject:
        return await self._make_request("POST", f"invoices/{invoice_id}/finalize")

    async def pay_invoice(self, invoice_id: str) -> RemoteObject:
        return await self._make_request("POST", f"invoices/{invoice_id}/pay")

    async def send_invoice(self, invoice_id: str) -> RemoteObject:
        return await self._make_request("POST", f"invoices/{invoice_id}/send")

    # Customers

    async def retrieve_customer(self, customer_id: str) -> RemoteObject:
        return await self._make_request("GET", f"customers/{customer_id}")

    def list_customers(self, email: str | None = None) -> AsyncIterator[RemoteObject]:
        return self._iterate("customers", {"email": email})

    async def create_customer(self, params: dict[str, Any]) -> RemoteObject:
        return await self._make_request("POST", "customers", params)

    async def update_customer(self, customer_id: str, params: dict[str, Any]) -> RemoteObject:
        return await self._make_request("POST", f"customers/{customer_id}", params)

    async def create_customer_balance_transaction(
        self, customer_id: str, params: dict[str, Any]
    ) -> RemoteObject:
        return await self._make_request(
            "POST", f"customers/{customer_id}/balance_transactions", params
        )

    def list_payment_methods(self, customer: str) -> AsyncIterator[RemoteObject]:
        return self._iterate(f"customers/{customer}/payment_methods")

    # Charges and refunds

    async def retrieve_charge(self, charge_id: str) -> RemoteObject:
        return await self._make_request("GET", f"charges/{charge_id}")

    async def create_refund(
        self, params: dict[str, Any], idempotency_key: str | None = None
    ) -> RemoteObject:
        return await self._make_request("POST", "refunds", params, idempotency_key=idempotency_key)

    # Hosted sessions

    async def create_checkout_session(self, params: dict[str, Any]) -> RemoteObject:
        return await self._make_request("POST", "checkout/sessions", params)

    async def create_billing_portal_session(self, params: dict[str, Any]) -> RemoteObject:
        return await self._make_request("POST", "billing_portal/sessions", params)

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()


# Factory function for easy instantiation
def create_stripe_adapter(
    api_key: str | None = None,
    api_base: str | None = None,
    api_version: str | None = None,
    timeout: float | None = None,
    client: httpx.AsyncClient | None = None,
) -> StripeAdapter:
    """
    Create a Stripe adapter instance.

    Args:
        api_key: Stripe secret key (defaults to settings)
        api_base: API base URL (defaults to settings)
        api_version: Pinned API version (defaults to settings)
        timeout: Request timeout in seconds (defaults to settings)
        client: Shared HTTP client

    Returns:
        StripeAdapter instance
    """
    return StripeAdapter(
        api_key=api_key,
        api_base=api_base,
        api_version=api_version,
        timeout=timeout,
        client=client,
    )
