"""
Pytest configuration and shared fixtures for backend tests.
"""

import copy
import itertools
import json
import sys
from collections.abc import AsyncGenerator
from pathlib import Path
from typing import Any

# Add backend directory to path for imports
backend_dir = Path(__file__).parent.parent
sys.path.insert(0, str(backend_dir))

import pytest
from httpx import ASGITransport, AsyncClient

# Import after path is set
from adapters.payments.webhook_signature import generate_signature_header, verify_signature
from core.domain.catalog import Addon, BillingInterval, SubjectType, Tier, parse_catalog_tags
from core.domain.config import BillingConfig, BillingOptions
from core.domain.events import BillingEvent
from core.domain.refs import ref_id
from core.exceptions import RemoteObjectNotFoundError
from core.interfaces.services import PaymentPlatform
from services.billing_manager import BillingManager
from services.events import EventBus

WEBHOOK_SECRET = "whsec_testsecret"


class FakePaymentPlatform(PaymentPlatform):
    """
    In-memory payment platform.

    Keeps every object in dictionaries and records each mutating call in
    ``calls`` as ``(method, *args)`` so tests can assert on remote writes.
    Set ``fail[method] = exc`` to make a method raise, or set it to a callable
    taking the call arguments and returning an exception (or None) to fail
    only some calls.
    """

    def __init__(self):
        self.products: dict[str, dict] = {}
        self.prices: dict[str, dict] = {}
        self.subscriptions: dict[str, dict] = {}
        self.invoices: dict[str, dict] = {}
        self.customers: dict[str, dict] = {}
        self.charges: dict[str, dict] = {}
        self.webhook_endpoints: dict[str, dict] = {}
        self.payment_methods: dict[str, list[dict]] = {}
        self.calls: list[tuple] = []
        self.fail: dict[str, Any] = {}
        self.next_invoice_total = 0
        self.closed = False
        self._ids = itertools.count(1)

    # Helpers

    def _id(self, prefix: str) -> str:
        return f"{prefix}_{next(self._ids)}"

    def _maybe_fail(self, method: str, *args) -> None:
        failure = self.fail.get(method)
        if callable(failure):
            failure = failure(*args)
        if failure is not None:
            raise failure

    def _record(self, method: str, *args) -> None:
        self._maybe_fail(method, *args)
        self.calls.append((method, *copy.deepcopy(args)))

    def calls_to(self, method: str) -> list[tuple]:
        return [call for call in self.calls if call[0] == method]

    @property
    def writes(self) -> list[str]:
        return [call[0] for call in self.calls]

    def reset_calls(self) -> None:
        self.calls.clear()

    @staticmethod
    def _get(store: dict, object_id: str | None) -> dict:
        if object_id not in store:
            raise RemoteObjectNotFoundError(f"No such object: {object_id}")
        return copy.deepcopy(store[object_id])

    def find_price(
        self, entry_id: str, subject_type: SubjectType, interval: BillingInterval = BillingInterval.MONTH
    ) -> dict:
        """The active price of a synced catalog entry."""
        for price in self.prices.values():
            tags = parse_catalog_tags(price.get("metadata"))
            if (
                tags
                and tags[0] == entry_id
                and tags[1] == subject_type
                and price["active"]
                and price["recurring"]["interval"] == interval.value
            ):
                return price
        raise LookupError(f"No active {interval.value} price for {entry_id}")

    def add_customer(self, email: str, subject_id: str | None = None) -> dict:
        customer_id = self._id("cus")
        self.customers[customer_id] = {
            "id": customer_id,
            "object": "customer",
            "email": email,
            "name": email,
            "metadata": {"subjectId": subject_id} if subject_id else {},
        }
        return copy.deepcopy(self.customers[customer_id])

    def add_subscription(
        self,
        customer_id: str,
        metadata: dict[str, str],
        items: list[tuple[dict, int]],
        status: str = "active",
        **fields: Any,
    ) -> dict:
        """Store a subscription holding ``(price, quantity)`` items."""
        subscription_id = self._id("sub")
        self.subscriptions[subscription_id] = {
            "id": subscription_id,
            "object": "subscription",
            "customer": customer_id,
            "status": status,
            "metadata": dict(metadata),
            "cancel_at_period_end": False,
            "collection_method": "charge_automatically",
            "items": {
                "object": "list",
                "data": [
                    {"id": self._id("si"), "price": copy.deepcopy(price), "quantity": quantity}
                    for price, quantity in items
                ],
            },
            **fields,
        }
        return copy.deepcopy(self.subscriptions[subscription_id])

    def add_invoice(self, **fields: Any) -> dict:
        invoice_id = fields.pop("id", None) or self._id("in")
        self.invoices[invoice_id] = {"id": invoice_id, "object": "invoice", **fields}
        return copy.deepcopy(self.invoices[invoice_id])

    def add_charge(self, **fields: Any) -> dict:
        charge_id = fields.pop("id", None) or self._id("ch")
        self.charges[charge_id] = {"id": charge_id, "object": "charge", **fields}
        return copy.deepcopy(self.charges[charge_id])

    # Webhooks

    def construct_event(self, payload: bytes, signature: str, secret: str) -> dict:
        verify_signature(payload, signature, secret)
        return json.loads(payload)

    async def list_webhook_endpoints(self):
        for endpoint in list(self.webhook_endpoints.values()):
            yield copy.deepcopy(endpoint)

    async def create_webhook_endpoint(self, url: str, events: list[str]) -> dict:
        self._record("create_webhook_endpoint", url, events)
        endpoint_id = self._id("we")
        self.webhook_endpoints[endpoint_id] = {
            "id": endpoint_id,
            "url": url,
            "enabled_events": list(events),
            "secret": f"whsec_{endpoint_id}",
        }
        return copy.deepcopy(self.webhook_endpoints[endpoint_id])

    async def delete_webhook_endpoint(self, endpoint_id: str) -> None:
        self._record("delete_webhook_endpoint", endpoint_id)
        self.webhook_endpoints.pop(endpoint_id, None)

    # Catalog

    async def list_products(self):
        for product in list(self.products.values()):
            yield copy.deepcopy(product)

    async def create_product(self, params: dict) -> dict:
        self._record("create_product", params)
        product_id = self._id("prod")
        self.products[product_id] = {
            "id": product_id,
            "object": "product",
            "name": params["name"],
            "active": params.get("active", True),
            "metadata": dict(params.get("metadata") or {}),
            "default_price": None,
        }
        return copy.deepcopy(self.products[product_id])

    async def update_product(self, product_id: str, params: dict) -> dict:
        self._record("update_product", product_id, params)
        product = self.products[product_id]
        product.update(copy.deepcopy(params))
        return copy.deepcopy(product)

    async def list_prices(self, product: str | None = None, active: bool | None = None):
        for price in list(self.prices.values()):
            if product is not None and price["product"] != product:
                continue
            if active is not None and price["active"] != active:
                continue
            yield copy.deepcopy(price)

    async def create_price(self, params: dict) -> dict:
        self._record("create_price", params)
        price_id = self._id("price")
        self.prices[price_id] = {
            "id": price_id,
            "object": "price",
            "product": params["product"],
            "unit_amount": params["unit_amount"],
            "currency": params["currency"],
            "recurring": dict(params["recurring"]),
            "active": params.get("active", True),
            "metadata": dict(params.get("metadata") or {}),
            "tax_behavior": params.get("tax_behavior"),
        }
        return copy.deepcopy(self.prices[price_id])

    async def update_price(self, price_id: str, params: dict) -> dict:
        self._record("update_price", price_id, params)
        self.prices[price_id].update(copy.deepcopy(params))
        return copy.deepcopy(self.prices[price_id])

    # Subscriptions

    async def retrieve_subscription(self, subscription_id: str, expand: list[str] | None = None) -> dict:
        self._maybe_fail("retrieve_subscription", subscription_id)
        return self._get(self.subscriptions, subscription_id)

    async def list_subscriptions(self, customer: str | None = None, status: str = "all"):
        for subscription in list(self.subscriptions.values()):
            if customer is not None and ref_id(subscription.get("customer")) != customer:
                continue
            yield copy.deepcopy(subscription)

    async def update_subscription(self, subscription_id: str, params: dict) -> dict:
        self._record("update_subscription", subscription_id, params)
        subscription = self.subscriptions[subscription_id]
        for key, value in params.items():
            if key == "items":
                self._apply_items(subscription, value)
            elif key not in ("proration_behavior", "billing_cycle_anchor"):
                subscription[key] = copy.deepcopy(value)
        return copy.deepcopy(subscription)

    def _apply_items(self, subscription: dict, updates: list[dict]) -> None:
        data = subscription["items"]["data"]
        for update in updates:
            if "id" in update:
                item = next(item for item in data if item["id"] == update["id"])
                if update.get("deleted"):
                    data.remove(item)
                    continue
                if "price" in update:
                    item["price"] = copy.deepcopy(self.prices[update["price"]])
                if "quantity" in update:
                    item["quantity"] = update["quantity"]
            else:
                data.append(
                    {
                        "id": self._id("si"),
                        "price": copy.deepcopy(self.prices[update["price"]]),
                        "quantity": update.get("quantity", 1),
                    }
                )

    async def cancel_subscription(self, subscription_id: str, params: dict | None = None) -> dict:
        self._record("cancel_subscription", subscription_id, params)
        self.subscriptions[subscription_id]["status"] = "canceled"
        return copy.deepcopy(self.subscriptions[subscription_id])

    # Invoices

    async def retrieve_invoice(self, invoice_id: str) -> dict:
        return self._get(self.invoices, invoice_id)

    async def list_invoices(self, customer: str):
        for invoice in list(self.invoices.values()):
            if invoice.get("customer") == customer:
                yield copy.deepcopy(invoice)

    async def create_invoice(self, params: dict) -> dict:
        self._record("create_invoice", params)
        return self.add_invoice(
            status="draft",
            total=self.next_invoice_total,
            currency="usd",
            customer=params.get("customer"),
            subscription=params.get("subscription"),
        )

    async def finalize_invoice(self, invoice_id: str) -> dict:
        self._record("finalize_invoice", invoice_id)
        self.invoices[invoice_id]["status"] = "open"
        return copy.deepcopy(self.invoices[invoice_id])

    async def pay_invoice(self, invoice_id: str) -> dict:
        self._record("pay_invoice", invoice_id)
        self.invoices[invoice_id]["status"] = "paid"
        return copy.deepcopy(self.invoices[invoice_id])

    async def send_invoice(self, invoice_id: str) -> dict:
        self._record("send_invoice", invoice_id)
        return copy.deepcopy(self.invoices[invoice_id])

    # Customers

    async def retrieve_customer(self, customer_id: str) -> dict:
        return self._get(self.customers, customer_id)

    async def list_customers(self, email: str | None = None):
        for customer in list(self.customers.values()):
            if email is None or customer.get("email") == email:
                yield copy.deepcopy(customer)

    async def create_customer(self, params: dict) -> dict:
        self._record("create_customer", params)
        customer_id = self._id("cus")
        self.customers[customer_id] = {"id": customer_id, "object": "customer", **copy.deepcopy(params)}
        return copy.deepcopy(self.customers[customer_id])

    async def update_customer(self, customer_id: str, params: dict) -> dict:
        self._record("update_customer", customer_id, params)
        self.customers[customer_id].update(copy.deepcopy(params))
        return copy.deepcopy(self.customers[customer_id])

    async def create_customer_balance_transaction(self, customer_id: str, params: dict) -> dict:
        self._record("create_customer_balance_transaction", customer_id, params)
        return {"id": self._id("cbtxn"), "customer": customer_id, **params}

    async def list_payment_methods(self, customer: str):
        for method in self.payment_methods.get(customer, []):
            yield copy.deepcopy(method)

    # Charges and refunds

    async def retrieve_charge(self, charge_id: str) -> dict:
        return self._get(self.charges, charge_id)

    async def create_refund(self, params: dict, idempotency_key: str | None = None) -> dict:
        self._record("create_refund", params, idempotency_key)
        return {"id": self._id("re"), "object": "refund", **params}

    # Hosted sessions

    async def create_checkout_session(self, params: dict) -> dict:
        self._record("create_checkout_session", params)
        session_id = self._id("cs")
        return {"id": session_id, "url": f"https://checkout.test/{session_id}", **params}

    async def create_billing_portal_session(self, params: dict) -> dict:
        self._record("create_billing_portal_session", params)
        session_id = self._id("bps")
        return {"id": session_id, "url": f"https://portal.test/{session_id}", **params}

    async def aclose(self) -> None:
        self.closed = True


# Catalog fixtures


@pytest.fixture
def tiers() -> list[Tier]:
    return [
        Tier(id="gold", subject_type=SubjectType.GROUP, name="Gold", price_minor_units=500),
        Tier(id="silver", subject_type=SubjectType.GROUP, name="Silver", price_minor_units=200),
        Tier(id="pro", subject_type=SubjectType.USER, name="Pro", price_minor_units=1000),
        Tier(id="basic", subject_type=SubjectType.USER, name="Basic", price_minor_units=400),
    ]


@pytest.fixture
def addons() -> list[Addon]:
    return [
        Addon(id="seats", subject_type=SubjectType.GROUP, name="Extra seats", price_minor_units=100),
        Addon(id="storage", subject_type=SubjectType.GROUP, name="Storage", price_minor_units=250),
        Addon(id="boost", subject_type=SubjectType.USER, name="Boost", price_minor_units=300),
    ]


@pytest.fixture
def options() -> BillingOptions:
    return BillingOptions()


@pytest.fixture
def billing_config(tiers, addons, options) -> BillingConfig:
    return BillingConfig(
        tiers=tiers,
        addons=addons,
        api_key="sk_test_123",
        webhook_secret=WEBHOOK_SECRET,
        options=options,
    )


@pytest.fixture
def platform() -> FakePaymentPlatform:
    return FakePaymentPlatform()


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def manager(billing_config, platform, bus) -> BillingManager:
    return BillingManager(billing_config, platform, bus)


@pytest.fixture
async def synced_manager(manager, platform) -> BillingManager:
    """A manager whose catalog has been pushed to the fake platform."""
    report = await manager.sync_catalog()
    assert report.ok
    platform.reset_calls()
    return manager


@pytest.fixture
def captured(bus) -> list:
    """Every event emitted on the bus, in order."""
    events: list = []
    bus.on(BillingEvent, events.append)
    return events


# Webhook fixtures


@pytest.fixture
def make_event():
    """Build a platform event envelope."""
    counter = itertools.count(1)

    def _make(event_type: str, obj: dict, previous: dict | None = None, livemode: bool = False) -> dict:
        data: dict[str, Any] = {"object": obj}
        if previous is not None:
            data["previous_attributes"] = previous
        return {
            "id": f"evt_{next(counter)}",
            "object": "event",
            "type": event_type,
            "livemode": livemode,
            "data": data,
        }

    return _make


@pytest.fixture
def sign():
    """Serialize an event and sign it with the test secret."""

    def _sign(event: dict, secret: str = WEBHOOK_SECRET) -> tuple[bytes, str]:
        payload = json.dumps(event).encode()
        return payload, generate_signature_header(payload, secret)

    return _sign


def group_metadata(tier_id: str = "gold", group_id: str = "grp_1", subject_id: str = "owner_1") -> dict:
    return {"tierId": tier_id, "subjectId": subject_id, "groupId": group_id, "isUserSub": "false"}


def user_metadata(tier_id: str = "pro", subject_id: str = "user_1") -> dict:
    return {"tierId": tier_id, "subjectId": subject_id, "isUserSub": "true", "isAnnual": "false"}


@pytest.fixture
def group_subscription(synced_manager, platform):
    """A live gold group subscription with two seats, and its customer."""
    customer = platform.add_customer("owner@example.com", "owner_1")
    gold = platform.find_price("gold", SubjectType.GROUP)
    seats = platform.find_price("seats", SubjectType.GROUP)
    return platform.add_subscription(
        customer["id"],
        group_metadata(),
        [(gold, 1), (seats, 2)],
        default_payment_method="pm_1",
    )


@pytest.fixture
def user_subscription(synced_manager, platform):
    customer = platform.add_customer("user@example.com", "user_1")
    pro = platform.find_price("pro", SubjectType.USER)
    return platform.add_subscription(customer["id"], user_metadata(), [(pro, 1)])



@pytest.fixture
async def async_client(synced_manager) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client against the app, with the synced manager installed."""
    # Import app here so settings are only read when API tests run
    from main import app

    app.state.billing = synced_manager
    # Reset rate limiter state between tests to prevent cross-test 429s
    app.state.limiter.reset()

    transport = ASGITransport(app=app, raise_app_exceptions=False)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.state.billing = None
