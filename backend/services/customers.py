"""
Customer management.

A remote customer represents the paying subject. Its metadata carries the
subject id, which is how customers are found again from a subject id and an
email address.
"""

import logging
from dataclasses import dataclass

from core.domain.config import BillingConfig
from core.domain.refs import RemoteObject
from core.domain.subscription import SUBJECT_ID
from core.exceptions import NotFoundError, RemoteObjectNotFoundError
from core.interfaces.services import PaymentPlatform, collect

logger = logging.getLogger(__name__)

DEFAULT_REDIRECT_URL = "https://example.com/checkout"


@dataclass(frozen=True)
class CustomerQuery:
    """Identifies a customer by remote id, or by subject id and email."""

    customer_id: str | None = None
    subject_id: str | None = None
    email: str | None = None

    def __post_init__(self):
        if not self.customer_id and not (self.subject_id and self.email):
            raise ValueError("CustomerQuery needs a customer_id, or both subject_id and email")

    def describe(self) -> str:
        return self.customer_id or f"{self.subject_id} <{self.email}>"


class CustomerService:
    """Looks up, creates and updates remote customers."""

    def __init__(self, platform: PaymentPlatform, config: BillingConfig):
        self.platform = platform
        self.config = config

    async def get_customer(self, query: CustomerQuery) -> RemoteObject | None:
        """Return the customer, or None when absent or deleted."""
        if query.customer_id:
            try:
                customer = await self.platform.retrieve_customer(query.customer_id)
            except RemoteObjectNotFoundError:
                return None
        else:
            customer = None
            async for candidate in self.platform.list_customers(email=query.email):
                if (candidate.get("metadata") or {}).get(SUBJECT_ID) == query.subject_id:
                    customer = candidate
                    break

        if customer is None or customer.get("deleted"):
            return None
        return customer

    async def require_customer(self, query: CustomerQuery) -> RemoteObject:
        customer = await self.get_customer(query)
        if customer is None:
            raise NotFoundError("Customer", query.describe())
        return customer

    async def get_or_create_customer(self, subject_id: str, email: str) -> RemoteObject:
        customer = await self.get_customer(CustomerQuery(subject_id=subject_id, email=email))
        if customer is not None:
            return customer

        customer = await self.platform.create_customer(
            {"name": email, "email": email, "metadata": {SUBJECT_ID: subject_id}}
        )
        logger.info(f"Created customer {customer['id']} for subject {subject_id}")
        return customer

    async def update_customer(
        self,
        query: CustomerQuery,
        new_email: str | None = None,
        new_subject_id: str | None = None,
    ) -> RemoteObject:
        """
        Update a customer's email and/or owning subject.

        When the subject changes, every subscription of the customer is
        re-tagged so webhook events resolve to the new subject.

        Raises:
            NotFoundError: If the customer does not exist
        """
        customer = await self.require_customer(query)
        old_subject_id = (customer.get("metadata") or {}).get(SUBJECT_ID)
        subject_id = new_subject_id or old_subject_id
        if not subject_id:
            raise NotFoundError("Customer subject", customer["id"])

        email = new_email or customer.get("email")
        updated = await self.platform.update_customer(
            customer["id"],
            {"email": email, "name": email, "metadata": {SUBJECT_ID: subject_id}},
        )

        if subject_id != old_subject_id:
            async for subscription in self.platform.list_subscriptions(customer=customer["id"]):
                metadata = {**(subscription.get("metadata") or {}), SUBJECT_ID: subject_id}
                await self.platform.update_subscription(subscription["id"], {"metadata": metadata})
                logger.info(
                    f"Moved subscription {subscription['id']} from subject {old_subject_id} to {subject_id}"
                )

        return updated

    async def list_payment_methods(self, query: CustomerQuery) -> list[RemoteObject]:
        customer = await self.require_customer(query)
        return await collect(self.platform.list_payment_methods(customer["id"]))

    async def list_invoices(self, query: CustomerQuery) -> list[RemoteObject]:
        customer = await self.require_customer(query)
        return await collect(self.platform.list_invoices(customer["id"]))

    async def create_payment_method_update_session(self, query: CustomerQuery) -> RemoteObject:
        """Open a billing-portal session that goes straight to updating the payment method."""
        customer = await self.require_customer(query)
        return await self.platform.create_billing_portal_session(
            {
                "customer": customer["id"],
                "return_url": self.config.options.redirect_url or DEFAULT_REDIRECT_URL,
                "flow_data": {"type": "payment_method_update"},
            }
        )
