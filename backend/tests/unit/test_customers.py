"""
Unit tests for customer management.
"""

import pytest

from core.exceptions import NotFoundError
from services.customers import CustomerQuery


class TestCustomerQuery:
    def test_requires_id_or_subject_and_email(self):
        with pytest.raises(ValueError):
            CustomerQuery(subject_id="user_1")

        assert CustomerQuery(customer_id="cus_1").describe() == "cus_1"
        assert CustomerQuery(subject_id="u", email="u@example.com").describe() == "u <u@example.com>"


class TestCustomerService:
    @pytest.mark.asyncio
    async def test_lookup_by_subject_and_email(self, manager, platform):
        """Test that an email shared by several customers resolves by subject id."""
        platform.add_customer("shared@example.com", "user_1")
        wanted = platform.add_customer("shared@example.com", "user_2")

        found = await manager.customers.get_customer(
            CustomerQuery(subject_id="user_2", email="shared@example.com")
        )

        assert found["id"] == wanted["id"]

    @pytest.mark.asyncio
    async def test_missing_and_deleted_customers(self, manager, platform):
        deleted = platform.add_customer("gone@example.com", "user_1")
        platform.customers[deleted["id"]]["deleted"] = True

        assert await manager.customers.get_customer(CustomerQuery(customer_id="cus_missing")) is None
        assert await manager.customers.get_customer(CustomerQuery(customer_id=deleted["id"])) is None
        with pytest.raises(NotFoundError):
            await manager.customers.require_customer(CustomerQuery(customer_id="cus_missing"))

    @pytest.mark.asyncio
    async def test_get_or_create(self, manager, platform):
        created = await manager.customers.get_or_create_customer("user_5", "u5@example.com")
        again = await manager.customers.get_or_create_customer("user_5", "u5@example.com")

        assert created["id"] == again["id"]
        assert platform.writes == ["create_customer"]
        assert created["metadata"] == {"subjectId": "user_5"}

    @pytest.mark.asyncio
    async def test_update_subject_retags_subscriptions(self, manager, platform):
        """Test that moving a customer to a new subject re-tags its subscriptions."""
        customer = platform.add_customer("old@example.com", "user_1")
        subscription = platform.add_subscription(
            customer["id"], {"tierId": "pro", "subjectId": "user_1", "isUserSub": "true"}, []
        )

        updated = await manager.customers.update_customer(
            CustomerQuery(customer_id=customer["id"]), new_email="new@example.com", new_subject_id="user_9"
        )

        assert updated["email"] == "new@example.com"
        assert updated["metadata"] == {"subjectId": "user_9"}
        assert platform.subscriptions[subscription["id"]]["metadata"]["subjectId"] == "user_9"
        assert platform.subscriptions[subscription["id"]]["metadata"]["tierId"] == "pro"

    @pytest.mark.asyncio
    async def test_update_email_only(self, manager, platform):
        customer = platform.add_customer("old@example.com", "user_1")
        platform.add_subscription(customer["id"], {"subjectId": "user_1"}, [])

        await manager.customers.update_customer(
            CustomerQuery(customer_id=customer["id"]), new_email="new@example.com"
        )

        assert platform.writes == ["update_customer"]

    @pytest.mark.asyncio
    async def test_payment_method_update_session(self, manager, platform):
        customer = platform.add_customer("u@example.com", "user_1")

        session = await manager.customers.create_payment_method_update_session(
            CustomerQuery(customer_id=customer["id"])
        )

        assert session["customer"] == customer["id"]
        assert session["flow_data"] == {"type": "payment_method_update"}
        assert session["return_url"] == "https://example.com/checkout"

    @pytest.mark.asyncio
    async def test_list_payment_methods_and_invoices(self, manager, platform):
        customer = platform.add_customer("u@example.com", "user_1")
        platform.payment_methods[customer["id"]] = [{"id": "pm_1"}, {"id": "pm_2"}]
        platform.add_invoice(customer=customer["id"], status="paid")

        query = CustomerQuery(customer_id=customer["id"])

        assert [m["id"] for m in await manager.customers.list_payment_methods(query)] == ["pm_1", "pm_2"]
        assert len(await manager.customers.list_invoices(query)) == 1
