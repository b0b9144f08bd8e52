"""Tests for the Billable façade with a mocked Stripe gateway."""

from datetime import timedelta
from types import SimpleNamespace
from unittest.mock import call

import pytest

from cashier.billing.billable import Billable
from cashier.billing.invoice import Invoice
from cashier.database import utcnow
from cashier.exceptions import GatewayError, InvalidArgument, NotFound
from cashier.models.subscription import Subscription
from cashier.models.user import User
from cashier.services.subscription_store import SqlAlchemySubscriptionStore


class _StripeObj(SimpleNamespace):
    """SimpleNamespace with bracket notation support (like Stripe API objects)."""

    def __getitem__(self, key: str):
        return getattr(self, key)


def _card(card_id: str, fingerprint: str, exp_month: int = 12, exp_year: int = 2030,
          brand: str = "Visa", last4: str = "4242") -> SimpleNamespace:
    return SimpleNamespace(
        id=card_id, fingerprint=fingerprint, exp_month=exp_month, exp_year=exp_year,
        brand=brand, last4=last4,
    )


def _token(fingerprint: str, exp_month: int = 12, exp_year: int = 2030) -> SimpleNamespace:
    return SimpleNamespace(
        id="tok_test",
        card=SimpleNamespace(fingerprint=fingerprint, exp_month=exp_month, exp_year=exp_year),
    )


def _customer(customer_id: str, cards: list, default_source: str | None) -> SimpleNamespace:
    return SimpleNamespace(
        id=customer_id, default_source=default_source, sources=SimpleNamespace(data=cards)
    )


def _invoice(invoice_id: str, customer: str, status: str = "paid", total: int = 1000) -> SimpleNamespace:
    return SimpleNamespace(
        id=invoice_id, customer=customer, status=status, total=total, subtotal=total,
        starting_balance=0, created=1700000000,
    )


async def _add_subscription(
    store: SqlAlchemySubscriptionStore, user: User, name: str, plan: str, **kwargs
) -> Subscription:
    return await store.insert(
        Subscription(
            user_id=user.id,
            name=name,
            stripe_id=f"sub_{name}_{plan}",
            stripe_plan=plan,
            quantity=1,
            **kwargs,
        )
    )


# ---------------------------------------------------------------------------
# Charges and refunds
# ---------------------------------------------------------------------------


class TestCharge:
    """Test one-off charges."""

    @pytest.mark.asyncio
    async def test_charge_customer(self, customer_billable: Billable, gateway):
        await customer_billable.charge(2500)

        gateway.create_charge.assert_awaited_once_with(
            {"currency": "eur", "amount": 2500, "customer": customer_billable.owner.stripe_id}
        )

    @pytest.mark.asyncio
    async def test_charge_with_explicit_source(self, billable: Billable, gateway):
        await billable.charge(900, {"source": "tok_visa", "currency": "usd"})

        gateway.create_charge.assert_awaited_once_with(
            {"currency": "usd", "source": "tok_visa", "amount": 900}
        )

    @pytest.mark.asyncio
    async def test_charge_without_source_or_customer(self, billable: Billable, gateway):
        with pytest.raises(InvalidArgument):
            await billable.charge(900)
        gateway.create_charge.assert_not_called()

    @pytest.mark.asyncio
    async def test_refund(self, customer_billable: Billable, gateway):
        await customer_billable.refund("ch_123", {"amount": 500})

        gateway.create_refund.assert_awaited_once_with({"amount": 500, "charge": "ch_123"})


# ---------------------------------------------------------------------------
# Invoices
# ---------------------------------------------------------------------------


class TestInvoicing:
    """Test invoice_for, invoice and lookups."""

    @pytest.mark.asyncio
    async def test_invoice_for_requires_customer(self, billable: Billable, gateway):
        with pytest.raises(InvalidArgument):
            await billable.invoice_for("Setup fee", 5000)
        gateway.create_invoice_item.assert_not_called()

    @pytest.mark.asyncio
    async def test_invoice_for(self, customer_billable: Billable, gateway):
        stripe_id = customer_billable.owner.stripe_id
        gateway.create_invoice.return_value = _invoice("in_1", stripe_id)

        result = await customer_billable.invoice_for("Setup fee", 5000)

        gateway.create_invoice_item.assert_awaited_once_with(
            {"customer": stripe_id, "amount": 5000, "currency": "eur", "description": "Setup fee"}
        )
        gateway.create_invoice.assert_awaited_once_with(stripe_id)
        assert isinstance(result, Invoice)
        assert result.id == "in_1"

    @pytest.mark.asyncio
    async def test_invoice_nothing_to_invoice(self, customer_billable: Billable, gateway):
        gateway.create_invoice.side_effect = GatewayError(
            "Nothing to invoice for customer", code="invoice_no_customer_line_items", http_status=400
        )

        assert await customer_billable.invoice() is False

    @pytest.mark.asyncio
    async def test_invoice_other_error_propagates(self, customer_billable: Billable, gateway):
        gateway.create_invoice.side_effect = GatewayError(
            "Your card was declined.", code="card_declined", http_status=402
        )

        with pytest.raises(GatewayError):
            await customer_billable.invoice()

    @pytest.mark.asyncio
    async def test_invoice_without_customer(self, billable: Billable, gateway):
        assert await billable.invoice() is True
        gateway.create_invoice.assert_not_called()

    @pytest.mark.asyncio
    async def test_find_invoice(self, customer_billable: Billable, gateway):
        gateway.retrieve_invoice.return_value = _invoice("in_1", customer_billable.owner.stripe_id)

        invoice = await customer_billable.find_invoice("in_1")
        assert invoice is not None
        assert invoice.total() == "€10.00"

    @pytest.mark.asyncio
    async def test_find_invoice_swallows_gateway_error(self, customer_billable: Billable, gateway):
        gateway.retrieve_invoice.side_effect = GatewayError("No such invoice", code="resource_missing")

        assert await customer_billable.find_invoice("in_missing") is None

    @pytest.mark.asyncio
    async def test_find_invoice_of_other_customer(self, customer_billable: Billable, gateway):
        gateway.retrieve_invoice.return_value = _invoice("in_1", "cus_someone_else")

        assert await customer_billable.find_invoice("in_1") is None
        with pytest.raises(NotFound):
            await customer_billable.find_invoice_or_fail("in_1")

    @pytest.mark.asyncio
    async def test_upcoming_invoice(self, customer_billable: Billable, gateway):
        gateway.retrieve_upcoming_invoice.return_value = _invoice(
            "upcoming", customer_billable.owner.stripe_id, status="draft"
        )
        assert (await customer_billable.upcoming_invoice()).id == "upcoming"

        gateway.retrieve_upcoming_invoice.side_effect = GatewayError("No upcoming invoices")
        assert await customer_billable.upcoming_invoice() is None

    @pytest.mark.asyncio
    async def test_invoices_filters_pending(self, customer_billable: Billable, gateway):
        stripe_id = customer_billable.owner.stripe_id
        gateway.list_invoices.return_value = [
            _invoice("in_paid", stripe_id),
            _invoice("in_open", stripe_id, status="open"),
        ]

        paid = await customer_billable.invoices()
        everything = await customer_billable.invoices_including_pending({"limit": 5})

        assert [i.id for i in paid] == ["in_paid"]
        assert [i.id for i in everything] == ["in_paid", "in_open"]
        assert gateway.list_invoices.await_args_list == [
            call(stripe_id, {"limit": 24}),
            call(stripe_id, {"limit": 5}),
        ]


# ---------------------------------------------------------------------------
# Entitlement
# ---------------------------------------------------------------------------


class TestEntitlement:
    """Test trial, subscribed and plan checks."""

    @pytest.mark.asyncio
    async def test_generic_trial_without_subscription(self, billable: Billable, test_user: User):
        test_user.trial_ends_at = utcnow() + timedelta(days=7)

        assert billable.on_generic_trial() is True
        assert await billable.on_trial() is True
        assert await billable.on_trial("default") is False
        assert await billable.subscribed("default") is False

    @pytest.mark.asyncio
    async def test_expired_generic_trial(self, billable: Billable, test_user: User):
        test_user.trial_ends_at = utcnow() - timedelta(days=1)
        assert billable.on_generic_trial() is False
        assert await billable.on_trial() is False

    @pytest.mark.asyncio
    async def test_subscription_trial_with_plan(self, billable: Billable, store, test_user: User):
        await _add_subscription(
            store, test_user, "default", "price_pro", trial_ends_at=utcnow() + timedelta(days=3)
        )

        assert await billable.on_trial("default", "price_pro") is True
        assert await billable.on_trial("default", "price_basic") is False

    @pytest.mark.asyncio
    async def test_subscribed_respects_grace_period(self, billable: Billable, store, test_user: User):
        subscription = await _add_subscription(
            store, test_user, "default", "price_pro", ends_at=utcnow() + timedelta(days=2)
        )
        assert await billable.subscribed() is True

        subscription.ends_at = utcnow() - timedelta(seconds=1)
        assert await billable.subscribed() is False

    @pytest.mark.asyncio
    async def test_on_plan_agrees_with_subscribed_to_plan(self, billable: Billable, store, test_user: User):
        await _add_subscription(store, test_user, "default", "price_pro")

        assert await billable.subscribed_to_plan(["price_pro"], "default") is True
        assert await billable.on_plan("price_pro") is True
        assert await billable.subscribed_to_plan("price_basic") is False
        assert await billable.on_plan("price_basic") is False

    @pytest.mark.asyncio
    async def test_on_plan_checks_every_name(self, billable: Billable, store, test_user: User):
        await _add_subscription(
            store, test_user, "default", "price_pro", ends_at=utcnow() - timedelta(days=1)
        )
        await _add_subscription(store, test_user, "addons", "price_pro")

        assert await billable.subscribed_to_plan("price_pro", "default") is False
        assert await billable.subscribed_to_plan(["price_basic", "price_pro"], "addons") is True
        assert await billable.on_plan("price_pro") is True

    @pytest.mark.asyncio
    async def test_facade_cancel_and_resume(self, billable: Billable, store, test_user: User, gateway):
        await _add_subscription(store, test_user, "default", "price_pro")
        gateway.update_subscription.return_value = _StripeObj(
            status="active", current_period_end=1893456000, items=None,
        )
        gateway.resume_subscription.return_value = SimpleNamespace(status="active")

        cancelled = await billable.cancel()
        assert cancelled.on_grace_period() is True
        assert await billable.subscribed() is True

        resumed = await billable.resume()
        assert resumed.cancelled() is False

    @pytest.mark.asyncio
    async def test_facade_lifecycle_missing_subscription(self, billable: Billable):
        with pytest.raises(NotFound):
            await billable.cancel("missing")


# ---------------------------------------------------------------------------
# Customer and card
# ---------------------------------------------------------------------------


class TestCustomerAndCard:
    """Test customer creation, card updates and coupons."""

    @pytest.mark.asyncio
    async def test_create_as_stripe_customer_without_token(self, billable: Billable, gateway, test_user: User):
        gateway.create_customer.return_value = SimpleNamespace(id="cus_created")

        customer = await billable.create_as_stripe_customer(options={"name": "Billable User"})

        assert customer.id == "cus_created"
        assert test_user.stripe_id == "cus_created"
        assert billable.has_stripe_id() is True
        params = gateway.create_customer.await_args.args[0]
        assert params["email"] == test_user.email
        assert params["name"] == "Billable User"
        gateway.retrieve_token.assert_not_called()

    @pytest.mark.asyncio
    async def test_update_card_rejects_token_without_card(self, customer_billable: Billable, gateway):
        stripe_id = customer_billable.owner.stripe_id
        gateway.retrieve_customer.return_value = _customer(stripe_id, [], None)
        gateway.retrieve_token.return_value = SimpleNamespace(id="btok_1", type="bank_account", card=None)

        with pytest.raises(InvalidArgument, match="does not carry a card"):
            await customer_billable.update_card("btok_1")

        gateway.list_customer_sources.assert_not_called()
        gateway.update_customer.assert_not_called()
        assert customer_billable.owner.card_brand == "Visa"

    @pytest.mark.asyncio
    async def test_customer_id_kept_when_card_step_fails(
        self, billable: Billable, gateway, test_user: User, store
    ):
        """The customer id is persisted before the card is attached."""
        gateway.create_customer.return_value = SimpleNamespace(id="cus_no_card")
        gateway.retrieve_customer.return_value = _customer("cus_no_card", [], None)
        gateway.retrieve_token.side_effect = GatewayError("No such token", code="resource_missing")

        with pytest.raises(GatewayError):
            await billable.create_as_stripe_customer("tok_bad")

        saved = await store.find_owner_by_stripe_id("cus_no_card")
        assert saved is not None
        assert saved.card_brand is None

    @pytest.mark.asyncio
    async def test_update_card_existing_fingerprint_new_expiry(self, customer_billable: Billable, gateway):
        """Same card with a new expiry is updated in place, not attached twice."""
        stripe_id = customer_billable.owner.stripe_id
        existing = _card("card_existing", "fp_same", exp_month=1, exp_year=2026)
        gateway.retrieve_customer.return_value = _customer(stripe_id, [existing], "card_existing")
        gateway.retrieve_token.return_value = _token("fp_same", exp_month=9, exp_year=2031)
        gateway.list_customer_sources.return_value = [_card("card_other", "fp_other"), existing]
        gateway.update_customer_source.return_value = _card(
            "card_existing", "fp_same", exp_month=9, exp_year=2031
        )

        await customer_billable.update_card("tok_test")

        gateway.update_customer_source.assert_awaited_once_with(
            stripe_id, "card_existing", {"exp_month": 9, "exp_year": 2031}
        )
        gateway.create_customer_source.assert_not_called()
        gateway.update_customer.assert_awaited_once_with(stripe_id, {"default_source": "card_existing"})
        assert customer_billable.owner.card_brand == "Visa"
        assert customer_billable.owner.card_last_four == "4242"

    @pytest.mark.asyncio
    async def test_update_card_existing_unchanged(self, customer_billable: Billable, gateway):
        stripe_id = customer_billable.owner.stripe_id
        existing = _card("card_existing", "fp_same")
        gateway.retrieve_customer.return_value = _customer(stripe_id, [existing], "card_existing")
        gateway.retrieve_token.return_value = _token("fp_same")
        gateway.list_customer_sources.return_value = [existing]

        await customer_billable.update_card("tok_test")

        gateway.update_customer_source.assert_not_called()
        gateway.create_customer_source.assert_not_called()
        gateway.update_customer.assert_awaited_once_with(stripe_id, {"default_source": "card_existing"})

    @pytest.mark.asyncio
    async def test_update_card_new_card(self, customer_billable: Billable, gateway):
        stripe_id = customer_billable.owner.stripe_id
        new_card = _card("card_new", "fp_new", brand="MasterCard", last4="4444")
        gateway.retrieve_customer.return_value = _customer(stripe_id, [new_card], "card_new")
        gateway.retrieve_token.return_value = _token("fp_new")
        gateway.list_customer_sources.return_value = [_card("card_old", "fp_old")]
        gateway.create_customer_source.return_value = new_card

        await customer_billable.update_card("tok_test")

        gateway.create_customer_source.assert_awaited_once_with(stripe_id, "tok_test")
        gateway.update_customer.assert_awaited_once_with(stripe_id, {"default_source": "card_new"})
        assert customer_billable.owner.card_brand == "MasterCard"
        assert customer_billable.owner.card_last_four == "4444"
        assert customer_billable.has_card_on_file() is True

    @pytest.mark.asyncio
    async def test_card_sync_clears_without_default_source(self, customer_billable: Billable, gateway):
        gateway.retrieve_customer.return_value = _customer(
            customer_billable.owner.stripe_id, [_card("card_1", "fp_1")], None
        )

        await customer_billable.update_card_from_stripe()

        assert customer_billable.owner.card_brand is None
        assert customer_billable.owner.card_last_four is None
        assert customer_billable.has_card_on_file() is False

    @pytest.mark.asyncio
    async def test_update_card_requires_customer(self, billable: Billable, gateway):
        with pytest.raises(InvalidArgument):
            await billable.update_card("tok_test")
        gateway.retrieve_token.assert_not_called()

    @pytest.mark.asyncio
    async def test_apply_coupon(self, customer_billable: Billable, gateway):
        stripe_id = customer_billable.owner.stripe_id
        gateway.retrieve_customer.return_value = _customer(stripe_id, [], None)

        await customer_billable.apply_coupon("SPRING")

        gateway.update_customer.assert_awaited_once_with(stripe_id, {"coupon": "SPRING"})
        assert customer_billable.owner.card_brand == "Visa"
