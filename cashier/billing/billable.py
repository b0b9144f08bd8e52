"""Billable façade: charges, invoices, cards and entitlement checks for one owner."""

import logging
from collections.abc import Iterable, Sequence
from typing import Any

import stripe

from cashier.billing.builder import SubscriptionBuilder
from cashier.billing.contracts import BillableEntity, PaymentGateway, SubscriptionStore
from cashier.billing.invoice import Invoice
from cashier.config import Settings, settings
from cashier.database import utcnow
from cashier.exceptions import GatewayError, InvalidArgument, NotFound
from cashier.models.subscription import Subscription
from cashier.services import subscription_service

logger = logging.getLogger(__name__)

DEFAULT_SUBSCRIPTION = "default"

# Stripe error codes meaning the customer has nothing pending to invoice
NOTHING_TO_INVOICE_CODES = {
    "invoice_no_customer_line_items",
    "invoice_no_subscription_line_items",
}


class Billable:
    """Billing operations for a single billable entity.

    The owner only needs the ``BillableEntity`` attributes; persistence goes
    through the store and every remote call through the gateway.
    """

    def __init__(
        self,
        owner: BillableEntity,
        *,
        gateway: PaymentGateway,
        store: SubscriptionStore,
        config: Settings | None = None,
    ) -> None:
        self.owner = owner
        self.gateway = gateway
        self.store = store
        self.config = config or settings

    # -- one-off charges -------------------------------------------------

    async def charge(self, amount: int, options: dict[str, Any] | None = None) -> stripe.Charge:
        """Make a "one off" charge on the customer for the given amount (in cents)."""
        params = {"currency": self.preferred_currency(), **(options or {})}
        params["amount"] = amount

        if "source" not in params and self.owner.stripe_id:
            params["customer"] = self.owner.stripe_id

        if "source" not in params and "customer" not in params:
            raise InvalidArgument("No payment source provided.")

        return await self.gateway.create_charge(params)

    async def refund(self, charge_id: str, options: dict[str, Any] | None = None) -> stripe.Refund:
        return await self.gateway.create_refund({**(options or {}), "charge": charge_id})

    # -- invoices --------------------------------------------------------

    async def invoice_for(
        self,
        description: str,
        amount: int,
        options: dict[str, Any] | None = None,
    ) -> Invoice | bool:
        """Add a pending invoice item and invoice it right away."""
        if not self.owner.stripe_id:
            raise InvalidArgument(
                "User is not a Stripe customer. See create_as_stripe_customer()."
            )

        params = {
            "customer": self.owner.stripe_id,
            "amount": amount,
            "currency": self.preferred_currency(),
            "description": description,
            **(options or {}),
        }
        await self.gateway.create_invoice_item(params)
        return await self.invoice()

    async def invoice(self) -> Invoice | bool:
        """Invoice the owner outside of the regular billing cycle.

        Returns False when Stripe reports there is nothing to invoice, True
        when the owner is not a Stripe customer yet. Other gateway errors
        propagate.
        """
        if not self.owner.stripe_id:
            return True

        try:
            stripe_invoice = await self.gateway.create_invoice(self.owner.stripe_id)
        except GatewayError as e:
            if e.code in NOTHING_TO_INVOICE_CODES:
                logger.info("Nothing to invoice for customer %s", self.owner.stripe_id)
                return False
            raise
        return Invoice(self.owner, stripe_invoice, self.config)

    async def upcoming_invoice(self) -> Invoice | None:
        """Preview of the next invoice; None when Stripe has none (or fails)."""
        if not self.owner.stripe_id:
            return None
        try:
            stripe_invoice = await self.gateway.retrieve_upcoming_invoice(self.owner.stripe_id)
        except GatewayError as e:
            logger.debug("No upcoming invoice for %s: %s", self.owner.stripe_id, e.message)
            return None
        return Invoice(self.owner, stripe_invoice, self.config)

    async def find_invoice(self, invoice_id: str) -> Invoice | None:
        """Find one of the owner's invoices by ID.

        Any gateway error yields None, as does an invoice that belongs to
        another customer. Use ``find_invoice_or_fail`` to get an error instead.
        """
        try:
            stripe_invoice = await self.gateway.retrieve_invoice(invoice_id)
        except GatewayError as e:
            logger.debug("Invoice %s lookup failed: %s", invoice_id, e.message)
            return None

        if getattr(stripe_invoice, "customer", None) != self.owner.stripe_id:
            logger.warning(
                "Invoice %s does not belong to customer %s", invoice_id, self.owner.stripe_id
            )
            return None
        return Invoice(self.owner, stripe_invoice, self.config)

    async def find_invoice_or_fail(self, invoice_id: str) -> Invoice:
        invoice = await self.find_invoice(invoice_id)
        if invoice is None:
            raise NotFound(f"Invoice {invoice_id} not found")
        return invoice

    async def invoices(
        self,
        include_pending: bool = False,
        parameters: dict[str, Any] | None = None,
    ) -> list[Invoice]:
        """The owner's invoices, newest first; paid only unless pending is requested."""
        if not self.owner.stripe_id:
            return []

        params = {"limit": self.config.cashier_invoice_limit, **(parameters or {})}
        stripe_invoices = await self.gateway.list_invoices(self.owner.stripe_id, params)

        return [
            Invoice(self.owner, stripe_invoice, self.config)
            for stripe_invoice in stripe_invoices
            if include_pending or getattr(stripe_invoice, "status", None) == "paid"
        ]

    async def invoices_including_pending(
        self, parameters: dict[str, Any] | None = None
    ) -> list[Invoice]:
        return await self.invoices(True, parameters)

    # -- subscriptions ---------------------------------------------------

    def new_subscription(self, name: str, plan: str) -> SubscriptionBuilder:
        """Begin creating a new subscription."""
        return SubscriptionBuilder(self, name, plan)

    async def subscription(self, name: str = DEFAULT_SUBSCRIPTION) -> Subscription | None:
        return await self.store.find_by_owner_and_name(self.owner.id, name)

    async def subscriptions(self) -> Sequence[Subscription]:
        return await self.store.find_all_by_owner(self.owner.id)

    async def subscription_or_fail(self, name: str = DEFAULT_SUBSCRIPTION) -> Subscription:
        subscription = await self.subscription(name)
        if subscription is None:
            raise NotFound(f"No {name!r} subscription for user {self.owner.id}")
        return subscription

    def on_generic_trial(self) -> bool:
        """Determine if the owner is on a trial that is not tied to a subscription."""
        return self.owner.trial_ends_at is not None and utcnow() < self.owner.trial_ends_at

    async def on_trial(self, name: str | None = None, plan: str | None = None) -> bool:
        """Determine if the owner is on trial.

        Called without arguments, a generic trial counts too.
        """
        if name is None and plan is None and self.on_generic_trial():
            return True

        subscription = await self.subscription(name or DEFAULT_SUBSCRIPTION)
        if subscription is None or not subscription.on_trial():
            return False
        return plan is None or subscription.has_plan(plan)

    async def subscribed(self, name: str = DEFAULT_SUBSCRIPTION, plan: str | None = None) -> bool:
        """Determine if the owner has a valid subscription (optionally on a plan)."""
        subscription = await self.subscription(name)
        if subscription is None or not subscription.valid():
            return False
        return plan is None or subscription.has_plan(plan)

    async def subscribed_to_plan(
        self, plans: str | Iterable[str], name: str = DEFAULT_SUBSCRIPTION
    ) -> bool:
        """Determine if the named subscription is valid and on one of the given plans."""
        if isinstance(plans, str):
            plans = [plans]
        subscription = await self.subscription(name)
        if subscription is None or not subscription.valid():
            return False
        return subscription.has_any_plan(plans)

    async def on_plan(self, plan: str) -> bool:
        """Determine if any of the owner's subscriptions is valid on the given plan."""
        return any(
            subscription.has_plan(plan) and subscription.valid()
            for subscription in await self.subscriptions()
        )

    async def cancel(
        self, name: str = DEFAULT_SUBSCRIPTION, *, immediately: bool | None = None
    ) -> Subscription:
        subscription = await self.subscription_or_fail(name)
        return await subscription_service.cancel(
            self.gateway, self.store, subscription, immediately=immediately, config=self.config
        )

    async def resume(self, name: str = DEFAULT_SUBSCRIPTION) -> Subscription:
        subscription = await self.subscription_or_fail(name)
        return await subscription_service.resume(
            self.gateway, self.store, subscription, config=self.config
        )

    async def swap(
        self, plan: str, name: str = DEFAULT_SUBSCRIPTION, *, prorate: bool | None = None
    ) -> Subscription:
        subscription = await self.subscription_or_fail(name)
        return await subscription_service.swap(
            self.gateway, self.store, subscription, plan, prorate=prorate, config=self.config
        )

    # -- customer and card -----------------------------------------------

    def has_stripe_id(self) -> bool:
        return self.owner.stripe_id is not None

    def has_card_on_file(self) -> bool:
        return bool(self.owner.card_brand)

    async def as_stripe_customer(self) -> stripe.Customer:
        """Get the Stripe customer (with sources and subscriptions expanded)."""
        if not self.owner.stripe_id:
            raise InvalidArgument(
                "User is not a Stripe customer. See create_as_stripe_customer()."
            )
        return await self.gateway.retrieve_customer(self.owner.stripe_id)

    async def create_as_stripe_customer(
        self,
        token: str | None = None,
        options: dict[str, Any] | None = None,
    ) -> stripe.Customer:
        """Create the Stripe customer, store its ID, then attach the card.

        The customer ID is committed before the card step: a failure there
        leaves a customer without a card, which ``update_card`` can repair.
        """
        params = dict(options or {})
        params.setdefault("email", self.owner.email)
        params.setdefault("metadata", {"cashier_user_id": str(self.owner.id)})

        customer = await self.gateway.create_customer(params)

        self.owner.stripe_id = customer.id
        await self.store.save_owner(self.owner, durable=True)
        logger.info("Linked Stripe customer %s to user %s", customer.id, self.owner.id)

        if token is not None:
            await self.update_card(token)

        return customer

    async def update_card(self, token: str) -> None:
        """Make the card behind ``token`` the customer's default source.

        A card already on file (same fingerprint) is reused, with its expiry
        refreshed when it changed, instead of being attached twice.
        """
        customer = await self.as_stripe_customer()
        stripe_token = await self.gateway.retrieve_token(token)
        card = getattr(stripe_token, "card", None)
        if card is None:
            raise InvalidArgument("Token does not carry a card")

        existing = None
        for source in await self.gateway.list_customer_sources(customer.id):
            if getattr(source, "fingerprint", None) == card.fingerprint:
                existing = source
                break

        if existing is None:
            source = await self.gateway.create_customer_source(customer.id, token)
            logger.info("Attached new card %s to customer %s", source.id, customer.id)
        elif existing.exp_month != card.exp_month or existing.exp_year != card.exp_year:
            source = await self.gateway.update_customer_source(
                customer.id,
                existing.id,
                {"exp_month": card.exp_month, "exp_year": card.exp_year},
            )
            logger.info("Updated expiry of card %s for customer %s", existing.id, customer.id)
        else:
            source = existing

        await self.gateway.update_customer(customer.id, {"default_source": source.id})
        await self.update_card_from_stripe()

    async def update_card_from_stripe(self) -> "Billable":
        """Copy brand and last four of the default source back to the owner."""
        customer = await self.as_stripe_customer()

        default_card = None
        sources = getattr(customer, "sources", None)
        for card in sources.data if sources else []:
            if card.id == customer.default_source:
                default_card = card
                break

        if default_card is not None:
            self.owner.card_brand = default_card.brand
            self.owner.card_last_four = default_card.last4
        else:
            self.owner.card_brand = None
            self.owner.card_last_four = None
        await self.store.save_owner(self.owner)
        return self

    async def apply_coupon(self, coupon: str) -> stripe.Customer:
        """Apply a coupon to the Stripe customer."""
        customer = await self.as_stripe_customer()
        return await self.gateway.update_customer(customer.id, {"coupon": coupon})

    # -- configuration ---------------------------------------------------

    def preferred_currency(self) -> str:
        return self.config.cashier_currency

    def tax_rates(self) -> list[str]:
        """Tax rate IDs applied to new subscriptions."""
        return list(self.config.cashier_default_tax_rates)
