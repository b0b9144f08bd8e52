"""Fluent builder that creates a Stripe subscription and its local mirror."""

import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from cashier.database import naive_to_ts, utcnow
from cashier.exceptions import DuplicateSubscription, InvalidArgument
from cashier.models.subscription import Subscription
from cashier.services.subscription_service import proration_behavior

if TYPE_CHECKING:
    from cashier.billing.billable import Billable

logger = logging.getLogger(__name__)


class SubscriptionBuilder:
    """Collects options for a new subscription, then ``create()`` commits it.

    Usage::

        subscription = await (
            billable.new_subscription("default", "price_pro")
            .trial_days(14)
            .with_coupon("LAUNCH")
            .create(token="tok_visa")
        )
    """

    def __init__(self, billable: "Billable", name: str, plan: str) -> None:
        self.billable = billable
        self.name = name
        self.plan = plan

        self._quantity = 1
        self._trial_expires: datetime | None = None
        self._skip_trial = False
        self._coupon: str | None = None
        self._metadata: dict[str, str] = {}
        self._prorate: bool | None = None
        self._tax_rates: list[str] | None = None

    # -- modifiers -------------------------------------------------------

    def quantity(self, quantity: int) -> "SubscriptionBuilder":
        if quantity < 1:
            raise InvalidArgument("quantity must be >= 1")
        self._quantity = quantity
        return self

    def trial_days(self, days: int) -> "SubscriptionBuilder":
        self._trial_expires = utcnow() + timedelta(days=days)
        return self

    def trial_until(self, trial_until: datetime) -> "SubscriptionBuilder":
        self._trial_expires = trial_until
        return self

    def skip_trial(self) -> "SubscriptionBuilder":
        """Bill immediately, ignoring any configured trial."""
        self._skip_trial = True
        return self

    def with_coupon(self, coupon: str) -> "SubscriptionBuilder":
        self._coupon = coupon
        return self

    def with_metadata(self, metadata: dict[str, str]) -> "SubscriptionBuilder":
        self._metadata = dict(metadata)
        return self

    def prorate(self) -> "SubscriptionBuilder":
        self._prorate = True
        return self

    def no_prorate(self) -> "SubscriptionBuilder":
        self._prorate = False
        return self

    def with_tax_rates(self, tax_rates: list[str]) -> "SubscriptionBuilder":
        self._tax_rates = list(tax_rates)
        return self

    # -- terminal --------------------------------------------------------

    def trial_end(self) -> datetime | None:
        """Explicit trial > plan default from settings > none."""
        if self._skip_trial:
            return None
        if self._trial_expires is not None:
            return self._trial_expires
        days = self.billable.config.cashier_plan_trial_days.get(self.plan)
        if days:
            return utcnow() + timedelta(days=days)
        return None

    def build_payload(self, customer_id: str, trial_end: datetime | None) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "customer": customer_id,
            "items": [{"price": self.plan, "quantity": self._quantity}],
            "proration_behavior": proration_behavior(self._prorate, self.billable.config),
            "metadata": {**self._metadata, "cashier_subscription_name": self.name},
        }
        if self._skip_trial:
            payload["trial_end"] = "now"
        elif trial_end is not None:
            payload["trial_end"] = naive_to_ts(trial_end)

        if self._coupon:
            payload["discounts"] = [{"coupon": self._coupon}]

        tax_rates = self._tax_rates if self._tax_rates is not None else self.billable.tax_rates()
        if tax_rates:
            payload["default_tax_rates"] = tax_rates
        return payload

    async def add(self, customer_options: dict[str, Any] | None = None) -> Subscription:
        """Create the subscription using the card already on file."""
        return await self.create(None, customer_options)

    async def create(
        self,
        token: str | None = None,
        customer_options: dict[str, Any] | None = None,
    ) -> Subscription:
        """Create the remote subscription, then persist the local row.

        No local row is written when Stripe rejects the subscription. When
        Stripe accepts it but the store does not, the remote id is logged for
        reconciliation and the store error propagates.
        """
        owner = self.billable.owner
        store = self.billable.store

        existing = await store.find_by_owner_and_name(owner.id, self.name)
        if existing is not None and not existing.ended():
            raise DuplicateSubscription(owner.id, self.name)

        customer_id = await self._get_stripe_customer(token, customer_options)
        trial_end = self.trial_end()

        stripe_sub = await self.billable.gateway.create_subscription(
            self.build_payload(customer_id, trial_end)
        )

        values = {
            "stripe_id": stripe_sub.id,
            "stripe_plan": self.plan,
            "stripe_status": getattr(stripe_sub, "status", None) or "active",
            "quantity": self._quantity,
            "trial_ends_at": trial_end,
            "ends_at": None,
        }
        try:
            if existing is not None:
                subscription = await store.revive(existing, **values)
            else:
                subscription = await store.insert(
                    Subscription(user_id=owner.id, name=self.name, **values)
                )
        except Exception:
            logger.error(
                "Orphaned Stripe subscription %s for customer %s: local %r record was not stored, reconcile it",
                stripe_sub.id,
                customer_id,
                self.name,
            )
            raise

        logger.info(
            "Created subscription %s (%s) on %s for user %s",
            subscription.stripe_id,
            self.name,
            self.plan,
            owner.id,
        )
        return subscription

    async def _get_stripe_customer(
        self, token: str | None, options: dict[str, Any] | None
    ) -> str:
        owner = self.billable.owner
        if not owner.stripe_id:
            customer = await self.billable.create_as_stripe_customer(token, options)
            return customer.id
        if token:
            await self.billable.update_card(token)
        return owner.stripe_id
