"""Collaborator interfaces the billing core depends on."""

import uuid
from collections.abc import Sequence
from datetime import datetime
from typing import Any, Protocol

import stripe

from cashier.models.subscription import Subscription


class BillableEntity(Protocol):
    """Anything that can own a Stripe customer and subscriptions.

    ``BillableMixin`` provides these columns for SQLAlchemy models.
    """

    id: uuid.UUID
    email: str
    stripe_id: str | None
    card_brand: str | None
    card_last_four: str | None
    trial_ends_at: datetime | None


class SubscriptionStore(Protocol):
    """Persistence for subscriptions and the billing fields of their owners."""

    async def find_by_owner_and_name(self, owner_id: uuid.UUID, name: str) -> Subscription | None:
        ...

    async def find_all_by_owner(self, owner_id: uuid.UUID) -> Sequence[Subscription]:
        """Every subscription of the owner, most recently created first."""

    async def find_by_stripe_id(self, stripe_id: str) -> Subscription | None:
        ...

    async def find_owner_by_stripe_id(self, stripe_customer_id: str) -> BillableEntity | None:
        ...

    async def insert(self, subscription: Subscription) -> Subscription:
        """Persist a new row; raises DuplicateSubscription on (owner, name) conflict."""

    async def revive(self, subscription: Subscription, **values: Any) -> Subscription:
        """Overwrite an ended row; raises DuplicateSubscription if it changed meanwhile."""

    async def update(self, subscription: Subscription) -> Subscription:
        ...

    async def save_owner(self, owner: BillableEntity, *, durable: bool = False) -> None:
        """Persist billing fields; ``durable`` commits before returning."""

    async def record_webhook_event(self, event_id: str, event_type: str) -> bool:
        """Return False when the event id was already recorded."""


class PaymentGateway(Protocol):
    """Remote payment processor operations used by the core."""

    async def create_charge(self, params: dict[str, Any]) -> stripe.Charge:
        ...

    async def create_refund(self, params: dict[str, Any]) -> stripe.Refund:
        ...

    async def create_customer(self, params: dict[str, Any]) -> stripe.Customer:
        ...

    async def retrieve_customer(self, customer_id: str) -> stripe.Customer:
        ...

    async def update_customer(self, customer_id: str, params: dict[str, Any]) -> stripe.Customer:
        ...

    async def list_customer_sources(self, customer_id: str) -> list[Any]:
        ...

    async def create_customer_source(self, customer_id: str, token: str) -> Any:
        ...

    async def update_customer_source(self, customer_id: str, source_id: str, params: dict[str, Any]) -> Any:
        ...

    async def create_subscription(self, params: dict[str, Any]) -> stripe.Subscription:
        ...

    async def retrieve_subscription(self, subscription_id: str) -> stripe.Subscription:
        ...

    async def update_subscription(self, subscription_id: str, params: dict[str, Any]) -> stripe.Subscription:
        ...

    async def cancel_subscription(self, subscription_id: str) -> stripe.Subscription:
        ...

    async def resume_subscription(self, subscription_id: str, params: dict[str, Any]) -> stripe.Subscription:
        ...

    async def create_invoice_item(self, params: dict[str, Any]) -> stripe.InvoiceItem:
        ...

    async def create_invoice(self, customer_id: str) -> stripe.Invoice:
        ...

    async def retrieve_invoice(self, invoice_id: str) -> stripe.Invoice:
        ...

    async def retrieve_upcoming_invoice(self, customer_id: str) -> stripe.Invoice:
        ...

    async def list_invoices(self, customer_id: str, params: dict[str, Any]) -> list[stripe.Invoice]:
        ...

    async def retrieve_token(self, token: str) -> stripe.Token:
        ...

    async def retrieve_event(self, event_id: str) -> stripe.Event:
        ...

    def construct_event(self, payload: bytes, sig_header: str) -> stripe.Event:
        ...
