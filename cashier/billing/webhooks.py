"""Stripe webhook event handlers: apply remote subscription/customer changes locally."""

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from cashier.billing.billable import Billable
from cashier.billing.contracts import PaymentGateway, SubscriptionStore
from cashier.config import Settings
from cashier.database import utcnow
from cashier.services.subscription_service import mark_ended, sync_from_stripe

logger = logging.getLogger(__name__)

Handler = Callable[[SubscriptionStore, PaymentGateway, Any, Settings | None], Awaitable[None]]


def _get_invoice_subscription_id(invoice: Any) -> str | None:
    """Subscription ID of an invoice.

    Stripe API 2025-03-31 (basil) moved it under
    ``parent.subscription_details``; older payloads carry it at the top level.
    """
    subscription_id = getattr(invoice, "subscription", None)
    if subscription_id:
        return subscription_id
    parent = getattr(invoice, "parent", None)
    details = getattr(parent, "subscription_details", None) if parent else None
    return getattr(details, "subscription", None) if details else None


async def handle_subscription_updated(
    store: SubscriptionStore,
    gateway: PaymentGateway,
    event: Any,
    config: Settings | None = None,
) -> None:
    """Handle customer.subscription.updated: sync plan, quantity, trial and cancellation."""
    stripe_sub = event.data.object

    subscription = await store.find_by_stripe_id(stripe_sub.id)
    if subscription is None:
        logger.warning(
            "No local subscription found for Stripe subscription %s (customer %s)",
            stripe_sub.id,
            getattr(stripe_sub, "customer", None),
        )
        return

    await sync_from_stripe(store, subscription, stripe_sub)


async def handle_subscription_deleted(
    store: SubscriptionStore,
    gateway: PaymentGateway,
    event: Any,
    config: Settings | None = None,
) -> None:
    """Handle customer.subscription.deleted: end the local subscription now."""
    stripe_sub = event.data.object

    subscription = await store.find_by_stripe_id(stripe_sub.id)
    if subscription is None:
        logger.warning(
            "No local subscription found for Stripe subscription %s (delete event)",
            stripe_sub.id,
        )
        return

    mark_ended(subscription)
    subscription.stripe_status = "canceled"
    await store.update(subscription)
    logger.info("Subscription deleted: %s marked as ended", stripe_sub.id)


async def handle_customer_updated(
    store: SubscriptionStore,
    gateway: PaymentGateway,
    event: Any,
    config: Settings | None = None,
) -> None:
    """Handle customer.updated: resync the owner's default card."""
    customer = event.data.object

    owner = await store.find_owner_by_stripe_id(customer.id)
    if owner is None:
        logger.warning("No local owner found for Stripe customer %s (update event)", customer.id)
        return

    await Billable(owner, gateway=gateway, store=store, config=config).update_card_from_stripe()
    logger.info("Customer updated: card details of %s resynced", customer.id)


async def handle_customer_deleted(
    store: SubscriptionStore,
    gateway: PaymentGateway,
    event: Any,
    config: Settings | None = None,
) -> None:
    """Handle customer.deleted: forget the customer and end its subscriptions."""
    customer = event.data.object

    owner = await store.find_owner_by_stripe_id(customer.id)
    if owner is None:
        logger.warning("No local owner found for Stripe customer %s (delete event)", customer.id)
        return

    now = utcnow()
    for subscription in await store.find_all_by_owner(owner.id):
        if not subscription.ended():
            subscription.stripe_status = "canceled"
        mark_ended(subscription, now)
        await store.update(subscription)

    owner.stripe_id = None
    owner.card_brand = None
    owner.card_last_four = None
    await store.save_owner(owner)
    logger.info("Customer deleted: %s unlinked from user %s", customer.id, owner.id)


async def handle_invoice_payment_failed(
    store: SubscriptionStore,
    gateway: PaymentGateway,
    event: Any,
    config: Settings | None = None,
) -> None:
    """Handle invoice.payment_failed: mark subscription as past_due."""
    invoice = event.data.object
    subscription_id = _get_invoice_subscription_id(invoice)

    if not subscription_id:
        logger.info(
            "Invoice %s has no subscription (one-time), skipping payment failure",
            invoice.id,
        )
        return

    subscription = await store.find_by_stripe_id(subscription_id)
    if subscription is None:
        logger.warning(
            "No local subscription found for Stripe subscription %s (payment failed)",
            subscription_id,
        )
        return

    subscription.stripe_status = "past_due"
    await store.update(subscription)
    logger.info("Payment failed: subscription %s marked as past_due", subscription_id)


# Map event types to handler functions
EVENT_HANDLERS: dict[str, Handler] = {
    "customer.subscription.updated": handle_subscription_updated,
    "customer.subscription.deleted": handle_subscription_deleted,
    "customer.updated": handle_customer_updated,
    "customer.deleted": handle_customer_deleted,
    "invoice.payment_failed": handle_invoice_payment_failed,
}


async def apply_remote_event(
    event: Any,
    *,
    store: SubscriptionStore,
    gateway: PaymentGateway,
    config: Settings | None = None,
) -> bool:
    """Apply a Stripe event once.

    Returns False for a duplicate delivery (already recorded event id). The
    record and the handler's writes share the caller's transaction, so a
    failing handler leaves the event unrecorded for Stripe's retry.
    """
    if config is not None and config.cashier_webhook_verify_event:
        # Only act on events Stripe itself reports; a forged id raises GatewayError
        event = await gateway.retrieve_event(event.id)

    if not await store.record_webhook_event(event.id, event.type):
        logger.info("Skipping duplicate webhook event %s (%s)", event.id, event.type)
        return False

    handler = EVENT_HANDLERS.get(event.type)
    if handler is None:
        logger.debug("Unhandled webhook event type: %s", event.type)
        return True

    logger.info("Applying webhook event: %s (id=%s)", event.type, event.id)
    await handler(store, gateway, event, config)
    return True
