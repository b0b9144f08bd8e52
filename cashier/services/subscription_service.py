"""Subscription lifecycle: cancel, resume, swap and quantity changes against Stripe.

Every operation confirms with Stripe first and only then writes the local
row, so a rejected remote call leaves local state untouched.
"""

import logging
from datetime import datetime
from typing import Any

from cashier.billing.contracts import PaymentGateway, SubscriptionStore
from cashier.config import Settings, settings
from cashier.database import naive_to_ts, ts_to_naive, utcnow
from cashier.exceptions import InvalidArgument, InvalidState
from cashier.models.subscription import Subscription

logger = logging.getLogger(__name__)

# Stripe statuses after which the remote subscription can no longer bill
TERMINAL_STATUSES = {"canceled", "incomplete_expired"}


def get_first_item(stripe_sub: Any) -> Any | None:
    """Get the first subscription item, using bracket notation to avoid
    collision with Python dict .items() on Stripe objects.
    """
    sub_items = stripe_sub["items"]
    if sub_items and sub_items.data:
        return sub_items.data[0]
    return None


def get_price_id(stripe_sub: Any) -> str | None:
    """Extract the first price ID from a Stripe subscription's items."""
    item = get_first_item(stripe_sub)
    return item.price.id if item else None


def get_period_end(stripe_sub: Any) -> datetime | None:
    """Current period end of a Stripe subscription.

    Since Stripe API 2025-03-31 (basil) the period lives on the subscription
    item; older payloads carry it on the subscription itself.
    """
    item = get_first_item(stripe_sub)
    period_end = getattr(item, "current_period_end", None) if item else None
    if period_end is None:
        period_end = getattr(stripe_sub, "current_period_end", None)
    return ts_to_naive(period_end)


def proration_behavior(prorate: bool | None, config: Settings | None = None) -> str:
    """Resolve a per-call prorate flag against the configured default."""
    config = config or settings
    if prorate is None:
        return config.cashier_proration_behavior
    if not prorate:
        return "none"
    if config.cashier_proration_behavior == "none":
        return "create_prorations"
    return config.cashier_proration_behavior


def _remote_status(stripe_sub: Any, fallback: str) -> str:
    return getattr(stripe_sub, "status", None) or fallback


def mark_ended(subscription: Subscription, ends_at: datetime | None = None) -> Subscription:
    """Stop service at ``ends_at`` (default now), unless it already stopped earlier.

    A running trial is cut off at the same moment, so the row loses its
    entitlement along with the remote subscription.
    """
    ends_at = ends_at or utcnow()
    if subscription.ends_at is None or subscription.ends_at > ends_at:
        subscription.ends_at = ends_at
    if subscription.trial_ends_at is not None and subscription.trial_ends_at > subscription.ends_at:
        subscription.trial_ends_at = subscription.ends_at
    return subscription


async def cancel(
    gateway: PaymentGateway,
    store: SubscriptionStore,
    subscription: Subscription,
    *,
    immediately: bool | None = None,
    config: Settings | None = None,
) -> Subscription:
    """Cancel the subscription at the end of the paid period (or now).

    ``immediately=None`` follows ``cashier_cancel_at_period_end``. The row is
    kept; ``ends_at`` records when service stops.
    """
    config = config or settings
    if subscription.ended():
        raise InvalidState(f"Subscription {subscription.stripe_id} has already ended")

    if immediately is None:
        immediately = not config.cashier_cancel_at_period_end
    if immediately:
        return await cancel_now(gateway, store, subscription)

    stripe_sub = await gateway.update_subscription(
        subscription.stripe_id, {"cancel_at_period_end": True}
    )

    # Trialing subscriptions stop when the trial does
    if subscription.on_trial():
        subscription.ends_at = subscription.trial_ends_at
    else:
        subscription.ends_at = get_period_end(stripe_sub) or utcnow()
    subscription.stripe_status = _remote_status(stripe_sub, subscription.stripe_status)
    await store.update(subscription)

    logger.info(
        "Cancelled subscription %s at period end (ends_at=%s)",
        subscription.stripe_id,
        subscription.ends_at,
    )
    return subscription


async def cancel_now(
    gateway: PaymentGateway,
    store: SubscriptionStore,
    subscription: Subscription,
) -> Subscription:
    """Cancel the remote subscription and end service right away."""
    if subscription.ended():
        raise InvalidState(f"Subscription {subscription.stripe_id} has already ended")

    stripe_sub = await gateway.cancel_subscription(subscription.stripe_id)

    mark_ended(subscription)
    subscription.stripe_status = _remote_status(stripe_sub, "canceled")
    await store.update(subscription)

    logger.info("Cancelled subscription %s immediately", subscription.stripe_id)
    return subscription


async def resume(
    gateway: PaymentGateway,
    store: SubscriptionStore,
    subscription: Subscription,
    *,
    config: Settings | None = None,
) -> Subscription:
    """Undo a cancellation while the subscription is still on its grace period."""
    if not subscription.cancelled():
        raise InvalidState(f"Subscription {subscription.stripe_id} is not cancelled")
    if not subscription.on_grace_period():
        raise InvalidState(
            f"Subscription {subscription.stripe_id} has ended and can no longer be resumed"
        )

    params: dict[str, Any] = {"proration_behavior": proration_behavior(None, config)}
    if subscription.on_trial():
        params["trial_end"] = naive_to_ts(subscription.trial_ends_at)
    else:
        params["trial_end"] = "now"

    stripe_sub = await gateway.resume_subscription(subscription.stripe_id, params)

    subscription.ends_at = None
    if not subscription.on_trial():
        subscription.trial_ends_at = None
    subscription.stripe_status = _remote_status(stripe_sub, subscription.stripe_status)
    await store.update(subscription)

    logger.info("Resumed subscription %s", subscription.stripe_id)
    return subscription


async def swap(
    gateway: PaymentGateway,
    store: SubscriptionStore,
    subscription: Subscription,
    plan: str,
    *,
    prorate: bool | None = None,
    config: Settings | None = None,
) -> Subscription:
    """Move the subscription to another plan, keeping its quantity.

    Swapping also resumes a subscription that is on its grace period.
    """
    if subscription.ended():
        raise InvalidState(f"Subscription {subscription.stripe_id} has ended; create a new one")

    current = await gateway.retrieve_subscription(subscription.stripe_id)
    item = get_first_item(current)

    line: dict[str, Any] = {"price": plan, "quantity": subscription.quantity}
    if item is not None:
        line["id"] = item.id

    params: dict[str, Any] = {
        "items": [line],
        "proration_behavior": proration_behavior(prorate, config),
        "cancel_at_period_end": False,
    }
    if subscription.on_trial():
        params["trial_end"] = naive_to_ts(subscription.trial_ends_at)

    stripe_sub = await gateway.update_subscription(subscription.stripe_id, params)

    previous_plan = subscription.stripe_plan
    subscription.stripe_plan = plan
    subscription.ends_at = None
    subscription.stripe_status = _remote_status(stripe_sub, subscription.stripe_status)
    await store.update(subscription)

    logger.info(
        "Swapped subscription %s: %s → %s",
        subscription.stripe_id,
        previous_plan,
        plan,
    )
    return subscription


async def update_quantity(
    gateway: PaymentGateway,
    store: SubscriptionStore,
    subscription: Subscription,
    quantity: int,
    *,
    prorate: bool | None = None,
    config: Settings | None = None,
) -> Subscription:
    """Set the seat quantity of the subscription."""
    if quantity < 1:
        raise InvalidArgument("quantity must be >= 1")
    if subscription.ended():
        raise InvalidState(f"Subscription {subscription.stripe_id} has ended")

    current = await gateway.retrieve_subscription(subscription.stripe_id)
    item = get_first_item(current)
    line: dict[str, Any] = {"quantity": quantity}
    if item is not None:
        line["id"] = item.id
    else:
        line["price"] = subscription.stripe_plan

    await gateway.update_subscription(
        subscription.stripe_id,
        {"items": [line], "proration_behavior": proration_behavior(prorate, config)},
    )

    subscription.quantity = quantity
    await store.update(subscription)
    logger.info("Subscription %s quantity set to %d", subscription.stripe_id, quantity)
    return subscription


async def increment_quantity(
    gateway: PaymentGateway,
    store: SubscriptionStore,
    subscription: Subscription,
    count: int = 1,
    **kwargs: Any,
) -> Subscription:
    return await update_quantity(gateway, store, subscription, subscription.quantity + count, **kwargs)


async def decrement_quantity(
    gateway: PaymentGateway,
    store: SubscriptionStore,
    subscription: Subscription,
    count: int = 1,
    **kwargs: Any,
) -> Subscription:
    # Never drops below one seat
    return await update_quantity(
        gateway, store, subscription, max(1, subscription.quantity - count), **kwargs
    )


async def skip_trial(
    gateway: PaymentGateway,
    store: SubscriptionStore,
    subscription: Subscription,
) -> Subscription:
    """End the trial now and start billing."""
    stripe_sub = await gateway.update_subscription(subscription.stripe_id, {"trial_end": "now"})

    subscription.trial_ends_at = None
    subscription.stripe_status = _remote_status(stripe_sub, subscription.stripe_status)
    await store.update(subscription)
    logger.info("Skipped trial of subscription %s", subscription.stripe_id)
    return subscription


async def sync_from_stripe(
    store: SubscriptionStore,
    subscription: Subscription,
    stripe_sub: Any,
) -> Subscription:
    """Mirror plan, quantity, status, trial and cancellation from a Stripe subscription."""
    item = get_first_item(stripe_sub)
    if item is not None:
        subscription.stripe_plan = item.price.id
        subscription.quantity = getattr(item, "quantity", None) or subscription.quantity

    status = _remote_status(stripe_sub, subscription.stripe_status)
    subscription.stripe_status = status
    subscription.trial_ends_at = ts_to_naive(getattr(stripe_sub, "trial_end", None))

    if status in TERMINAL_STATUSES:
        mark_ended(subscription, ts_to_naive(getattr(stripe_sub, "ended_at", None)))
    elif getattr(stripe_sub, "cancel_at_period_end", False):
        subscription.ends_at = (
            subscription.trial_ends_at if subscription.on_trial() else get_period_end(stripe_sub)
        ) or utcnow()
    elif getattr(stripe_sub, "cancel_at", None):
        subscription.ends_at = ts_to_naive(stripe_sub.cancel_at)
    else:
        subscription.ends_at = None

    await store.update(subscription)
    logger.info(
        "Synced subscription %s from Stripe: plan=%s, status=%s, ends_at=%s",
        subscription.stripe_id,
        subscription.stripe_plan,
        status,
        subscription.ends_at,
    )
    return subscription
