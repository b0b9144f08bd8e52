"""Subscription store: SQLAlchemy persistence for subscriptions and billable owners."""

import logging
import uuid
from collections.abc import Sequence
from datetime import datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from cashier.billing.contracts import BillableEntity
from cashier.exceptions import DuplicateSubscription
from cashier.models.subscription import Subscription
from cashier.models.user import User
from cashier.models.webhook_event import WebhookEvent

logger = logging.getLogger(__name__)


class SqlAlchemySubscriptionStore:
    """Store backed by an async session.

    Writes are flushed and the caller owns the transaction; only
    ``save_owner(durable=True)`` commits.
    """

    def __init__(self, db: AsyncSession, owner_model: type = User) -> None:
        self.db = db
        self.owner_model = owner_model

    async def find_by_owner_and_name(self, owner_id: uuid.UUID, name: str) -> Subscription | None:
        result = await self.db.execute(
            select(Subscription)
            .where(Subscription.user_id == owner_id, Subscription.name == name)
            .order_by(Subscription.created_at.desc())
        )
        return result.scalars().first()

    async def find_all_by_owner(self, owner_id: uuid.UUID) -> Sequence[Subscription]:
        result = await self.db.execute(
            select(Subscription)
            .where(Subscription.user_id == owner_id)
            .order_by(Subscription.created_at.desc())
        )
        return result.scalars().all()

    async def find_by_stripe_id(self, stripe_id: str) -> Subscription | None:
        """Look up a subscription by Stripe subscription ID (used by webhooks)."""
        result = await self.db.execute(
            select(Subscription).where(Subscription.stripe_id == stripe_id)
        )
        return result.scalar_one_or_none()

    async def find_owner_by_stripe_id(self, stripe_customer_id: str) -> BillableEntity | None:
        """Look up the billable owner by Stripe customer ID (used by webhooks)."""
        result = await self.db.execute(
            select(self.owner_model).where(self.owner_model.stripe_id == stripe_customer_id)
        )
        return result.scalar_one_or_none()

    async def insert(self, subscription: Subscription) -> Subscription:
        """Insert a new subscription; the (user_id, name) unique constraint decides races."""
        try:
            # SAVEPOINT so a rejected insert leaves the caller's transaction usable
            async with self.db.begin_nested():
                self.db.add(subscription)
        except IntegrityError as e:
            logger.warning(
                "Store rejected subscription %r for user %s: already exists",
                subscription.name,
                subscription.user_id,
            )
            raise DuplicateSubscription(subscription.user_id, subscription.name) from e

        logger.info(
            "Stored subscription %s (%s) for user %s",
            subscription.stripe_id,
            subscription.name,
            subscription.user_id,
        )
        return subscription

    async def revive(self, subscription: Subscription, **values: Any) -> Subscription:
        """Reuse an ended row for a new remote subscription.

        The update only applies while ``ends_at`` still holds the value we read,
        so two concurrent revivals cannot both win.
        """
        previous_ends_at: datetime | None = subscription.ends_at
        if previous_ends_at is None:
            raise DuplicateSubscription(subscription.user_id, subscription.name)

        result = await self.db.execute(
            update(Subscription)
            .where(
                Subscription.id == subscription.id,
                Subscription.ends_at == previous_ends_at,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise DuplicateSubscription(subscription.user_id, subscription.name)

        await self.db.refresh(subscription)
        logger.info(
            "Revived subscription %s (%s) for user %s as %s",
            subscription.id,
            subscription.name,
            subscription.user_id,
            subscription.stripe_id,
        )
        return subscription

    async def update(self, subscription: Subscription) -> Subscription:
        self.db.add(subscription)
        await self.db.flush()
        return subscription

    async def save_owner(self, owner: BillableEntity, *, durable: bool = False) -> None:
        self.db.add(owner)
        if durable:
            await self.db.commit()
        else:
            await self.db.flush()

    async def record_webhook_event(self, event_id: str, event_type: str) -> bool:
        """Record an event id once; False means it was already applied."""
        existing = await self.db.execute(
            select(WebhookEvent.id).where(WebhookEvent.event_id == event_id)
        )
        if existing.scalar_one_or_none() is not None:
            return False
        try:
            async with self.db.begin_nested():
                self.db.add(WebhookEvent(event_id=event_id, event_type=event_type))
        except IntegrityError:
            # Concurrent delivery of the same event won the insert
            return False
        return True
