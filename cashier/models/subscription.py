"""Subscription model: one named Stripe subscription per owner, plus entitlement state."""

import uuid
from collections.abc import Iterable
from datetime import datetime

from sqlalchemy import ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from cashier.database import Base, TimestampMixin, UUIDPrimaryKeyMixin, utcnow


class Subscription(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Local mirror of a Stripe subscription.

    State is never stored as an enum; it is derived from ``trial_ends_at`` and
    ``ends_at``:

    - on trial: trial end is in the future
    - cancelled: ``ends_at`` is set (past or future)
    - grace period: cancelled, but ``ends_at`` is still in the future
    - ended: cancelled and the grace period is over
    - valid: active (not cancelled, or on grace period) or on trial
    """

    __tablename__ = "subscriptions"
    __table_args__ = (
        # Sole arbiter between concurrent creators of the same named subscription
        UniqueConstraint("user_id", "name", name="uq_subscriptions_user_id_name"),
    )

    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)

    # Stripe identifiers
    stripe_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    stripe_plan: Mapped[str] = mapped_column(String(255), nullable=False)
    stripe_status: Mapped[str] = mapped_column(String(50), nullable=False, default="active")

    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    # Lifecycle timestamps (naive UTC)
    trial_ends_at: Mapped[datetime | None] = mapped_column(nullable=True)
    ends_at: Mapped[datetime | None] = mapped_column(nullable=True)

    def on_trial(self) -> bool:
        """Determine if the subscription is within its trial period."""
        return self.trial_ends_at is not None and utcnow() < self.trial_ends_at

    def on_grace_period(self) -> bool:
        """Cancelled, but the paid period has not elapsed yet."""
        return self.ends_at is not None and utcnow() < self.ends_at

    def cancelled(self) -> bool:
        return self.ends_at is not None

    def ended(self) -> bool:
        return self.cancelled() and not self.on_grace_period()

    def active(self) -> bool:
        return not self.cancelled() or self.on_grace_period()

    def valid(self) -> bool:
        """Determine if the owner is currently entitled to the subscribed service."""
        return self.active() or self.on_trial()

    def past_due(self) -> bool:
        # Reported by Stripe; does not revoke entitlement on its own
        return self.stripe_status == "past_due"

    def has_plan(self, plan: str) -> bool:
        return self.stripe_plan == plan

    def has_any_plan(self, plans: Iterable[str]) -> bool:
        return any(self.has_plan(plan) for plan in plans)

    def __repr__(self) -> str:
        return (
            f"<Subscription(id={self.id}, user_id={self.user_id}, name={self.name}, "
            f"plan={self.stripe_plan}, ends_at={self.ends_at})>"
        )
