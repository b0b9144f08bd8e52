"""Processed Stripe webhook events: guards against duplicate deliveries."""

from datetime import datetime

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from cashier.database import Base, UUIDPrimaryKeyMixin, utcnow


class WebhookEvent(UUIDPrimaryKeyMixin, Base):
    """A Stripe event id that has already been applied."""

    __tablename__ = "cashier_webhook_events"

    event_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    processed_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<WebhookEvent(event_id={self.event_id}, type={self.event_type})>"
