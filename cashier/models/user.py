"""User model: the default billable entity."""

from datetime import datetime

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from cashier.database import Base, TimestampMixin, UUIDPrimaryKeyMixin


class BillableMixin:
    """Billing columns any host model needs to act as a billable entity."""

    stripe_id: Mapped[str | None] = mapped_column(String(255), unique=True, index=True, nullable=True)
    card_brand: Mapped[str | None] = mapped_column(String(50), nullable=True)
    card_last_four: Mapped[str | None] = mapped_column(String(4), nullable=True)
    trial_ends_at: Mapped[datetime | None] = mapped_column(nullable=True)  # generic trial, naive UTC


class User(UUIDPrimaryKeyMixin, TimestampMixin, BillableMixin, Base):
    """Application account that can be charged and subscribed."""

    __tablename__ = "users"

    email: Mapped[str] = mapped_column(String(255), unique=True, index=True, nullable=False)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    def __repr__(self) -> str:
        return f"<User id={self.id} email={self.email!r} stripe_id={self.stripe_id!r}>"
