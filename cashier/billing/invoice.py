"""Read-only projection over a Stripe invoice."""

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from cashier.config import Settings, settings
from cashier.database import ts_to_naive


def format_amount(amount: int, config: Settings | None = None) -> str:
    """Format an amount in cents with the configured currency symbol."""
    config = config or settings
    value = (Decimal(amount) / 100).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    sign = "-" if value < 0 else ""
    return f"{sign}{config.cashier_currency_symbol}{abs(value):,.2f}"


class Invoice:
    """Convenience wrapper around a fetched ``stripe.Invoice``.

    Unknown attributes fall through to the Stripe object.
    """

    def __init__(self, owner: Any, stripe_invoice: Any, config: Settings | None = None) -> None:
        self.owner = owner
        self.invoice = stripe_invoice
        self.config = config or settings

    def __getattr__(self, key: str) -> Any:
        if key == "invoice":
            raise AttributeError(key)
        return getattr(self.invoice, key)

    @property
    def id(self) -> str:
        return self.invoice.id

    def date(self) -> datetime | None:
        return ts_to_naive(getattr(self.invoice, "created", None))

    def raw_total(self) -> int:
        """Total in cents, including any starting balance."""
        return max(0, self.invoice.total + self.raw_starting_balance())

    def total(self) -> str:
        return format_amount(self.raw_total(), self.config)

    def subtotal(self) -> str:
        return format_amount(max(0, self.invoice.subtotal), self.config)

    def raw_starting_balance(self) -> int:
        return getattr(self.invoice, "starting_balance", None) or 0

    def has_starting_balance(self) -> bool:
        return self.raw_starting_balance() < 0

    def starting_balance(self) -> str:
        return format_amount(self.raw_starting_balance(), self.config)

    def _discounts(self) -> list[Any]:
        return list(getattr(self.invoice, "total_discount_amounts", None) or [])

    def has_discount(self) -> bool:
        return any(d.amount > 0 for d in self._discounts())

    def raw_discount(self) -> int:
        return sum(d.amount for d in self._discounts())

    def discount(self) -> str:
        return format_amount(self.raw_discount(), self.config)

    def coupon(self) -> str | None:
        """Coupon ID of the first invoice-level discount.

        Needs ``discounts`` expanded; an unexpanded discount ID yields None.
        """
        discounts = getattr(self.invoice, "discounts", None) or []
        if not discounts or isinstance(discounts[0], str):
            return None
        discount = discounts[0]
        # Newer API versions nest the coupon under the discount source
        source = getattr(discount, "source", None)
        coupon = getattr(source if source is not None else discount, "coupon", None)
        if coupon is None or isinstance(coupon, str):
            return coupon
        return coupon.id

    def lines(self) -> list[Any]:
        lines = getattr(self.invoice, "lines", None)
        return list(lines.data) if lines else []

    def is_paid(self) -> bool:
        return getattr(self.invoice, "status", None) == "paid"

    def __repr__(self) -> str:
        return f"<Invoice(id={self.id}, total={self.raw_total()})>"
