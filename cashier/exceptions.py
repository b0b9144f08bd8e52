"""Typed errors raised by the billing core."""

import stripe


class CashierError(Exception):
    """Base class for every error raised by cashier."""


class InvalidArgument(CashierError, ValueError):
    """A required precondition is missing (no payment source, no Stripe customer, ...)."""


class DuplicateSubscription(CashierError):
    """A live subscription with the same owner and name already exists."""

    def __init__(self, owner_id, name: str) -> None:
        self.owner_id = owner_id
        self.name = name
        super().__init__(f"Subscription {name!r} already exists for owner {owner_id}")


class NotFound(CashierError, LookupError):
    """A requested entity or invoice does not exist."""


class InvalidState(CashierError):
    """The requested transition is not legal from the subscription's current state."""


class GatewayError(CashierError):
    """Stripe rejected a call or the call failed in transit.

    ``outcome_unknown`` is set when the request may or may not have been
    applied remotely (network failure or timeout).
    """

    def __init__(
        self,
        message: str,
        *,
        operation: str | None = None,
        code: str | None = None,
        http_status: int | None = None,
        outcome_unknown: bool = False,
    ) -> None:
        self.message = message
        self.operation = operation
        self.code = code
        self.http_status = http_status
        self.outcome_unknown = outcome_unknown
        super().__init__(message)

    @classmethod
    def from_stripe(cls, error: stripe.StripeError, operation: str) -> "GatewayError":
        """Wrap a Stripe SDK error, keeping its code and HTTP status."""
        return cls(
            error.user_message or str(error) or error.__class__.__name__,
            operation=operation,
            code=error.code,
            http_status=error.http_status,
            outcome_unknown=isinstance(error, stripe.APIConnectionError),
        )

    def __repr__(self) -> str:
        return f"<GatewayError(operation={self.operation}, code={self.code}, http_status={self.http_status})>"
