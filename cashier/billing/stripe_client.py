"""Async Stripe API wrapper: the remote payment gateway."""

import logging
from collections.abc import Awaitable
from typing import Any, TypeVar

import stripe
from stripe import StripeClient

from cashier.config import Settings, settings
from cashier.exceptions import GatewayError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Invoice discounts come back as IDs unless expanded
INVOICE_EXPAND = ["discounts"]
LIST_INVOICE_EXPAND = ["data.discounts"]


def build_stripe_client(api_key: str, timeout: float = 30.0) -> StripeClient:
    """Create a StripeClient with async HTTP support and no automatic retries."""
    return StripeClient(
        api_key,
        http_client=stripe.HTTPXClient(timeout=timeout),
        max_network_retries=0,
    )


class StripeGateway:
    """Stripe operations used by cashier.

    Every ``stripe.StripeError`` is re-raised as ``GatewayError``; a network
    failure or timeout is flagged ``outcome_unknown`` and never retried here.
    """

    def __init__(
        self,
        api_key: str,
        *,
        webhook_secret: str = "",
        timeout: float = 30.0,
        client: StripeClient | None = None,
    ) -> None:
        self._client = client or build_stripe_client(api_key, timeout)
        self._webhook_secret = webhook_secret

    @classmethod
    def from_settings(cls, config: Settings | None = None) -> "StripeGateway":
        config = config or settings
        return cls(
            config.stripe_secret_key,
            webhook_secret=config.stripe_webhook_secret,
            timeout=config.stripe_timeout_seconds,
        )

    async def _call(self, operation: str, request: Awaitable[T]) -> T:
        try:
            return await request
        except stripe.StripeError as e:
            logger.warning(
                "Stripe %s failed: %s (code=%s, status=%s)",
                operation,
                e.user_message or e.__class__.__name__,
                e.code,
                e.http_status,
            )
            raise GatewayError.from_stripe(e, operation) from e

    # -- charges ---------------------------------------------------------

    async def create_charge(self, params: dict[str, Any]) -> stripe.Charge:
        logger.info("Creating charge of %s %s", params.get("amount"), params.get("currency"))
        return await self._call("create_charge", self._client.v1.charges.create_async(params=params))

    async def create_refund(self, params: dict[str, Any]) -> stripe.Refund:
        logger.info("Refunding charge %s", params.get("charge"))
        return await self._call("create_refund", self._client.v1.refunds.create_async(params=params))

    # -- customers and sources -------------------------------------------

    async def create_customer(self, params: dict[str, Any]) -> stripe.Customer:
        customer = await self._call(
            "create_customer", self._client.v1.customers.create_async(params=params)
        )
        logger.info("Created Stripe customer %s", customer.id)
        return customer

    async def retrieve_customer(self, customer_id: str) -> stripe.Customer:
        return await self._call(
            "retrieve_customer",
            self._client.v1.customers.retrieve_async(
                customer_id, params={"expand": ["sources", "subscriptions"]}
            ),
        )

    async def update_customer(self, customer_id: str, params: dict[str, Any]) -> stripe.Customer:
        return await self._call(
            "update_customer", self._client.v1.customers.update_async(customer_id, params=params)
        )

    async def list_customer_sources(self, customer_id: str) -> list[Any]:
        sources = await self._call(
            "list_customer_sources",
            self._client.v1.customers.payment_sources.list_async(
                customer_id, params={"object": "card", "limit": 100}
            ),
        )
        return list(sources.data)

    async def create_customer_source(self, customer_id: str, token: str) -> Any:
        return await self._call(
            "create_customer_source",
            self._client.v1.customers.payment_sources.create_async(
                customer_id, params={"source": token}
            ),
        )

    async def update_customer_source(
        self, customer_id: str, source_id: str, params: dict[str, Any]
    ) -> Any:
        return await self._call(
            "update_customer_source",
            self._client.v1.customers.payment_sources.update_async(
                customer_id, source_id, params=params
            ),
        )

    # -- subscriptions ---------------------------------------------------

    async def create_subscription(self, params: dict[str, Any]) -> stripe.Subscription:
        logger.info(
            "Creating subscription for customer %s on %s",
            params.get("customer"),
            params.get("items"),
        )
        return await self._call(
            "create_subscription", self._client.v1.subscriptions.create_async(params=params)
        )

    async def retrieve_subscription(self, subscription_id: str) -> stripe.Subscription:
        return await self._call(
            "retrieve_subscription", self._client.v1.subscriptions.retrieve_async(subscription_id)
        )

    async def update_subscription(
        self, subscription_id: str, params: dict[str, Any]
    ) -> stripe.Subscription:
        return await self._call(
            "update_subscription",
            self._client.v1.subscriptions.update_async(subscription_id, params=params),
        )

    async def cancel_subscription(self, subscription_id: str) -> stripe.Subscription:
        logger.info("Cancelling subscription %s immediately", subscription_id)
        return await self._call(
            "cancel_subscription", self._client.v1.subscriptions.cancel_async(subscription_id)
        )

    async def resume_subscription(
        self, subscription_id: str, params: dict[str, Any]
    ) -> stripe.Subscription:
        """Undo a pending period-end cancellation."""
        return await self._call(
            "resume_subscription",
            self._client.v1.subscriptions.update_async(
                subscription_id, params={**params, "cancel_at_period_end": False}
            ),
        )

    # -- invoices --------------------------------------------------------

    async def create_invoice_item(self, params: dict[str, Any]) -> stripe.InvoiceItem:
        return await self._call(
            "create_invoice_item", self._client.v1.invoice_items.create_async(params=params)
        )

    async def create_invoice(self, customer_id: str) -> stripe.Invoice:
        """Invoice pending items now and attempt payment.

        Without pending invoice items no draft is created and ``GatewayError``
        carries the ``invoice_no_customer_line_items`` code.
        """
        pending = await self._call(
            "list_invoice_items",
            self._client.v1.invoice_items.list_async(
                params={"customer": customer_id, "pending": True, "limit": 1}
            ),
        )
        if not pending.data:
            logger.info("No pending invoice items for customer %s", customer_id)
            raise GatewayError(
                "Nothing to invoice for customer.",
                operation="create_invoice",
                code="invoice_no_customer_line_items",
                http_status=400,
            )

        invoice = await self._call(
            "create_invoice",
            self._client.v1.invoices.create_async(
                params={"customer": customer_id, "pending_invoice_items_behavior": "include"}
            ),
        )
        return await self._call(
            "pay_invoice",
            self._client.v1.invoices.pay_async(invoice.id, params={"expand": INVOICE_EXPAND}),
        )

    async def retrieve_invoice(self, invoice_id: str) -> stripe.Invoice:
        return await self._call(
            "retrieve_invoice",
            self._client.v1.invoices.retrieve_async(invoice_id, params={"expand": INVOICE_EXPAND}),
        )

    async def retrieve_upcoming_invoice(self, customer_id: str) -> stripe.Invoice:
        return await self._call(
            "retrieve_upcoming_invoice",
            self._client.v1.invoices.create_preview_async(
                params={"customer": customer_id, "expand": INVOICE_EXPAND}
            ),
        )

    async def list_invoices(self, customer_id: str, params: dict[str, Any]) -> list[stripe.Invoice]:
        invoices = await self._call(
            "list_invoices",
            self._client.v1.invoices.list_async(
                params={"expand": LIST_INVOICE_EXPAND, **params, "customer": customer_id}
            ),
        )
        return list(invoices.data)

    # -- tokens and events -----------------------------------------------

    async def retrieve_token(self, token: str) -> stripe.Token:
        return await self._call("retrieve_token", self._client.v1.tokens.retrieve_async(token))

    async def retrieve_event(self, event_id: str) -> stripe.Event:
        return await self._call("retrieve_event", self._client.v1.events.retrieve_async(event_id))

    def construct_event(self, payload: bytes, sig_header: str) -> stripe.Event:
        """Verify and construct a Stripe webhook event (synchronous).

        Raises ``stripe.SignatureVerificationError`` or ``ValueError`` untouched
        so the HTTP layer can answer 400.
        """
        return self._client.construct_event(payload, sig_header, self._webhook_secret)
