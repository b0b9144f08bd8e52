"""Stripe webhook endpoint: receives and applies Stripe events."""

import logging
from collections.abc import AsyncIterator

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from cashier.billing.stripe_client import StripeGateway
from cashier.billing.webhooks import apply_remote_event
from cashier.config import Settings, settings
from cashier.services.subscription_store import SqlAlchemySubscriptionStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/stripe", tags=["webhooks"])


def get_settings() -> Settings:
    return settings


def get_gateway(config: Settings = Depends(get_settings)) -> StripeGateway:
    return StripeGateway.from_settings(config)


async def get_db(request: Request) -> AsyncIterator[AsyncSession]:
    """Yield a session from the factory stored on the app by ``create_app``."""
    async with request.app.state.session_factory() as session:
        yield session


@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_gateway),
    config: Settings = Depends(get_settings),
) -> dict[str, str]:
    """Receive and apply a Stripe webhook event."""
    # 1. Read raw body (MUST be raw bytes for signature verification)
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature", "")

    # 2. Verify signature
    try:
        event = gateway.construct_event(payload, sig_header)
    except stripe.SignatureVerificationError as e:
        logger.warning("Webhook signature verification failed")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid signature",
        ) from e
    except ValueError as e:
        logger.warning("Invalid webhook payload")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid payload",
        ) from e

    # 3. Apply once, in a single transaction
    store = SqlAlchemySubscriptionStore(db)
    try:
        applied = await apply_remote_event(event, store=store, gateway=gateway, config=config)
        await db.commit()
    except Exception as e:
        await db.rollback()
        logger.exception("Error processing webhook event %s", event.id)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed",
        ) from e

    return {"status": "processed" if applied else "duplicate"}
