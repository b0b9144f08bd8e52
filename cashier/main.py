"""Cashier webhook service: FastAPI application factory.

Run with ``cashier-webhooks`` or ``uvicorn cashier.main:create_app --factory``.
"""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from cashier.api.webhooks import get_settings
from cashier.api.webhooks import router as webhooks_router
from cashier.config import Settings, settings
from cashier.database import create_engine, create_session_factory

# Configure root logger so all cashier.* loggers output to stderr.
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


def create_app(config: Settings | None = None) -> FastAPI:
    """Build the app with its own engine; the engine is disposed on shutdown."""
    config = config or settings
    engine = create_engine(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        await engine.dispose()

    app = FastAPI(
        title=config.app_name,
        version=config.app_version,
        description="Stripe webhook receiver for cashier subscriptions.",
        lifespan=lifespan,
    )
    app.state.engine = engine
    app.state.session_factory = create_session_factory(engine)
    app.dependency_overrides[get_settings] = lambda: config

    app.include_router(webhooks_router)

    @app.get("/health", tags=["health"])
    async def health_check() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "healthy", "service": config.app_name}

    return app


def run() -> None:
    """Serve the webhook app on port 8000."""
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)


if __name__ == "__main__":
    run()
