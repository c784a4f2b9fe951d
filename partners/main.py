"""Loving Partners billing: FastAPI application entry point."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.sessions import SessionMiddleware

from partners.api.v1.subscriptions import redirect_router
from partners.api.v1.subscriptions import router as subscriptions_router
from partners.api.v1.webhooks import router as webhooks_router
from partners.billing.runtime import build_runtime
from partners.config import settings

# Root logger for every partners.* module logger.
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan handler for startup and shutdown events."""
    use_database = settings.attempt_store_backend == "database"

    # Startup
    if use_database:
        from partners.database import create_tables

        await create_tables()
    app.state.billing = build_runtime(settings)

    yield

    # Shutdown: cancel pending reconciliation checks, close HTTP clients and DB connections
    await app.state.billing.shutdown()
    if use_database:
        from partners.database import engine

        await engine.dispose()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="PayPal trial subscriptions with webhook-driven state reconciliation.",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# The PayPal return / cancel redirects keep their query parameters in the
# cookie session. Middleware added last runs first, so sessions wrap CORS.
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(
    SessionMiddleware,
    secret_key=settings.jwt_secret_key,
    https_only=settings.environment == "production",
)

app.include_router(subscriptions_router)
app.include_router(redirect_router)
app.include_router(webhooks_router)


@app.get("/health", tags=["health"])
async def health_check(request: Request) -> dict[str, str]:
    """Liveness plus whether the billing runtime finished starting."""
    runtime = getattr(request.app.state, "billing", None)
    return {
        "status": "healthy" if runtime is not None else "starting",
        "service": settings.app_name,
        "paypal_mode": settings.paypal_mode,
        "attempt_store": settings.attempt_store_backend,
    }


@app.get("/", tags=["root"])
async def root() -> dict[str, str]:
    return {
        "service": settings.app_name,
        "version": settings.app_version,
        "docs": "/docs",
        "webhook": "/webhooks/subscriptions/paypal",
    }
