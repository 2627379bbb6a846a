"""
Snaplove Subscriptions: FastAPI Backend
Premium subscription lifecycle on the Duitku payment gateway
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import settings
from db.database import SessionLocal, engine, init_models
from routers import admin, subscriptions, webhooks
from services.duitku import DuitkuClient
from services.notifications import EmailNotifier
from services.renewal_scheduler import SubscriptionScheduler
from services.subscription_lifecycle import SubscriptionLifecycle

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def build_lifecycle() -> SubscriptionLifecycle:
    return SubscriptionLifecycle(
        gateway=DuitkuClient.from_settings(settings),
        notifier=EmailNotifier(settings),
        settings=settings,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    # Startup
    await init_models()
    app.state.lifecycle = build_lifecycle()
    app.state.scheduler = SubscriptionScheduler(
        app.state.lifecycle,
        SessionLocal,
        interval_seconds=settings.SCHEDULER_INTERVAL_SECONDS,
    )
    if settings.SCHEDULER_ENABLED:
        app.state.scheduler.start()
    logger.info("Subscription API starting (environment=%s)", settings.ENVIRONMENT)
    yield
    # Shutdown
    await app.state.scheduler.stop()
    await engine.dispose()
    logger.info("Subscription API shut down.")


app = FastAPI(
    title="Snaplove Subscription API",
    description="Premium subscription payments, renewals and refunds",
    version="1.0.0",
    lifespan=lifespan,
)

# ── CORS ───────────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.FRONTEND_URL],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ── Routers ────────────────────────────────────────────────
app.include_router(webhooks.router, prefix="/api/subscription/callback", tags=["Duitku Webhooks"])
app.include_router(subscriptions.router, prefix="/api/subscription", tags=["Subscriptions"])
app.include_router(admin.router, prefix="/api/admin/subscriptions", tags=["Admin"])


@app.get("/health")
async def health_check():
    return {"status": "healthy", "service": "Snaplove Subscription API"}
