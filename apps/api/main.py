"""
Voice Bot Credit Ledger - FastAPI Backend
Main application entry point with health check and API routing.
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from config import settings, validate_security_settings
from database import engine, Base
import models  # noqa: F401
from routers import health, billing, calls, usage
from services.call_events import build_call_event_feed
from services.event_watcher import CallEventWatcher
from services.notifications import get_notification_sink
from services.reconciliation import ReconciliationSweeper, run_reconciliation_for_all_tenants


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Voice Bot Credit Ledger API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")

    sink = get_notification_sink()
    feed = build_call_event_feed()
    app.state.notification_sink = sink
    app.state.call_feed = feed

    watcher = None
    if settings.CALL_WATCHER_ENABLED:
        watcher = CallEventWatcher(feed, sink=sink)
        await watcher.start()
        app.state.call_watcher = watcher
        print(f"📞 Call watcher subscribed ({settings.CALL_EVENT_BACKEND} feed).")

    if settings.RECONCILE_ON_STARTUP:
        try:
            result = await run_reconciliation_for_all_tenants(sink=sink)
            if result.get("processed") or result.get("errors"):
                print(
                    f"♻️ Startup reconciliation: tenants={result.get('tenants', 0)} "
                    f"processed={result.get('processed', 0)} errors={result.get('errors', 0)}"
                )
        except Exception as exc:
            print(f"⚠️ Startup reconciliation skipped: {exc}")

    sweeper = ReconciliationSweeper(sink=sink)
    sweeper.start()
    if sweeper.enabled:
        print(f"📅 Reconciliation loop enabled (every {int(settings.RECONCILE_INTERVAL_MINUTES)} min).")
    yield
    # Shutdown
    await sweeper.stop()
    if watcher is not None:
        await watcher.stop()
    await feed.close()
    await sink.close()
    print("👋 Shutting down API...")


app = FastAPI(
    title="Voice Bot Credit Ledger API",
    description="Per-minute credit metering, reconciliation and purchases for AI voice-call bots",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(billing.router, prefix="/billing", tags=["Billing"])
app.include_router(calls.router, prefix="/calls", tags=["Calls"])
app.include_router(usage.router, prefix="/usage", tags=["Usage"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Voice Bot Credit Ledger API",
        "version": "0.1.0",
        "status": "running"
    }
