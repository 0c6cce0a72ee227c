"""FastAPI application entry point."""
import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from intake_crm.core.config import settings
from intake_crm.db.session import SessionLocal, engine

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# ============================================================================
# Sentry Integration (optional, for production error tracking)
# ============================================================================

if settings.SENTRY_DSN and settings.ENV != "dev":
    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.ENV,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
        ],
        traces_sample_rate=0.1,
        send_default_pii=False,  # Call payloads carry caller phone numbers
    )
    logger.info("Sentry initialized for error tracking")

# ============================================================================
# Rate Limiting
# ============================================================================

from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from intake_crm.core.rate_limit import limiter
from intake_crm.core.websocket import manager
from intake_crm.services import outbound_webhook_service


# ============================================================================
# Lifespan
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    outbound_webhook_service.scheduler.bind_loop(asyncio.get_running_loop())
    manager.start_sweeper(
        settings.REALTIME_SWEEP_INTERVAL_SECONDS,
        settings.REALTIME_STALE_AFTER_SECONDS,
    )
    db = SessionLocal()
    try:
        outbound_webhook_service.resume_pending_deliveries(db)
    except Exception:
        logger.exception("Could not resume pending webhook deliveries")
    finally:
        db.close()

    yield

    await outbound_webhook_service.scheduler.shutdown()
    await manager.shutdown()


# ============================================================================
# FastAPI App
# ============================================================================

app = FastAPI(
    title="Intake CRM API",
    description="Multi-tenant legal intake: call ingestion, on-call routing and lead qualification",
    version=settings.VERSION,
    docs_url="/docs" if settings.ENV == "dev" else None,
    redoc_url="/redoc" if settings.ENV == "dev" else None,
    lifespan=lifespan,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# CORS middleware - must be added before routers
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,  # Required for cookies
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Requested-With"],
)

# ============================================================================
# Routers
# ============================================================================

from intake_crm.routers import devices, leads, oncall, ops, telephony, webhooks
from intake_crm.routers import websocket as ws_router

# Provider webhooks (public, signature-checked where configured)
app.include_router(telephony.router)

# Lead qualification
app.include_router(leads.router)

# Outbound webhook endpoints (admin)
app.include_router(webhooks.router)

# On-call configuration
app.include_router(oncall.router)

# Push device tokens (user-scoped)
app.include_router(devices.router)

# Ops endpoints (ingestion outcomes, alerts)
app.include_router(ops.router)

# WebSocket for real-time call notifications
app.include_router(ws_router.router)


# ============================================================================
# Health Check
# ============================================================================

@app.get("/health")
def health():
    """
    Health check endpoint.

    Verifies database connectivity and returns environment info.
    """
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))
    return {"status": "ok", "env": settings.ENV, "version": settings.VERSION}
