import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from sltp_service.config import settings
from sltp_service.database import dispose_db, init_db
from sltp_service.exceptions import AppError, InternalError
from sltp_service.routers import sltp_webhook_router
from sltp_service.services.credential_vault import CredentialVault
from sltp_service.services.position_store import DatabasePositionStore
from sltp_service.services.trigger_executor import TriggerExecutor
from sltp_service.services.webhook_notifier import WebhookNotifier

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="SLTP Fan-out Service")

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_cors_origins_list(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Process-wide: cache, locks, cooldown and pending deliveries live here
credential_vault = CredentialVault()
position_store = DatabasePositionStore()
webhook_notifier = WebhookNotifier()
trigger_executor = TriggerExecutor(credential_vault, position_store, webhook_notifier)


def override_get_trigger_executor() -> TriggerExecutor:
    return trigger_executor


app.dependency_overrides[sltp_webhook_router.get_trigger_executor] = override_get_trigger_executor

# Include all routers
app.include_router(sltp_webhook_router.router)


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    if exc.status_code >= 500:
        logger.error(f"❌ {request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.get("/health/orchestrator")
async def orchestrator_health():
    """Diagnostic: can the orchestrator's webhook server be reached?"""
    healthy = await webhook_notifier.health_check()
    return {"orchestrator_url": webhook_notifier.base_url, "healthy": healthy}


@app.get("/health/credentials")
async def credential_health():
    """Diagnostic: which tenant credentials are quarantined after repeated failures."""
    return credential_vault.health.summary()


async def warm_up_active_trading():
    """
    Decrypt every active-trading credential once at start-up.

    Surfaces a missing or wrong encryption key at boot instead of on the
    first trigger. Only the count is kept.
    """
    try:
        credentials = await credential_vault.list_active_trading_credentials()
    except InternalError as e:
        logger.error(f"❌ Active trading warm-up failed: {e.message}")
        return 0

    count = len(credentials)
    exchanges = sorted({c.exchange for c in credentials})
    del credentials
    logger.info(f"🔐 {count} active trading credential(s) ready ({', '.join(exchanges) or 'none'})")
    return count


# Startup/Shutdown events
@app.on_event("startup")
async def startup_event():
    logger.info("🚀 Initializing database...")
    await init_db()
    logger.info("🚀 Database initialized successfully")

    await warm_up_active_trading()
    logger.info(f"🚀 Startup complete! Notifying orchestrator at {webhook_notifier.base_url}")


@app.on_event("shutdown")
async def shutdown_event():
    pending = webhook_notifier.pending_deliveries
    if pending:
        logger.info(f"🛑 Shutting down - waiting for {pending} webhook delivery(ies)...")
    await webhook_notifier.aclose()
    await dispose_db()
    logger.info("🛑 Shutdown complete")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
