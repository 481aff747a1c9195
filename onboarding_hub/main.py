"""
FastAPI app for the onboarding provisioning bot.
Builds the bot on startup, starts its schedules when a destination chat is
configured, and closes the vendor clients on shutdown.
"""

import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from onboarding_hub.config import settings
from onboarding_hub.features.provisioning.api.router import router as bot_router
from onboarding_hub.features.provisioning.bootstrap import build_bot
from onboarding_hub.infrastructure.observability.logging import get_logger, setup_logging

# Setup logging before creating the app
setup_logging(log_level=settings.log_level)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle application startup and shutdown with proper resource management."""
    logger.info("Application starting", environment=settings.environment, debug=settings.debug)

    components = build_bot(settings)
    app.state.orchestrator = components.orchestrator
    app.state.verification_token = settings.FEISHU_VERIFICATION_TOKEN

    if settings.bot_enabled():
        components.orchestrator.start()
    else:
        logger.warning("Bot schedules not started: no FEISHU_BOT_CHAT_ID or FEISHU_BOT_WEBHOOK")

    yield

    logger.info("Application shutting down")
    try:
        await components.aclose()
    except Exception as e:
        logger.error("Error during bot shutdown", error=str(e))
    else:
        logger.info("All services closed successfully")


app = FastAPI(
    title="Onboarding Provisioning Hub",
    description=(
        "Watches the pre-hire roster and provisions work email and ride accounts from chat cards"
    ),
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(bot_router)


@app.get("/healthz")
async def healthz(request: Request):
    """Basic health check - always returns 200 if app is running."""
    orchestrator = getattr(request.app.state, "orchestrator", None)
    return {
        "status": "ok",
        "service": "onboarding-hub",
        "bot_running": bool(orchestrator and orchestrator.running),
        "ride_configured": bool(orchestrator and orchestrator.ride.configured),
    }


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log HTTP requests with timing."""
    start_time = time.time()
    response = await call_next(request)
    process_time = (time.time() - start_time) * 1000

    logger.info(
        "HTTP request completed",
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=round(process_time, 2),
    )
    return response


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
