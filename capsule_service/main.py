"""
main.py with ledger client lifecycle management.
"""

import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from capsule_service.config import settings
from capsule_service.infrastructure.observability.logging import get_logger, setup_logging
from capsule_service.routes import capsules, cron, health
from capsule_service.services.ledger.enhanced_history import EnhancedHistoryClient
from capsule_service.services.ledger.rpc_client import LedgerRpcClient

# Setup logging before creating the app
setup_logging(log_level=settings.LOG_LEVEL)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the shared ledger clients on startup and close them on shutdown."""

    logger.info(
        "Application starting",
        environment=settings.environment,
        debug=settings.debug,
        rpc_url=settings.masked_rpc_url(),
        program_id=settings.PROGRAM_ID,
    )

    app.state.ledger_client = LedgerRpcClient.from_settings(settings)
    app.state.enhanced_history = EnhancedHistoryClient.from_settings(settings)

    logger.info(
        "Ledger clients initialized",
        enhanced_history=app.state.enhanced_history is not None,
    )

    yield

    logger.info("Application shutting down")

    shutdown_errors = []

    if app.state.enhanced_history is not None:
        try:
            await app.state.enhanced_history.close()
        except Exception as e:
            logger.error("Error closing enhanced history client", error=str(e))
            shutdown_errors.append(f"EnhancedHistory: {e}")

    try:
        await app.state.ledger_client.close()
    except Exception as e:
        logger.error("Error closing ledger RPC client", error=str(e))
        shutdown_errors.append(f"LedgerRpc: {e}")

    if shutdown_errors:
        logger.warning("Some clients had shutdown errors", errors=shutdown_errors)
    else:
        logger.info("All clients closed successfully")


app = FastAPI(
    title="Capsule Service",
    description="Inactivity-triggered intent capsules: crank and dashboard index",
    version="0.1.0",
    lifespan=lifespan,
)

# Include routers
app.include_router(health.router)
app.include_router(cron.router)
app.include_router(capsules.router)


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
