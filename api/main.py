"""
FastAPI application initialization
"""

from fastapi import FastAPI
from api.routes import health, sync
from api.middleware import RequestContextMiddleware
from core.config import settings
from core.database import async_session_maker, engine
from core.exceptions import ConfigurationError
from core.logging import setup_logging
from pipeline.scheduler import create_sync_scheduler
import logging

setup_logging()

logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title="Search Query Performance Sync API",
    description="Monitoring and manual trigger surface for the warehouse sync pipeline",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(RequestContextMiddleware)

app.state.scheduler = None
app.state.scheduler_error = None

# Include routers
app.include_router(health.router)
app.include_router(sync.router)


@app.on_event("startup")
async def startup_event():
    """Application startup event"""
    logger.info("Starting Search Query Performance Sync API")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Database: {settings.DATABASE_URL.split('@')[1] if '@' in settings.DATABASE_URL else 'configured'}")

    if app.state.scheduler is not None:
        app.state.scheduler.start()
        return

    try:
        app.state.scheduler = create_sync_scheduler(async_session_maker, settings)
    except ConfigurationError as e:
        app.state.scheduler_error = e.message
        logger.error(f"Sync scheduler disabled: {e.message}", extra={"error_context": e.to_dict()})
        return

    app.state.scheduler.start()


@app.on_event("shutdown")
async def shutdown_event():
    """Application shutdown event"""
    logger.info("Shutting down Search Query Performance Sync API")
    if app.state.scheduler is not None:
        await app.state.scheduler.cleanup()
    await engine.dispose()


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "Search Query Performance Sync API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
        "endpoints": {
            "status": "/sync/status",
            "metrics": "/sync/metrics",
            "history": "/sync/history",
            "alerts": "/sync/alerts",
            "trigger": "/sync/trigger"
        }
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=settings.API_HOST, port=settings.API_PORT)
