"""
FastAPI application entry point for mvwatch

Starts the MV sense ingestion pipeline in the app lifespan and exposes a
small status surface:
    GET /                - name and version
    GET /health          - liveness plus broker connection
    GET /metrics         - Prometheus metrics
    GET /api/v1/status   - pipeline state
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI, Response

from mvwatch.core.config import ConfigurationError, settings
from mvwatch.core.logging_config import setup_logging, get_logger
from mvwatch.core.metrics import init_metrics, get_metrics, get_content_type
from mvwatch.middleware.logging_middleware import RequestLoggingMiddleware
from mvwatch.api.v1.status import router as status_router
from mvwatch.services.meraki_client import StartupResolutionError
from mvwatch.services.pipeline import get_pipeline

# Application version
APP_VERSION = "1.0.0"

setup_logging(app_version=APP_VERSION)
logger = get_logger(__name__)

init_metrics(version=APP_VERSION)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler for startup and shutdown events.

    Missing configuration or an unknown organization/network aborts startup.
    """
    logger.info("Application starting", extra={"event_type": "app_startup", "version": APP_VERSION})

    pipeline = get_pipeline()
    try:
        await pipeline.start()
    except ConfigurationError as e:
        logger.critical(str(e), extra={"event_type": "configuration_error"})
        raise
    except StartupResolutionError as e:
        logger.critical(
            f"Startup aborted: {e}",
            extra={"event_type": "startup_resolution_error"}
        )
        raise

    yield

    logger.info("Application shutting down", extra={"event_type": "app_shutdown"})
    await pipeline.stop()


app = FastAPI(
    title="mvwatch API",
    description="Meraki MV sense event ingestion, snapshot retrieval and image analysis",
    version=APP_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

app.add_middleware(RequestLoggingMiddleware)

app.include_router(status_router, prefix=settings.API_V1_PREFIX)


@app.get("/")
async def root():
    """Root endpoint - API status check"""
    return {
        "name": "mvwatch",
        "version": APP_VERSION,
        "status": "running"
    }


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    pipeline = get_pipeline()
    return {
        "status": "healthy" if pipeline.running else "starting",
        "mqtt_connected": pipeline.mqtt.is_connected if pipeline.mqtt else False,
    }


@app.get("/metrics")
async def prometheus_metrics():
    """Prometheus metrics endpoint"""
    return Response(
        content=get_metrics(),
        media_type=get_content_type()
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host=settings.API_HOST,
        port=settings.API_PORT,
        reload=settings.DEBUG,
        log_level=settings.effective_log_level.lower()
    )
