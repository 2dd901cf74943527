"""
FastAPI application initialization
"""

from fastapi import FastAPI
from api.routes import health, jobs
from core.config import settings
from core.logging import setup_logging
import logging
from api.middleware import RequestContextMiddleware
from ingestion.scheduler import IngestionScheduler

setup_logging(settings.LOG_LEVEL)

logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title="Project Ingestion API",
    description="Read-only reporting on ingestion jobs and sources",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(RequestContextMiddleware)

# Initialize Scheduler
scheduler = IngestionScheduler()


# Include routers
app.include_router(health.router)
app.include_router(jobs.router)


@app.on_event("startup")
async def startup_event():
    """Application startup event"""
    logger.info("Starting Project Ingestion API")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Database: {settings.DATABASE_URL.split('@')[1] if '@' in settings.DATABASE_URL else 'configured'}")

    if settings.ENVIRONMENT != "test":
        scheduler.start()


@app.on_event("shutdown")
async def shutdown_event():
    """Application shutdown event"""
    logger.info("Shutting down Project Ingestion API")
    if scheduler.scheduler.running:
        scheduler.stop()


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "Project Ingestion API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
        "endpoints": {
            "jobs": "/jobs",
            "source_stats": "/sources/{code}/stats"
        }
    }
