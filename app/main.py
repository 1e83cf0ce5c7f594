"""
TaskFlow Reminder Dispatch - Main Application Entry Point

Delivers task reminders over WhatsApp (self-hosted Web session or Twilio),
Telegram, email and in-app notifications, driven by a cron endpoint and an
in-process APScheduler tick over a SQLite-backed reminder queue.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api.cron import router as cron_router
from app.api.notifications import router as notifications_router
from app.api.reminders import router as reminders_router
from app.api.whatsapp_session import router as whatsapp_session_router
from app.config.settings import get_settings
from app.infrastructure.database import init_database
from app.infrastructure.scheduler import get_scheduler, start_scheduler, stop_scheduler
from app.infrastructure.session_manager import get_session_manager

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if get_settings().debug else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S"
)

logger = logging.getLogger(__name__)
settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Handles startup and shutdown events.
    """
    # Startup
    logger.info("Starting TaskFlow reminder dispatch...")

    # Initialize database
    logger.info("Initializing database...")
    await init_database()
    logger.info("Database initialized")

    # Reconnect a previously paired WhatsApp session
    manager = get_session_manager()
    if settings.whatsapp_auto_connect:
        snapshot = await manager.restore()
        logger.info(f"WhatsApp session: {snapshot.status.value}")

    # Start scheduler
    logger.info("Starting scheduler...")
    await start_scheduler()

    logger.info("Application startup complete!")
    logger.info(f"Timezone: {settings.timezone}")
    logger.info(f"Cron secret required: {bool(settings.cron_secret)}")

    yield

    # Shutdown
    logger.info("Shutting down...")
    await stop_scheduler()
    await manager.shutdown()
    logger.info("Application shutdown complete")


# Create FastAPI application
app = FastAPI(
    title="TaskFlow Reminder Dispatch",
    description="Multi-channel task reminder delivery with a self-hosted WhatsApp session",
    version="1.0.0",
    lifespan=lifespan
)

# Dashboard origin only
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.app_url],
    allow_credentials=True,
    allow_methods=["POST", "GET"],
    allow_headers=["*"],
)

# Register routers
app.include_router(cron_router, tags=["Cron"])
app.include_router(whatsapp_session_router, tags=["WhatsApp"])
app.include_router(reminders_router, tags=["Reminders"])
app.include_router(notifications_router, tags=["Notifications"])


@app.get("/")
async def root():
    """Root endpoint with API information."""
    return {
        "name": "TaskFlow Reminder Dispatch",
        "version": "1.0.0",
        "status": "running",
        "endpoints": {
            "cron": "/api/cron/reminders",
            "daily_summary": "/api/cron/daily-whatsapp",
            "whatsapp": "/api/v1/integrations/whatsapp",
            "reminders": "/api/v1/reminders/summary",
            "health": "/health"
        }
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "service": "taskflow-reminders",
        "whatsapp": get_session_manager().get_status().value
    }


@app.get("/scheduler/status")
async def scheduler_status():
    """Get scheduler status and pending jobs."""
    scheduler = get_scheduler()

    jobs = []
    for job in scheduler.get_jobs():
        jobs.append({
            "id": job.id,
            "name": job.name,
            "next_run": str(job.next_run_time) if job.next_run_time else None
        })

    return {
        "running": scheduler.running,
        "jobs_count": len(jobs),
        "jobs": jobs
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug
    )
