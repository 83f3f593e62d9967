from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
import uuid
from contextlib import asynccontextmanager
from database import database
from routes import orders, admin_orders, notifications, realtime

import os
import logging
from pathlib import Path
from dotenv import load_dotenv
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.jobstores.mongodb import MongoDBJobStore

# Load environment variables
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Initialize scheduler with MongoDB job store for persistence
# Jobs will survive server restarts
mongo_url = os.environ.get('MONGO_URL', 'mongodb://localhost:27017')
db_name = os.environ.get('DB_NAME', 'order_lifecycle')

try:
    from pymongo import MongoClient
    mongo_client = MongoClient(mongo_url)
    jobstores = {
        'default': MongoDBJobStore(
            database=db_name,
            collection='scheduled_jobs',
            client=mongo_client
        )
    }
    logger.info(f"MongoDB job store configured: {db_name}.scheduled_jobs")
except Exception as e:
    logger.warning(f"Failed to configure MongoDB job store, using memory store: {e}")
    jobstores = {}

scheduler = AsyncIOScheduler(jobstores=jobstores)

# Import job runners from shared module (used by scheduler and admin run-now)
from job_runner import (
    run_deadline_sweep,
    run_unread_sweep,
    run_side_effect_retry_worker,
)
from services.engine import build_engine, set_engine


def _under_pytest() -> bool:
    return os.environ.get("PYTEST_RUNNING", "").strip() == "1"


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Starting Order Lifecycle API")
    await database.connect()

    # Tables and templates are validated here; a bad table fails start-up
    engine = build_engine()
    app.state.engine = engine
    set_engine(engine)

    if _under_pytest():
        logger.info("PYTEST_RUNNING set, background scheduler not started")
    else:
        # Deadline reminders every hour on the hour
        scheduler.add_job(
            run_deadline_sweep,
            CronTrigger(minute=0),
            id="deadline_sweep",
            name="Writer Deadline Reminders",
            replace_existing=True
        )

        # Unread WARNING/CRITICAL follow-ups and escalation every 30 minutes
        scheduler.add_job(
            run_unread_sweep,
            IntervalTrigger(minutes=30),
            id="unread_sweep",
            name="Unread Notification Reminders",
            replace_existing=True
        )

        # Captured mail/emit retries every minute
        scheduler.add_job(
            run_side_effect_retry_worker,
            IntervalTrigger(minutes=1),
            id="side_effect_retry_worker",
            name="Side Effect Retry Worker",
            replace_existing=True
        )

        scheduler.start()
        logger.info("Background job scheduler started")

    yield

    # Shutdown
    logger.info("Shutting down Order Lifecycle API")
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Background job scheduler stopped")
    set_engine(None)
    await database.close()

# Create FastAPI app
app = FastAPI(
    title="Order Lifecycle API",
    description="Role-gated order workflow, notifications and reminders",
    version="1.0.0",
    lifespan=lifespan
)

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(orders.router)
app.include_router(admin_orders.router)
app.include_router(notifications.router)
app.include_router(realtime.router)

# Health check
@app.get("/api/health")
async def health_check():
    return {
        "status": "healthy",
        "environment": os.getenv("ENVIRONMENT", "development"),
        "scheduler_running": scheduler.running,
    }


# Validation error handler: log request_id + errors (loc path)
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    request_id = str(uuid.uuid4())
    errors = exc.errors()
    logger.warning(
        "Validation failed request_id=%s path=%s errors=%s",
        request_id,
        request.url.path,
        [(e.get("loc"), e.get("msg"), e.get("type")) for e in errors],
    )
    return JSONResponse(
        status_code=422,
        content={"detail": [{"loc": e.get("loc"), "msg": e.get("msg"), "type": e.get("type")} for e in errors],
                 "request_id": request_id},
    )


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
    )

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "server:app",
        host="0.0.0.0",
        port=8001,
        reload=os.getenv("ENVIRONMENT") == "development"
    )
