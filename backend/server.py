from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from contextlib import asynccontextmanager
from database import database
from flowforge.routes import (
    auth_router,
    onboarding_router,
    usage_router,
    workflow_router,
    payment_router,
    analytics_router,
)

import os
import logging
from pathlib import Path
from dotenv import load_dotenv
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.jobstores.mongodb import MongoDBJobStore
from pymongo import MongoClient

# Load environment variables
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Scheduler with MongoDB job store so jobs survive restarts
mongo_url = os.environ.get('MONGO_URL', 'mongodb://localhost:27017')
db_name = os.environ.get('DB_NAME', 'flowforge')

try:
    jobstores = {
        'default': MongoDBJobStore(
            database=db_name,
            collection='scheduled_jobs',
            client=MongoClient(mongo_url)
        )
    }
    logger.info(f"MongoDB job store configured: {db_name}.scheduled_jobs")
except Exception as e:
    logger.warning(f"Failed to configure MongoDB job store, using memory store: {e}")
    jobstores = {}

scheduler = AsyncIOScheduler(jobstores=jobstores, timezone="UTC")

from job_runner import run_monthly_usage_reset


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Starting FlowForge AI API")
    await database.connect()

    if not (os.environ.get("STRIPE_SECRET_KEY") or os.environ.get("STRIPE_API_KEY") or "").strip():
        logger.error("STRIPE_SECRET_KEY / STRIPE_API_KEY is not set. Checkout and billing will fail.")
    if not os.environ.get("OPENAI_API_KEY"):
        logger.warning("OPENAI_API_KEY is not set. Workflow generation will return fallback workflows.")

    # Monthly usage reset - 1st of each month at 00:05 UTC
    scheduler.add_job(
        run_monthly_usage_reset,
        CronTrigger(day=1, hour=0, minute=5, timezone="UTC"),
        id="monthly_usage_reset",
        name="Monthly Usage Reset",
        replace_existing=True
    )

    scheduler.start()
    logger.info("Background job scheduler started")

    yield

    # Shutdown
    logger.info("Shutting down FlowForge AI API")
    scheduler.shutdown(wait=False)
    logger.info("Background job scheduler stopped")
    await database.close()

# Create FastAPI app
app = FastAPI(
    title="FlowForge AI API",
    description="AI workflow generation for n8n, Zapier, Make and Power Automate",
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
app.include_router(auth_router)
app.include_router(onboarding_router)
app.include_router(usage_router)
app.include_router(workflow_router)
app.include_router(payment_router)
app.include_router(analytics_router)

# Root endpoint
@app.get("/api")
async def root():
    return {
        "service": "FlowForge AI",
        "tagline": "Describe it. Get the workflow.",
        "version": "1.0.0",
        "platforms": ["n8n", "zapier", "make", "power_automate"],
        "status": "operational"
    }

# Health check
@app.get("/api/health")
async def health_check():
    return {
        "status": "healthy",
        "environment": os.getenv("ENVIRONMENT", "development")
    }

@app.get("/api/ping")
async def ping():
    return {"message": os.getenv("PING_MESSAGE", "ping")}


# Validation error handler: 400 with one {field, message} entry per failed field
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    details = []
    for error in exc.errors():
        loc = [str(part) for part in error.get("loc", ()) if part != "body"]
        message = error.get("msg", "")
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        details.append({"field": ".".join(loc), "message": message})

    logger.info(f"Request validation failed path={request.url.path} fields={[d['field'] for d in details]}")
    return JSONResponse(
        status_code=400,
        content={"success": False, "error": "Invalid request", "details": details},
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
