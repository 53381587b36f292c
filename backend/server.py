from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
import uuid
from contextlib import asynccontextmanager
from database import database
from routes import auth, registration, webhooks, client, admin_subscriptions, companies_house, cron
from services.errors import LifecycleError, ExternalServiceFailure

import os
import logging
from pathlib import Path
from dotenv import load_dotenv
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
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

# Scheduler with MongoDB job store so jobs survive restarts
mongo_url = os.environ.get('MONGO_URL', 'mongodb://localhost:27017')
db_name = os.environ.get('DB_NAME', 'registered_office')

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

from job_runner import run_renewal_sweep

# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Starting Registered Office API")
    await database.connect()

    stripe_key = (os.environ.get("STRIPE_SECRET_KEY") or os.environ.get("STRIPE_API_KEY") or "").strip()
    if not stripe_key:
        logger.error("STRIPE_API_KEY / STRIPE_SECRET_KEY is not set. Checkout and refunds will fail.")
    else:
        logger.info("STRIPE_MODE = %s (from Stripe key prefix)", "test" if stripe_key.startswith("sk_test_") else "live")
    if not (os.environ.get("STRIPE_WEBHOOK_SECRET") or "").strip():
        logger.warning("STRIPE_WEBHOOK_SECRET is not set. Webhook signatures will not be verified.")

    # Renewal sweep daily at 6:00 AM UTC
    scheduler.add_job(
        run_renewal_sweep,
        CronTrigger(hour=6, minute=0),
        id="renewal_sweep",
        name="Subscription Renewal Sweep",
        replace_existing=True
    )

    scheduler.start()
    logger.info("Background job scheduler started")

    yield

    # Shutdown
    logger.info("Shutting down Registered Office API")
    scheduler.shutdown(wait=False)
    logger.info("Background job scheduler stopped")
    await database.close()

# Create FastAPI app
app = FastAPI(
    title="Registered Office API",
    description="Client onboarding and subscription lifecycle",
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
app.include_router(auth.router)
app.include_router(registration.router)
app.include_router(webhooks.router)
app.include_router(client.router)
app.include_router(admin_subscriptions.router)
app.include_router(companies_house.router)
app.include_router(cron.router)

@app.get("/api/health")
async def health_check():
    return {"status": "healthy", "service": "registered-office-api"}


@app.exception_handler(LifecycleError)
async def lifecycle_exception_handler(request: Request, exc: LifecycleError):
    # Internal detail stays in the log; callers only see user_message
    log = logger.error if exc.status_code >= 500 or isinstance(exc, ExternalServiceFailure) else logger.warning
    log(
        "%s path=%s detail=%s",
        exc.error_code,
        request.url.path,
        str(exc),
    )
    content = {"detail": exc.user_message, "error_code": exc.error_code}
    field = getattr(exc, "field", None)
    if field:
        content["field"] = field
    return JSONResponse(status_code=exc.status_code, content=content)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    request_id = str(uuid.uuid4())
    errors = exc.errors()
    logger.warning(
        "Request validation failed request_id=%s path=%s errors=%s",
        request_id,
        request.url.path,
        [(e.get("loc"), e.get("msg"), e.get("type")) for e in errors],
    )
    return JSONResponse(
        status_code=422,
        content={"detail": "Some of the details provided are invalid.", "errors": [
            {"loc": list(e.get("loc", [])), "msg": e.get("msg")} for e in errors
        ], "request_id": request_id},
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
