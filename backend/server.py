from fastapi import FastAPI, APIRouter, Request
from fastapi.responses import JSONResponse
from pymongo.errors import PyMongoError
from starlette.middleware.cors import CORSMiddleware
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from datetime import datetime, timezone
import os
import logging

from database import db, client, check_db_connection
from token_wallet import __version__
from token_wallet.config import ERROR_CODES
from token_wallet.db_init import ensure_indexes
from token_wallet.jobs import setup_scheduler
from token_wallet.routes import token_wallet_router

# Create the main app
app = FastAPI(title="Token Wallet API")

api_router = APIRouter(prefix="/api")

scheduler = AsyncIOScheduler()


@api_router.get("/")
async def root():
    return {"message": "Token Wallet API", "version": __version__}


@api_router.get("/health")
async def health():
    return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}


api_router.include_router(token_wallet_router)

app.include_router(api_router)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=[origin.strip() for origin in os.environ.get(
        'CORS_ORIGINS', 'http://localhost:3000').split(',')],
    allow_methods=["*"],
    allow_headers=["*"],
)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@app.exception_handler(PyMongoError)
async def database_error_handler(request: Request, exc: PyMongoError):
    logger.exception(f"Database error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=500,
        content={"detail": {"error_code": "GENERIC", "message": ERROR_CODES["GENERIC"]}}
    )


@app.on_event("startup")
async def startup():
    # Fail fast if the database is unavailable
    db_ok, db_error = await check_db_connection()
    if not db_ok:
        logger.critical(f"Database connection failed on startup: {db_error}")
        raise RuntimeError(
            f"Cannot start application - database connection failed: {db_error}")

    await db.users.create_index("id", unique=True)
    await ensure_indexes(db)

    setup_scheduler(scheduler, db)
    scheduler.start()
    logger.info("Token wallet reconciliation scheduler started")


@app.on_event("shutdown")
async def shutdown_db_client():
    if scheduler.running:
        scheduler.shutdown()
        logger.info("Token wallet scheduler shut down")

    client.close()
