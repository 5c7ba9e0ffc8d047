"""Spendboard - FastAPI Application Entry Point.

Multi-tenant Meta Ads sync engine.
"""

import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from spendboard.api.sync_routes import router as sync_router
from spendboard.config import settings
from spendboard.core.logging import get_logger
from spendboard.database import init_db, test_connection
from spendboard.scheduler.jobs import start_scheduler, stop_scheduler

logger = get_logger("main")

IS_SERVERLESS = bool(
    os.environ.get("VERCEL") or os.environ.get("AWS_LAMBDA_FUNCTION_NAME")
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle."""
    logger.info("🚀 Spendboard starting up...")
    if not settings.effective_database_url:
        logger.error("❌ DATABASE_URL not configured, sync endpoints will return 503")
    elif test_connection():
        try:
            init_db()
        except Exception as e:
            logger.error(f"❌ Table creation failed: {e}")
    else:
        logger.error("❌ Database NOT connected, endpoints will fail")
    if not IS_SERVERLESS:
        start_scheduler()
    yield
    if not IS_SERVERLESS:
        stop_scheduler()
    logger.info("Spendboard shut down")


app = FastAPI(
    title="Spendboard",
    description="Pull Meta ad insights and budgets into a workspace-scoped store.",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(sync_router)


@app.get("/health", tags=["System"])
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "service": "spendboard",
        "version": "1.0.0",
        "database_configured": bool(settings.effective_database_url),
    }
