"""CALCDASH — FastAPI Application Entry Point.

Calculated fields and custom metrics for analytics dashboards.
"""

import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from calcdash.database import backend_name, db_url, init_db, test_connection
from calcdash.api.field_routes import router as field_router
from calcdash.api.metric_routes import router as metric_router
from calcdash.core.logging import get_logger

logger = get_logger("main")


IS_SERVERLESS = bool(
    os.environ.get("VERCEL") or os.environ.get("AWS_LAMBDA_FUNCTION_NAME")
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle."""
    logger.info("CALCDASH starting up...")
    logger.info(f"Environment: {'SERVERLESS' if IS_SERVERLESS else 'LOCAL'}")
    db_ok = test_connection()
    if db_ok:
        try:
            init_db()
        except Exception as e:
            logger.error(f"Table creation failed: {e}")
    else:
        logger.error("Database NOT connected, definition endpoints will fail")
    yield
    logger.info("CALCDASH shut down")


app = FastAPI(
    title="CALCDASH",
    description="Calculated fields and custom metrics: validate formulas, evaluate record batches, aggregate dashboard metrics.",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routers
app.include_router(field_router)
app.include_router(metric_router)


@app.get("/health", tags=["System"])
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "service": "calcdash",
        "version": "1.0.0",
        "database": {
            "backend": backend_name(db_url),
            "connected": test_connection(),
        },
    }
