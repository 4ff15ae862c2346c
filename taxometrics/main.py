"""TAXOMETRICS — FastAPI Application Entry Point.

Taxonomy-aware integration of search, analytics and market metrics.
"""

import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import inspect

from taxometrics.config import settings
from taxometrics.database import engine, init_db, test_connection, db_url
from taxometrics.scheduler.jobs import start_scheduler, stop_scheduler
from taxometrics.api.integration_routes import router as integration_router
from taxometrics.api.unmatched_routes import router as unmatched_router
from taxometrics.core.logging import get_logger

logger = get_logger("main")


IS_SERVERLESS = bool(
    os.environ.get("VERCEL") or os.environ.get("AWS_LAMBDA_FUNCTION_NAME")
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle."""
    logger.info("TAXOMETRICS starting up")
    logger.info(
        f"Environment: {'SERVERLESS' if IS_SERVERLESS else 'LOCAL'}, "
        f"sources: {settings.source_mode}, "
        f"match threshold: {settings.match_confidence_threshold}"
    )
    # Test connection first
    db_ok = test_connection()
    if db_ok:
        try:
            init_db()
        except Exception as e:
            logger.error(f"Table creation failed: {e}")
    else:
        logger.error("Database NOT connected, endpoints will fail")
    if not IS_SERVERLESS:
        start_scheduler()
    yield
    if not IS_SERVERLESS:
        stop_scheduler()
    logger.info("TAXOMETRICS shut down")


app = FastAPI(
    title="TAXOMETRICS",
    description="Match Search Console, GA4 and market pricing data to a product taxonomy and roll it up the category tree.",
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
app.include_router(integration_router)
app.include_router(unmatched_router)


@app.get("/health", tags=["System"])
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "service": "taxometrics",
        "version": "1.0.0",
        "source_mode": settings.source_mode,
        "match_confidence_threshold": settings.match_confidence_threshold,
    }


@app.get("/debug/db", tags=["System"])
async def debug_db():
    """Debug endpoint: check database connectivity."""
    from taxometrics.database import _mask_url

    error = None
    connected = False
    tables: list[str] = []
    try:
        connected = test_connection()
        if connected:
            tables = sorted(inspect(engine).get_table_names())
    except Exception as e:
        error = str(e)

    backend = "postgresql" if db_url.startswith("postgresql") else "sqlite"
    return {
        "connected": connected,
        "backend": backend,
        "url": _mask_url(db_url),
        "environment": "serverless" if IS_SERVERLESS else "local",
        "tables": tables,
        "error": error,
    }
