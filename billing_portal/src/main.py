import os
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

import structlog
from fastapi import FastAPI, Depends, HTTPException, Response
from fastapi.staticfiles import StaticFiles
from prometheus_client import generate_latest, REGISTRY
from prometheus_client.exposition import CONTENT_TYPE_LATEST
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .api.routes import auth_routes, patient_routes, payment_routes
from .core.logging_config import setup_logging
from .core.cache.cache_manager import CacheManager, get_cache_manager, close_global_cache_manager
from .core.config.settings import get_settings
from .core.database.db_session import engine as async_engine, get_db_session

setup_logging()
logger = structlog.get_logger(__name__)

# --- DB Pool Warmup ---
async def warmup_db_pool():
    logger.info("Application startup: warming up database connection pool...")
    app_settings = get_settings()
    if app_settings.DATABASE_URL.startswith("sqlite"):
        logger.info("SQLite database configured. Skipping pool warmup.")
        return
    warmup_count = min(app_settings.DB_POOL_SIZE, 3)

    try:
        for i in range(warmup_count):
            async with async_engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            logger.debug("DB warmup connection successful.", connection=i + 1, total=warmup_count)
        logger.info("Database connection pool warmed up.", connections=warmup_count)
    except Exception as e:
        logger.error("Error during database connection pool warmup", error=str(e), exc_info=True)

@asynccontextmanager
async def lifespan(app: FastAPI):
    await warmup_db_pool()
    yield
    logger.info("Application shutdown: closing global cache manager.")
    await close_global_cache_manager()

app = FastAPI(title="Patient Billing Portal", version="1.0.0", lifespan=lifespan)

app.include_router(auth_routes.router, prefix="/api/v1/auth", tags=["Authentication"])
app.include_router(patient_routes.router, prefix="/api/v1/patient", tags=["Patient"])
app.include_router(payment_routes.router, prefix="/api/v1/payments", tags=["Payments"])

# Locally stored uploads are served from the same prefix FileStorage puts in their URLs.
_settings = get_settings()
if not _settings.s3_configured:
    os.makedirs(_settings.LOCAL_UPLOAD_DIR, exist_ok=True)
    app.mount(_settings.LOCAL_UPLOAD_URL_PREFIX.rstrip("/"),
              StaticFiles(directory=_settings.LOCAL_UPLOAD_DIR), name="uploads")

@app.get("/health", tags=["Monitoring"])
async def health_check():
    logger.debug("Health check accessed")
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": app.version,
    }

@app.get("/metrics", tags=["Monitoring"])
async def get_metrics():
    """Exposes Prometheus metrics."""
    return Response(generate_latest(REGISTRY), media_type=CONTENT_TYPE_LATEST)

@app.get("/ready", tags=["Monitoring"])
async def readiness_check(
    db: AsyncSession = Depends(get_db_session),
    cache: CacheManager = Depends(get_cache_manager),
) -> Dict[str, Any]:
    checks = {
        "database": {"status": "unhealthy", "details": "Check not performed"},
        "cache": {"status": "unhealthy", "details": "Check not performed"},
    }

    try:
        result = await db.execute(text("SELECT 1"))
        if result.scalar_one() == 1:
            checks["database"] = {"status": "healthy", "details": "Successfully connected and queried."}
        else:
            checks["database"]["details"] = "Query executed but result was unexpected."
    except Exception as e:
        logger.error("Readiness check: Database connection failed", error=str(e))
        checks["database"]["details"] = f"Connection failed: {str(e)}"

    # CacheManager swallows its own errors, so a failed round trip shows up as a mismatch.
    test_key = f"readiness_check_{uuid.uuid4().hex}"
    await cache.set(test_key, "healthy", ttl=5)
    if await cache.get(test_key) == "healthy":
        checks["cache"] = {"status": "healthy", "details": "Successfully connected and performed SET/GET."}
    else:
        checks["cache"]["details"] = "SET/GET round trip failed."
        logger.warn("Readiness check: Cache SET/GET failed", key=test_key)

    if not all(check["status"] == "healthy" for check in checks.values()):
        logger.warn("Readiness check failed", overall_status=checks)
        raise HTTPException(status_code=503, detail=checks)

    logger.info("Readiness check successful", overall_status=checks)
    return checks
