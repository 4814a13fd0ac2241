"""Health check endpoints.

Provides liveness (/health) and readiness (/health/ready) checks. Readiness
verifies the record store database and, when the invalidation relay is
enabled, Redis.
"""

from __future__ import annotations

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import text

from src.app.config import get_settings
from src.app.core.database import get_engine
from src.app.core.redis import get_redis_pool

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """Basic liveness check. No external dependencies are checked."""
    settings = get_settings()
    return {"status": "ok", "environment": settings.ENVIRONMENT.value}


async def _check_dependencies(request: Request) -> dict:
    """Check pipeline wiring, database and Redis. Returns check results dict."""
    settings = get_settings()
    checks: dict = {"pipeline": "ok", "database": "ok", "redis": "disabled"}

    if getattr(request.app.state, "pipeline_service", None) is None:
        checks["pipeline"] = "error"

    if settings.DATABASE_URL.startswith("memory://"):
        checks["database"] = "memory"
    else:
        try:
            engine = get_engine()
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        except Exception as e:
            checks["database"] = "error"
            checks["database_error"] = str(e)

    if settings.INVALIDATION_RELAY_ENABLED:
        try:
            redis = get_redis_pool()
            pong = await redis.ping()
            checks["redis"] = "ok"
            if not pong:
                checks["redis"] = "error"
                checks["redis_error"] = "PING did not return PONG"
        except Exception as e:
            checks["redis"] = "error"
            checks["redis_error"] = str(e)

    return checks


@router.get("/health/ready")
async def readiness_check(request: Request):
    """Readiness check: returns 200 if every dependency passes, 503 otherwise."""
    checks = await _check_dependencies(request)
    all_healthy = (
        checks.get("pipeline") == "ok"
        and checks.get("database") in ("ok", "memory")
        and checks.get("redis") in ("ok", "disabled")
    )

    return JSONResponse(
        status_code=status.HTTP_200_OK if all_healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "ready" if all_healthy else "degraded",
            "checks": checks,
        },
    )
