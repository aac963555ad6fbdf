"""
Health check endpoints with database pool and Redis monitoring.

Only the backends selected in settings are probed: an in-memory store has no
database check and in-memory presence has no Redis check.
"""

import time

from fastapi import APIRouter

from app.config import settings
from app.db.pool import db_health_check
from app.infrastructure.redis_client import fast_redis

router = APIRouter(tags=["health"])


async def redis_ping() -> bool:
    return await fast_redis.ping()


@router.get("/healthz")
async def healthz():
    """Basic health check - always returns 200 if app is running."""
    return {"status": "ok", "service": "mechanic-marketplace"}


@router.get("/readyz")
async def readyz():
    """
    Readiness check over the configured dependencies.
    """
    checks = {}
    overall_ok = True

    # 1) Redis (presence backend)
    if settings.PRESENCE_BACKEND == "redis":
        t0 = time.time()
        try:
            redis_ok = await redis_ping()
            checks["redis"] = {
                "ok": bool(redis_ok),
                "latency_ms": round((time.time() - t0) * 1000, 1),
            }
            overall_ok = overall_ok and bool(redis_ok)
        except Exception as e:
            checks["redis"] = {"ok": False, "error": f"{type(e).__name__}: {e}"}
            overall_ok = False

    # 2) Database pool (entity store backend)
    if settings.STORE_BACKEND == "postgres":
        t0 = time.time()
        try:
            db_health = await db_health_check()
            is_healthy = db_health.get("healthy", False)

            checks["database"] = {
                "ok": is_healthy,
                "latency_ms": round((time.time() - t0) * 1000, 1),
            }

            if "pool_stats" in db_health:
                pool_stats = db_health["pool_stats"]
                checks["database"].update(
                    {
                        "pool_size": pool_stats.get("pool_size", 0),
                        "pool_available": pool_stats.get("pool_available", 0),
                        "pool_utilization_percent": pool_stats.get("pool_utilization_percent", 0),
                    }
                )

            if "warnings" in db_health:
                checks["database"]["warnings"] = db_health["warnings"]

            if not is_healthy:
                checks["database"]["error"] = db_health.get("error", "Database unhealthy")

            overall_ok = overall_ok and is_healthy

        except Exception as e:
            checks["database"] = {
                "ok": False,
                "error": f"{type(e).__name__}: {e}",
                "latency_ms": round((time.time() - t0) * 1000, 1),
            }
            overall_ok = False

    # 3) Configuration checks
    config_issues = []

    if not (settings.JWT_SECRET or settings.JWT_JWKS_URL):
        config_issues.append("JWT_SECRET or JWT_JWKS_URL not set")
    if settings.STORE_BACKEND == "postgres" and not settings.DATABASE_URL:
        config_issues.append("DATABASE_URL not set")
    if settings.PRESENCE_BACKEND == "redis" and not settings.REDIS_URL:
        config_issues.append("REDIS_URL not set")

    checks["configuration"] = {
        "ok": not config_issues,
        "issues": config_issues or None,
        "environment": settings.environment,
        "store_backend": settings.STORE_BACKEND,
        "presence_backend": settings.PRESENCE_BACKEND,
    }
    overall_ok = overall_ok and not config_issues

    return {"overall_ok": overall_ok, "checks": checks, "timestamp": time.time()}
