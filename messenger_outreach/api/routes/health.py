"""Health check endpoints."""

from typing import Any

import structlog
from fastapi import APIRouter

from messenger_outreach.api.dependencies import StorageDep
from messenger_outreach.core.config import settings
from messenger_outreach.core.exceptions import AppException
from messenger_outreach.models import utc_now

logger = structlog.get_logger()

router = APIRouter(prefix="/health", tags=["Health"])


@router.get("")
@router.get("/")
async def health_check() -> dict[str, Any]:
    """Basic health check endpoint."""
    return {
        "status": "healthy",
        "timestamp": utc_now().isoformat(),
        "environment": settings.app_env,
    }


@router.get("/ready")
async def readiness_check(storage: StorageDep) -> dict[str, Any]:
    """Readiness check - verifies storage is reachable."""
    checks = {"storage": False}

    try:
        checks["storage"] = await storage.health_check()
    except AppException as e:
        logger.warning("Storage health check failed", error=e.message)

    all_healthy = all(checks.values())

    return {
        "status": "ready" if all_healthy else "degraded",
        "timestamp": utc_now().isoformat(),
        "checks": checks,
    }


@router.get("/live")
async def liveness_check() -> dict[str, str]:
    """Liveness check - basic endpoint for container checks."""
    return {"status": "alive"}
