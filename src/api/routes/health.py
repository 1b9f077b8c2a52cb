"""
Health Check Routes
Service health monitoring endpoints
Source: https://microservices.io/patterns/observability/health-check-api.html
Verified: 2025-12-18
"""

from typing import Any

from fastapi import APIRouter

from src.api.config import settings
from src.db.connection import check_db_connection
from src.utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["Health"])

SERVICE_NAME = "nphies-claims-backend"


@router.get("/health")
async def health_check() -> dict[str, Any]:
    """Basic liveness check."""
    return {
        "status": "healthy",
        "service": SERVICE_NAME,
    }


@router.get("/health/detailed")
async def detailed_health_check() -> dict[str, Any]:
    """
    Health check with dependency status.

    Only the database is checked; NPHIES is not called so that health checks
    never reach the clearinghouse.
    """
    db_healthy = await check_db_connection()
    if not db_healthy:
        logger.warning("Detailed health check: database unreachable")

    return {
        "status": "healthy" if db_healthy else "unhealthy",
        "service": SERVICE_NAME,
        "environment": settings.ENVIRONMENT,
        "checks": {
            "database": "healthy" if db_healthy else "unhealthy",
            "nphies": {"base_url": settings.NPHIES_BASE_URL},
        },
    }
