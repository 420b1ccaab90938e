"""Health check endpoints."""

from fastapi import APIRouter, status
from pydantic import BaseModel

from campaign_engine.api.deps import EngineDep
from campaign_engine.config import settings
from campaign_engine.logging import get_logger

router = APIRouter(tags=["Health"])
logger = get_logger(__name__)


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    provider: str


class ReadinessResponse(BaseModel):
    """Readiness check response."""

    ready: bool
    database: bool
    redis: bool
    active_credentials: int = 0


@router.get(
    "/health",
    response_model=HealthResponse,
    status_code=status.HTTP_200_OK,
    summary="Health check",
    description="Basic health check endpoint that verifies the API is running.",
)
async def health_check() -> HealthResponse:
    """Basic health check - is the API up?"""
    from campaign_engine import __version__

    return HealthResponse(
        status="healthy",
        version=__version__,
        provider=settings.ad_platform_provider,
    )


@router.get(
    "/health/ready",
    response_model=ReadinessResponse,
    summary="Readiness check",
    description="Verifies the database, Redis and that the pool has an active credential.",
)
async def readiness_check(engine: EngineDep) -> ReadinessResponse:
    """Comprehensive readiness check including dependencies."""
    database_ok = False
    active_credentials = 0
    try:
        active_credentials = engine.pool.summary()["active_credentials"]
        database_ok = True
    except Exception as e:
        logger.error("database_health_check_failed", error=str(e))

    redis_ok = False
    try:
        import redis

        r = redis.from_url(settings.redis_url)
        r.ping()
        redis_ok = True
    except Exception as e:
        logger.error("redis_health_check_failed", error=str(e))

    return ReadinessResponse(
        ready=database_ok and redis_ok and active_credentials > 0,
        database=database_ok,
        redis=redis_ok,
        active_credentials=active_credentials,
    )


@router.get(
    "/health/live",
    status_code=status.HTTP_200_OK,
    summary="Liveness probe",
    description="Simple liveness probe for Kubernetes.",
)
async def liveness_check() -> dict[str, str]:
    """Kubernetes liveness probe - is the process alive?"""
    return {"status": "alive"}
