"""FastAPI application entry point."""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from campaign_engine import __version__
from campaign_engine.api.routes import credentials, failures, health, jobs, queue
from campaign_engine.config import settings
from campaign_engine.logging import get_logger, setup_logging
from campaign_engine.services.errors import (
    AllCredentialsExhaustedError,
    CredentialInUseError,
    CredentialNotFoundError,
    EngineError,
    FailureRecordNotFoundError,
    InvalidJobTransitionError,
    JobNotFoundError,
    PayloadValidationError,
    QueuedRequestNotFoundError,
)
from campaign_engine.services.failure_ledger import InvalidFailureTransitionError

# Setup logging
setup_logging()
logger = get_logger(__name__)

_NOT_FOUND = (
    JobNotFoundError,
    CredentialNotFoundError,
    QueuedRequestNotFoundError,
    FailureRecordNotFoundError,
)
_CONFLICT = (CredentialInUseError, InvalidJobTransitionError, InvalidFailureTransitionError)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    logger.info("application_starting", version=__version__)

    # Startup: verify database connection
    try:
        from sqlalchemy import text

        from campaign_engine.db.session import engine

        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        logger.info("database_connected")
    except Exception as e:
        logger.error("database_connection_failed", error=str(e))
        # Don't raise - let health checks report the issue

    from campaign_engine.services.engine import build_engine

    app.state.engine = build_engine()

    yield

    # Shutdown
    logger.info("application_shutting_down")
    await app.state.engine.close()


# Create FastAPI app
app = FastAPI(
    title="Campaign Engine",
    description="Bulk ad campaign creation with pooled credentials and quota-aware queueing",
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register routers
app.include_router(health.router)
app.include_router(jobs.router, prefix="/api/v1")
app.include_router(queue.router, prefix="/api/v1")
app.include_router(credentials.router, prefix="/api/v1")
app.include_router(failures.router, prefix="/api/v1")


@app.exception_handler(AllCredentialsExhaustedError)
async def all_credentials_exhausted_handler(
    request: Request, exc: AllCredentialsExhaustedError
) -> JSONResponse:
    """Every credential is spent: tell the caller when to come back."""
    headers = {}
    if exc.retry_after_seconds is not None:
        headers["Retry-After"] = str(exc.retry_after_seconds)
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content={
            "detail": str(exc),
            "account_group": exc.account_group,
            "estimated_wait_minutes": exc.estimated_wait_minutes,
        },
        headers=headers,
    )


@app.exception_handler(PayloadValidationError)
async def payload_validation_handler(request: Request, exc: PayloadValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": str(exc), "errors": exc.errors},
    )


@app.exception_handler(EngineError)
async def engine_error_handler(request: Request, exc: EngineError) -> JSONResponse:
    if isinstance(exc, _NOT_FOUND):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, _CONFLICT):
        code = status.HTTP_409_CONFLICT
    else:
        logger.error("unhandled_engine_error", path=request.url.path, error=str(exc))
        code = status.HTTP_502_BAD_GATEWAY
    return JSONResponse(status_code=code, content={"detail": str(exc)})


@app.get("/", include_in_schema=False)
async def root() -> dict[str, str]:
    """Root endpoint redirect to docs."""
    return {
        "name": "Campaign Engine",
        "version": __version__,
        "docs": "/docs",
        "environment": settings.environment,
    }
