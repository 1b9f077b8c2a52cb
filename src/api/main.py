"""
FastAPI Main Application
Entry point for the NPHIES claim submission API server
Source: https://fastapi.tiangolo.com/
Verified: 2025-12-18
"""

import uuid
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError

from src.api.config import settings
from src.api.routes import claim_submissions, health
from src.db.connection import close_db_connection, init_models
from src.gateways.nphies_gateway import close_nphies_gateway
from src.utils.logging import get_logger, setup_logging

# Setup logging
setup_logging(
    level=settings.LOG_LEVEL,
    log_file=settings.LOG_FILE,
    json_logs=settings.is_production,
)

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):  # type: ignore[no-untyped-def]  # noqa: ARG001
    """
    Application lifespan manager.

    Tables are created on startup in development only; other environments
    manage the schema outside the application.

    Source: https://fastapi.tiangolo.com/advanced/events/
    Verified: 2025-11-14
    """
    # Startup
    logger.info(f"Starting application in {settings.ENVIRONMENT} mode")
    logger.info(f"NPHIES endpoint: {settings.NPHIES_BASE_URL}")
    if settings.is_development:
        await init_models()

    yield

    # Shutdown
    logger.info("Shutting down application")
    await close_nphies_gateway()
    await close_db_connection()
    logger.info("Database connections closed")


app = FastAPI(
    title="NPHIES Claim Submission API",
    description="Claim submission, polling and communication relay for the NPHIES clearinghouse",
    version="1.0.0",
    docs_url="/docs" if not settings.is_production else None,  # Disable docs in production
    redoc_url="/redoc" if not settings.is_production else None,
    openapi_url="/openapi.json" if not settings.is_production else None,
    lifespan=lifespan,
)

# CORS middleware
# Source: https://fastapi.tiangolo.com/tutorial/cors/
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=settings.CORS_CREDENTIALS,
    allow_methods=settings.CORS_METHODS,
    allow_headers=settings.CORS_HEADERS,
)


@app.exception_handler(IntegrityError)
async def integrity_error_handler(request: Request, exc: IntegrityError) -> JSONResponse:
    """Unique violations are conflicts; foreign key violations are bad input."""
    message = str(exc.orig).lower()
    logger.warning(f"Integrity error on {request.method} {request.url.path}: {exc.orig}")
    if "foreign key" in message:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"detail": "Referenced record does not exist"},
        )
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content={"detail": "Record already exists"},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    error_id = str(uuid.uuid4())[:8]
    logger.opt(exception=exc).error(
        f"Unhandled exception [{error_id}] on {request.method} {request.url.path}: {exc}"
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error", "error_id": error_id},
    )


# Include routers
app.include_router(health.router)
app.include_router(claim_submissions.router)


@app.get("/")
async def root() -> dict[str, Any]:
    """Root endpoint with API information."""
    return {
        "name": "NPHIES Claim Submission API",
        "version": "1.0.0",
        "environment": settings.ENVIRONMENT,
        "docs": "/docs" if not settings.is_production else "disabled",
    }
