"""FastAPI main application for the collation engine."""

from contextlib import asynccontextmanager
import time

import asyncpg
from fastapi import APIRouter, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from collation_engine.api.routes import collation
from collation_engine.core import database
from collation_engine.core.config import settings
from collation_engine.core.database import close_db_pool, init_db_pool
from collation_engine.core.errors import CollationError
from collation_engine.core.logging_config import get_logger, setup_logging
from collation_engine.core.responses import (
    collation_error_response,
    error_response_dict,
    success_response,
)

# Setup logging
setup_logging()
logger = get_logger(__name__)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses."""

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"

        # HSTS only behind HTTPS
        if settings.ENVIRONMENT == "production":
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains; preload"
            )

        return response


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager - runs on startup and shutdown."""
    logger.info("Starting collation engine...")
    logger.info(f"Environment: {settings.ENVIRONMENT}")

    # Tests provide their own connections
    if settings.ENVIRONMENT != "test":
        await init_db_pool(settings)

    yield

    if settings.ENVIRONMENT != "test":
        await close_db_pool()
    logger.info("Shutting down collation engine...")


app = FastAPI(
    title="Collation Engine",
    description="""
    **Collation Engine** - result sheet workflow and aggregation for elections

    - Result sheets move `draft -> submitted -> verified -> approved -> certified`;
      any reviewer stage can return a sheet to `draft` with a reason
    - Every write carries the `version` the client read; a changed sheet
      answers `409 stale_state`
    - Certified sheets are locked (`423 sheet_locked`)
    - Dashboards and roll-ups are computed from certified sheets on read

    ## Authentication

    Include the JWT issued by the auth service in the Authorization header:

    ```
    Authorization: Bearer <your_jwt_token>
    ```

    ## API Versioning

    - `/v1/*` - Version 1 (current stable)
    - `/*` - Latest version (may change)
    """,
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(SecurityHeadersMiddleware)

if settings.ENVIRONMENT == "development":
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
        allow_headers=["*"],
    )
else:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "Accept", "Origin"],
    )


# Exception handlers
@app.exception_handler(CollationError)
async def collation_exception_handler(request: Request, exc: CollationError):
    """Render workflow rule violations with their code and details."""
    return collation_error_response(exc)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle HTTP exceptions with standardized error responses."""
    if isinstance(exc.detail, dict):
        return error_response_dict(exc.detail, exc.status_code)
    return error_response_dict(
        {"success": False, "message": exc.detail, "data": None, "errors": None},
        exc.status_code,
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle Pydantic validation errors."""
    errors = {}
    for error in exc.errors():
        field = ".".join(str(loc) for loc in error["loc"])
        errors[field] = error["msg"]

    return error_response_dict(
        {
            "success": False,
            "message": "Validation failed",
            "data": None,
            "errors": errors,
        },
        422,
    )


@app.exception_handler(asyncpg.exceptions.PostgresError)
async def database_exception_handler(
    request: Request, exc: asyncpg.exceptions.PostgresError
):
    """Handle database errors."""
    logger.error(f"Database error: {exc}", exc_info=True)
    return error_response_dict(
        {
            "success": False,
            "message": "Database error occurred",
            "data": None,
            "errors": None,
        },
        500,
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle unexpected errors."""
    logger.error(f"Unexpected error: {exc}", exc_info=True)
    return error_response_dict(
        {
            "success": False,
            "message": "An unexpected error occurred",
            "data": None,
            "errors": None,
        },
        500,
    )


# Versioned API router
v1_router = APIRouter(prefix="/v1")
v1_router.include_router(collation.router)
app.include_router(v1_router)

# Latest version at root level
app.include_router(collation.router)


@app.get("/health")
async def health_check():
    """
    Health check for monitoring and load balancers.

    Returns 200 when the database answers, 503 otherwise.
    """
    health_status = {"status": "healthy", "timestamp": time.time(), "checks": {}}
    health_status["checks"]["api"] = {"status": "healthy", "message": "API is running"}

    pool = database.get_pool()
    if pool is None:
        health_status["status"] = "unhealthy"
        health_status["checks"]["database"] = {
            "status": "unhealthy",
            "message": "Database pool not initialized",
        }
        return error_response_dict(
            {
                "success": False,
                "message": "Health check failed",
                "data": health_status,
                "errors": None,
            },
            503,
        )

    try:
        async with pool.acquire() as conn:
            await conn.fetchval("SELECT 1")
    except (asyncpg.PostgresError, OSError) as e:
        health_status["status"] = "unhealthy"
        health_status["checks"]["database"] = {
            "status": "unhealthy",
            "message": f"Database check failed: {e!s}",
        }
        return error_response_dict(
            {
                "success": False,
                "message": "Health check failed",
                "data": health_status,
                "errors": None,
            },
            503,
        )

    pool_size = pool.get_size()
    pool_idle = pool.get_idle_size()
    health_status["checks"]["database"] = {
        "status": "healthy",
        "message": "Database is accessible",
        "pool": {
            "size": pool_size,
            "max": pool.get_max_size(),
            "idle": pool_idle,
            "active": pool_size - pool_idle,
        },
    }
    return success_response(data=health_status)
