"""
Clubhouse API Server

FastAPI server for club registrations, payments and accounts.
"""

from contextlib import asynccontextmanager
import logging
import os

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import uvicorn
from slowapi import _rate_limit_exceeded_handler  # type: ignore
from slowapi.errors import RateLimitExceeded  # type: ignore

from clubhouse.api.routes import router, limiter as routes_limiter
from clubhouse.database import db
from clubhouse.services import auth_service, email_service
from clubhouse.services.errors import PortalError
from clubhouse.services.temp_token_service import get_temp_token_sweeper

# Set up logging
# Allow log level to be configured via environment variable (default: INFO)
log_level = os.getenv("LOG_LEVEL", "INFO").upper()
numeric_level = getattr(logging, log_level, logging.INFO)
logging.basicConfig(
    level=numeric_level, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# Seconds to wait for queued receipt emails on shutdown
EMAIL_DRAIN_TIMEOUT = 10


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan handler for startup and shutdown events."""
    # Startup
    logger.info("Starting up Clubhouse API...")

    # Tokens cannot be issued or checked without it; refuse to start
    auth_service.require_jwt_secret()

    # Create tables missing from migrations (development fallback)
    try:
        await db.init_database()
        logger.info("Database initialized")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}", exc_info=True)

    # Start temp-account token sweeper
    try:
        get_temp_token_sweeper().start()
    except Exception as e:
        logger.error(f"Failed to start temp token sweeper: {e}", exc_info=True)

    yield  # App is running

    # Shutdown
    logger.info("Shutting down Clubhouse API...")

    try:
        get_temp_token_sweeper().stop()
    except Exception as e:
        logger.error(f"Error stopping temp token sweeper: {e}", exc_info=True)

    try:
        await email_service.wait_for_background_emails(timeout=EMAIL_DRAIN_TIMEOUT)
    except Exception as e:
        logger.error(f"Error draining background emails: {e}", exc_info=True)


app = FastAPI(
    title="Clubhouse API",
    description="Registration, payment and account API for the club portal",
    version="1.0.0",
    lifespan=lifespan,
)

# Setup rate limiter
app.state.limiter = routes_limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


async def portal_error_handler(request: Request, exc: PortalError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = [
        {
            "field": ".".join(str(part) for part in error["loc"] if part != "body"),
            "message": error["msg"],
        }
        for error in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content={
            "success": False,
            "error": "validation_error",
            "message": "Invalid request",
            "details": details,
        },
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=exc)
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": "server_error", "message": "Internal server error"},
    )


app.add_exception_handler(PortalError, portal_error_handler)
app.add_exception_handler(RequestValidationError, request_validation_handler)
app.add_exception_handler(Exception, unhandled_error_handler)

# Add CORS middleware; origins configured via ALLOWED_ORIGINS env var
allowed_origins = os.getenv("ALLOWED_ORIGINS", "http://localhost:3000").split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)

# Include API routes
app.include_router(router)


@app.get("/api/health")
async def health():
    return {"status": "ok"}


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
