"""
League Night API Server

FastAPI server coordinating live league nights: check-ins, partnerships,
court assignment, score confirmation, realtime events and push notifications.
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
import logging
import os
import uvicorn
from slowapi import _rate_limit_exceeded_handler  # type: ignore
from slowapi.errors import RateLimitExceeded  # type: ignore

from league_night.api.routes import router, limiter as routes_limiter
from league_night.database import db
from league_night.models.schemas import ok, fail
from league_night.services.exceptions import LeagueNightError
from league_night.services.instance_monitor_service import get_instance_monitor_service
from league_night.utils.background_tasks import wait_for_background_tasks

# Set up logging
# Allow log level to be configured via environment variable (default: INFO)
log_level = os.getenv("LOG_LEVEL", "INFO").upper()
numeric_level = getattr(logging, log_level, logging.INFO)
logging.basicConfig(
    level=numeric_level, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan handler for startup and shutdown events."""
    # Startup
    logger.info("Starting up League Night API...")

    # Initialize database (create tables if they don't exist)
    try:
        await db.init_database()
        logger.info("Database initialized")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}", exc_info=True)

    # Start instance monitor (auto-start nights, prune stale realtime subscribers)
    try:
        get_instance_monitor_service().start()
    except Exception as e:
        logger.error(f"Failed to start instance monitor: {e}", exc_info=True)

    yield  # App is running

    logger.info("Shutting down League Night API...")

    try:
        get_instance_monitor_service().stop()
    except Exception as e:
        logger.error(f"Error stopping instance monitor: {e}", exc_info=True)

    # Let in-flight fan-out and push deliveries finish
    await wait_for_background_tasks(timeout=10)


app = FastAPI(
    title="League Night API",
    description="API for coordinating live league nights",
    version="1.0.0",
    lifespan=lifespan,
)

# Setup rate limiter
app.state.limiter = routes_limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(LeagueNightError)
async def league_night_error_handler(request: Request, exc: LeagueNightError):
    """Map service errors to the response envelope with their status code."""
    return JSONResponse(status_code=exc.status_code, content=fail(exc.message))


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content=fail(str(exc.detail)),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    """Request validation failures are invalid input (400)."""
    errors = exc.errors()
    if errors:
        first = errors[0]
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{location}: {first.get('msg')}" if location else str(first.get("msg"))
    else:
        message = "Invalid request"
    return JSONResponse(status_code=400, content=fail(message))


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.error(f"Unexpected error on {request.method} {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(status_code=500, content=fail("Internal server error"))


# CORS origins come from ALLOWED_ORIGINS
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
    """Liveness check."""
    return ok({"status": "ok"})


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
